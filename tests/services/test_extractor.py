"""
Tests for site profile resolution and price extraction.
"""
import pytest
from datetime import datetime, timezone

from price_pulse.models.product_data import RawPage, SiteProfile
from price_pulse.services.error_handler import PriceNotFound, PriceUnparsable, UnsupportedSite
from price_pulse.services.extractor import PriceExtractor, SiteProfileRegistry, parse_price

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

AMAZON_HTML = """
<html><head><title>Amazon.com: Widget</title></head><body>
  <span id="productTitle">  Deluxe Widget, 2-pack  </span>
  <img id="landingImage" src="https://m.media-amazon.com/images/I/widget.jpg">
  <div id="corePrice_feature_div">
    <span class="a-price"><span class="a-offscreen">$1,299.99</span>
      <span class="a-price-whole">1,299<span class="a-price-decimal">.</span></span>
      <span class="a-price-fraction">99</span>
    </span>
  </div>
  <span class="a-price a-text-price"><span class="a-offscreen">$1,499.00</span></span>
</body></html>
"""

BOL_HTML = """
<html><head>
  <meta property="og:title" content="Pokemon Scarlet">
  <meta property="og:image" content="/images/scarlet.jpg">
</head><body>
  <span class="promo-price">59,99</span>
</body></html>
"""

EUROPEAN_HTML = """
<html><body><h1>Kamera</h1><div class="price">1.299,00&nbsp;€</div></body></html>
"""


@pytest.fixture
def registry():
    return SiteProfileRegistry([
        SiteProfile(
            profile_id="amazon",
            domain_pattern="amazon.com",
            price_selector="#corePrice_feature_div .a-offscreen",
            title_selector="#productTitle",
            image_selector="#landingImage",
            original_price_selector="span.a-price.a-text-price .a-offscreen",
        ),
        SiteProfile(profile_id="bol", domain_pattern="bol.com", price_selector="span.promo-price"),
        SiteProfile(profile_id="shop", domain_pattern="*.shop.de", price_selector=".price", title_selector="h1"),
        SiteProfile(profile_id="example", domain_pattern="example.com", price_selector=".price"),
    ])


def make_page(url, html):
    return RawPage(url=url, final_url=url, status=200, html=html, fetched_at=NOW)


@pytest.mark.parametrize("text,expected", [
    ("$49.99", 4999),
    ("$1,299.99", 129999),
    ("1.299,99 €", 129999),
    ("€ 59,99", 5999),
    ("59,99", 5999),
    ("1,299", 129900),
    ("1 299,00 €", 129900),
    ("1\u00a0299,00\u00a0€", 129900),
    ("EUR 12", 1200),
    ("Now only 19.5!", 1950),
    ("£0.99", 99),
    ("1,234,567.89", 123456789),
    ("Buy-now price: $5.00", 500),
])
def test_parse_price(text, expected):
    """Test parsing display prices into minor units."""
    assert parse_price(text) == expected


@pytest.mark.parametrize("text", ["", "   ", None, "Out of stock", "-5.00", "-$5.00", "\u2212$5.00", "- EUR 5", "$0.00", "0"])
def test_parse_price_rejects(text):
    """Test inputs that cannot be read as a positive price."""
    with pytest.raises(PriceUnparsable):
        parse_price(text)


def test_registry_resolve(registry):
    """Test resolving profiles by URL host."""
    assert registry.resolve("https://www.amazon.com/dp/B000").profile_id == "amazon"
    assert registry.resolve("https://bol.com/nl/p/123").profile_id == "bol"
    assert registry.resolve("https://kameras.shop.de/x").profile_id == "shop"
    assert len(registry) == 4


def test_registry_unsupported_site(registry):
    with pytest.raises(UnsupportedSite):
        registry.resolve("https://unknown-store.net/item")
    with pytest.raises(UnsupportedSite):
        registry.resolve("not a url")


def test_registry_ambiguous_match():
    """Test that a URL matched by two profiles is refused."""
    registry = SiteProfileRegistry([
        SiteProfile("one", "example.com", ".price"),
        SiteProfile("two", "*.example.com", ".cost"),
    ])
    with pytest.raises(UnsupportedSite):
        registry.resolve("https://www.example.com/item")


def test_registry_duplicate_id():
    registry = SiteProfileRegistry([SiteProfile("one", "example.com", ".price")])
    with pytest.raises(ValueError):
        registry.register(SiteProfile("one", "other.com", ".price"))


def test_registry_from_config():
    registry = SiteProfileRegistry.from_config([
        {'id': 'example', 'domain_pattern': 'example.com', 'price_selector': '.price'},
    ])
    assert registry.get('example').price_selector == '.price'
    assert registry.get('missing') is None


def test_extract_amazon(registry):
    """Test extraction with title, image and original price selectors."""
    extractor = PriceExtractor(registry)
    record = extractor.extract(make_page("https://www.amazon.com/dp/B000", AMAZON_HTML), "p1")

    assert record.product_id == "p1"
    assert record.price == 129999
    assert record.original_price == 149900
    assert record.title == "Deluxe Widget, 2-pack"
    assert record.image_url == "https://m.media-amazon.com/images/I/widget.jpg"
    assert record.captured_at == NOW


def test_extract_falls_back_to_open_graph(registry):
    """Test title and image fallbacks to Open Graph metadata."""
    extractor = PriceExtractor(registry)
    record = extractor.extract(make_page("https://www.bol.com/nl/p/123", BOL_HTML), "p2")

    assert record.price == 5999
    assert record.title == "Pokemon Scarlet"
    assert record.image_url == "https://www.bol.com/images/scarlet.jpg"
    assert record.original_price is None


def test_extract_european_format(registry):
    extractor = PriceExtractor(registry)
    record = extractor.extract(make_page("https://kameras.shop.de/x", EUROPEAN_HTML), "p3")

    assert record.price == 129900
    assert record.title == "Kamera"


def test_extract_price_not_found(registry):
    """Test that a missing price element raises PriceNotFound."""
    extractor = PriceExtractor(registry)
    page = make_page("https://example.com/item", "<html><body><p>Sold out</p></body></html>")

    with pytest.raises(PriceNotFound):
        extractor.extract(page, "p4")


def test_extract_price_unparsable(registry):
    """Test that matched but unreadable text raises PriceUnparsable."""
    extractor = PriceExtractor(registry)
    page = make_page("https://example.com/item", '<div class="price">Call for price</div>')

    with pytest.raises(PriceUnparsable):
        extractor.extract(page, "p5")


def test_extract_uses_first_parseable_match(registry):
    extractor = PriceExtractor(registry)
    page = make_page(
        "https://example.com/item",
        '<span class="price">See options</span><span class="price">$49.99</span>'
    )

    assert extractor.extract(page, "p6").price == 4999


def test_extract_with_explicit_profile(registry):
    """Test that an explicit profile skips URL resolution."""
    extractor = PriceExtractor(registry)
    page = make_page("https://unknown-store.net/item", '<b class="price">$5.00</b>')

    record = extractor.extract(page, "p7", profile=registry.get("example"))
    assert record.price == 500


def test_extract_unsupported_site(registry):
    extractor = PriceExtractor(registry)
    with pytest.raises(UnsupportedSite):
        extractor.extract(make_page("https://unknown-store.net/item", "<html></html>"), "p8")
