"""
Repository pattern implementation for database operations.
"""
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional, Iterable

from .connection import db, DatabaseConnection
from ..models.product_data import TrackedProduct, Alert, PriceRecord


class Repository:
    """Base repository with common database operations."""

    def __init__(self, database: Optional[DatabaseConnection] = None):
        """Initialize repository."""
        self.logger = logging.getLogger(__name__)
        self.db = database or db

    def _row_to_dict(self, row) -> Optional[dict]:
        """Convert a SQLite Row to a dictionary."""
        if row is None:
            return None
        return {key: row[key] for key in row.keys()}


class TrackedProductRepository(Repository):
    """Repository for tracked products."""

    def _from_row(self, row) -> TrackedProduct:
        row_dict = self._row_to_dict(row)
        row_dict['product_id'] = row_dict.pop('id')
        return TrackedProduct.from_dict(row_dict)

    def add_product(self, product: TrackedProduct) -> bool:
        """Add a tracked product."""
        data = product.to_dict()
        try:
            self.db.execute(
                '''
                INSERT INTO tracked_products (
                    id, url, site_profile_id, last_known_price, last_checked_at,
                    last_attempted_at, consecutive_failures, last_error,
                    title, image_url, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    data['product_id'], data['url'], data['site_profile_id'],
                    data['last_known_price'], data['last_checked_at'],
                    data['last_attempted_at'], data['consecutive_failures'],
                    data['last_error'], data['title'], data['image_url'],
                    data['created_at']
                )
            )
            self.db.commit()
            return True
        except sqlite3.Error as e:
            self.logger.error(f"Error adding tracked product {product.url}: {e}")
            self.db.rollback()
            return False

    def get_product(self, product_id: str) -> Optional[TrackedProduct]:
        """Get a tracked product by ID."""
        row = self.db.execute('SELECT * FROM tracked_products WHERE id = ?', (product_id,)).fetchone()
        return self._from_row(row) if row else None

    def get_product_by_url(self, url: str) -> Optional[TrackedProduct]:
        """Get a tracked product by URL."""
        row = self.db.execute('SELECT * FROM tracked_products WHERE url = ?', (url,)).fetchone()
        return self._from_row(row) if row else None

    def get_all_products(self) -> List[TrackedProduct]:
        """Get every tracked product."""
        rows = self.db.execute('SELECT * FROM tracked_products ORDER BY created_at').fetchall()
        return [self._from_row(row) for row in rows]

    def get_tracked_products(self) -> List[TrackedProduct]:
        """Get products that have at least one active alert."""
        rows = self.db.execute(
            '''
            SELECT * FROM tracked_products p
            WHERE EXISTS (SELECT 1 FROM alerts a WHERE a.product_id = p.id AND a.active = 1)
            ORDER BY p.created_at
            '''
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def get_due_products(self, now: datetime, interval: timedelta) -> List[TrackedProduct]:
        """Get tracked products whose last check or attempt is older than ``interval``."""
        return [p for p in self.get_tracked_products() if p.is_due(now, interval)]

    def get_failing_products(self, threshold: int) -> List[TrackedProduct]:
        """Get products with at least ``threshold`` consecutive failures."""
        rows = self.db.execute(
            'SELECT * FROM tracked_products WHERE consecutive_failures >= ? ORDER BY consecutive_failures DESC',
            (threshold,)
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def record_check(self, record: PriceRecord, expected_last_checked_at: Optional[datetime]) -> bool:
        """Apply a successful check.

        Compare-and-set on ``last_checked_at``: the update only lands if no
        other writer has recorded a check since ``expected_last_checked_at``.
        """
        expected = expected_last_checked_at.isoformat() if expected_last_checked_at else None
        captured = record.captured_at.isoformat()
        try:
            cursor = self.db.execute(
                '''
                UPDATE tracked_products SET
                    last_known_price = ?, last_checked_at = ?, last_attempted_at = ?,
                    consecutive_failures = 0, last_error = NULL,
                    title = COALESCE(?, title), image_url = COALESCE(?, image_url)
                WHERE id = ? AND last_checked_at IS ?
                ''',
                (
                    record.price, captured, captured, record.title, record.image_url,
                    record.product_id, expected
                )
            )
            self.db.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self.logger.error(f"Error recording check for {record.product_id}: {e}")
            self.db.rollback()
            return False

    def record_failure(self, product_id: str, error: str, attempted_at: datetime) -> Optional[int]:
        """Record a failed check and return the new consecutive failure count."""
        try:
            cursor = self.db.execute(
                '''
                UPDATE tracked_products SET
                    consecutive_failures = consecutive_failures + 1,
                    last_error = ?, last_attempted_at = ?
                WHERE id = ?
                ''',
                (error, attempted_at.isoformat(), product_id)
            )
            self.db.commit()
            if cursor.rowcount == 0:
                return None
            row = self.db.execute(
                'SELECT consecutive_failures FROM tracked_products WHERE id = ?', (product_id,)
            ).fetchone()
        except sqlite3.Error as e:
            self.logger.error(f"Error recording failure for {product_id}: {e}")
            self.db.rollback()
            return None

        return row['consecutive_failures'] if row else None

    def delete_product(self, product_id: str) -> bool:
        """Delete a tracked product along with its alerts and history."""
        try:
            cursor = self.db.execute('DELETE FROM tracked_products WHERE id = ?', (product_id,))
            self.db.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self.logger.error(f"Error deleting tracked product {product_id}: {e}")
            self.db.rollback()
            return False


class AlertRepository(Repository):
    """Repository for user alerts."""

    def _from_row(self, row) -> Alert:
        row_dict = self._row_to_dict(row)
        row_dict['alert_id'] = row_dict.pop('id')
        return Alert.from_dict(row_dict)

    def add_alert(self, alert: Alert) -> bool:
        """Add an alert."""
        if not alert.validate():
            self.logger.error(f"Invalid alert: {alert}")
            return False

        data = alert.to_dict()
        try:
            self.db.execute(
                '''
                INSERT INTO alerts (id, user_id, product_id, target_price, created_at, active, triggered_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    data['alert_id'], data['user_id'], data['product_id'], data['target_price'],
                    data['created_at'], int(data['active']), data['triggered_at']
                )
            )
            self.db.commit()
            return True
        except sqlite3.Error as e:
            self.logger.error(f"Error adding alert: {e}")
            self.db.rollback()
            return False

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        """Get an alert by ID."""
        row = self.db.execute('SELECT * FROM alerts WHERE id = ?', (alert_id,)).fetchone()
        return self._from_row(row) if row else None

    def get_alerts_for_product(self, product_id: str, active_only: bool = False) -> List[Alert]:
        """Get alerts referencing a product."""
        query = 'SELECT * FROM alerts WHERE product_id = ?'
        if active_only:
            query += ' AND active = 1'
        rows = self.db.execute(query + ' ORDER BY created_at', (product_id,)).fetchall()
        return [self._from_row(row) for row in rows]

    def get_alerts_for_user(self, user_id: str) -> List[Alert]:
        """Get every alert owned by a user."""
        rows = self.db.execute(
            'SELECT * FROM alerts WHERE user_id = ? ORDER BY created_at DESC', (user_id,)
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def count_alerts_for_product(self, product_id: str) -> int:
        """Count alerts referencing a product."""
        row = self.db.execute(
            'SELECT COUNT(*) AS total FROM alerts WHERE product_id = ?', (product_id,)
        ).fetchone()
        return row['total']

    def deactivate_alerts(self, alert_ids: Iterable[str], triggered_at: datetime) -> int:
        """Mark alerts as triggered and inactive."""
        count = 0
        try:
            for alert_id in alert_ids:
                cursor = self.db.execute(
                    'UPDATE alerts SET active = 0, triggered_at = ? WHERE id = ? AND active = 1',
                    (triggered_at.isoformat(), alert_id)
                )
                count += cursor.rowcount
            self.db.commit()
        except sqlite3.Error as e:
            self.logger.error(f"Error deactivating alerts: {e}")
            self.db.rollback()
            return 0
        return count

    def delete_alert(self, alert_id: str) -> bool:
        """Delete an alert."""
        try:
            cursor = self.db.execute('DELETE FROM alerts WHERE id = ?', (alert_id,))
            self.db.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self.logger.error(f"Error deleting alert {alert_id}: {e}")
            self.db.rollback()
            return False


class PriceHistoryRepository(Repository):
    """Repository for the append-only price history."""

    def add_record(self, record: PriceRecord) -> bool:
        """Append a price observation."""
        try:
            self.db.execute(
                '''
                INSERT INTO price_history (product_id, price, original_price, captured_at)
                VALUES (?, ?, ?, ?)
                ''',
                (record.product_id, record.price, record.original_price, record.captured_at.isoformat())
            )
            self.db.commit()
            return True
        except sqlite3.Error as e:
            self.logger.error(f"Error recording price history for {record.product_id}: {e}")
            self.db.rollback()
            return False

    def get_history(self, product_id: str, limit: int = 10) -> List[PriceRecord]:
        """Get the most recent observations, newest first."""
        rows = self.db.execute(
            '''
            SELECT product_id, price, original_price, captured_at FROM price_history
            WHERE product_id = ? ORDER BY captured_at DESC, id DESC LIMIT ?
            ''',
            (product_id, limit)
        ).fetchall()
        return [
            PriceRecord(
                product_id=row['product_id'],
                price=row['price'],
                original_price=row['original_price'],
                captured_at=datetime.fromisoformat(row['captured_at'])
            )
            for row in rows
        ]
