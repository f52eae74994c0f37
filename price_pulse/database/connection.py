"""
SQLite storage for tracked products, alerts and price history.

Money columns hold integer minor units; timestamps are ISO-8601 UTC strings.
"""
import sqlite3
import logging
from pathlib import Path
from typing import Optional, Tuple

from ..config.environment import Environment

SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS tracked_products (
        id TEXT PRIMARY KEY,
        url TEXT NOT NULL UNIQUE,
        site_profile_id TEXT NOT NULL,
        last_known_price INTEGER,
        last_checked_at TEXT,
        last_attempted_at TEXT,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        title TEXT,
        image_url TEXT,
        created_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS alerts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        product_id TEXT NOT NULL REFERENCES tracked_products (id) ON DELETE CASCADE,
        target_price INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        triggered_at TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS price_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id TEXT NOT NULL REFERENCES tracked_products (id) ON DELETE CASCADE,
        price INTEGER NOT NULL,
        original_price INTEGER,
        captured_at TEXT NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_alerts_product_id ON alerts(product_id)',
    'CREATE INDEX IF NOT EXISTS idx_alerts_user_id ON alerts(user_id)',
    'CREATE INDEX IF NOT EXISTS idx_price_history_product ON price_history(product_id, captured_at)',
)


class DatabaseConnection:
    """Lazily opened SQLite connection shared by the repositories."""

    def __init__(self, database_path: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self.database_path = database_path or Environment.get_database_path()
        self.connection: Optional[sqlite3.Connection] = None

    @property
    def in_memory(self) -> bool:
        return self.database_path == ':memory:'

    def connect(self) -> sqlite3.Connection:
        """Open the database on first use and return the shared connection."""
        if self.connection is not None:
            return self.connection

        if not self.in_memory:
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            connection = sqlite3.connect(self.database_path, check_same_thread=False)
            connection.row_factory = sqlite3.Row
            # Deleting a product cascades to its alerts and history
            connection.execute('PRAGMA foreign_keys = ON')
        except sqlite3.Error as e:
            self.logger.error(f"Cannot open database {self.database_path}: {e}")
            raise

        self.connection = connection
        self.logger.info(f"Connected to database: {self.database_path}")
        return connection

    def close(self) -> None:
        if self.connection is None:
            return
        try:
            self.connection.close()
        except sqlite3.Error as e:
            self.logger.error(f"Error closing database {self.database_path}: {e}")
        else:
            self.logger.info("Database connection closed")
        finally:
            self.connection = None

    def execute(self, query: str, params: Tuple = ()) -> sqlite3.Cursor:
        try:
            return self.connect().execute(query, params)
        except sqlite3.Error as e:
            self.logger.error(f"Query failed: {e}")
            self.logger.debug(f"Failed query: {query.strip()} with {params}")
            raise

    def commit(self) -> None:
        if self.connection is not None:
            self.connection.commit()

    def rollback(self) -> None:
        if self.connection is not None:
            self.connection.rollback()

    def create_tables(self) -> None:
        """Create the schema; safe to call on an existing database."""
        try:
            for statement in SCHEMA:
                self.execute(statement)
            self.commit()
        except sqlite3.Error as e:
            self.logger.error(f"Schema creation failed: {e}")
            self.rollback()
            raise
        self.logger.info("Database schema ready")


# Shared instance for the default database path
db = DatabaseConnection()
