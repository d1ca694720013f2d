"""
Base Database Service Module

Shared SQLite helpers for the annotation persistence services. Every helper
opens its own short-lived connection, so services are safe to call from
worker threads.
"""

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional

# Configure logger for this module
logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "data/annotations.db"


class BaseDatabaseService:
    """
    Base class providing connection management and query helpers.

    Query helpers log failures and return a sentinel (``None`` or ``False``)
    instead of raising; callers translate the sentinel into an HTTP error or
    a PersistenceError.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """
        Initialize the base database service.

        Args:
            db_path (str): Path to the SQLite database file. The parent
                          directory is created if it doesn't exist.
        """
        self.db_path = db_path
        self._ensure_data_dir()

    def _ensure_data_dir(self):
        """Create the directory holding the database file if missing."""
        data_dir = os.path.dirname(self.db_path)
        if data_dir and not os.path.exists(data_dir):
            os.makedirs(data_dir)

    def get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection with name-addressable rows.

        Returns:
            sqlite3.Connection: Database connection object
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def execute_query(
        self,
        query: str,
        params: tuple = (),
        fetch_one: bool = False,
        fetch_all: bool = False,
    ) -> Any:
        """
        Execute a read query.

        Args:
            query (str): SQL query to execute
            params (tuple): Query parameters
            fetch_one (bool): Return a single row
            fetch_all (bool): Return all rows

        Returns:
            Any: Row(s), or None if the query failed
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(query, params)
                if fetch_one:
                    return cursor.fetchone()
                if fetch_all:
                    return cursor.fetchall()
                conn.commit()
                return cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"Database query error: {e}")
            return None

    def execute_insert(self, query: str, params: tuple) -> Optional[int]:
        """
        Execute an INSERT and return the new row id.

        Returns:
            Optional[int]: Last row ID or None if failed
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(query, params)
                conn.commit()
                return cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"Database insert error: {e}")
            return None

    def execute_update_delete(self, query: str, params: tuple) -> bool:
        """
        Execute an UPDATE or DELETE.

        Returns:
            bool: True if rows were affected, False otherwise
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(query, params)
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Database update/delete error: {e}")
            return False

    def get_current_timestamp(self) -> str:
        """
        Current UTC time in SQLite's timestamp format.

        Returns:
            str: e.g. "2025-12-11 11:08:40"
        """
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    def format_timestamp_iso(self, timestamp_str: str | None) -> str | None:
        """
        Convert an SQLite timestamp string to ISO 8601 with a UTC indicator.

        "2025-12-11 11:08:40" -> "2025-12-11T11:08:40Z"
        """
        if not timestamp_str:
            return timestamp_str
        return timestamp_str.replace(" ", "T") + "Z"
