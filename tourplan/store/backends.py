"""Persistence backends for the cache document."""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import StorageError

logger = logging.getLogger(__name__)

STORAGE_KEY = "tour_plan_app"

SCHEMA = """
-- Single-key document store: one row per durable key
CREATE TABLE IF NOT EXISTS cache_documents (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class StorageBackend(ABC):
    """Durable home for the serialized cache document."""

    @abstractmethod
    def load(self) -> dict[str, Any] | None:
        """Load the stored document, or None if nothing is stored."""
        ...

    @abstractmethod
    def save(self, document: dict[str, Any]) -> None:
        """Persist the whole document atomically.

        Raises:
            StorageError: If the document could not be written.
        """
        ...

    def close(self) -> None:
        """Release any held resources."""


class SQLiteBackend(StorageBackend):
    """Stores the cache document as a single JSON row in SQLite."""

    def __init__(
        self,
        db_path: str | Path,
        key: str = STORAGE_KEY,
        max_bytes: int | None = None,
    ):
        """Initialize the backend.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            key: Durable key the document is stored under.
            max_bytes: Optional quota for the serialized document.
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path).expanduser()
        self.key = key
        self.max_bytes = max_bytes
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open cache database {self.db_path}: {e}") from e

        logger.info(f"SQLiteBackend connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def load(self) -> dict[str, Any] | None:
        conn = self._ensure_connected()

        try:
            row = conn.execute(
                "SELECT value FROM cache_documents WHERE key = ?", (self.key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Error reading cache document: {e}") from e

        if row is None:
            return None

        try:
            data = json.loads(row[0])
        except json.JSONDecodeError as e:
            logger.error(f"Stored cache document is not valid JSON, ignoring it: {e}")
            return None

        return data if isinstance(data, dict) else None

    def save(self, document: dict[str, Any]) -> None:
        try:
            serialized = json.dumps(document)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cache document is not serializable: {e}") from e

        size = len(serialized.encode("utf-8"))
        if self.max_bytes is not None and size > self.max_bytes:
            raise StorageError(
                f"Storage quota exceeded: {size} bytes > {self.max_bytes} bytes"
            )

        conn = self._ensure_connected()
        try:
            conn.execute(
                """
                INSERT INTO cache_documents (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (self.key, serialized, datetime.now().isoformat()),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Error saving cache document: {e}") from e

