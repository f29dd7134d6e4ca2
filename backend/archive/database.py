"""
SQLite-backed archive store.

One row per partition key; the payload column holds the partition's JSON
array. A put replaces the row in a single statement, so readers never see a
half-written partition.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import List, Sequence, Union

from adapter.models import Item

from . import ArchiveIOError, Found, NotFound, PartitionRead, decode_items, encode_items

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS partitions (
    key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    item_count INTEGER NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""


class SqliteArchiveStore:
    """Durable partition store in a single SQLite file."""

    def __init__(self, db_path: Union[str, Path], reset: bool = False):
        """
        Open (and if needed create) the archive database.

        Args:
            db_path: Path to the SQLite file; parent directories are created
            reset: If True, drop every stored partition first
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db(reset=reset)

    def init_db(self, reset: bool = False) -> None:
        """Create the schema, optionally dropping existing data."""
        with self._connect() as db:
            if reset:
                db.execute("DROP TABLE IF EXISTS partitions")
            db.execute(SCHEMA)

    @contextmanager
    def _connect(self):
        """Connection scoped to one operation; commits on success, rolls back on error."""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise ArchiveIOError(f"Cannot open archive {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise ArchiveIOError(f"Archive operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, key: str) -> PartitionRead:
        with self._connect() as db:
            row = db.execute("SELECT payload FROM partitions WHERE key = ?", (key,)).fetchone()

        if row is None:
            logger.debug(f"Partition {key} not found in {self.db_path}")
            return NotFound(key)
        return Found(decode_items(row["payload"], key))

    def put(self, key: str, items: Sequence[Item]) -> None:
        payload = encode_items(items)
        with self._connect() as db:
            db.execute(
                """INSERT INTO partitions (key, payload, item_count)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                   payload = excluded.payload,
                   item_count = excluded.item_count,
                   updated_at = CURRENT_TIMESTAMP""",
                (key, payload, len(items)),
            )
        logger.debug(f"Stored {len(items)} items at {key}")

    def list_keys(self) -> List[str]:
        """All stored partition keys, oldest date first."""
        with self._connect() as db:
            cursor = db.execute("SELECT key FROM partitions ORDER BY key")
            return [row["key"] for row in cursor.fetchall()]


__all__ = ["SqliteArchiveStore"]
