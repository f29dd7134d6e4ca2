"""
Date-partitioned archive for harvested items.

- partition_key: maps a calendar date to a stable storage key
- Found / NotFound: the closed set of outcomes of a partition read
- ArchiveStore: the get/put contract SyncEngine depends on
- MemoryArchiveStore: in-process store for tests and dry runs
- SqliteArchiveStore: durable store (see archive.database)

Failures other than "not found" are raised (ArchiveIOError,
MalformedDataError), never returned.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

from pydantic import TypeAdapter, ValidationError

from adapter.errors import MalformedDataError, TransientIOError
from adapter.models import Item

logger = logging.getLogger(__name__)

KEY_TEMPLATE = "tweets/{date}/tweets.json"

_items_adapter = TypeAdapter(List[Item])


class ArchiveIOError(TransientIOError):
    """Raised when the archive backend cannot be read or written."""
    pass


# ============================================================================
# Partition keying
# ============================================================================

def partition_key(day: date) -> str:
    """Storage key for the partition holding ``day``'s items."""
    return KEY_TEMPLATE.format(date=day.isoformat())


def partition_days(now: datetime, tz: tzinfo = timezone.utc) -> Tuple[date, date]:
    """
    Today's and yesterday's calendar dates in ``tz``, both derived from ``now``.

    Naive datetimes are taken to be UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(tz).date()
    return today, today - timedelta(days=1)


# ============================================================================
# Read outcomes
# ============================================================================

@dataclass(frozen=True)
class Found:
    """A partition exists under the key; ``items`` may be empty."""
    items: List[Item] = field(default_factory=list)


@dataclass(frozen=True)
class NotFound:
    """No partition has ever been written under the key."""
    key: str


PartitionRead = Union[Found, NotFound]


class ArchiveStore(Protocol):
    """Blob store of item partitions keyed by partition_key()."""

    def get(self, key: str) -> PartitionRead:
        ...

    def put(self, key: str, items: Sequence[Item]) -> None:
        ...


# ============================================================================
# Serialization
# ============================================================================

def encode_items(items: Sequence[Item]) -> str:
    """Serialize a partition to its stored JSON form, preserving order."""
    return _items_adapter.dump_json(list(items)).decode("utf-8")


def decode_items(payload: Union[str, bytes], key: str = "?") -> List[Item]:
    """
    Parse a stored partition.

    Raises:
        MalformedDataError: If the payload is not a JSON array of items
    """
    try:
        return _items_adapter.validate_json(payload)
    except ValidationError as e:
        raise MalformedDataError(f"Partition {key} is malformed: {e.error_count()} validation error(s)") from e


# ============================================================================
# In-memory store
# ============================================================================

class MemoryArchiveStore:
    """
    Thread-safe in-process archive.

    Stores the encoded payload rather than the list itself so reads go
    through the same decoding path as the durable store.
    """

    def __init__(self, partitions: Optional[Dict[str, Sequence[Item]]] = None):
        self._blobs: Dict[str, str] = {}
        self._lock = threading.Lock()
        for key, items in (partitions or {}).items():
            self._blobs[key] = encode_items(items)

    def get(self, key: str) -> PartitionRead:
        with self._lock:
            payload = self._blobs.get(key)
        if payload is None:
            logger.debug(f"Partition {key} not found")
            return NotFound(key)
        return Found(decode_items(payload, key))

    def put(self, key: str, items: Sequence[Item]) -> None:
        payload = encode_items(items)
        with self._lock:
            self._blobs[key] = payload
        logger.debug(f"Stored {len(items)} items at {key}")

    def put_raw(self, key: str, payload: str) -> None:
        """Store a payload verbatim (used to simulate corrupted partitions)."""
        with self._lock:
            self._blobs[key] = payload

    def list_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._blobs)


from .database import SqliteArchiveStore  # noqa: E402

__all__ = [
    "partition_key",
    "partition_days",
    "Found",
    "NotFound",
    "PartitionRead",
    "ArchiveStore",
    "ArchiveIOError",
    "MalformedDataError",
    "encode_items",
    "decode_items",
    "MemoryArchiveStore",
    "SqliteArchiveStore",
    "KEY_TEMPLATE",
]
