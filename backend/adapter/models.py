"""
Shared data models for adapters.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

PERMALINK_BASE = "https://x.com"


class Item(BaseModel):
    """
    A single post from the home timeline.

    Items are immutable and compared by id alone: two items with the same
    id are the same post, whatever their text says.

    Attributes:
        id: Unique post ID (strictly increasing with creation time)
        author: Author handle (without @)
        text: Full post text
        created_at: When the post was created, if the source reported it
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=1, description="Unique post ID")
    author: str = Field(description="Author handle (without @)")
    text: str = Field(description="Full post text")
    created_at: Optional[datetime] = Field(default=None, description="When the post was created")

    @property
    def permalink(self) -> str:
        return f"{PERMALINK_BASE}/{self.author}/status/{self.id}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Item):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)


def watermark(items: Iterable[Item]) -> int:
    """Highest id in ``items``, or 0 when there are none."""
    return max((item.id for item in items), default=0)


def newest_first(items: Iterable[Item]) -> List[Item]:
    """
    Normalize a fetched batch to the newest-first order partitions are kept in.

    The sort is stable, so an already ordered batch is returned unchanged.
    """
    return sorted(items, key=lambda item: item.id, reverse=True)


__all__ = ["Item", "watermark", "newest_first", "PERMALINK_BASE"]
