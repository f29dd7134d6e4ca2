"""
Error taxonomy shared by the feed adapter, archive and digest delivery.

"Partition not found" is deliberately absent: the archive reports it as a
result variant (see archive.NotFound), not as an exception.
"""


class HarvestError(Exception):
    """Base exception for every failure a sync run can surface."""
    pass


class TransientIOError(HarvestError):
    """Connectivity or service failure; the caller may retry the whole run."""
    pass


class MalformedDataError(HarvestError):
    """Stored data could not be decoded into items."""
    pass


__all__ = ["HarvestError", "TransientIOError", "MalformedDataError"]
