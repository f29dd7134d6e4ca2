"""
FastAPI routes for X Digest backend.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field

from adapter.errors import HarvestError, MalformedDataError
from adapter.models import Item, watermark
from archive import ArchiveStore, Found, partition_days, partition_key
from core import SyncResult, SyncScheduler
from monitoring import SystemMonitor, get_rate_limit_status

logger = logging.getLogger(__name__)

# Router for API endpoints
router = APIRouter(prefix="/api/v1", tags=["X Digest"])


# ============================================================================
# Request/Response Models
# ============================================================================

class ItemResponse(BaseModel):
    """A stored timeline item."""
    id: int
    author: str
    text: str
    created_at: Optional[datetime]
    permalink: str

    @classmethod
    def from_item(cls, item: Item) -> "ItemResponse":
        return cls(
            id=item.id,
            author=item.author,
            text=item.text,
            created_at=item.created_at,
            permalink=item.permalink
        )


class PartitionResponse(BaseModel):
    """Contents of one day's partition, newest first."""
    key: str
    day: date
    item_count: int
    watermark: int = Field(description="Highest item id in the partition (0 if empty)")
    items: List[ItemResponse]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    today_partition: str
    scheduler_running: bool
    last_run: Optional[Dict[str, Any]] = None


# ============================================================================
# Dependency Injection - these get set by the main app
# ============================================================================

_scheduler: Optional[SyncScheduler] = None
_store: Optional[ArchiveStore] = None
_monitor: Optional[SystemMonitor] = None
_x_adapter = None


def set_dependencies(
    scheduler: SyncScheduler,
    store: ArchiveStore,
    monitor: SystemMonitor,
    x_adapter=None
):
    """Set the service dependencies (called from main app)."""
    global _scheduler, _store, _monitor, _x_adapter
    _scheduler = scheduler
    _store = store
    _monitor = monitor
    _x_adapter = x_adapter


def get_scheduler() -> SyncScheduler:
    if _scheduler is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _scheduler


def get_store() -> ArchiveStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Archive not initialized")
    return _store


def get_monitor() -> SystemMonitor:
    if _monitor is None:
        raise HTTPException(status_code=503, detail="Monitor not initialized")
    return _monitor


def get_x_adapter():
    if _x_adapter is None:
        raise HTTPException(status_code=503, detail="X adapter not initialized")
    return _x_adapter


# ============================================================================
# Routes
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(
    scheduler: SyncScheduler = Depends(get_scheduler),
    monitor: SystemMonitor = Depends(get_monitor)
):
    """Health check endpoint."""
    today, _ = partition_days(datetime.now(timezone.utc), scheduler.engine.tz)
    health = monitor.get_health_status()

    return HealthResponse(
        status=health["status"],
        timestamp=datetime.now(timezone.utc),
        today_partition=partition_key(today),
        scheduler_running=scheduler.is_running,
        last_run=monitor.metrics.last_run
    )


# ----------------------------------------------------------------------------
# Sync
# ----------------------------------------------------------------------------

@router.post("/sync", response_model=SyncResult)
async def trigger_sync(scheduler: SyncScheduler = Depends(get_scheduler)):
    """
    Run one sync now.

    Waits for an in-flight scheduled run to finish rather than overlapping it.
    """
    try:
        return await scheduler.trigger()
    except MalformedDataError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except HarvestError as e:
        raise HTTPException(status_code=502, detail=str(e))


# ----------------------------------------------------------------------------
# Partitions
# ----------------------------------------------------------------------------

@router.get("/partitions", response_model=List[str])
async def list_partitions(store: ArchiveStore = Depends(get_store)):
    """List stored partition keys, oldest first."""
    list_keys = getattr(store, "list_keys", None)
    if list_keys is None:
        raise HTTPException(status_code=501, detail="Archive does not support listing")
    return list_keys()


@router.get("/partitions/{day}", response_model=PartitionResponse)
async def get_partition(day: date, store: ArchiveStore = Depends(get_store)):
    """Get the items harvested on a given day (YYYY-MM-DD)."""
    key = partition_key(day)
    try:
        read = store.get(key)
    except MalformedDataError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except HarvestError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not isinstance(read, Found):
        raise HTTPException(status_code=404, detail=f"Partition '{key}' not found")

    return PartitionResponse(
        key=key,
        day=day,
        item_count=len(read.items),
        watermark=watermark(read.items),
        items=[ItemResponse.from_item(item) for item in read.items]
    )


# ----------------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------------

@router.get("/monitor/dashboard")
async def monitor_dashboard(monitor: SystemMonitor = Depends(get_monitor)):
    """Health, metrics and recent activity in one payload."""
    return monitor.get_dashboard_data()


@router.get("/monitor/ratelimit")
async def monitor_rate_limits(x_adapter=Depends(get_x_adapter)):
    """X API rate limit status, as reported by the API and as tracked locally."""
    return {
        "x_api": x_adapter.get_rate_limit_status(),
        "local": get_rate_limit_status(x_adapter.rate_limiter),
    }


__all__ = ["router", "set_dependencies"]
