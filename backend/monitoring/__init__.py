"""
Monitoring and observability module for X Digest.

Provides real-time metrics and insights for:
- Component health (feed adapter, archive, digest delivery, scheduler)
- Sync runs (outcomes, items harvested, digests sent)
- X API call latency and rate limits
- Activity feed
"""

from __future__ import annotations

import time
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Any, Optional
from dataclasses import dataclass
from collections import deque
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of system events."""
    SYNC_STARTED = "sync_started"
    ROLLOVER = "rollover"
    DIGEST_SENT = "digest_sent"
    PARTITION_SEEDED = "partition_seeded"
    ITEMS_FETCHED = "items_fetched"
    PARTITION_WRITTEN = "partition_written"
    SYNC_COMPLETED = "sync_completed"
    ERROR = "error"


@dataclass
class SystemEvent:
    """A recorded system event."""
    timestamp: datetime
    event_type: EventType
    partition: Optional[str]
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "partition": self.partition,
            "details": self.details,
            "age_seconds": (datetime.now(timezone.utc) - self.timestamp).total_seconds()
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Tracks:
    - Request counts per endpoint
    - X API call latencies and errors
    - Sync run outcomes and harvest volume
    """

    def __init__(self):
        self._start_time = time.time()
        self._request_counts: Dict[str, int] = {}
        self._error_counts: Dict[str, int] = {}

        # X API metrics
        self._x_api_calls = 0
        self._x_api_errors = 0
        self._x_api_latencies: List[float] = []

        # Sync metrics
        self._runs = 0
        self._failed_runs = 0
        self._outcomes: Dict[str, int] = {}
        self._items_harvested = 0
        self._digests_sent = 0
        self._digest_items = 0
        self._run_durations: List[float] = []
        self._last_run: Optional[Dict[str, Any]] = None

    def record_request(self, endpoint: str, error: bool = False) -> None:
        """Record an API request."""
        self._request_counts[endpoint] = self._request_counts.get(endpoint, 0) + 1
        if error:
            self._error_counts[endpoint] = self._error_counts.get(endpoint, 0) + 1

    def record_x_api_call(self, latency_ms: float, error: bool = False) -> None:
        """Record an X API call."""
        self._x_api_calls += 1
        self._x_api_latencies.append(latency_ms)
        if len(self._x_api_latencies) > 1000:
            self._x_api_latencies = self._x_api_latencies[-1000:]
        if error:
            self._x_api_errors += 1

    def record_run(self, outcome: str, new_items: int, duration_ms: float, error: Optional[str] = None) -> None:
        """Record the end of a sync run, successful or not."""
        self._runs += 1
        self._outcomes[outcome] = self._outcomes.get(outcome, 0) + 1
        self._items_harvested += new_items
        self._run_durations.append(duration_ms)
        if len(self._run_durations) > 1000:
            self._run_durations = self._run_durations[-1000:]
        if error:
            self._failed_runs += 1

        self._last_run = {
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "outcome": outcome,
            "new_items": new_items,
            "duration_ms": round(duration_ms, 1),
            "error": error,
        }

    def record_digest(self, item_count: int) -> None:
        """Record a delivered digest."""
        self._digests_sent += 1
        self._digest_items += item_count

    @property
    def last_run(self) -> Optional[Dict[str, Any]]:
        return self._last_run

    def _calculate_percentiles(self, values: List[float]) -> Dict[str, float]:
        """Calculate p50, p95, p99 percentiles."""
        if not values:
            return {"p50": 0, "p95": 0, "p99": 0, "avg": 0}

        sorted_values = sorted(values)
        n = len(sorted_values)

        return {
            "p50": sorted_values[int(n * 0.50)],
            "p95": sorted_values[min(n - 1, int(n * 0.95))],
            "p99": sorted_values[min(n - 1, int(n * 0.99))],
            "avg": sum(values) / n,
        }

    def get_metrics(self) -> Dict[str, Any]:
        """Get all collected metrics."""
        uptime = time.time() - self._start_time
        x_api_error_rate = self._x_api_errors / self._x_api_calls if self._x_api_calls > 0 else 0

        return {
            "uptime_seconds": int(uptime),
            "uptime_human": self._format_duration(uptime),

            "requests": {
                "total": sum(self._request_counts.values()),
                "by_endpoint": self._request_counts,
                "errors": self._error_counts,
            },

            "x_api": {
                "calls": self._x_api_calls,
                "errors": self._x_api_errors,
                "error_rate": f"{x_api_error_rate:.1%}",
                "latency_ms": self._calculate_percentiles(self._x_api_latencies),
            },

            "sync": {
                "runs": self._runs,
                "failed_runs": self._failed_runs,
                "outcomes": self._outcomes,
                "items_harvested": self._items_harvested,
                "digests_sent": self._digests_sent,
                "digest_items": self._digest_items,
                "duration_ms": self._calculate_percentiles(self._run_durations),
                "last_run": self._last_run,
            },
        }

    def _format_duration(self, seconds: float) -> str:
        """Format duration as human-readable string."""
        if seconds < 60:
            return f"{int(seconds)}s"
        elif seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60)}s"
        else:
            hours = int(seconds // 3600)
            minutes = int((seconds % 3600) // 60)
            return f"{hours}h {minutes}m"


class ActivityFeed:
    """
    Recent system events, newest kept up to ``max_events``.
    """

    def __init__(self, max_events: int = 500):
        self.max_events = max_events
        self._events: deque = deque(maxlen=max_events)

    def add_event(
        self,
        event_type: EventType,
        partition: Optional[str] = None,
        **details
    ) -> None:
        """Add an event to the feed."""
        event = SystemEvent(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            partition=partition,
            details=details
        )
        self._events.append(event)

    def get_recent(self, limit: int = 50, event_type: Optional[EventType] = None) -> List[Dict]:
        """Get recent events, optionally filtered by type."""
        events = list(self._events)

        if event_type:
            events = [e for e in events if e.event_type == event_type]

        # Most recent first
        events = sorted(events, key=lambda e: e.timestamp, reverse=True)
        return [e.to_dict() for e in events[:limit]]

    def get_event_counts(self, since_minutes: int = 60) -> Dict[str, int]:
        """Get event counts by type since N minutes ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=since_minutes)

        counts: Dict[str, int] = {}
        for event in self._events:
            if event.timestamp >= cutoff:
                key = event.event_type.value
                counts[key] = counts.get(key, 0) + 1

        return counts


class SystemMonitor:
    """
    Central monitoring hub for X Digest.

    One instance is created at startup and handed to the components that
    report into it.
    """

    def __init__(self):
        self.metrics = MetricsCollector()
        self.activity = ActivityFeed()
        self._component_status: Dict[str, Dict[str, Any]] = {}

    def set_component_status(
        self,
        component: str,
        status: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Set status for a component."""
        self._component_status[component] = {
            "status": status,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "details": details or {}
        }

    def get_health_status(self) -> Dict[str, Any]:
        """Get overall system health status."""
        statuses = [c.get("status", "unknown") for c in self._component_status.values()]

        if statuses and all(s == "healthy" for s in statuses):
            overall = "healthy"
        elif any(s == "error" for s in statuses):
            overall = "degraded"
        elif any(s == "warning" for s in statuses):
            overall = "warning"
        else:
            overall = "unknown"

        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": self._component_status,
        }

    def get_dashboard_data(self) -> Dict[str, Any]:
        """Get all data needed for a monitoring dashboard."""
        return {
            "health": self.get_health_status(),
            "metrics": self.metrics.get_metrics(),
            "recent_activity": self.activity.get_recent(limit=20),
            "event_counts_1h": self.activity.get_event_counts(since_minutes=60),
        }


def get_rate_limit_status(rate_limiter) -> Dict[str, Any]:
    """
    Get detailed rate limit status from a RateLimiter instance.

    Args:
        rate_limiter: RateLimiter instance

    Returns:
        Detailed rate limit status for all configured categories
    """
    status = {}

    for category, config in rate_limiter.configs.items():
        remaining = rate_limiter.get_remaining_requests(category)
        used = config.requests_per_window - remaining
        usage_pct = (used / config.requests_per_window * 100) if config.requests_per_window > 0 else 0

        status[category] = {
            "limit": config.requests_per_window,
            "window_seconds": config.window_seconds,
            "strategy": config.strategy,
            "remaining": remaining,
            "used": used,
            "usage_percent": f"{usage_pct:.1f}%",
            "status": "ok" if usage_pct < 80 else ("warning" if usage_pct < 95 else "critical"),
        }

    return status


__all__ = [
    "SystemMonitor",
    "MetricsCollector",
    "ActivityFeed",
    "EventType",
    "SystemEvent",
    "get_rate_limit_status",
]
