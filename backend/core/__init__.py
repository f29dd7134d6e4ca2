"""
Core services for X Digest backend.
- SyncEngine: one harvest run (probe, rollover, fetch, merge, persist)
- SyncScheduler: background service that triggers runs at a fixed cadence

Architecture:
- Every run recomputes its state from the archive; nothing is carried in memory
- The watermark is never stored, it is the max id of today's partition
- Yesterday's digest is sent before today's partition is seeded, so a failed
  send is retried by the next run (at-least-once delivery)
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from adapter.models import Item, newest_first, watermark
from archive import ArchiveStore, Found, partition_days, partition_key
from digest import DigestSender
from monitoring import EventType, SystemMonitor

logger = logging.getLogger(__name__)


class FeedSource(Protocol):
    def fetch_since(self, since_id: int) -> List[Item]:
        ...


class SyncOutcome(str, Enum):
    """How a completed run ended."""
    NO_NEW_ITEMS = "no_new_items"
    MERGED = "merged"


class SyncResult(BaseModel):
    """Summary of one completed sync run."""
    partition: str = Field(description="Today's partition key")
    outcome: SyncOutcome
    rolled_over: bool = Field(default=False, description="Today's partition was seeded this run")
    digest_items: int = Field(default=0, description="Items in the digest sent this run")
    watermark: int = Field(description="Watermark the feed was queried with")
    new_items: int = Field(default=0)
    total_items: int = Field(description="Items in today's partition after the run")
    started_at: datetime
    duration_ms: float = 0.0


def select_anchor(items: Sequence[Item]) -> Item:
    """
    The item holding the partition's watermark.

    On a tie the first one in partition order wins.
    """
    return max(items, key=lambda item: item.id)


def merge_new_items(fetched: Sequence[Item], current: Sequence[Item]) -> List[Item]:
    """
    Items from ``fetched`` that are genuinely new relative to ``current``.

    Drops anything at or below the current watermark, anything already in the
    partition, and repeats within the batch. Result is newest-first.
    """
    mark = watermark(current)
    seen = {item.id for item in current}
    fresh: List[Item] = []
    for item in newest_first(fetched):
        if item.id <= mark or item.id in seen:
            continue
        seen.add(item.id)
        fresh.append(item)
    return fresh


class SyncEngine:
    """
    Harvests new timeline items into today's partition.

    Usage:
        engine = SyncEngine(store, x_adapter, digest_sender)
        result = engine.run()

    Each call of ``run`` is one invocation of the state machine. Callers must
    not run two invocations concurrently; SyncScheduler serializes them.
    """

    def __init__(
        self,
        store: ArchiveStore,
        feed: FeedSource,
        digest: DigestSender,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        monitor: Optional[SystemMonitor] = None,
    ):
        self.store = store
        self.feed = feed
        self.digest = digest
        self.tz = tz
        self._clock = clock
        self.monitor = monitor

    def _event(self, event_type: EventType, partition: Optional[str] = None, **details) -> None:
        if self.monitor:
            self.monitor.activity.add_event(event_type, partition=partition, **details)

    def run(self) -> SyncResult:
        """
        Execute one sync run.

        Returns:
            SyncResult describing what the run did

        Raises:
            HarvestError: Any store, feed or digest failure; the run stops at
                the failing step and nothing after it is written
        """
        started_at = self._clock()
        start = time.perf_counter()
        today, yesterday = partition_days(started_at, self.tz)
        today_key = partition_key(today)
        self._event(EventType.SYNC_STARTED, today_key)

        try:
            result = self._run(today_key, partition_key(yesterday), started_at)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(f"Sync run for {today_key} failed: {type(e).__name__}: {e}")
            self._event(EventType.ERROR, today_key, error=str(e), error_type=type(e).__name__)
            if self.monitor:
                self.monitor.metrics.record_run("failed", 0, duration_ms, error=str(e))
            raise

        result.duration_ms = round((time.perf_counter() - start) * 1000, 1)
        self._event(
            EventType.SYNC_COMPLETED,
            today_key,
            outcome=result.outcome.value,
            new_items=result.new_items,
            total_items=result.total_items,
        )
        if self.monitor:
            self.monitor.metrics.record_run(result.outcome.value, result.new_items, result.duration_ms)
        return result

    def _run(self, today_key: str, yesterday_key: str, started_at: datetime) -> SyncResult:
        read = self.store.get(today_key)
        rolled_over = False
        digest_items = 0

        if isinstance(read, Found):
            current = read.items
            logger.info(f"{len(current)} stored items found in {today_key}")
        else:
            logger.info(f"{today_key} not found. Checking {yesterday_key} for rollover")
            current, digest_items = self._rollover(today_key, yesterday_key)
            rolled_over = True

        mark = watermark(current)
        fetched = self.feed.fetch_since(mark)
        fresh = merge_new_items(fetched, current)

        if len(fresh) < len(fetched):
            logger.warning(f"Dropped {len(fetched) - len(fresh)} already-seen items from feed batch (watermark {mark})")

        if not fresh:
            logger.info(f"No new items since {mark}")
            return SyncResult(
                partition=today_key,
                outcome=SyncOutcome.NO_NEW_ITEMS,
                rolled_over=rolled_over,
                digest_items=digest_items,
                watermark=mark,
                total_items=len(current),
                started_at=started_at,
            )

        self._event(EventType.ITEMS_FETCHED, today_key, count=len(fresh), watermark=mark)
        merged = fresh + list(current)

        logger.info(f"Uploading {len(merged)} items ({len(fresh)} new) to {today_key}")
        self.store.put(today_key, merged)
        self._event(EventType.PARTITION_WRITTEN, today_key, total_items=len(merged))

        return SyncResult(
            partition=today_key,
            outcome=SyncOutcome.MERGED,
            rolled_over=rolled_over,
            digest_items=digest_items,
            watermark=mark,
            new_items=len(fresh),
            total_items=len(merged),
            started_at=started_at,
        )

    def _rollover(self, today_key: str, yesterday_key: str) -> tuple[List[Item], int]:
        """
        Close out yesterday and seed today's partition.

        Returns:
            (today's seeded items, number of items digested)
        """
        read = self.store.get(yesterday_key)
        previous = read.items if isinstance(read, Found) else []
        if not isinstance(read, Found):
            logger.info(f"{yesterday_key} not found")

        carry: List[Item] = []
        if previous:
            logger.info(f"Sending digest of {len(previous)} items from {yesterday_key}")
            self.digest.send(previous)
            self._event(EventType.DIGEST_SENT, yesterday_key, count=len(previous))
            if self.monitor:
                self.monitor.metrics.record_digest(len(previous))

            anchor = select_anchor(previous)
            carry = [anchor]
            logger.info(f"Carrying item {anchor.id} from {yesterday_key} forward as the watermark anchor")
        else:
            logger.info(f"Seeding {today_key} with an empty partition")

        self._event(EventType.ROLLOVER, today_key, previous=yesterday_key, digest_items=len(previous))
        self.store.put(today_key, carry)
        self._event(EventType.PARTITION_SEEDED, today_key, items=len(carry))
        return carry, len(previous)


class SyncScheduler:
    """
    Background service that runs the SyncEngine every ``interval`` seconds.

    Runs happen in a worker thread (the engine's I/O is blocking) and are
    serialized with a lock, so a manual trigger never overlaps a scheduled run.

    Usage:
        scheduler = SyncScheduler(engine, interval=900)
        await scheduler.start()
        await scheduler.stop()
    """

    def __init__(self, engine: SyncEngine, interval: int = 900):
        self.engine = engine
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.last_result: Optional[SyncResult] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_busy(self) -> bool:
        """True while a run is in progress."""
        return self._lock.locked()

    async def start(self):
        """Start the background sync task."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sync_loop())
        logger.info(f"SyncScheduler started with {self.interval}s interval")

    async def stop(self):
        """Stop the background sync task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("SyncScheduler stopped")

    async def _sync_loop(self):
        """Main scheduling loop."""
        while self._running:
            try:
                await self.trigger()
            except Exception as e:
                # Already logged by the engine; the next tick retries the whole run
                logger.error(f"Scheduled sync failed, retrying in {self.interval}s: {e}")

            await asyncio.sleep(self.interval)

    async def trigger(self) -> SyncResult:
        """
        Run the engine once, waiting for any in-flight run to finish first.

        If the caller is cancelled mid-run the lock is held until the worker
        thread returns, since the thread itself cannot be interrupted.

        Raises:
            HarvestError: Propagated from the engine
        """
        async with self._lock:
            run = asyncio.ensure_future(asyncio.to_thread(self.engine.run))
            try:
                result = await asyncio.shield(run)
            except asyncio.CancelledError:
                await asyncio.wait({run})
                self._record(run)
                raise
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                raise
            self.last_result = result
            self.last_error = None
            return result

    def _record(self, run: asyncio.Future) -> None:
        error = run.exception()
        if error is not None:
            self.last_error = f"{type(error).__name__}: {error}"
        else:
            self.last_result = run.result()
            self.last_error = None


__all__ = [
    "SyncEngine",
    "SyncScheduler",
    "SyncResult",
    "SyncOutcome",
    "FeedSource",
    "select_anchor",
    "merge_new_items",
]
