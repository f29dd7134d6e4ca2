"""
Unit tests for the core module (SyncEngine, SyncScheduler).
"""

import asyncio

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from adapter.errors import MalformedDataError
from adapter.models import Item, watermark
from adapter.x import XAPIError
from archive import ArchiveIOError, Found, MemoryArchiveStore, NotFound
from core import (
    SyncEngine,
    SyncOutcome,
    SyncResult,
    SyncScheduler,
    merge_new_items,
    select_anchor,
)
from digest import DigestDeliveryError
from monitoring import EventType, SystemMonitor

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
TODAY = "tweets/2024-06-15/tweets.json"
YESTERDAY = "tweets/2024-06-14/tweets.json"


def make_item(item_id: int, author: str = "user") -> Item:
    return Item(id=item_id, author=author, text=f"post {item_id}")


def ids(items):
    return [item.id for item in items]


@pytest.fixture
def store():
    """In-memory archive wrapped so put/get calls can be asserted."""
    return Mock(wraps=MemoryArchiveStore())


@pytest.fixture
def feed():
    feed = Mock()
    feed.fetch_since = Mock(return_value=[])
    return feed


@pytest.fixture
def sender():
    sender = Mock()
    sender.send = Mock(return_value=None)
    return sender


@pytest.fixture
def engine(store, feed, sender):
    return SyncEngine(store, feed, sender, clock=lambda: NOW)


# ============================================================================
# Helpers
# ============================================================================

class TestWatermark:
    """Test watermark derivation."""

    def test_max_id(self):
        """The watermark is the highest id, wherever it sits."""
        assert watermark([make_item(5), make_item(7), make_item(3)]) == 7

    def test_empty(self):
        """The empty set has watermark 0."""
        assert watermark([]) == 0


class TestSelectAnchor:
    """Test rollover anchor selection."""

    def test_picks_max(self):
        assert select_anchor([make_item(5), make_item(7), make_item(3)]).id == 7

    def test_tie_picks_exactly_one(self):
        """Duplicate max ids still yield a single anchor."""
        first = Item(id=7, author="a", text="first")
        second = Item(id=7, author="b", text="second")

        anchor = select_anchor([first, second])

        assert anchor.id == 7
        assert anchor.author == "a"


class TestMergeNewItems:
    """Test dedup of fetched batches."""

    def test_drops_seen_and_stale(self):
        """Items at or below the watermark or already stored are dropped."""
        current = [make_item(10), make_item(8)]
        fetched = [make_item(12), make_item(10), make_item(9), make_item(11)]

        assert ids(merge_new_items(fetched, current)) == [12, 11]

    def test_drops_repeats_within_batch(self):
        fetched = [make_item(12), make_item(12), make_item(11)]

        assert ids(merge_new_items(fetched, [])) == [12, 11]

    def test_orders_newest_first(self):
        assert ids(merge_new_items([make_item(1), make_item(3), make_item(2)], [])) == [3, 2, 1]


# ============================================================================
# SyncEngine state machine
# ============================================================================

class TestSyncEngineResume:
    """Runs where today's partition already exists."""

    def test_merge(self, engine, store, feed, sender):
        """New items are prepended and the next watermark is their max."""
        store.put(TODAY, [make_item(10)])
        store.reset_mock()
        feed.fetch_since.return_value = [make_item(12), make_item(11)]

        result = engine.run()

        feed.fetch_since.assert_called_once_with(10)
        assert ids(store.get(TODAY).items) == [12, 11, 10]
        assert watermark(store.get(TODAY).items) == 12
        assert result.outcome == SyncOutcome.MERGED
        assert result.new_items == 2
        assert result.total_items == 3
        assert result.rolled_over is False
        sender.send.assert_not_called()

    def test_no_op(self, engine, store, feed, sender):
        """An empty fetch writes nothing."""
        store.put(TODAY, [make_item(10)])
        store.reset_mock()

        result = engine.run()

        store.put.assert_not_called()
        sender.send.assert_not_called()
        assert result.outcome == SyncOutcome.NO_NEW_ITEMS
        assert result.watermark == 10

    def test_idempotent_second_run(self, engine, store, feed):
        """Two runs in a row, the second finding nothing, leave the partition unchanged."""
        store.put(TODAY, [make_item(10)])
        feed.fetch_since.return_value = [make_item(11)]
        engine.run()
        after_first = store.get(TODAY).items

        feed.fetch_since.return_value = []
        store.reset_mock()
        engine.run()

        store.put.assert_not_called()
        assert [(i.id, i.text) for i in store.get(TODAY).items] == [(i.id, i.text) for i in after_first]
        feed.fetch_since.assert_called_with(11)

    def test_already_seen_items_are_not_duplicated(self, engine, store, feed):
        """An inclusive or retried fetch does not duplicate stored items."""
        store.put(TODAY, [make_item(10)])
        store.reset_mock()
        feed.fetch_since.return_value = [make_item(10)]

        result = engine.run()

        store.put.assert_not_called()
        assert result.outcome == SyncOutcome.NO_NEW_ITEMS

    def test_unordered_batch_is_normalized(self, engine, store, feed):
        """A batch not in newest-first order is sorted before merge."""
        store.put(TODAY, [make_item(10)])
        feed.fetch_since.return_value = [make_item(11), make_item(13), make_item(12)]

        engine.run()

        assert ids(store.get(TODAY).items) == [13, 12, 11, 10]

    def test_empty_today_uses_zero_watermark(self, engine, store, feed):
        """An existing but empty partition resumes with watermark 0."""
        store.put(TODAY, [])

        engine.run()

        feed.fetch_since.assert_called_once_with(0)


class TestSyncEngineRollover:
    """Runs where today's partition is missing."""

    def test_rollover(self, engine, store, feed, sender):
        """Yesterday is digested in full and only its max item is carried."""
        yesterday = [make_item(5), make_item(7), make_item(3)]
        store.put(YESTERDAY, yesterday)

        result = engine.run()

        sender.send.assert_called_once()
        assert ids(sender.send.call_args[0][0]) == [5, 7, 3]
        assert ids(store.get(TODAY).items) == [7]
        assert watermark(store.get(TODAY).items) == 7
        feed.fetch_since.assert_called_once_with(7)
        assert result.rolled_over is True
        assert result.digest_items == 3

    def test_seed_happens_before_fetch(self, engine, store, feed):
        """Today's partition is written before the feed is queried."""
        store.put(YESTERDAY, [make_item(5)])
        store.reset_mock()
        order = []
        store.put.side_effect = lambda key, items: order.append(("put", key, ids(items)))
        feed.fetch_since.side_effect = lambda since: order.append(("fetch", since)) or []

        engine.run()

        assert order == [("put", TODAY, [5]), ("fetch", 5)]

    def test_rollover_then_merge(self, engine, store, feed):
        """New items are merged on top of the carried anchor."""
        store.put(YESTERDAY, [make_item(7), make_item(5)])
        feed.fetch_since.return_value = [make_item(9), make_item(8)]

        engine.run()

        assert ids(store.get(TODAY).items) == [9, 8, 7]

    def test_double_absence(self, engine, store, feed, sender):
        """No partitions at all: no digest, empty seed, fetch from 0."""
        store.reset_mock()

        result = engine.run()

        sender.send.assert_not_called()
        store.put.assert_called_once_with(TODAY, [])
        feed.fetch_since.assert_called_once_with(0)
        assert isinstance(store.get(TODAY), Found)
        assert result.rolled_over is True
        assert result.digest_items == 0

    def test_empty_yesterday(self, engine, store, feed, sender):
        """An empty yesterday seeds an empty today without a digest."""
        store.put(YESTERDAY, [])

        engine.run()

        sender.send.assert_not_called()
        assert store.get(TODAY).items == []

    def test_second_run_same_day_skips_rollover(self, engine, store, sender):
        """Once seeded, later runs that day resume instead of re-digesting."""
        store.put(YESTERDAY, [make_item(5)])

        engine.run()
        engine.run()

        sender.send.assert_called_once()

    def test_timezone_defines_the_day(self, store, feed, sender):
        """The reference timezone decides which partitions are today and yesterday."""
        from zoneinfo import ZoneInfo

        late_evening_utc = datetime(2024, 6, 15, 2, 0, tzinfo=timezone.utc)
        engine = SyncEngine(store, feed, sender, tz=ZoneInfo("America/New_York"), clock=lambda: late_evening_utc)

        result = engine.run()

        assert result.partition == "tweets/2024-06-14/tweets.json"
        store.get.assert_any_call("tweets/2024-06-13/tweets.json")


class TestSyncEngineFailures:
    """Failure semantics: fail fast, no partial writes."""

    def test_today_read_error_aborts(self, feed, sender):
        """A non-NotFound read error means no puts, no sends, no fetch."""
        store = Mock()
        store.get.side_effect = ArchiveIOError("disk gone")
        engine = SyncEngine(store, feed, sender, clock=lambda: NOW)

        with pytest.raises(ArchiveIOError):
            engine.run()

        store.put.assert_not_called()
        sender.send.assert_not_called()
        feed.fetch_since.assert_not_called()

    def test_yesterday_read_error_aborts(self, feed, sender):
        """Failure reading yesterday aborts before any digest or seed."""
        store = Mock()
        store.get.side_effect = [NotFound(TODAY), ArchiveIOError("timeout")]
        engine = SyncEngine(store, feed, sender, clock=lambda: NOW)

        with pytest.raises(ArchiveIOError):
            engine.run()

        store.put.assert_not_called()
        sender.send.assert_not_called()

    def test_malformed_today_aborts(self, feed, sender):
        """A corrupted partition is fatal and not repaired."""
        memory = MemoryArchiveStore()
        memory.put_raw(TODAY, "{{{")
        store = Mock(wraps=memory)
        engine = SyncEngine(store, feed, sender, clock=lambda: NOW)

        with pytest.raises(MalformedDataError):
            engine.run()

        store.put.assert_not_called()
        sender.send.assert_not_called()

    def test_digest_failure_leaves_today_unseeded(self, engine, store, sender):
        """A failed send aborts before seeding so the next run re-sends."""
        store.put(YESTERDAY, [make_item(5), make_item(7)])
        sender.send.side_effect = DigestDeliveryError("smtp down")

        with pytest.raises(DigestDeliveryError):
            engine.run()

        assert isinstance(store.get(TODAY), NotFound)

        sender.send.side_effect = None
        engine.run()

        assert sender.send.call_count == 2
        assert ids(sender.send.call_args[0][0]) == [5, 7]
        assert ids(store.get(TODAY).items) == [7]

    def test_feed_failure_keeps_seed(self, engine, store, feed):
        """A fetch failure after seeding keeps the durable seed."""
        store.put(YESTERDAY, [make_item(5)])
        feed.fetch_since.side_effect = XAPIError("X API request timed out")

        with pytest.raises(XAPIError):
            engine.run()

        assert ids(store.get(TODAY).items) == [5]

    def test_persist_failure_refetches_next_run(self, feed, sender):
        """After a failed put the next run re-derives the same watermark."""
        memory = MemoryArchiveStore({TODAY: [make_item(10)]})
        store = Mock(wraps=memory)
        store.put.side_effect = ArchiveIOError("write failed")
        engine = SyncEngine(store, feed, sender, clock=lambda: NOW)
        feed.fetch_since.return_value = [make_item(11)]

        with pytest.raises(ArchiveIOError):
            engine.run()

        store.put.side_effect = memory.put
        engine.run()

        assert [c[0][0] for c in feed.fetch_since.call_args_list] == [10, 10]
        assert ids(memory.get(TODAY).items) == [11, 10]


class TestSyncEngineMonitoring:
    """Engine reporting into SystemMonitor."""

    def test_events_and_metrics(self, store, feed, sender):
        monitor = SystemMonitor()
        engine = SyncEngine(store, feed, sender, clock=lambda: NOW, monitor=monitor)
        store.put(YESTERDAY, [make_item(5)])
        feed.fetch_since.return_value = [make_item(6)]

        engine.run()

        events = [e["event_type"] for e in monitor.activity.get_recent(limit=50)]
        for expected in (EventType.DIGEST_SENT, EventType.PARTITION_SEEDED, EventType.PARTITION_WRITTEN, EventType.SYNC_COMPLETED):
            assert expected.value in events

        sync = monitor.metrics.get_metrics()["sync"]
        assert sync["runs"] == 1
        assert sync["items_harvested"] == 1
        assert sync["digests_sent"] == 1
        assert sync["last_run"]["outcome"] == "merged"

    def test_failure_recorded(self, feed, sender):
        monitor = SystemMonitor()
        store = Mock()
        store.get.side_effect = ArchiveIOError("nope")
        engine = SyncEngine(store, feed, sender, clock=lambda: NOW, monitor=monitor)

        with pytest.raises(ArchiveIOError):
            engine.run()

        sync = monitor.metrics.get_metrics()["sync"]
        assert sync["failed_runs"] == 1
        assert sync["last_run"]["error"] == "nope"


# ============================================================================
# SyncScheduler Tests
# ============================================================================

class TestSyncScheduler:
    """Unit tests for SyncScheduler."""

    @pytest.fixture
    def mock_engine(self):
        engine = Mock(spec=SyncEngine)
        engine.run.return_value = SyncResult(
            partition=TODAY,
            outcome=SyncOutcome.NO_NEW_ITEMS,
            watermark=0,
            total_items=0,
            started_at=NOW,
        )
        return engine

    @pytest.mark.asyncio
    async def test_scheduler_initialization(self, mock_engine):
        scheduler = SyncScheduler(mock_engine, interval=60)

        assert scheduler.interval == 60
        assert scheduler.is_running is False
        assert scheduler.last_result is None

    @pytest.mark.asyncio
    async def test_start_stop(self, mock_engine):
        scheduler = SyncScheduler(mock_engine, interval=3600)

        await scheduler.start()
        assert scheduler.is_running is True
        await asyncio.sleep(0.05)

        await scheduler.stop()
        assert scheduler.is_running is False
        mock_engine.run.assert_called_once()

    @pytest.mark.asyncio
    async def test_trigger_records_result(self, mock_engine):
        scheduler = SyncScheduler(mock_engine)

        result = await scheduler.trigger()

        assert result.outcome == SyncOutcome.NO_NEW_ITEMS
        assert scheduler.last_result is result
        assert scheduler.last_error is None

    @pytest.mark.asyncio
    async def test_trigger_propagates_errors(self, mock_engine):
        mock_engine.run.side_effect = ArchiveIOError("down")
        scheduler = SyncScheduler(mock_engine)

        with pytest.raises(ArchiveIOError):
            await scheduler.trigger()

        assert "ArchiveIOError" in scheduler.last_error

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self, mock_engine):
        """A failed run does not stop the loop."""
        mock_engine.run.side_effect = ArchiveIOError("down")
        scheduler = SyncScheduler(mock_engine, interval=0.01)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert mock_engine.run.call_count >= 2

    @pytest.mark.asyncio
    async def test_runs_are_serialized(self):
        """Concurrent triggers never overlap."""
        import threading
        import time

        active = []
        overlaps = []
        lock = threading.Lock()

        def slow_run():
            with lock:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
            time.sleep(0.05)
            with lock:
                active.pop()
            return SyncResult(partition=TODAY, outcome=SyncOutcome.NO_NEW_ITEMS, watermark=0, total_items=0, started_at=NOW)

        engine = Mock(spec=SyncEngine)
        engine.run.side_effect = slow_run
        scheduler = SyncScheduler(engine)

        await asyncio.gather(scheduler.trigger(), scheduler.trigger(), scheduler.trigger())

        assert engine.run.call_count == 3
        assert overlaps == []

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_run(self):
        """Stopping mid-run keeps later triggers from overlapping the unfinished run."""
        import threading
        import time

        active = []
        peak = []
        finished = []
        lock = threading.Lock()

        def slow_run():
            with lock:
                active.append(1)
                peak.append(len(active))
            time.sleep(0.3)
            with lock:
                active.pop()
                finished.append(1)
            return SyncResult(partition=TODAY, outcome=SyncOutcome.NO_NEW_ITEMS, watermark=0, total_items=0, started_at=NOW)

        engine = Mock(spec=SyncEngine)
        engine.run.side_effect = slow_run
        scheduler = SyncScheduler(engine, interval=3600)

        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert len(finished) == 1
        assert scheduler.last_result is not None

        await scheduler.trigger()

        assert engine.run.call_count == 2
        assert max(peak) == 1
