"""
בדיקות ל-EventBus - פרסום, עדיפויות, retry, dead letters, replay ו-recovery
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.exceptions import EventQueueFullError, UnsupportedEventTypeError, ValidationException
from app.core.time_utils import utcnow
from app.db.models.sync_event import EventPriority, EventStatus, SyncEvent
from app.domain.services.event_bus import BusEvent, EventBus, EventTypes


@pytest.fixture
async def make_bus(session_factory):
    buses: list[EventBus] = []

    def _make(**overrides) -> EventBus:
        options = {
            "max_queue_size": 100,
            "batch_size": 10,
            "max_concurrent_processors": 2,
            "processing_timeout_seconds": 5,
            "max_retries": 3,
            "retry_base_seconds": 0.001,
            "max_backoff_seconds": 0.01,
            "dead_letter_max_size": 10,
            "dead_letter_replay_size": 10,
            "recovery_window_hours": 24,
        }
        options.update(overrides)
        bus = EventBus(session_factory, **options)
        buses.append(bus)
        return bus

    yield _make
    for bus in buses:
        await bus.stop()


@pytest.fixture
def bus(make_bus) -> EventBus:
    return make_bus()


async def pump(bus: EventBus, timeout: float = 5.0) -> None:
    """מעבד מנות עד שהתור ריק ואין retries ממתינים"""
    deadline = asyncio.get_running_loop().time() + timeout
    while bus.queue_length() or bus.pending_retries:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("event bus did not drain")
        await bus.process_batch()
        await asyncio.sleep(0.005)


async def event_row(session_factory, event_id: str) -> SyncEvent:
    async with session_factory() as session:
        return await session.get(SyncEvent, event_id)


class TestPublish:

    @pytest.mark.unit
    async def test_publish_persists_before_queueing(self, bus, session_factory):
        received: list[BusEvent] = []

        async def handler(event: BusEvent) -> None:
            received.append(event)

        bus.subscribe(EventTypes.PRODUCT_UPDATED, handler)

        event_id = await bus.publish(EventTypes.PRODUCT_UPDATED, {"id": 1}, tenant_id="tenant-1")

        row = await event_row(session_factory, event_id)
        assert row.status == EventStatus.QUEUED
        assert row.tenant_id == "tenant-1"
        assert bus.queue_length() == 1

        await pump(bus)

        assert [e.id for e in received] == [event_id]
        assert received[0].payload == {"id": 1}
        assert (await event_row(session_factory, event_id)).status == EventStatus.COMPLETED
        assert bus.get_statistics()["processed"] == 1

    @pytest.mark.unit
    async def test_publish_without_subscriber_rejected(self, bus, session_factory):
        with pytest.raises(UnsupportedEventTypeError):
            await bus.publish("unknown.event", {})

        async with session_factory() as session:
            assert (await session.execute(select(SyncEvent))).scalars().all() == []

    @pytest.mark.unit
    async def test_invalid_priority_rejected(self, bus):
        bus.subscribe(EventTypes.PRODUCT_UPDATED, lambda e: asyncio.sleep(0))

        with pytest.raises(ValidationException):
            await bus.publish(EventTypes.PRODUCT_UPDATED, {}, priority="urgent")

    @pytest.mark.unit
    async def test_queue_full_rejects(self, make_bus):
        bus = make_bus(max_queue_size=2)
        bus.subscribe(EventTypes.PRODUCT_UPDATED, lambda e: asyncio.sleep(0))

        await bus.publish(EventTypes.PRODUCT_UPDATED, {})
        await bus.publish(EventTypes.PRODUCT_UPDATED, {})

        with pytest.raises(EventQueueFullError):
            await bus.publish(EventTypes.PRODUCT_UPDATED, {})

        assert bus.get_statistics()["rejected"] == 1
        assert bus.queue_length() == 2

    @pytest.mark.unit
    async def test_high_priority_jumps_queue(self, make_bus):
        bus = make_bus(batch_size=1, max_concurrent_processors=1)
        order: list[str] = []

        async def handler(event: BusEvent) -> None:
            order.append(event.payload["name"])

        bus.subscribe(EventTypes.PRODUCT_UPDATED, handler)
        await bus.publish(EventTypes.PRODUCT_UPDATED, {"name": "a"})
        await bus.publish(EventTypes.PRODUCT_UPDATED, {"name": "b"})
        await bus.publish(EventTypes.PRODUCT_UPDATED, {"name": "urgent"}, priority="high")

        await pump(bus)

        assert order == ["urgent", "a", "b"]

    @pytest.mark.unit
    async def test_every_subscriber_is_called(self, bus):
        calls: list[str] = []

        async def first(event):
            calls.append("first")

        async def second(event):
            calls.append("second")

        bus.subscribe(EventTypes.STOCK_UPDATED, first)
        bus.subscribe(EventTypes.STOCK_UPDATED, second)
        await bus.publish(EventTypes.STOCK_UPDATED, {})
        await pump(bus)

        assert calls == ["first", "second"]
        assert bus.subscribed_types() == [EventTypes.STOCK_UPDATED]


class TestRetryAndDeadLetters:

    @pytest.mark.unit
    async def test_transient_failures_below_limit_complete(self, bus, session_factory):
        """N < max_retries כשלונות → האירוע מסתיים, ה-DLQ ריק"""
        attempts = 0

        async def flaky(event):
            nonlocal attempts
            attempts += 1
            if attempts <= 2:
                raise RuntimeError("temporary")

        bus.subscribe(EventTypes.ORDER_RECEIVED, flaky)
        event_id = await bus.publish(EventTypes.ORDER_RECEIVED, {})

        await pump(bus)

        assert attempts == 3
        assert bus.get_dead_letters() == []
        row = await event_row(session_factory, event_id)
        assert row.status == EventStatus.COMPLETED
        assert row.retry_count == 2
        stats = bus.get_statistics()
        assert stats["retried"] == 2
        assert stats["dead_lettered"] == 0

    @pytest.mark.integration
    async def test_hundred_flaky_events_each_complete_exactly_once(self, make_bus, session_factory):
        """כל אירוע נכשל N < max_retries פעמים ואז מצליח: אין dead letters, כל אחד הושלם פעם אחת"""
        bus = make_bus(max_queue_size=200, batch_size=20)
        failures_left: dict[int, int] = {}
        completions: dict[int, int] = {}

        async def flaky(event: BusEvent) -> None:
            n = event.payload["n"]
            if failures_left[n] > 0:
                failures_left[n] -= 1
                raise RuntimeError(f"temporary failure {n}")
            completions[n] = completions.get(n, 0) + 1

        bus.subscribe(EventTypes.ORDER_RECEIVED, flaky)
        event_ids: dict[int, str] = {}
        for n in range(100):
            failures_left[n] = n % bus.max_retries
            event_ids[n] = await bus.publish(EventTypes.ORDER_RECEIVED, {"n": n})

        await pump(bus, timeout=60)

        assert bus.get_dead_letters() == []
        assert completions == {n: 1 for n in range(100)}
        async with session_factory() as session:
            rows = {row.id: row for row in (await session.execute(select(SyncEvent))).scalars()}
        for n, event_id in event_ids.items():
            assert rows[event_id].status == EventStatus.COMPLETED
            assert rows[event_id].retry_count == n % bus.max_retries
        stats = bus.get_statistics()
        assert stats["processed"] == 100
        assert stats["dead_lettered"] == 0

    @pytest.mark.unit
    async def test_exhausted_event_goes_to_dead_letters(self, bus, session_factory):
        attempts = 0

        async def broken(event):
            nonlocal attempts
            attempts += 1
            raise RuntimeError("handler bug")

        bus.subscribe(EventTypes.ORDER_RECEIVED, broken)
        event_id = await bus.publish(EventTypes.ORDER_RECEIVED, {"n": 1})

        await pump(bus)

        assert attempts == 4
        dead = bus.get_dead_letters()
        assert [d["event_id"] for d in dead] == [event_id]
        assert dead[0]["error"] == "handler bug"
        row = await event_row(session_factory, event_id)
        assert row.status == EventStatus.DEAD_LETTERED
        assert row.retry_count == 3

    @pytest.mark.unit
    async def test_replay_requeues_with_fresh_retry_budget(self, bus, session_factory):
        healthy = False

        async def handler(event):
            if not healthy:
                raise RuntimeError("down")

        bus.subscribe(EventTypes.ORDER_RECEIVED, handler)
        event_id = await bus.publish(EventTypes.ORDER_RECEIVED, {})
        await pump(bus)
        assert bus.get_statistics()["dead_letter_size"] == 1

        healthy = True
        assert await bus.replay_dead_letters() == 1
        row = await event_row(session_factory, event_id)
        assert row.status == EventStatus.QUEUED
        assert row.retry_count == 0

        await pump(bus)

        assert (await event_row(session_factory, event_id)).status == EventStatus.COMPLETED
        assert bus.get_statistics()["replayed"] == 1
        assert bus.get_dead_letters() == []

    @pytest.mark.unit
    async def test_replay_empty_dead_letters(self, bus):
        assert await bus.replay_dead_letters() == 0

    @pytest.mark.unit
    async def test_dead_letter_queue_is_bounded(self, make_bus):
        bus = make_bus(max_retries=0, dead_letter_max_size=2, batch_size=1)

        async def broken(event):
            raise RuntimeError("no")

        bus.subscribe(EventTypes.ORDER_RECEIVED, broken)
        ids = [await bus.publish(EventTypes.ORDER_RECEIVED, {"i": i}) for i in range(3)]
        await pump(bus)

        assert [d["event_id"] for d in bus.get_dead_letters()] == ids[1:]
        assert bus.get_statistics()["dead_letters_dropped"] == 1

    @pytest.mark.unit
    async def test_processing_timeout_is_a_failure(self, make_bus):
        bus = make_bus(max_retries=0, processing_timeout_seconds=0.05)

        async def slow(event):
            await asyncio.sleep(1)

        bus.subscribe(EventTypes.ORDER_RECEIVED, slow)
        await bus.publish(EventTypes.ORDER_RECEIVED, {})
        await pump(bus)

        dead = bus.get_dead_letters()
        assert "timed out" in dead[0]["error"]


class TestRecovery:

    @pytest.mark.unit
    async def test_recover_pending_events(self, make_bus, session_factory):
        now = utcnow()
        async with session_factory() as session:
            for event_id, status, priority, created in [
                ("e-processing", EventStatus.PROCESSING, EventPriority.NORMAL, now - timedelta(minutes=3)),
                ("e-retrying", EventStatus.RETRYING, EventPriority.NORMAL, now - timedelta(minutes=2)),
                ("e-high", EventStatus.QUEUED, EventPriority.HIGH, now - timedelta(minutes=1)),
                ("e-done", EventStatus.COMPLETED, EventPriority.NORMAL, now),
                ("e-dead", EventStatus.DEAD_LETTERED, EventPriority.NORMAL, now),
                ("e-ancient", EventStatus.QUEUED, EventPriority.NORMAL, now - timedelta(days=3)),
            ]:
                session.add(SyncEvent(
                    id=event_id, event_type=EventTypes.PRODUCT_UPDATED, payload={},
                    priority=priority, status=status, retry_count=1, created_at=created,
                ))
            await session.commit()

        bus = make_bus(batch_size=1)
        order: list[str] = []

        async def handler(event):
            order.append(event.id)

        bus.subscribe(EventTypes.PRODUCT_UPDATED, handler)

        assert await bus.recover_pending_events() == 3
        assert [d["event_id"] for d in bus.get_dead_letters()] == ["e-dead"]

        await pump(bus)

        assert order == ["e-high", "e-processing", "e-retrying"]
        assert (await event_row(session_factory, "e-ancient")).status == EventStatus.QUEUED

    @pytest.mark.unit
    async def test_background_loop_processes_events(self, make_bus):
        bus = make_bus(batch_interval_seconds=0.01)
        done = asyncio.Event()

        async def handler(event):
            done.set()

        bus.subscribe(EventTypes.PRODUCT_UPDATED, handler)
        await bus.start()
        try:
            await bus.publish(EventTypes.PRODUCT_UPDATED, {})
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            await bus.stop()

    @pytest.mark.unit
    async def test_cleanup_old_events(self, bus, session_factory):
        old = utcnow() - timedelta(days=30)
        async with session_factory() as session:
            for event_id, status in [("old-done", EventStatus.COMPLETED), ("old-dead", EventStatus.DEAD_LETTERED)]:
                session.add(SyncEvent(
                    id=event_id, event_type=EventTypes.PRODUCT_UPDATED, payload={},
                    priority=EventPriority.NORMAL, status=status, created_at=old,
                ))
            await session.commit()

        assert await bus.cleanup_old_events(7) == 1
        assert await event_row(session_factory, "old-dead") is not None


class TestEventHistory:

    @pytest.mark.unit
    async def test_history_newest_first_and_filtered(self, bus, session_factory):
        now = utcnow()
        async with session_factory() as session:
            for event_id, tenant_id, status, age in [
                ("e-old", "tenant-1", EventStatus.COMPLETED, 30),
                ("e-new", "tenant-1", EventStatus.DEAD_LETTERED, 1),
                ("e-other", "tenant-2", EventStatus.COMPLETED, 5),
            ]:
                session.add(SyncEvent(
                    id=event_id, event_type=EventTypes.PRODUCT_UPDATED, tenant_id=tenant_id, payload={},
                    priority=EventPriority.NORMAL, status=status, created_at=now - timedelta(minutes=age),
                ))
            await session.commit()

        everything = await bus.get_event_history()
        tenant_only = await bus.get_event_history("tenant-1")
        dead_only = await bus.get_event_history(status="dead_lettered")
        limited = await bus.get_event_history(limit=1)

        assert [e["event_id"] for e in everything] == ["e-new", "e-other", "e-old"]
        assert [e["event_id"] for e in tenant_only] == ["e-new", "e-old"]
        assert [e["event_id"] for e in dead_only] == ["e-new"]
        assert dead_only[0]["status"] == "dead_lettered"
        assert [e["event_id"] for e in limited] == ["e-new"]

    @pytest.mark.unit
    async def test_history_rejects_unknown_status(self, bus):
        with pytest.raises(ValidationException):
            await bus.get_event_history(status="exploded")


@pytest.mark.unit
def test_event_types_all_contains_known_names():
    names = EventTypes.all()

    assert EventTypes.SYNC_REQUESTED in names
    assert EventTypes.PRICE_CONFLICT_DETECTED in names
    assert names == sorted(names)
