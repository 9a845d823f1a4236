"""
Event Bus - הפצת אירועים פנימית בזיכרון עם שמירה ב-DB.

כל אירוע נשמר ב-sync_events לפני שהוא נכנס לתור. עיבוד במנות (batch) עם
הגבלת מעבדים במקביל; כשלון → retry עם backoff; אחרי EVENT_MAX_RETRIES →
dead letter queue, שממנו אפשר להחזיר לתור (replay).
"""
import asyncio
import time
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    EventQueueFullError,
    PersistenceError,
    UnsupportedEventTypeError,
    ValidationException,
)
from app.core.logging import get_logger, set_correlation_id, set_tenant_context
from app.core.periodic import PeriodicTask
from app.core.retry import calculate_backoff_seconds
from app.core.time_utils import utcnow
from app.db.database import SessionFactory
from app.db.models.sync_event import PENDING_EVENT_STATUSES, EventPriority, EventStatus, SyncEvent

logger = get_logger(__name__)


class EventTypes:
    """שמות אירועים מנורמלים"""

    PRODUCT_CREATED = "bling.product.created"
    PRODUCT_UPDATED = "bling.product.updated"
    PRODUCT_DELETED = "bling.product.deleted"
    STOCK_UPDATED = "bling.stock.updated"
    ORDER_RECEIVED = "bling.order.webhook_received"
    ORDER_STATUS_CHANGED = "bling.order.status_changed"
    ORDER_CANCELLED = "bling.order.webhook_cancelled"
    INVOICE_CREATED = "bling.invoice.created"
    CUSTOMER_UPDATED = "bling.customer.updated"
    WEBHOOK_PROCESSED = "bling.webhook.processed"
    SYNC_REQUESTED = "bling.sync.requested"
    PRICES_SYNC_COMPLETED = "bling.prices.sync.completed"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    PRODUCT_PRICE_UPDATED = "product.price.updated"
    PRODUCT_STOCK_UPDATED = "product.stock.updated"
    PRICE_CONFLICT_DETECTED = "price.conflict_detected"
    PRICE_CONFLICT_RESOLVED = "price.conflict_resolved"

    @classmethod
    def all(cls) -> list[str]:
        return sorted(
            value for name, value in vars(cls).items() if name.isupper() and isinstance(value, str)
        )


@dataclass
class BusEvent:
    id: str
    event_type: str
    payload: dict[str, Any]
    tenant_id: str | None = None
    priority: EventPriority = EventPriority.NORMAL
    retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.id,
            "event_type": self.event_type,
            "tenant_id": self.tenant_id,
            "payload": self.payload,
            "priority": self.priority.value,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "error": self.error,
        }


EventHandler = Callable[[BusEvent], Awaitable[None]]


class EventBus:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        max_queue_size: int | None = None,
        batch_size: int | None = None,
        max_concurrent_processors: int | None = None,
        processing_timeout_seconds: float | None = None,
        max_retries: int | None = None,
        retry_base_seconds: float | None = None,
        max_backoff_seconds: float | None = None,
        dead_letter_max_size: int | None = None,
        dead_letter_replay_size: int | None = None,
        recovery_window_hours: int | None = None,
        batch_interval_seconds: float | None = None,
        dead_letter_interval_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.max_queue_size = max_queue_size or settings.EVENT_QUEUE_MAX_SIZE
        self.batch_size = batch_size or settings.EVENT_BATCH_SIZE
        self.max_concurrent_processors = max_concurrent_processors or settings.EVENT_MAX_CONCURRENT_PROCESSORS
        self.processing_timeout_seconds = processing_timeout_seconds or settings.EVENT_PROCESSING_TIMEOUT_SECONDS
        self.max_retries = settings.EVENT_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_seconds = settings.EVENT_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        self.max_backoff_seconds = (
            settings.EVENT_MAX_BACKOFF_SECONDS if max_backoff_seconds is None else max_backoff_seconds
        )
        self.dead_letter_max_size = dead_letter_max_size or settings.EVENT_DEAD_LETTER_MAX_SIZE
        self.dead_letter_replay_size = dead_letter_replay_size or settings.EVENT_DEAD_LETTER_REPLAY_SIZE
        self.recovery_window_hours = recovery_window_hours or settings.EVENT_RECOVERY_WINDOW_HOURS

        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: deque[BusEvent] = deque()
        self._dead_letters: deque[BusEvent] = deque()
        # מקומות שנתפסו ע"י publish שעדיין שומר ל-DB
        self._reserved = 0
        self._processors = 0
        self._batch_tasks: set[asyncio.Task] = set()
        self._retry_timers: set[asyncio.Task] = set()
        self._processing_ms: deque[float] = deque(maxlen=500)
        self._stats = {
            "published": 0,
            "rejected": 0,
            "processed": 0,
            "failed": 0,
            "retried": 0,
            "dead_lettered": 0,
            "dead_letters_dropped": 0,
            "replayed": 0,
            "recovered": 0,
        }
        self._per_type: Counter[str] = Counter()

        self._loops = [
            PeriodicTask(
                "event-batch",
                batch_interval_seconds or settings.EVENT_BATCH_INTERVAL_SECONDS,
                self._batch_tick,
                run_immediately=True,
            ),
            PeriodicTask(
                "event-dead-letter-replay",
                dead_letter_interval_seconds or settings.EVENT_DEAD_LETTER_INTERVAL_SECONDS,
                self._dead_letter_tick,
            ),
        ]

    # ------------------------------------------------------------------
    # Subscribe / publish
    # ------------------------------------------------------------------

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug(
            "Event handler subscribed",
            extra_data={"event_type": event_type, "handler": getattr(handler, "__qualname__", repr(handler))},
        )

    def subscribed_types(self) -> list[str]:
        return sorted(t for t, handlers in self._handlers.items() if handlers)

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        tenant_id: str | None = None,
        priority: str | EventPriority = EventPriority.NORMAL,
    ) -> str:
        """
        פרסום אירוע. נשמר ל-DB ורק אז נכנס לתור; high נכנס לראש התור.

        Raises:
            UnsupportedEventTypeError: אין handler לסוג הזה
            EventQueueFullError: התור מלא
            PersistenceError: השמירה ל-DB נכשלה
        """
        if not self._handlers.get(event_type):
            logger.warning(
                "Event rejected: no subscriber",
                extra_data={"rejection": "unsupported_event_type", "event_type": event_type},
            )
            raise UnsupportedEventTypeError(event_type)

        try:
            event_priority = EventPriority(priority)
        except ValueError:
            raise ValidationException(f"Unknown priority: {priority}", field="priority")

        if len(self._queue) + self._reserved >= self.max_queue_size:
            self._stats["rejected"] += 1
            logger.warning(
                "Event rejected: queue full",
                extra_data={
                    "rejection": "queue_full",
                    "event_type": event_type,
                    "capacity": self.max_queue_size,
                },
            )
            raise EventQueueFullError(event_type, self.max_queue_size)

        event = BusEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            payload=payload or {},
            tenant_id=tenant_id,
            priority=event_priority,
        )

        self._reserved += 1
        try:
            async with self._session_factory() as session:
                session.add(
                    SyncEvent(
                        id=event.id,
                        event_type=event_type,
                        tenant_id=tenant_id,
                        payload=event.payload,
                        priority=event_priority,
                        status=EventStatus.QUEUED,
                        retry_count=0,
                        created_at=event.created_at,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.critical(
                "Failed to persist event",
                extra_data={"event_type": event_type, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("event", str(e)) from e
        finally:
            self._reserved -= 1

        self._enqueue(event)
        self._stats["published"] += 1
        self._per_type[event_type] += 1
        logger.debug(
            "Event published",
            extra_data={"event_id": event.id, "event_type": event_type, "tenant_id": tenant_id},
        )
        return event.id

    def _enqueue(self, event: BusEvent) -> None:
        if event.priority == EventPriority.HIGH:
            self._queue.appendleft(event)
        else:
            self._queue.append(event)

    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def pending_retries(self) -> int:
        return len(self._retry_timers)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _claim_batch(self) -> list[BusEvent] | None:
        if not self._queue or self._processors >= self.max_concurrent_processors:
            return None
        batch = [self._queue.popleft() for _ in range(min(self.batch_size, len(self._queue)))]
        self._processors += 1
        return batch

    async def _run_batch(self, batch: list[BusEvent]) -> None:
        try:
            await asyncio.gather(*(self._process_event(event) for event in batch))
        finally:
            self._processors -= 1

    async def process_batch(self) -> int:
        """מעבד מנה אחת ומחכה לסיומה. מחזיר כמה אירועים נלקחו."""
        batch = self._claim_batch()
        if batch is None:
            return 0
        await self._run_batch(batch)
        return len(batch)

    async def _batch_tick(self) -> None:
        while True:
            batch = self._claim_batch()
            if batch is None:
                return
            task = asyncio.create_task(self._run_batch(batch))
            self._batch_tasks.add(task)
            task.add_done_callback(self._batch_tasks.discard)

    async def _process_event(self, event: BusEvent) -> None:
        set_correlation_id(event.id[:8])
        set_tenant_context(event.tenant_id)
        try:
            await self._set_status(event.id, EventStatus.PROCESSING)
            started = time.monotonic()
            try:
                await asyncio.wait_for(self._dispatch(event), timeout=self.processing_timeout_seconds)
            except asyncio.TimeoutError:
                error = f"Event processing timed out after {self.processing_timeout_seconds:g}s"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e.message if isinstance(e, AppException) else (str(e) or e.__class__.__name__)
            else:
                await self._set_status(event.id, EventStatus.COMPLETED, completed_at=utcnow(), error=None)
                self._stats["processed"] += 1
                self._processing_ms.append((time.monotonic() - started) * 1000)
                return

            await self._handle_failure(event, error)
        except asyncio.CancelledError:
            raise
        except SQLAlchemyError as e:
            # השורה נשארת במצבה האחרון ותיטען מחדש ב-recovery
            logger.critical(
                "Event state could not be persisted",
                extra_data={"event_id": event.id, "event_type": event.event_type, "error": str(e)},
                exc_info=True,
            )

    async def _dispatch(self, event: BusEvent) -> None:
        handlers = list(self._handlers.get(event.event_type) or [])
        if not handlers:
            raise UnsupportedEventTypeError(event.event_type)
        for handler in handlers:
            await handler(event)

    async def _handle_failure(self, event: BusEvent, error: str) -> None:
        self._stats["failed"] += 1
        event.error = error[:2000]

        if event.retry_count < self.max_retries:
            event.retry_count += 1
            delay = calculate_backoff_seconds(
                event.retry_count - 1,
                base_seconds=self.retry_base_seconds,
                max_backoff_seconds=self.max_backoff_seconds,
            )
            await self._set_status(
                event.id, EventStatus.RETRYING, retry_count=event.retry_count, error=event.error
            )
            self._stats["retried"] += 1
            logger.warning(
                "Event failed, retry scheduled",
                extra_data={
                    "event_id": event.id,
                    "event_type": event.event_type,
                    "attempt": event.retry_count,
                    "max_retries": self.max_retries,
                    "retry_in_seconds": delay,
                    "error": error,
                },
            )
            timer = asyncio.create_task(self._requeue_after(event, delay))
            self._retry_timers.add(timer)
            timer.add_done_callback(self._retry_timers.discard)
            return

        await self._set_status(event.id, EventStatus.DEAD_LETTERED, error=event.error)
        self._stats["dead_lettered"] += 1
        self._add_dead_letter(event)
        logger.error(
            "Event moved to dead letter queue",
            extra_data={
                "event_id": event.id,
                "event_type": event.event_type,
                "retry_count": event.retry_count,
                "error": error,
            },
        )

    async def _requeue_after(self, event: BusEvent, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._set_status(event.id, EventStatus.QUEUED)
        except SQLAlchemyError as e:
            logger.critical(
                "Failed to requeue event",
                extra_data={"event_id": event.id, "error": str(e)},
                exc_info=True,
            )
            return
        # אירוע שכבר התקבל - עוקף את מגבלת התור
        self._enqueue(event)

    def _add_dead_letter(self, event: BusEvent) -> None:
        if len(self._dead_letters) >= self.dead_letter_max_size:
            dropped = self._dead_letters.popleft()
            self._stats["dead_letters_dropped"] += 1
            logger.warning(
                "Dead letter queue full, oldest entry dropped from memory",
                extra_data={"event_id": dropped.id, "event_type": dropped.event_type},
            )
        self._dead_letters.append(event)

    async def _set_status(self, event_id: str, status: EventStatus, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SyncEvent)
                .where(SyncEvent.id == event_id)
                .values(status=status, updated_at=utcnow(), **values)
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    async def replay_dead_letters(self, limit: int | None = None) -> int:
        """החזרת האירועים הוותיקים ב-DLQ לתור החי עם retry_count=0"""
        limit = self.dead_letter_replay_size if limit is None else limit
        events = [self._dead_letters.popleft() for _ in range(min(limit, len(self._dead_letters)))]
        if not events:
            return 0

        async with self._session_factory() as session:
            await session.execute(
                update(SyncEvent)
                .where(SyncEvent.id.in_([event.id for event in events]))
                .values(status=EventStatus.QUEUED, retry_count=0, updated_at=utcnow())
            )
            await session.commit()

        for event in events:
            event.retry_count = 0
            event.error = None
            self._enqueue(event)

        self._stats["replayed"] += len(events)
        logger.info("Dead letters replayed", extra_data={"count": len(events)})
        return len(events)

    async def _dead_letter_tick(self) -> None:
        await self.replay_dead_letters()

    def get_dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        return [event.to_dict() for event in list(self._dead_letters)[:limit]]

    async def get_event_history(
        self,
        tenant_id: str | None = None,
        *,
        event_type: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """אירועים שמורים מה-DB, החדשים קודם"""
        query = select(SyncEvent)
        if tenant_id:
            query = query.where(SyncEvent.tenant_id == tenant_id)
        if event_type:
            query = query.where(SyncEvent.event_type == event_type)
        if status:
            try:
                query = query.where(SyncEvent.status == EventStatus(status))
            except ValueError:
                raise ValidationException(f"Unknown event status: {status}", field="status")

        async with self._session_factory() as session:
            result = await session.execute(
                query.order_by(SyncEvent.created_at.desc(), SyncEvent.id).limit(max(1, min(limit, 1000)))
            )
            rows = result.scalars().all()
        return [
            {
                **self._from_row(row).to_dict(),
                "status": row.status.value,
                "updated_at": row.updated_at.isoformat() if row.updated_at else None,
                "completed_at": row.completed_at.isoformat() if row.completed_at else None,
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def recover_pending_events(self) -> int:
        """טעינה מחדש של אירועים שלא הסתיימו (בחלון הזמן) + שחזור ה-DLQ"""
        since = utcnow() - timedelta(hours=self.recovery_window_hours)
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncEvent)
                .where(SyncEvent.status.in_(PENDING_EVENT_STATUSES), SyncEvent.created_at >= since)
                .order_by(SyncEvent.created_at)
            )
            rows = result.scalars().all()
            if rows:
                await session.execute(
                    update(SyncEvent)
                    .where(SyncEvent.id.in_([row.id for row in rows]))
                    .values(status=EventStatus.QUEUED, updated_at=utcnow())
                )
                await session.commit()

            dead_result = await session.execute(
                select(SyncEvent)
                .where(SyncEvent.status == EventStatus.DEAD_LETTERED, SyncEvent.created_at >= since)
                .order_by(SyncEvent.created_at.desc())
                .limit(self.dead_letter_max_size)
            )
            dead_rows = list(reversed(dead_result.scalars().all()))

        events = [self._from_row(row) for row in rows]
        high = [event for event in events if event.priority == EventPriority.HIGH]
        rest = [event for event in events if event.priority != EventPriority.HIGH]
        self._queue.extendleft(reversed(high))
        self._queue.extend(rest)

        known_dead = {event.id for event in self._dead_letters}
        for row in dead_rows:
            if row.id not in known_dead:
                self._add_dead_letter(self._from_row(row))

        self._stats["recovered"] += len(events)
        if events or dead_rows:
            logger.info(
                "Recovered pending events",
                extra_data={"pending": len(events), "dead_letters": len(dead_rows)},
            )
        return len(events)

    @staticmethod
    def _from_row(row: SyncEvent) -> BusEvent:
        return BusEvent(
            id=row.id,
            event_type=row.event_type,
            payload=row.payload or {},
            tenant_id=row.tenant_id,
            priority=row.priority,
            retry_count=row.retry_count,
            created_at=row.created_at,
            error=row.error,
        )

    async def start(self) -> int:
        recovered = await self.recover_pending_events()
        for loop in self._loops:
            loop.start()
        return recovered

    async def stop(self) -> None:
        for loop in self._loops:
            await loop.stop()

        timers = list(self._retry_timers)
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        # מנות באמצע עיבוד - מחכים עד timeout אחד, אחרת מבטלים (השורות ייטענו ב-recovery)
        batches = list(self._batch_tasks)
        if batches:
            _, pending = await asyncio.wait(batches, timeout=self.processing_timeout_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def get_statistics(self) -> dict[str, Any]:
        times = list(self._processing_ms)
        return {
            **self._stats,
            "queue_length": len(self._queue),
            "queue_capacity": self.max_queue_size,
            "dead_letter_size": len(self._dead_letters),
            "pending_retries": len(self._retry_timers),
            "active_processors": self._processors,
            "average_processing_ms": round(sum(times) / len(times), 2) if times else 0.0,
            "per_type": dict(self._per_type),
            "subscribed_types": self.subscribed_types(),
        }

    async def cleanup_old_events(self, days: int | None = None) -> int:
        cutoff = utcnow() - timedelta(days=settings.EVENT_RETENTION_DAYS if days is None else days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncEvent).where(
                    SyncEvent.status == EventStatus.COMPLETED,
                    SyncEvent.created_at < cutoff,
                )
            )
            await session.commit()
        if result.rowcount:
            logger.info("Old events cleaned up", extra_data={"deleted": result.rowcount})
        return result.rowcount
