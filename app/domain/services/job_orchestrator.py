"""
Job Orchestrator - מתזמן in-process ל-jobs ארוכים (סנכרון מלא, ייבוא, דוחות).

מצב ה-job נשמר ב-sync_jobs לפני שהוא נכנס לתור בזיכרון, כך שאחרי קריסה
recover_pending_jobs() מחזיר לתור כל מה שלא הגיע למצב סופי.

סדר: high לפני normal לפני low, FIFO בתוך אותה עדיפות.
לעולם לא רצים יותר מ-JOB_MAX_CONCURRENT jobs במקביל.
"""
import asyncio
import heapq
import itertools
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    JobNotCancellableError,
    JobNotFoundError,
    PersistenceError,
    UnsupportedJobTypeError,
    ValidationException,
)
from app.core.logging import get_logger, set_correlation_id, set_tenant_context
from app.core.periodic import PeriodicTask
from app.core.retry import calculate_backoff_seconds
from app.core.time_utils import utcnow
from app.db.database import SessionFactory
from app.db.models.sync_job import RECOVERABLE_JOB_STATUSES, JobPriority, JobStatus, SyncJob

logger = get_logger(__name__)

PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}

CANCELLED_ERROR = "cancelled"
SHUTDOWN_ERROR = "Job interrupted by shutdown"


class EventPublisher(Protocol):
    def publish(
        self, event_type: str, payload: dict[str, Any], *, tenant_id: str | None = None, priority: str = "normal"
    ) -> Awaitable[str]: ...


JobHandler = Callable[[dict[str, Any], "JobContext"], Awaitable[Any]]


@dataclass(frozen=True)
class JobTypeConfig:
    name: str
    handler: JobHandler
    timeout_seconds: float
    max_retries: int
    priority: JobPriority


def parse_priority(value: str | JobPriority) -> JobPriority:
    if isinstance(value, JobPriority):
        return value
    try:
        return JobPriority(str(value).lower())
    except ValueError:
        raise ValidationException(
            f"Unknown priority: {value}",
            field="priority",
            details={"allowed": [p.value for p in JobPriority]},
        )


class JobContext:
    """מה ש-handler מקבל: זהות ה-job ודיווח התקדמות"""

    def __init__(
        self,
        orchestrator: "JobOrchestrator",
        *,
        job_id: str,
        job_type: str,
        tenant_id: str | None,
        options: dict[str, Any],
        attempt: int,
        progress: int = 0,
    ) -> None:
        self._orchestrator = orchestrator
        self.job_id = job_id
        self.job_type = job_type
        self.tenant_id = tenant_id
        self.options = options
        self.attempt = attempt
        self.progress = progress
        self._persisted_bucket = progress // orchestrator.progress_step

    async def report_progress(self, percent: float, message: str | None = None) -> None:
        percent = max(0, min(100, int(percent)))
        self.progress = percent
        bucket = percent // self._orchestrator.progress_step
        # שמירה ב-DB רק במעבר של כל 10% (וב-100)
        if percent == 100 or bucket > self._persisted_bucket:
            self._persisted_bucket = bucket
            await self._orchestrator._persist_progress(self.job_id, percent, message)


class JobOrchestrator:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        event_bus: EventPublisher | None = None,
        max_concurrent: int | None = None,
        poll_interval_seconds: float | None = None,
        retry_base_seconds: float | None = None,
        backoff_factor: float | None = None,
        max_backoff_seconds: float | None = None,
        shutdown_grace_seconds: float | None = None,
        heartbeat_interval_seconds: float | None = None,
        progress_step: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._event_bus = event_bus
        self.max_concurrent = max_concurrent or settings.JOB_MAX_CONCURRENT
        self.retry_base_seconds = settings.JOB_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        self.backoff_factor = settings.JOB_BACKOFF_FACTOR if backoff_factor is None else backoff_factor
        self.max_backoff_seconds = (
            settings.JOB_MAX_BACKOFF_SECONDS if max_backoff_seconds is None else max_backoff_seconds
        )
        self.shutdown_grace_seconds = (
            settings.JOB_SHUTDOWN_GRACE_SECONDS if shutdown_grace_seconds is None else shutdown_grace_seconds
        )
        self.progress_step = max(1, progress_step or settings.JOB_PROGRESS_PERSIST_STEP)

        self._job_types: dict[str, JobTypeConfig] = {}
        # heap של (rank, seq, job_id); ביטול מסומן ב-_queued_ids ומדולג ב-pop
        self._queue: list[tuple[int, int, str]] = []
        self._queued_ids: set[str] = set()
        self._seq = itertools.count()
        self._active: dict[str, asyncio.Task] = {}
        self._retry_timers: dict[str, asyncio.Task] = {}
        self._accepting = False
        self._processing_times: deque[float] = deque(maxlen=200)
        self._stats = {"enqueued": 0, "completed": 0, "failed": 0, "retried": 0, "recovered": 0}

        self._loops = [
            PeriodicTask(
                "job-scheduler",
                poll_interval_seconds or settings.JOB_POLL_INTERVAL_SECONDS,
                self._schedule_tick,
                run_immediately=True,
            ),
            PeriodicTask(
                "job-heartbeat",
                heartbeat_interval_seconds or settings.JOB_HEARTBEAT_INTERVAL_SECONDS,
                self.heartbeat,
            ),
        ]

    def attach_event_bus(self, event_bus: EventPublisher) -> None:
        self._event_bus = event_bus

    # ------------------------------------------------------------------
    # Registration / enqueue
    # ------------------------------------------------------------------

    def register_job_type(
        self,
        name: str,
        handler: JobHandler,
        *,
        timeout_seconds: float,
        max_retries: int,
        priority: str | JobPriority = JobPriority.NORMAL,
    ) -> None:
        self._job_types[name] = JobTypeConfig(
            name=name,
            handler=handler,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            priority=parse_priority(priority),
        )

    def job_types(self) -> list[str]:
        return sorted(self._job_types)

    async def enqueue_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        tenant_id: str | None = None,
        priority: str | JobPriority | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        config = self._job_types.get(job_type)
        if config is None:
            raise UnsupportedJobTypeError(job_type)

        job_priority = parse_priority(priority) if priority is not None else config.priority
        if max_retries is not None and max_retries < 0:
            raise ValidationException("max_retries must be >= 0", field="max_retries")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValidationException("timeout_seconds must be positive", field="timeout_seconds")

        job = SyncJob(
            id=str(uuid.uuid4()),
            job_type=job_type,
            tenant_id=tenant_id,
            payload=payload or {},
            options=options or {},
            priority=job_priority,
            status=JobStatus.QUEUED,
            progress=0,
            retry_count=0,
            max_retries=config.max_retries if max_retries is None else max_retries,
            timeout_seconds=timeout_seconds or config.timeout_seconds,
        )

        # קודם DB, אחר כך תור - job שלא נשמר לא נכנס לתור
        try:
            async with self._session_factory() as session:
                session.add(job)
                await session.commit()
        except SQLAlchemyError as e:
            logger.critical(
                "Failed to persist job",
                extra_data={"job_type": job_type, "tenant_id": tenant_id, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("job", str(e)) from e

        self._push(job.id, job_priority)
        self._stats["enqueued"] += 1
        logger.info(
            "Job enqueued",
            extra_data={
                "job_id": job.id,
                "job_type": job_type,
                "tenant_id": tenant_id,
                "priority": job_priority.value,
            },
        )
        return {
            "job_id": job.id,
            "status": JobStatus.QUEUED.value,
            "queue_position": self._queue_position(job.id),
            "priority": job_priority.value,
        }

    def _push(self, job_id: str, priority: JobPriority) -> None:
        heapq.heappush(self._queue, (PRIORITY_RANK[priority], next(self._seq), job_id))
        self._queued_ids.add(job_id)

    def _queue_position(self, job_id: str) -> int | None:
        if job_id not in self._queued_ids:
            return None
        ordered = [entry[2] for entry in sorted(self._queue) if entry[2] in self._queued_ids]
        return ordered.index(job_id) + 1

    def queue_length(self) -> int:
        return len(self._queued_ids)

    def active_tasks(self) -> list[asyncio.Task]:
        return list(self._active.values())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return self._serialize(job)

    async def get_job_history(
        self,
        tenant_id: str | None = None,
        *,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        query = select(SyncJob)
        if tenant_id:
            query = query.where(SyncJob.tenant_id == tenant_id)
        if status:
            try:
                query = query.where(SyncJob.status == JobStatus(status))
            except ValueError:
                raise ValidationException(f"Unknown job status: {status}", field="status")
        if job_type:
            query = query.where(SyncJob.job_type == job_type)
        query = query.order_by(SyncJob.created_at.desc()).limit(max(1, min(limit, 500)))

        async with self._session_factory() as session:
            result = await session.execute(query)
            jobs = result.scalars().all()
        return [self._serialize(job) for job in jobs]

    async def estimate_completion(self, job_id: str) -> dict[str, Any]:
        """הערכת סיום ל-job רץ לפי קצב ההתקדמות עד עכשיו"""
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        estimate: dict[str, Any] = {
            "job_id": job_id,
            "status": job.status.value,
            "progress": job.progress,
            "estimated_completion_at": None,
            "estimated_remaining_seconds": None,
        }
        if job.status != JobStatus.RUNNING or not job.progress or job.started_at is None:
            return estimate

        elapsed = (utcnow() - job.started_at).total_seconds()
        total = elapsed * 100 / job.progress
        remaining = max(0.0, total - elapsed)
        estimate["estimated_remaining_seconds"] = round(remaining, 1)
        estimate["estimated_completion_at"] = (utcnow() + timedelta(seconds=remaining)).isoformat()
        return estimate

    async def cancel_job(self, job_id: str) -> dict[str, Any]:
        """ביטול אפשרי רק ל-job שעדיין בתור"""
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JobStatus.QUEUED or job_id in self._active:
                raise JobNotCancellableError(job_id, job.status.value)

            self._queued_ids.discard(job_id)
            job.status = JobStatus.FAILED
            job.error = CANCELLED_ERROR
            job.failed_at = utcnow()
            await session.commit()
            snapshot = self._serialize(job)

        logger.info("Job cancelled", extra_data={"job_id": job_id, "job_type": job.job_type})
        return snapshot

    def _serialize(self, job: SyncJob) -> dict[str, Any]:
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "job_id": job.id,
            "job_type": job.job_type,
            "tenant_id": job.tenant_id,
            "payload": job.payload,
            "options": job.options,
            "priority": job.priority.value,
            "status": job.status.value,
            "progress": job.progress,
            "progress_message": job.progress_message,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "timeout_seconds": job.timeout_seconds,
            "result": job.result,
            "error": job.error,
            "created_at": _iso(job.created_at),
            "updated_at": _iso(job.updated_at),
            "started_at": _iso(job.started_at),
            "completed_at": _iso(job.completed_at),
            "failed_at": _iso(job.failed_at),
            "next_retry_at": _iso(job.next_retry_at),
            "processing_seconds": job.processing_seconds,
            "is_active": job.id in self._active,
            "queue_position": self._queue_position(job.id),
        }

    # ------------------------------------------------------------------
    # Scheduling / execution
    # ------------------------------------------------------------------

    async def _schedule_tick(self) -> None:
        self.schedule_pending()

    def schedule_pending(self) -> int:
        """מתחיל jobs מראש התור כל עוד יש מקום מתחת ל-cap"""
        if not self._accepting:
            return 0
        started = 0
        while self._queue and len(self._active) < self.max_concurrent:
            _, _, job_id = heapq.heappop(self._queue)
            if job_id not in self._queued_ids:
                continue
            self._queued_ids.discard(job_id)
            task = asyncio.create_task(self._run_job(job_id), name=f"job:{job_id}")
            self._active[job_id] = task
            task.add_done_callback(lambda _t, jid=job_id: self._active.pop(jid, None))
            started += 1
        return started

    async def _run_job(self, job_id: str) -> None:
        set_correlation_id(job_id[:8])
        try:
            await self._execute(job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # כשלון תשתית (DB) - ה-job נשאר במצבו ויחזור ב-recovery
            logger.critical(
                "Job execution infrastructure failure",
                extra_data={"job_id": job_id, "error": str(e)},
                exc_info=True,
            )

    async def _execute(self, job_id: str) -> None:
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job is None or job.status != JobStatus.QUEUED:
                logger.warning(
                    "Skipping job that is no longer queued",
                    extra_data={"job_id": job_id, "status": job.status.value if job else None},
                )
                return

            config = self._job_types.get(job.job_type)
            now = utcnow()
            job.status = JobStatus.RUNNING
            job.started_at = now
            job.last_heartbeat_at = now
            job.next_retry_at = None
            await session.commit()

            payload = dict(job.payload or {})
            context = JobContext(
                self,
                job_id=job.id,
                job_type=job.job_type,
                tenant_id=job.tenant_id,
                options=dict(job.options or {}),
                attempt=job.retry_count,
                progress=job.progress or 0,
            )
            timeout = job.timeout_seconds

        set_tenant_context(context.tenant_id)
        if config is None:
            await self._mark_failed(job_id, str(UnsupportedJobTypeError(context.job_type)))
            return

        logger.info(
            "Job started",
            extra_data={"job_id": job_id, "job_type": context.job_type, "attempt": context.attempt},
        )
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(config.handler(payload, context), timeout=timeout)
        except asyncio.TimeoutError:
            await self._handle_failure(job_id, f"Job timed out after {timeout:g}s")
        except asyncio.CancelledError:
            raise
        except ValidationException as e:
            # קלט לא תקין לא ישתנה בניסיון נוסף - כשלון סופי מיד
            await self._mark_failed(job_id, e.message)
        except Exception as e:
            message = e.message if isinstance(e, AppException) else (str(e) or e.__class__.__name__)
            await self._handle_failure(job_id, message)
        else:
            await self._handle_success(job_id, result, time.monotonic() - started)

    async def _handle_success(self, job_id: str, result: Any, elapsed: float) -> None:
        if result is None:
            result = {}
        elif not isinstance(result, dict):
            result = {"result": result}

        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = result
            job.error = None
            job.completed_at = utcnow()
            job.processing_seconds = round(elapsed, 3)
            await session.commit()
            job_type, tenant_id = job.job_type, job.tenant_id

        self._stats["completed"] += 1
        self._processing_times.append(elapsed)
        logger.info(
            "Job completed",
            extra_data={"job_id": job_id, "job_type": job_type, "processing_seconds": round(elapsed, 3)},
        )
        await self._publish(
            "job.completed",
            {"job_id": job_id, "job_type": job_type, "processing_seconds": round(elapsed, 3)},
            tenant_id,
        )

    async def _handle_failure(self, job_id: str, error: str) -> None:
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job.retry_count >= job.max_retries:
                retry = False
            else:
                retry = True
                job.retry_count += 1
                delay = calculate_backoff_seconds(
                    job.retry_count,
                    base_seconds=self.retry_base_seconds,
                    max_backoff_seconds=self.max_backoff_seconds,
                    factor=self.backoff_factor,
                )
                job.status = JobStatus.RETRYING
                job.error = error[:2000]
                job.next_retry_at = utcnow() + timedelta(seconds=delay)
                await session.commit()
                priority, retry_count, max_retries = job.priority, job.retry_count, job.max_retries

        if not retry:
            await self._mark_failed(job_id, error)
            return

        self._stats["retried"] += 1
        logger.warning(
            "Job failed, retry scheduled",
            extra_data={
                "job_id": job_id,
                "error": error,
                "retry_count": retry_count,
                "max_retries": max_retries,
                "retry_in_seconds": delay,
            },
        )
        if self._accepting:
            self._retry_timers[job_id] = asyncio.create_task(
                self._requeue_after(job_id, priority, delay), name=f"job-retry:{job_id}"
            )

    async def _requeue_after(self, job_id: str, priority: JobPriority, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            async with self._session_factory() as session:
                result = await session.execute(
                    update(SyncJob)
                    .where(SyncJob.id == job_id, SyncJob.status == JobStatus.RETRYING)
                    .values(status=JobStatus.QUEUED, next_retry_at=None, started_at=None, updated_at=utcnow())
                )
                await session.commit()
            if result.rowcount:
                self._push(job_id, priority)
        except SQLAlchemyError as e:
            logger.critical(
                "Failed to requeue job for retry",
                extra_data={"job_id": job_id, "error": str(e)},
                exc_info=True,
            )
        finally:
            if self._retry_timers.get(job_id) is asyncio.current_task():
                self._retry_timers.pop(job_id, None)

    async def _mark_failed(self, job_id: str, error: str) -> None:
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
            job.status = JobStatus.FAILED
            job.error = error[:2000]
            job.failed_at = utcnow()
            job.next_retry_at = None
            await session.commit()
            job_type, tenant_id, retry_count = job.job_type, job.tenant_id, job.retry_count

        self._stats["failed"] += 1
        logger.error(
            "Job failed permanently",
            extra_data={"job_id": job_id, "job_type": job_type, "error": error, "retry_count": retry_count},
        )
        await self._publish(
            "job.failed",
            {"job_id": job_id, "job_type": job_type, "error": error, "retry_count": retry_count},
            tenant_id,
        )

    async def _persist_progress(self, job_id: str, progress: int, message: str | None) -> None:
        values: dict[str, Any] = {"progress": progress, "updated_at": utcnow()}
        if message is not None:
            values["progress_message"] = message[:500]
        async with self._session_factory() as session:
            await session.execute(update(SyncJob).where(SyncJob.id == job_id).values(**values))
            await session.commit()

    async def _publish(self, event_type: str, payload: dict[str, Any], tenant_id: str | None) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(event_type, payload, tenant_id=tenant_id)
        except AppException as e:
            logger.warning(
                "Could not publish job event",
                extra_data={"event_type": event_type, "job_id": payload.get("job_id"), "error": e.message},
            )

    async def heartbeat(self) -> int:
        if not self._active:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncJob)
                .where(SyncJob.id.in_(list(self._active)), SyncJob.status == JobStatus.RUNNING)
                .values(last_heartbeat_at=utcnow())
            )
            await session.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def recover_pending_jobs(self) -> int:
        """queued / running / retrying מה-DB חוזרים לתור לפי created_at"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob)
                .where(SyncJob.status.in_(RECOVERABLE_JOB_STATUSES))
                .order_by(SyncJob.created_at)
            )
            jobs = [
                job
                for job in result.scalars().all()
                if job.id not in self._queued_ids
                and job.id not in self._active
                and job.id not in self._retry_timers
            ]
            for job in jobs:
                job.status = JobStatus.QUEUED
                job.started_at = None
                job.next_retry_at = None
            await session.commit()
            recovered = [(job.id, job.priority) for job in jobs]

        for job_id, priority in recovered:
            self._push(job_id, priority)
        self._stats["recovered"] += len(recovered)
        if recovered:
            logger.info("Recovered pending jobs", extra_data={"count": len(recovered)})
        return len(recovered)

    async def start(self) -> int:
        self._accepting = True
        recovered = await self.recover_pending_jobs()
        for loop in self._loops:
            loop.start()
        return recovered

    async def stop(self) -> None:
        """עצירה מסודרת: לא מתחילים חדשים, ממתינים ל-grace ואז מבטלים"""
        self._accepting = False
        for loop in self._loops:
            await loop.stop()

        timers = list(self._retry_timers.values())
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._retry_timers.clear()

        active = dict(self._active)
        if not active:
            return

        logger.info(
            "Waiting for active jobs before shutdown",
            extra_data={"active": len(active), "grace_seconds": self.shutdown_grace_seconds},
        )
        _, pending = await asyncio.wait(active.values(), timeout=self.shutdown_grace_seconds)
        if not pending:
            return

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for job_id, task in active.items():
            if task in pending:
                await self._mark_failed(job_id, SHUTDOWN_ERROR)

    def get_statistics(self) -> dict[str, Any]:
        times = list(self._processing_times)
        return {
            **self._stats,
            "queued": self.queue_length(),
            "active": len(self._active),
            "waiting_retry": len(self._retry_timers),
            "max_concurrent": self.max_concurrent,
            "average_processing_seconds": round(sum(times) / len(times), 3) if times else 0.0,
            "running": self._accepting,
            "job_types": {
                name: {
                    "timeout_seconds": cfg.timeout_seconds,
                    "max_retries": cfg.max_retries,
                    "priority": cfg.priority.value,
                }
                for name, cfg in sorted(self._job_types.items())
            },
        }

    async def cleanup_old_jobs(self, days: int | None = None) -> int:
        cutoff = utcnow() - timedelta(days=settings.JOB_RETENTION_DAYS if days is None else days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncJob).where(
                    SyncJob.status.in_((JobStatus.COMPLETED, JobStatus.FAILED)),
                    SyncJob.created_at < cutoff,
                )
            )
            await session.commit()
        if result.rowcount:
            logger.info("Old jobs cleaned up", extra_data={"deleted": result.rowcount})
        return result.rowcount
