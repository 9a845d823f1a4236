"""
בדיקות ל-JobOrchestrator - עדיפויות, cap של מקביליות, retry, ביטול, recovery והתקדמות
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from app.core.exceptions import (
    JobNotCancellableError,
    JobNotFoundError,
    UnsupportedJobTypeError,
    ValidationException,
)
from app.core.time_utils import utcnow
from app.db.models.sync_job import JobPriority, JobStatus, SyncJob
from app.domain.services.job_orchestrator import (
    CANCELLED_ERROR,
    SHUTDOWN_ERROR,
    JobContext,
    JobOrchestrator,
)


class RecordingBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict, str | None]] = []

    async def publish(self, event_type, payload, *, tenant_id=None, priority="normal"):
        self.published.append((event_type, payload, tenant_id))
        return "event-id"

    def types(self) -> list[str]:
        return [event_type for event_type, _, _ in self.published]


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
async def orchestrator(session_factory, bus):
    orch = JobOrchestrator(
        session_factory,
        event_bus=bus,
        max_concurrent=2,
        poll_interval_seconds=0.01,
        retry_base_seconds=0.01,
        backoff_factor=2,
        max_backoff_seconds=0.1,
        shutdown_grace_seconds=0.2,
        heartbeat_interval_seconds=60,
        progress_step=10,
    )
    yield orch
    await orch.stop()


async def wait_for_status(orchestrator: JobOrchestrator, job_id: str, *statuses: str, timeout: float = 5.0) -> dict:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        status = await orchestrator.get_job_status(job_id)
        if status["status"] in statuses:
            return status
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {status['status']}")
        await asyncio.sleep(0.01)


async def drain(orchestrator: JobOrchestrator) -> None:
    """ממתין שה-tasks הפעילים יסיימו (כולל פרסום האירוע אחרי ה-commit)"""
    tasks = orchestrator.active_tasks()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


async def noop_handler(payload, context):
    return {"echo": payload}


class TestEnqueue:

    @pytest.mark.unit
    async def test_enqueue_persists_queued_job(self, orchestrator):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=2)

        info = await orchestrator.enqueue_job("demo", {"a": 1}, tenant_id="tenant-1")

        assert info["status"] == "queued"
        assert info["queue_position"] == 1
        assert info["priority"] == "normal"
        status = await orchestrator.get_job_status(info["job_id"])
        assert status["payload"] == {"a": 1}
        assert status["max_retries"] == 2
        assert status["timeout_seconds"] == 10
        assert status["is_active"] is False

    @pytest.mark.unit
    async def test_unknown_job_type_rejected(self, orchestrator):
        with pytest.raises(UnsupportedJobTypeError):
            await orchestrator.enqueue_job("nope", {})

    @pytest.mark.unit
    async def test_invalid_options_rejected(self, orchestrator):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=2)

        with pytest.raises(ValidationException):
            await orchestrator.enqueue_job("demo", {}, priority="urgent")
        with pytest.raises(ValidationException):
            await orchestrator.enqueue_job("demo", {}, max_retries=-1)
        with pytest.raises(ValidationException):
            await orchestrator.enqueue_job("demo", {}, timeout_seconds=0)

    @pytest.mark.unit
    async def test_queue_position_follows_priority(self, orchestrator):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=0)

        low = await orchestrator.enqueue_job("demo", {}, priority="low")
        high = await orchestrator.enqueue_job("demo", {}, priority="high")

        assert (await orchestrator.get_job_status(high["job_id"]))["queue_position"] == 1
        assert (await orchestrator.get_job_status(low["job_id"]))["queue_position"] == 2

    @pytest.mark.unit
    async def test_schedule_pending_is_noop_before_start(self, orchestrator):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=0)
        await orchestrator.enqueue_job("demo", {})

        assert orchestrator.schedule_pending() == 0
        assert orchestrator.queue_length() == 1


class TestExecution:

    @pytest.mark.unit
    async def test_job_completes_and_publishes(self, orchestrator, bus):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=0)
        info = await orchestrator.enqueue_job("demo", {"x": 1}, tenant_id="tenant-1")

        await orchestrator.start()
        status = await wait_for_status(orchestrator, info["job_id"], "completed")
        await drain(orchestrator)

        assert status["result"] == {"echo": {"x": 1}}
        assert status["progress"] == 100
        assert status["processing_seconds"] is not None
        event_type, payload, tenant_id = bus.published[0]
        assert event_type == "job.completed"
        assert payload["job_id"] == info["job_id"]
        assert tenant_id == "tenant-1"

    @pytest.mark.unit
    async def test_non_dict_result_is_wrapped(self, orchestrator):
        async def handler(payload, context):
            return 42

        orchestrator.register_job_type("demo", handler, timeout_seconds=10, max_retries=0)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()

        status = await wait_for_status(orchestrator, info["job_id"], "completed")
        assert status["result"] == {"result": 42}

    @pytest.mark.unit
    async def test_priority_order_with_single_slot(self, session_factory):
        """high לפני normal לפני low, FIFO בתוך אותה עדיפות"""
        orch = JobOrchestrator(session_factory, max_concurrent=1, poll_interval_seconds=0.01)
        order: list[str] = []

        async def handler(payload, context):
            order.append(payload["name"])

        orch.register_job_type("demo", handler, timeout_seconds=10, max_retries=0)
        jobs = [
            await orch.enqueue_job("demo", {"name": "low"}, priority="low"),
            await orch.enqueue_job("demo", {"name": "normal-1"}),
            await orch.enqueue_job("demo", {"name": "high"}, priority="high"),
            await orch.enqueue_job("demo", {"name": "normal-2"}),
        ]
        try:
            await orch.start()
            for job in jobs:
                await wait_for_status(orch, job["job_id"], "completed")
        finally:
            await orch.stop()

        assert order == ["high", "normal-1", "normal-2", "low"]

    @pytest.mark.unit
    async def test_concurrency_cap(self, orchestrator):
        running = 0
        peak = 0

        async def handler(payload, context):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1

        orchestrator.register_job_type("demo", handler, timeout_seconds=10, max_retries=0)
        jobs = [await orchestrator.enqueue_job("demo", {}) for _ in range(5)]

        await orchestrator.start()
        for job in jobs:
            await wait_for_status(orchestrator, job["job_id"], "completed")

        assert peak == 2

    @pytest.mark.unit
    async def test_failure_is_retried_then_succeeds(self, orchestrator):
        attempts: list[int] = []

        async def flaky(payload, context):
            attempts.append(context.attempt)
            if len(attempts) == 1:
                raise RuntimeError("bling hiccup")
            return {"ok": True}

        orchestrator.register_job_type("demo", flaky, timeout_seconds=10, max_retries=3)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()

        status = await wait_for_status(orchestrator, info["job_id"], "completed")

        assert attempts == [0, 1]
        assert status["retry_count"] == 1
        assert status["error"] is None
        assert orchestrator.get_statistics()["retried"] == 1

    @pytest.mark.unit
    async def test_retries_exhausted_marks_failed(self, orchestrator, bus):
        calls = 0

        async def broken(payload, context):
            nonlocal calls
            calls += 1
            raise RuntimeError("always broken")

        orchestrator.register_job_type("demo", broken, timeout_seconds=10, max_retries=2)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()

        status = await wait_for_status(orchestrator, info["job_id"], "failed")
        await drain(orchestrator)

        assert calls == 3
        assert status["retry_count"] == 2
        assert status["error"] == "always broken"
        assert status["failed_at"] is not None
        assert "job.failed" in bus.types()

    @pytest.mark.unit
    async def test_validation_error_fails_without_retry(self, orchestrator, bus):
        calls = 0

        async def bad_input(payload, context):
            nonlocal calls
            calls += 1
            raise ValidationException("tenant_id is required", field="tenant_id")

        orchestrator.register_job_type("demo", bad_input, timeout_seconds=10, max_retries=3)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()

        status = await wait_for_status(orchestrator, info["job_id"], "failed")
        await drain(orchestrator)
        await asyncio.sleep(0.05)

        assert calls == 1
        assert status["retry_count"] == 0
        assert status["error"] == "tenant_id is required"
        assert orchestrator.get_statistics()["retried"] == 0
        assert "job.failed" in bus.types()

    @pytest.mark.unit
    async def test_retry_sets_backoff_and_retrying_status(self, session_factory):
        orch = JobOrchestrator(
            session_factory, poll_interval_seconds=0.01, retry_base_seconds=30, max_backoff_seconds=3600,
        )

        async def broken(payload, context):
            raise RuntimeError("down")

        orch.register_job_type("demo", broken, timeout_seconds=10, max_retries=3)
        info = await orch.enqueue_job("demo", {})
        try:
            before = utcnow()
            await orch.start()
            status = await wait_for_status(orch, info["job_id"], "retrying")
        finally:
            await orch.stop()

        # retry ראשון: 30 * 2**1
        next_retry = datetime.fromisoformat(status["next_retry_at"])
        assert before + timedelta(seconds=58) <= next_retry <= utcnow() + timedelta(seconds=61)
        assert status["retry_count"] == 1

    @pytest.mark.unit
    async def test_timeout_counts_as_failure(self, orchestrator):
        async def slow(payload, context):
            await asyncio.sleep(5)

        orchestrator.register_job_type("demo", slow, timeout_seconds=0.05, max_retries=0)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()

        status = await wait_for_status(orchestrator, info["job_id"], "failed")
        assert "timed out" in status["error"]


class TestCancel:

    @pytest.mark.unit
    async def test_cancel_queued_job(self, orchestrator):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=0)
        info = await orchestrator.enqueue_job("demo", {})

        cancelled = await orchestrator.cancel_job(info["job_id"])

        assert cancelled["status"] == "failed"
        assert cancelled["error"] == CANCELLED_ERROR
        assert orchestrator.queue_length() == 0

        # job מבוטל לא רץ גם אחרי start
        await orchestrator.start()
        await asyncio.sleep(0.05)
        assert (await orchestrator.get_job_status(info["job_id"]))["status"] == "failed"

    @pytest.mark.unit
    async def test_cancel_finished_job_rejected(self, orchestrator):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=0)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()
        await wait_for_status(orchestrator, info["job_id"], "completed")

        with pytest.raises(JobNotCancellableError):
            await orchestrator.cancel_job(info["job_id"])

    @pytest.mark.unit
    async def test_cancel_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            await orchestrator.cancel_job("missing")


class TestRecoveryAndShutdown:

    @pytest.mark.unit
    async def test_recover_pending_jobs_requeues_unfinished(self, session_factory):
        async with session_factory() as session:
            for job_id, status in [
                ("job-running", JobStatus.RUNNING),
                ("job-retrying", JobStatus.RETRYING),
                ("job-queued", JobStatus.QUEUED),
                ("job-done", JobStatus.COMPLETED),
            ]:
                session.add(SyncJob(
                    id=job_id, job_type="demo", payload={}, options={},
                    priority=JobPriority.NORMAL, status=status, timeout_seconds=10, max_retries=1,
                ))
            await session.commit()

        orch = JobOrchestrator(session_factory)
        orch.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=1)

        recovered = await orch.recover_pending_jobs()

        assert recovered == 3
        assert orch.queue_length() == 3
        assert (await orch.get_job_status("job-running"))["status"] == "queued"
        assert (await orch.get_job_status("job-done"))["status"] == "completed"
        # קריאה שנייה לא מכניסה כפילויות
        assert await orch.recover_pending_jobs() == 0

    @pytest.mark.unit
    async def test_recovered_jobs_run_to_terminal_state(self, session_factory):
        """קריסה באמצע: 5 jobs לא גמורים חוזרים ב-start ומגיעים כל אחד למצב סופי"""
        unfinished = {
            "job-1": JobStatus.RUNNING,
            "job-2": JobStatus.RUNNING,
            "job-3": JobStatus.QUEUED,
            "job-4": JobStatus.RETRYING,
            "job-5": JobStatus.QUEUED,
        }
        async with session_factory() as session:
            for job_id, status in unfinished.items():
                session.add(SyncJob(
                    id=job_id, job_type="demo", payload={"n": job_id}, options={},
                    priority=JobPriority.NORMAL, status=status, timeout_seconds=10, max_retries=1,
                ))
            await session.commit()

        runs: list[str] = []

        async def handler(payload, context):
            runs.append(context.job_id)
            if context.job_id == "job-5":
                raise ValidationException("bad payload")
            return {"ok": True}

        orch = JobOrchestrator(session_factory, max_concurrent=2, poll_interval_seconds=0.01)
        orch.register_job_type("demo", handler, timeout_seconds=10, max_retries=1)
        try:
            assert await orch.start() == 5
            final = {
                job_id: (await wait_for_status(orch, job_id, "completed", "failed"))["status"]
                for job_id in unfinished
            }
        finally:
            await orch.stop()

        assert final == {
            "job-1": "completed",
            "job-2": "completed",
            "job-3": "completed",
            "job-4": "completed",
            "job-5": "failed",
        }
        assert sorted(runs) == sorted(unfinished)

    @pytest.mark.unit
    async def test_stop_marks_overrunning_jobs_failed(self, orchestrator):
        started = asyncio.Event()

        async def stuck(payload, context):
            started.set()
            await asyncio.sleep(10)

        orchestrator.register_job_type("demo", stuck, timeout_seconds=60, max_retries=3)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()
        await asyncio.wait_for(started.wait(), timeout=5)

        await orchestrator.stop()

        status = await orchestrator.get_job_status(info["job_id"])
        assert status["status"] == "failed"
        assert status["error"] == SHUTDOWN_ERROR

    @pytest.mark.unit
    async def test_heartbeat_touches_running_jobs(self, orchestrator):
        release = asyncio.Event()

        async def waiting(payload, context):
            await release.wait()

        orchestrator.register_job_type("demo", waiting, timeout_seconds=60, max_retries=0)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()
        await wait_for_status(orchestrator, info["job_id"], "running")

        assert await orchestrator.heartbeat() == 1
        release.set()
        await wait_for_status(orchestrator, info["job_id"], "completed")


class TestProgressAndQueries:

    @pytest.mark.unit
    async def test_progress_persisted_every_step(self, orchestrator, monkeypatch):
        persisted: list[int] = []

        async def fake_persist(job_id, progress, message):
            persisted.append(progress)

        monkeypatch.setattr(orchestrator, "_persist_progress", fake_persist)
        context = JobContext(
            orchestrator, job_id="j", job_type="demo", tenant_id=None, options={}, attempt=0,
        )

        for percent in (3, 9, 10, 14, 25, 26, 99, 100):
            await context.report_progress(percent)

        assert persisted == [10, 25, 99, 100]
        assert context.progress == 100

    @pytest.mark.unit
    async def test_progress_visible_while_running(self, orchestrator):
        release = asyncio.Event()

        async def handler(payload, context):
            await context.report_progress(40, "halfway-ish")
            await release.wait()

        orchestrator.register_job_type("demo", handler, timeout_seconds=60, max_retries=0)
        info = await orchestrator.enqueue_job("demo", {})
        await orchestrator.start()

        for _ in range(200):
            status = await orchestrator.get_job_status(info["job_id"])
            if status["progress"] == 40:
                break
            await asyncio.sleep(0.01)

        assert status["progress_message"] == "halfway-ish"
        assert status["is_active"] is True
        estimate = await orchestrator.estimate_completion(info["job_id"])
        assert estimate["estimated_remaining_seconds"] is not None
        release.set()

    @pytest.mark.unit
    async def test_estimate_for_queued_job_is_empty(self, orchestrator):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=0)
        info = await orchestrator.enqueue_job("demo", {})

        estimate = await orchestrator.estimate_completion(info["job_id"])

        assert estimate["estimated_completion_at"] is None

    @pytest.mark.unit
    async def test_job_history_filters(self, orchestrator):
        orchestrator.register_job_type("a", noop_handler, timeout_seconds=10, max_retries=0)
        orchestrator.register_job_type("b", noop_handler, timeout_seconds=10, max_retries=0)
        await orchestrator.enqueue_job("a", {}, tenant_id="t1")
        await orchestrator.enqueue_job("b", {}, tenant_id="t1")
        await orchestrator.enqueue_job("a", {}, tenant_id="t2")

        assert len(await orchestrator.get_job_history("t1")) == 2
        assert len(await orchestrator.get_job_history("t1", job_type="a")) == 1
        assert len(await orchestrator.get_job_history(status="queued")) == 3
        with pytest.raises(ValidationException):
            await orchestrator.get_job_history(status="bogus")

    @pytest.mark.unit
    async def test_cleanup_old_jobs_keeps_recent_and_active(self, orchestrator, session_factory):
        old = utcnow() - timedelta(days=30)
        async with session_factory() as session:
            for job_id, status, created in [
                ("old-done", JobStatus.COMPLETED, old),
                ("old-failed", JobStatus.FAILED, old),
                ("old-queued", JobStatus.QUEUED, old),
                ("new-done", JobStatus.COMPLETED, utcnow()),
            ]:
                session.add(SyncJob(
                    id=job_id, job_type="demo", payload={}, options={}, priority=JobPriority.LOW,
                    status=status, timeout_seconds=10, max_retries=0, created_at=created,
                ))
            await session.commit()

        assert await orchestrator.cleanup_old_jobs(7) == 2
        remaining = {job["job_id"] for job in await orchestrator.get_job_history(limit=10)}
        assert remaining == {"old-queued", "new-done"}

    @pytest.mark.unit
    async def test_statistics(self, orchestrator):
        orchestrator.register_job_type("demo", noop_handler, timeout_seconds=10, max_retries=1, priority="high")
        await orchestrator.enqueue_job("demo", {})

        stats = orchestrator.get_statistics()

        assert stats["enqueued"] == 1
        assert stats["queued"] == 1
        assert stats["max_concurrent"] == 2
        assert stats["job_types"]["demo"]["priority"] == "high"
