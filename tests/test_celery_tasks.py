"""
בדיקות ל-Celery Tasks - app/workers/tasks.py

מכסה:
- ניקוי jobs / אירועים / רשומות webhook / היסטוריית מחירים ישנים
- שמירת רשומות שעדיין רלוונטיות (פעילות, failed, טריות)
- לוח הזמנים של beat
- ניהול event loop ב-Celery
"""
import asyncio
from contextlib import asynccontextmanager, contextmanager
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.time_utils import utcnow
from app.db.models.price_history import PriceHistory
from app.db.models.sync_event import EventStatus, SyncEvent
from app.db.models.sync_job import JobStatus, SyncJob
from app.db.models.webhook_record import WebhookRecord, WebhookStatus
from app.workers import tasks
from app.workers.celery_app import celery_app


@contextmanager
def _patch_run_async_for_test():
    """
    הטאסקים של Celery הם sync ומשתמשים ב-run_async() שיוצר event loop חדש.
    בבדיקות async כבר רץ event loop - לכן מריצים את ה-coroutine ב-loop
    חדש בתוך thread נפרד.
    """
    import concurrent.futures

    def _test_run_async(coro):
        def _run_in_thread():
            new_loop = asyncio.new_event_loop()
            try:
                return new_loop.run_until_complete(coro)
            finally:
                new_loop.close()

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(_run_in_thread).result(timeout=30)

    with patch("app.workers.tasks.run_async", side_effect=_test_run_async):
        yield


@pytest.fixture
def task_db(async_engine):
    """get_task_session על אותו קובץ DB של הבדיקה, עם engine חדש ב-loop של ה-task"""
    url = async_engine.url

    @asynccontextmanager
    async def _get_task_session():
        engine = create_async_engine(url, poolclass=NullPool)
        maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with maker() as session:
            yield session
        await engine.dispose()

    with patch("app.workers.tasks.get_task_session", _get_task_session), _patch_run_async_for_test():
        yield


async def count_rows(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def add_all(session_factory, rows) -> None:
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()


# ============================================================================
# Retention
# ============================================================================

class TestCleanupTasks:

    @pytest.mark.integration
    async def test_cleanup_old_jobs_keeps_active_and_recent(self, session_factory, task_db):
        old = utcnow() - timedelta(days=30)

        def job(job_id, status, created_at):
            return SyncJob(id=job_id, job_type="cleanup", status=status, timeout_seconds=60, created_at=created_at)

        await add_all(session_factory, [
            job("old-done", JobStatus.COMPLETED, old),
            job("old-failed", JobStatus.FAILED, old),
            job("old-queued", JobStatus.QUEUED, old),
            job("new-done", JobStatus.COMPLETED, utcnow()),
        ])

        result = tasks.cleanup_old_jobs(7)

        assert result == {"deleted": 2}
        async with session_factory() as session:
            remaining = set((await session.execute(select(SyncJob.id))).scalars())
        assert remaining == {"old-queued", "new-done"}

    @pytest.mark.integration
    async def test_cleanup_old_events_only_completed(self, session_factory, task_db):
        old = utcnow() - timedelta(days=30)
        await add_all(session_factory, [
            SyncEvent(id="e1", event_type="bling.product.updated", status=EventStatus.COMPLETED, created_at=old),
            SyncEvent(id="e2", event_type="bling.product.updated", status=EventStatus.DEAD_LETTERED, created_at=old),
            SyncEvent(id="e3", event_type="bling.product.updated", status=EventStatus.COMPLETED),
        ])

        assert tasks.cleanup_old_events(7) == {"deleted": 1}
        assert await count_rows(session_factory, SyncEvent) == 2

    @pytest.mark.integration
    async def test_cleanup_webhook_records_keeps_failed_for_audit(self, session_factory, task_db):
        old = utcnow() - timedelta(days=60)
        await add_all(session_factory, [
            WebhookRecord(idempotency_key="a", status=WebhookStatus.PROCESSED.value, received_at=old),
            WebhookRecord(idempotency_key="b", status=WebhookStatus.FAILED.value, received_at=old),
            WebhookRecord(idempotency_key="c", status=WebhookStatus.PROCESSED.value),
        ])

        assert tasks.cleanup_old_webhook_records() == {"deleted": 1}
        assert await count_rows(session_factory, WebhookRecord) == 2

    @pytest.mark.integration
    async def test_cleanup_old_price_history(self, session_factory, task_db):
        await add_all(session_factory, [
            PriceHistory(
                tenant_id="tenant-1", product_id=1, new_price=Decimal("10.00"),
                created_at=utcnow() - timedelta(days=200),
            ),
            PriceHistory(tenant_id="tenant-1", product_id=1, new_price=Decimal("11.00")),
        ])

        assert tasks.cleanup_old_price_history() == {"deleted": 1}
        assert await count_rows(session_factory, PriceHistory) == 1

    @pytest.mark.integration
    async def test_nothing_to_clean(self, session_factory, task_db):
        assert tasks.cleanup_old_jobs() == {"deleted": 0}
        assert tasks.cleanup_old_events() == {"deleted": 0}


# ============================================================================
# Beat / event loop
# ============================================================================

class TestCeleryConfiguration:

    @pytest.mark.unit
    def test_beat_schedule_points_at_registered_tasks(self):
        schedule = celery_app.conf.beat_schedule

        assert len(schedule) == 4
        for entry in schedule.values():
            assert entry["task"] in celery_app.tasks

    @pytest.mark.unit
    def test_run_async_closes_its_loop(self):
        async def _work():
            return asyncio.get_running_loop()

        loop = tasks.run_async(_work())

        assert loop.is_closed()

    @pytest.mark.unit
    def test_event_loop_cancels_leftover_tasks(self):
        leftovers = []

        with tasks.get_event_loop() as loop:
            leftovers.append(loop.create_task(asyncio.sleep(60)))

        assert leftovers[0].cancelled()
