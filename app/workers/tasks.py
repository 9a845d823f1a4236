"""
Celery Tasks - retention יומי לטבלאות הסנכרון.

כל task פותח session משלו דרך get_task_session() ומריץ את אותה לוגיקת
ניקוי שהרכיבים חושפים, כך שה-cutoff וה-statuses מוגדרים במקום אחד.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, contextmanager
from typing import TYPE_CHECKING, AsyncIterator

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    event loop חדש לכל task, עם ניקוי מלא בסוף - מונע דליפת משאבים
    בין הרצות באותו worker.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def _bound_session_factory(db: AsyncSession):
    """session factory שמחזיר תמיד את ה-session של ה-task"""

    @asynccontextmanager
    async def _factory() -> AsyncIterator[AsyncSession]:
        yield db

    return _factory


@celery_app.task(name="app.workers.tasks.cleanup_old_jobs")
def cleanup_old_jobs(days: int | None = None):
    """מחיקת jobs שהסתיימו (completed / failed) לפני JOB_RETENTION_DAYS"""
    from app.domain.services.job_orchestrator import JobOrchestrator

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await JobOrchestrator(_bound_session_factory(db)).cleanup_old_jobs(days)
        logger.info("Cleaned up old jobs", extra_data={"deleted": deleted, "cutoff_days": days})
        return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_old_events")
def cleanup_old_events(days: int | None = None):
    """מחיקת אירועים שהושלמו לפני EVENT_RETENTION_DAYS"""
    from app.domain.services.event_bus import EventBus

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await EventBus(_bound_session_factory(db)).cleanup_old_events(days)
        logger.info("Cleaned up old events", extra_data={"deleted": deleted, "cutoff_days": days})
        return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_records")
def cleanup_old_webhook_records(days: int | None = None):
    """מחיקת רשומות webhook שעובדו לפני WEBHOOK_RETENTION_DAYS (failed נשמרות ל-audit)"""
    from app.domain.services.webhook_processor import WebhookProcessor

    async def _cleanup():
        async with get_task_session() as db:
            processor = WebhookProcessor(_bound_session_factory(db), catalog=None, event_bus=None)
            deleted = await processor.cleanup_old_records(days)
        logger.info("Cleaned up old webhook records", extra_data={"deleted": deleted, "cutoff_days": days})
        return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_old_price_history")
def cleanup_old_price_history(days: int | None = None):
    """מחיקת היסטוריית מחירים לפני PRICE_HISTORY_RETENTION_DAYS"""
    from app.domain.services.price_sync_service import PriceSyncEngine

    async def _cleanup():
        async with get_task_session() as db:
            engine = PriceSyncEngine(_bound_session_factory(db), api_client=None)
            deleted = await engine.cleanup_old_price_history(days)
        logger.info("Cleaned up old price history", extra_data={"deleted": deleted, "cutoff_days": days})
        return {"deleted": deleted}

    return run_async(_cleanup())
