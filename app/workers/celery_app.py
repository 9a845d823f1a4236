"""
Celery Application Configuration

רק משימות retention של ה-DB רצות ב-workers; לולאות הסנכרון רצות בתהליך ה-API.
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "bling_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="America/Sao_Paulo",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# ניקוי יומי בשעות השקטות, מפוזר כדי לא להעמיס את ה-DB בבת אחת
celery_app.conf.beat_schedule = {
    "cleanup-old-jobs-daily": {
        "task": "app.workers.tasks.cleanup_old_jobs",
        "schedule": crontab(hour="3", minute="0"),
    },
    "cleanup-old-events-daily": {
        "task": "app.workers.tasks.cleanup_old_events",
        "schedule": crontab(hour="3", minute="15"),
    },
    "cleanup-old-webhook-records-daily": {
        "task": "app.workers.tasks.cleanup_old_webhook_records",
        "schedule": crontab(hour="3", minute="30"),
    },
    "cleanup-old-price-history-daily": {
        "task": "app.workers.tasks.cleanup_old_price_history",
        "schedule": crontab(hour="3", minute="45"),
    },
}
