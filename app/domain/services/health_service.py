"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Redis, Celery broker, Bling API).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של כל התלויות החיצוניות
"""
from typing import Any

import httpx
from sqlalchemy import text

from app.core import redis_client
from app.core.circuit_breaker import get_bling_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"
_ERROR_BLING = "error: bling_unreachable"
_ERROR_BLING_CIRCUIT_OPEN = "error: bling_circuit_open"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        await redis_client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """ping ל-broker של Celery (Redis) - משימות ה-retention תלויות בו."""
    try:
        await redis_client.ping(settings.CELERY_BROKER_URL)
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def _check_bling() -> str:
    """
    זמינות Bling API.

    כל תשובה מתחת ל-500 (כולל 401 בלי טוקן) מעידה שהשירות עונה.
    circuit breaker פתוח מדווח בלי לשלוח בקשה.
    """
    breaker = get_bling_circuit_breaker()
    if breaker.is_open:
        return _ERROR_BLING_CIRCUIT_OPEN
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(settings.BLING_API_URL)
        if response.status_code >= 500:
            logger.warning(
                "Bling API החזיר סטטוס לא תקין",
                extra_data={"status_code": response.status_code},
            )
            return _ERROR_BLING
        return _CHECK_OK
    except httpx.HTTPError as e:
        logger.warning("בדיקת בריאות Bling API נכשלה", extra_data={"error": str(e)})
        return _ERROR_BLING


async def check_readiness() -> dict[str, Any]:
    """
    בדיקת מוכנות - מחזיר status ("healthy" / "degraded") ופירוט לכל תלות
    (db / redis / celery / bling_api: "ok" או "error: ...").
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
        "bling_api": await _check_bling(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("בדיקת מוכנות - המערכת במצב degraded", extra_data=checks)

    return {"status": overall_status, **checks}
