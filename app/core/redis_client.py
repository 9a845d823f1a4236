"""
Redis clients - pool אחד לכל URL.

REDIS_URL הוא ה-Redis הכללי של השירות, CELERY_BROKER_URL הוא ה-broker של
משימות ה-retention. בדיקת המוכנות עושה ping לשניהם דרך כאן, כך שכל בדיקה
משתמשת באותו pool ולא פותח חיבור חדש.
"""
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

REDIS_CONNECT_TIMEOUT_SECONDS = 2.0

_clients: dict[str, aioredis.Redis] = {}


def mask_redis_url(url: str) -> str:
    """redis://:secret@host:6379/1 → redis://:****@host:6379/1"""
    try:
        password = urlparse(url).password
    except ValueError:
        return "redis://****"
    if password:
        return url.replace(f":{password}@", ":****@")
    return url


async def get_redis(url: str | None = None) -> aioredis.Redis:
    """client משותף ל-URL (ברירת מחדל REDIS_URL). יצירת ה-client לא פותחת חיבור."""
    url = url or settings.REDIS_URL
    client = _clients.get(url)
    if client is None:
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
        )
        _clients[url] = client
        logger.info("Redis client created", extra_data={"url": mask_redis_url(url)})
    return client


async def ping(url: str | None = None) -> bool:
    client = await get_redis(url)
    return bool(await client.ping())


async def close_redis() -> None:
    """סגירת כל ה-pools - נקרא ב-shutdown של האפליקציה"""
    while _clients:
        url, client = _clients.popitem()
        await client.aclose()
        logger.info("Redis connection closed", extra_data={"url": mask_redis_url(url)})
