"""
Bling Sync Service - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base
from app.domain.services.runtime import SyncRuntime, get_runtime, set_runtime

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)

_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "קליטת webhooks מ-Bling (חתימת HMAC)."},
    {"name": "Jobs", "description": "jobs ארוכים: סנכרון מלא, ייבוא, דוחות, ניקוי."},
    {"name": "Events", "description": "סטטיסטיקות bus ו-dead letters."},
    {"name": "Prices", "description": "סנכרון מחירים, עריכה ידנית והיסטוריה."},
    {"name": "Admin", "description": "סטטיסטיקות, טוקנים ו-circuit breakers."},
    {"name": "Health", "description": "liveness / readiness."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="שירות סנכרון בין הפלטפורמה ל-Bling ERP: טוקנים, jobs, אירועים, webhooks ומחירים.",
    openapi_tags=_OPENAPI_TAGS,
)

setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    runtime = SyncRuntime()
    set_runtime(runtime)
    if settings.SYNC_RUNTIME_ENABLED:
        await runtime.start()
    else:
        logger.warning("SYNC_RUNTIME_ENABLED=false - background loops are not running")


@app.on_event("shutdown")
async def shutdown() -> None:
    logger.info("Shutting down application")
    await get_runtime().stop()
    set_runtime(None)

    from app.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["Health"], summary="בדיקת חיוּת (Liveness Probe)")
async def health_check() -> dict[str, str]:
    """התהליך חי ומגיב. לא בודק תלויות, כדי שתקלה ב-DB לא תגרום ל-restart."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    tags=["Health"],
    summary="בדיקת מוכנות (Readiness Probe)",
    responses={
        200: {"description": "כל התלויות תקינות"},
        503: {"description": "לפחות תלות אחת לא זמינה"},
    },
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
