"""
FastAPI Middleware

- Correlation ID לכל בקשה (מ-X-Correlation-ID או חדש)
- לוג בקשות עם מיסוך פרמטרים רגישים
- Rate limit ל-/api/webhooks לפי IP
- טיפול גלובלי בחריגות → תשובת JSON אחידה
"""
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_correlation_id, get_logger, set_correlation_id, set_tenant_context

logger = get_logger(__name__)

# פרמטרי query שלא נכתבים ללוג
_SENSITIVE_PARAMS = {"code", "token", "access_token", "refresh_token", "secret", "api_key"}


def _safe_query_params(request: Request) -> dict[str, str]:
    return {
        key: "****" if key.lower() in _SENSITIVE_PARAMS else value
        for key, value in request.query_params.items()
    }


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        # tenant מבקשה קודמת לא דולף ללוגים של הבקשה הזו
        set_tenant_context(None)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.monotonic()
        path = request.url.path
        logger.debug(
            f"Request started: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "query_params": _safe_query_params(request),
                "client_host": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "duration_ms": round((time.monotonic() - started) * 1000, 1),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        level = "info" if response.status_code < 400 else "warning"
        getattr(logger, level)(
            f"Request completed: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding window לפי IP על /api/webhooks.

    Bling שולח בפרצים אחרי עדכון גורף - החלון נדיב, המטרה היא לעצור הצפה.
    """

    def __init__(self, app: FastAPI, *, max_requests: int = 300, window_seconds: int = 60) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def _allow(self, client_ip: str, now: float) -> bool:
        hits = self._hits[client_ip]
        cutoff = now - self._window_seconds
        while hits and hits[0] < cutoff:
            hits.popleft()
        if len(hits) >= self._max_requests:
            return False
        hits.append(now)
        return True

    def _forget_idle(self) -> None:
        for ip in [ip for ip, hits in self._hits.items() if not hits]:
            del self._hits[ip]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not request.url.path.startswith("/api/webhooks"):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if not self._allow(client_ip, time.monotonic()):
            logger.warning(
                "Webhook rate limit exceeded",
                extra_data={"client_ip": client_ip, "limit": self._max_requests, "window_seconds": self._window_seconds},
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Too many webhook requests",
                        "details": {},
                    }
                },
                headers={"Retry-After": str(self._window_seconds), "X-Correlation-ID": get_correlation_id()},
            )
        if len(self._hits) > 10_000:
            self._forget_idle()
        return await call_next(request)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        },
    )
    headers = {"X-Correlation-ID": get_correlation_id()}
    retry_after = exc.details.get("retry_after_seconds")
    if exc.status_code in (429, 503) and retry_after is not None:
        headers["Retry-After"] = str(int(float(retry_after)) + 1)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={"exception_type": type(exc).__name__, "message": str(exc), "path": request.url.path},
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {},
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()},
    )


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # האחרון שנוסף הוא ה-outermost: CorrelationId → RequestLogging → RateLimit → app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
