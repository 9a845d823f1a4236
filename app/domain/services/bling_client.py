"""
Bling API v3 client.

כל הקריאות ל-Bling עוברות כאן:
- rate limit גלובלי (מרווח מינימלי בין תחילת בקשות, לכל ה-tenants יחד)
- retry עם exponential backoff לשגיאות זמניות (timeout, רשת, 5xx, 429)
- 401 → רענון טוקן מתואם אחד וניסיון חוזר מיידי אחד
- circuit breaker ששומר על Bling מהצפה כשהוא למטה
"""
import asyncio
import time
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_bling_circuit_breaker
from app.core.config import settings
from app.core.exceptions import (
    BlingApiError,
    BlingAuthenticationError,
    BlingRateLimitError,
    BlingTransientError,
    ServiceTimeoutError,
)
from app.core.logging import get_logger
from app.core.retry import calculate_backoff_seconds

logger = get_logger(__name__)

# ברירת מחדל כש-429 מגיע בלי Retry-After
DEFAULT_RETRY_AFTER_SECONDS = 60.0


def parse_retry_after(value: str | None, default: float = DEFAULT_RETRY_AFTER_SECONDS) -> float:
    if value is None:
        return default
    try:
        seconds = float(value.strip())
    except ValueError:
        return default
    return max(0.0, seconds)


def _is_breaker_failure(exc: Exception) -> bool:
    """רק שגיאות זמניות פותחות את ה-circuit - 404 של tenant אחד לא אמור לחסום את כולם"""
    return isinstance(exc, (BlingTransientError, ServiceTimeoutError))


class RequestRateLimiter:
    """Global minimum interval between request starts."""

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0
        self.waits = 0

    async def acquire(self) -> None:
        async with self._lock:
            delay = self._next_allowed - self._clock()
            if delay > 0:
                self.waits += 1
                await self._sleep(delay)
            self._next_allowed = self._clock() + self.min_interval_seconds

    def penalize(self, seconds: float) -> None:
        """אחרי 429 - הבקשה הבאה לא תצא לפני Retry-After"""
        self._next_allowed = max(self._next_allowed, self._clock() + seconds)


class BlingOAuthClient:
    """OAuth2 token endpoint של Bling (client credentials ב-Basic auth)"""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> None:
        self._http = http_client
        self._token_url = f"{base_url or settings.BLING_API_URL}/oauth/token"
        self._client_id = settings.BLING_CLIENT_ID if client_id is None else client_id
        self._client_secret = settings.BLING_CLIENT_SECRET if client_secret is None else client_secret

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        try:
            response = await self._http.post(
                self._token_url,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=(self._client_id, self._client_secret),
                headers={"Accept": "1.0"},
            )
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError("bling", settings.BLING_REQUEST_TIMEOUT_SECONDS) from exc
        except httpx.RequestError as exc:
            raise BlingTransientError(f"token endpoint network error: {exc}") from exc

        if response.status_code != 200:
            raise BlingApiError.from_response("token refresh", response)
        return response.json()


class BlingApiClient:
    def __init__(
        self,
        token_provider: Any,
        http_client: httpx.AsyncClient,
        *,
        base_url: str | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        max_retries: int | None = None,
        retry_base_seconds: float | None = None,
        max_backoff_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._tokens = token_provider
        self._http = http_client
        self._base_url = (base_url or settings.BLING_API_URL).rstrip("/")
        self._limiter = rate_limiter or RequestRateLimiter(settings.BLING_MIN_REQUEST_INTERVAL_SECONDS)
        self._breaker = circuit_breaker or get_bling_circuit_breaker()
        self._max_retries = settings.BLING_MAX_RETRIES if max_retries is None else max_retries
        self._retry_base = settings.BLING_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        self._max_backoff = settings.BLING_MAX_BACKOFF_SECONDS if max_backoff_seconds is None else max_backoff_seconds
        self._sleep = sleep
        self._stats = {
            "requests": 0,
            "succeeded": 0,
            "failed": 0,
            "retries": 0,
            "rate_limit_hits": 0,
            "auth_refreshes": 0,
        }

    async def request(
        self,
        tenant_id: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        בקשה מאומתת ל-Bling בשם tenant.

        Raises:
            CircuitBreakerOpenError: ה-circuit פתוח, לא נשלחה בקשה
            BlingTransientError / BlingRateLimitError: נגמרו הניסיונות
            BlingAuthenticationError: 401 גם אחרי רענון
            BlingApiError: 4xx אחר, ללא retry
        """
        try:
            body = await self._breaker.execute(
                self._request_with_retry,
                tenant_id,
                method,
                path,
                params,
                json,
                is_failure=_is_breaker_failure,
            )
        except Exception:
            self._stats["failed"] += 1
            raise
        self._stats["succeeded"] += 1
        return body

    async def _request_with_retry(
        self,
        tenant_id: str,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        operation = f"{method.upper()} {path}"
        token = await self._tokens.get_valid_token(tenant_id)
        auth_retried = False
        attempt = 0

        while True:
            await self._limiter.acquire()
            self._stats["requests"] += 1
            failure: BlingTransientError | ServiceTimeoutError

            try:
                response = await self._http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                )
            except httpx.TimeoutException:
                failure = ServiceTimeoutError("bling", settings.BLING_REQUEST_TIMEOUT_SECONDS)
            except httpx.RequestError as exc:
                failure = BlingTransientError(f"{operation} network error: {exc}")
            else:
                status = response.status_code
                if 200 <= status < 300:
                    return self._parse_body(response)

                if status == 401:
                    if auth_retried:
                        raise BlingAuthenticationError(tenant_id)
                    auth_retried = True
                    self._stats["auth_refreshes"] += 1
                    logger.info(
                        "Bling rejected token, refreshing",
                        extra_data={"tenant_id": tenant_id, "operation": operation},
                    )
                    token = await self._tokens.force_refresh(tenant_id, token)
                    continue

                if status == 429:
                    retry_after = parse_retry_after(response.headers.get("Retry-After"))
                    self._stats["rate_limit_hits"] += 1
                    self._limiter.penalize(retry_after)
                    failure = BlingRateLimitError(f"{operation} rate limited", retry_after)
                elif status >= 500:
                    failure = BlingTransientError.from_response(operation, response)
                else:
                    raise BlingApiError.from_response(operation, response)

            if attempt >= self._max_retries:
                logger.error(
                    "Bling request failed after retries",
                    extra_data={
                        "tenant_id": tenant_id,
                        "operation": operation,
                        "attempts": attempt + 1,
                        "error": failure.message,
                    },
                )
                raise failure

            delay = calculate_backoff_seconds(
                attempt,
                base_seconds=self._retry_base,
                max_backoff_seconds=self._max_backoff,
            )
            attempt += 1
            self._stats["retries"] += 1
            logger.warning(
                "Transient Bling error, retrying",
                extra_data={
                    "tenant_id": tenant_id,
                    "operation": operation,
                    "attempt": attempt,
                    "max_retries": self._max_retries,
                    "backoff_seconds": delay,
                    "error": failure.message,
                },
            )
            await self._sleep(delay)

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        body = response.json()
        if isinstance(body, dict):
            return body
        return {"data": body}

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def list_products(
        self, tenant_id: str, page: int = 1, limit: int = 100, **filters: Any
    ) -> list[dict[str, Any]]:
        body = await self.request(
            tenant_id, "GET", "/produtos", params={"pagina": page, "limite": limit, **filters}
        )
        return body.get("data") or []

    async def get_product(self, tenant_id: str, bling_product_id: str | int) -> dict[str, Any]:
        body = await self.request(tenant_id, "GET", f"/produtos/{bling_product_id}")
        return body.get("data") or {}

    async def iter_products(
        self, tenant_id: str, page_size: int = 100, **filters: Any
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """עמוד אחרי עמוד עד עמוד ריק"""
        page = 1
        while True:
            products = await self.list_products(tenant_id, page=page, limit=page_size, **filters)
            if not products:
                return
            yield products
            if len(products) < page_size:
                return
            page += 1

    async def list_orders(
        self,
        tenant_id: str,
        page: int = 1,
        limit: int = 100,
        *,
        date_from: str | None = None,
        date_to: str | None = None,
        **filters: Any,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"pagina": page, "limite": limit, **filters}
        if date_from:
            params["dataInicial"] = date_from
        if date_to:
            params["dataFinal"] = date_to
        body = await self.request(tenant_id, "GET", "/pedidos/vendas", params=params)
        return body.get("data") or []

    async def iter_orders(
        self,
        tenant_id: str,
        page_size: int = 100,
        *,
        date_from: str | None = None,
        date_to: str | None = None,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        page = 1
        while True:
            orders = await self.list_orders(
                tenant_id, page=page, limit=page_size, date_from=date_from, date_to=date_to
            )
            if not orders:
                return
            yield orders
            if len(orders) < page_size:
                return
            page += 1

    async def get_order(self, tenant_id: str, bling_order_id: str | int) -> dict[str, Any]:
        body = await self.request(tenant_id, "GET", f"/pedidos/vendas/{bling_order_id}")
        return body.get("data") or {}

    async def get_stock(self, tenant_id: str, bling_product_id: str | int) -> dict[str, Any]:
        body = await self.request(
            tenant_id, "GET", "/estoques/saldos", params={"idsProdutos[]": bling_product_id}
        )
        data = body.get("data") or []
        if isinstance(data, list):
            return data[0] if data else {}
        return data

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "rate_limiter_waits": self._limiter.waits,
            "min_request_interval_seconds": self._limiter.min_interval_seconds,
            "circuit_breaker": self._breaker.snapshot(),
        }
