"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite file per test)
- A fake Bling API and a fully wired SyncRuntime
- Test data factories (tenants, tokens, products, policies)
- Signed webhook helper
"""
# משתני סביבה לפני ייבוא app - הולידטור דורש סוד webhook כש-DEBUG=False
import os
os.environ.setdefault("BLING_WEBHOOK_SECRET", "test-webhook-secret-do-not-use-in-production")
os.environ.setdefault("BLING_CLIENT_ID", "test-client-id")
os.environ.setdefault("BLING_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("SYNC_RUNTIME_ENABLED", "false")

import asyncio
import json
import time
from collections import Counter
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.config import settings
from app.core.exceptions import BlingApiError
from app.core.time_utils import utcnow
from app.db.database import Base
from app.db.models.erp_token import ErpToken
from app.db.models.price_policy import PricePolicy
from app.db.models.product import Product
from app.db.models.tenant_connection import ConnectionStatus, TenantConnection
from app.domain.services.runtime import SyncRuntime, get_runtime, set_runtime
from app.domain.services.webhook_processor import compute_signature
from app.main import app

TEST_ADMIN_API_KEY = "test-admin-api-key"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """
    Create async test database engine.

    קובץ SQLite לכל בדיקה, וכל session מקבל חיבור משלו: הרכיבים פותחים
    sessions במקביל (batch של אירועים, כמה jobs), ו-rollback של session אחד
    על חיבור משותף היה מוחק כתיבות של session אחר.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    """ה-factory שהרכיבים מקבלים (כמו AsyncSessionLocal בפרודקשן)"""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fake Bling API
# ============================================================================

class FakeBlingApi:
    """
    תחליף in-memory ל-BlingApiClient עם אותו ממשק typed.

    failures[method] - רשימת חריגות שנזרקות לפי הסדר לפני תשובה רגילה.
    delay - השהיה לכל קריאה (לבדיקות single-flight).
    """

    def __init__(self) -> None:
        self.products: dict[str, dict[str, Any]] = {}
        self.orders: dict[str, dict[str, Any]] = {}
        self.stock: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: Counter[str] = Counter()
        self.delay = 0.0

    def add_product(self, bling_id: str | int, **fields: Any) -> dict[str, Any]:
        product = {"id": int(bling_id), "nome": f"Produto {bling_id}", "preco": 100.0, **fields}
        self.products[str(bling_id)] = product
        return product

    def add_order(self, bling_id: str | int, **fields: Any) -> dict[str, Any]:
        order = {"id": int(bling_id), "numero": str(bling_id), "situacao": {"valor": "aberto"}, **fields}
        self.orders[str(bling_id)] = order
        return order

    async def _call(self, method: str) -> None:
        self.calls[method] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    async def get_product(self, tenant_id: str, bling_product_id: str | int) -> dict[str, Any]:
        await self._call("get_product")
        try:
            return dict(self.products[str(bling_product_id)])
        except KeyError:
            raise BlingApiError(f"GET /produtos/{bling_product_id} returned status 404", upstream_status=404)

    async def list_products(self, tenant_id: str, page: int = 1, limit: int = 100, **filters: Any):
        await self._call("list_products")
        items = list(self.products.values())
        return [dict(p) for p in items[(page - 1) * limit:page * limit]]

    async def iter_products(self, tenant_id: str, page_size: int = 100, **filters: Any):
        page = 1
        while True:
            products = await self.list_products(tenant_id, page=page, limit=page_size)
            if not products:
                return
            yield products
            if len(products) < page_size:
                return
            page += 1

    async def get_order(self, tenant_id: str, bling_order_id: str | int) -> dict[str, Any]:
        await self._call("get_order")
        try:
            return dict(self.orders[str(bling_order_id)])
        except KeyError:
            raise BlingApiError(f"GET /pedidos/vendas/{bling_order_id} returned status 404", upstream_status=404)

    async def iter_orders(self, tenant_id: str, page_size: int = 100, *, date_from=None, date_to=None):
        await self._call("list_orders")
        items = [dict(o) for o in self.orders.values()]
        for offset in range(0, len(items), page_size):
            yield items[offset:offset + page_size]

    async def get_stock(self, tenant_id: str, bling_product_id: str | int) -> dict[str, Any]:
        await self._call("get_stock")
        return dict(self.stock.get(str(bling_product_id), {}))

    def get_stats(self) -> dict[str, Any]:
        return {"requests": sum(self.calls.values()), "calls": dict(self.calls)}


@pytest.fixture
def fake_bling_api() -> FakeBlingApi:
    return FakeBlingApi()


# ============================================================================
# Runtime / HTTP client
# ============================================================================

@pytest.fixture
async def runtime(session_factory, fake_bling_api) -> AsyncGenerator[SyncRuntime, None]:
    """
    SyncRuntime מלא על ה-DB של הבדיקה. לולאות הרקע לא מופעלות -
    הבדיקות מריצות process_batch / schedule_pending בעצמן.
    """
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )
    sync_runtime = SyncRuntime(session_factory, http_client=http_client, api_client=fake_bling_api)
    set_runtime(sync_runtime)
    yield sync_runtime
    await sync_runtime.stop()
    set_runtime(None)
    await http_client.aclose()


@pytest.fixture(autouse=True)
def admin_api_key():
    """מפתח admin קבוע לבדיקות"""
    with patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield TEST_ADMIN_API_KEY


@pytest.fixture
def admin_headers(admin_api_key) -> dict[str, str]:
    return {"X-Admin-API-Key": admin_api_key}


@pytest.fixture(scope="function")
async def test_client(runtime: SyncRuntime):
    """Create test client bound to the test runtime"""
    from httpx import AsyncClient, ASGITransport

    app.dependency_overrides[get_runtime] = lambda: runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def tenant_factory(session_factory):
    """Factory for connected Bling tenants"""
    async def _create_tenant(
        tenant_id: str = "tenant-1",
        bling_company_id: str | None = None,
        status: ConnectionStatus = ConnectionStatus.CONNECTED,
        is_active: bool = True,
    ) -> TenantConnection:
        tenant = TenantConnection(
            tenant_id=tenant_id,
            bling_company_id=bling_company_id,
            status=status.value,
            is_active=is_active,
        )
        async with session_factory() as session:
            session.add(tenant)
            await session.commit()
        return tenant

    return _create_tenant


@pytest.fixture
def token_factory(session_factory):
    """Factory for stored Bling tokens; expires_in שלילי = טוקן שפג"""
    async def _create_token(
        tenant_id: str = "tenant-1",
        access_token: str = "access-old",
        refresh_token: str = "refresh-1",
        expires_in: int = 3600,
        is_active: bool = True,
    ) -> ErpToken:
        token = ErpToken(
            tenant_id=tenant_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            is_active=is_active,
        )
        async with session_factory() as session:
            session.add(token)
            await session.commit()
        return token

    return _create_token


@pytest.fixture
def product_factory(session_factory):
    """Factory for local catalog products"""
    async def _create_product(
        tenant_id: str = "tenant-1",
        bling_product_id: str | None = "1001",
        price: str | Decimal = "100.00",
        name: str = "Produto Teste",
        category_id: int | None = None,
        stock_quantity: int | None = None,
        is_active: bool = True,
    ) -> Product:
        product = Product(
            tenant_id=tenant_id,
            bling_product_id=bling_product_id,
            name=name,
            price=Decimal(str(price)),
            category_id=category_id,
            stock_quantity=stock_quantity,
            is_active=is_active,
        )
        async with session_factory() as session:
            session.add(product)
            await session.commit()
        return product

    return _create_product


@pytest.fixture
def policy_factory(session_factory):
    """Factory for price policies"""
    async def _create_policy(
        policy_type: str,
        value: str | Decimal,
        *,
        tenant_id: str = "tenant-1",
        product_id: int | None = None,
        category_id: int | None = None,
        priority: int = 0,
        is_active: bool = True,
    ) -> PricePolicy:
        policy = PricePolicy(
            tenant_id=tenant_id,
            scope="product" if product_id is not None else "category",
            product_id=product_id,
            category_id=category_id,
            policy_type=policy_type,
            value=Decimal(str(value)),
            priority=priority,
            is_active=is_active,
        )
        async with session_factory() as session:
            session.add(policy)
            await session.commit()
        return policy

    return _create_policy


# ============================================================================
# Webhooks
# ============================================================================

@pytest.fixture
def sign_webhook():
    """מחזיר (raw_body, headers) חתומים כמו ש-Bling שולח"""
    def _sign(
        body: dict[str, Any] | bytes,
        *,
        secret: str | None = None,
        timestamp: float | None = None,
        delivery_id: str | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        raw = body if isinstance(body, bytes) else json.dumps(body).encode()
        signature = compute_signature(raw, secret if secret is not None else settings.BLING_WEBHOOK_SECRET)
        headers = {
            "Content-Type": "application/json",
            "X-Signature": f"sha256={signature}",
            "X-Timestamp": str(int(time.time() if timestamp is None else timestamp)),
        }
        if delivery_id:
            headers["X-Delivery-Id"] = delivery_id
        return raw, headers

    return _sign


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.pings = 0
        self.fail_ping = False

    async def ping(self) -> bool:
        self.pings += 1
        if self.fail_ping:
            raise ConnectionError("redis is down")
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._store[key] = value
        return True

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis(url: str | None = None):
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake
