"""
בדיקות ל-TokenRefreshCoordinator - רענון יחיד תחת עומס, 401, ביטול ורענון מוקדם
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    BlingApiError,
    TokenNotFoundError,
    TokenRefreshError,
    TokenRefreshTimeoutError,
)
from app.core.time_utils import utcnow
from app.db.models.erp_token import ErpToken
from app.domain.services.token_coordinator import TokenRefreshCoordinator


class FakeRefresher:
    """מחזיר טוקנים ממוספרים ומונה קריאות"""

    def __init__(self, delay: float = 0.0) -> None:
        self.calls: list[str] = []
        self.delay = delay
        self.error: Exception | None = None
        self.omit_refresh_token = False

    async def refresh_access_token(self, refresh_token: str) -> dict:
        self.calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        data = {"access_token": f"access-{n}", "expires_in": 21600, "token_type": "Bearer"}
        if not self.omit_refresh_token:
            data["refresh_token"] = f"refresh-{n + 1}"
        return data


@pytest.fixture
def refresher() -> FakeRefresher:
    return FakeRefresher(delay=0.05)


@pytest.fixture
def coordinator(session_factory, refresher) -> TokenRefreshCoordinator:
    return TokenRefreshCoordinator(
        session_factory,
        refresher,
        expiry_buffer_seconds=300,
        refresh_wait_seconds=5,
        cache_ttl_seconds=3600,
        cache_max_size=100,
    )


async def _stored(session_factory, tenant_id: str = "tenant-1") -> ErpToken:
    async with session_factory() as session:
        result = await session.execute(select(ErpToken).where(ErpToken.tenant_id == tenant_id))
        return result.scalar_one()


class TestGetValidToken:

    @pytest.mark.unit
    async def test_fresh_token_is_returned_without_refresh(self, coordinator, refresher, token_factory):
        await token_factory(access_token="access-ok", expires_in=3600)

        assert await coordinator.get_valid_token("tenant-1") == "access-ok"
        assert refresher.calls == []

    @pytest.mark.unit
    async def test_second_call_is_served_from_cache(self, coordinator, token_factory):
        await token_factory(access_token="access-ok", expires_in=3600)

        await coordinator.get_valid_token("tenant-1")
        await coordinator.get_valid_token("tenant-1")

        stats = coordinator.get_stats()
        assert stats["db_loads"] == 1
        assert stats["cache"]["hits"] == 1

    @pytest.mark.unit
    async def test_token_inside_buffer_is_refreshed(self, coordinator, refresher, token_factory, session_factory):
        """טוקן שפג בעוד פחות מ-5 דקות נחשב פג ומרוענן"""
        await token_factory(access_token="access-old", refresh_token="refresh-1", expires_in=120)

        token = await coordinator.get_valid_token("tenant-1")

        assert token == "access-1"
        assert refresher.calls == ["refresh-1"]
        record = await _stored(session_factory)
        assert record.access_token == "access-1"
        assert record.refresh_token == "refresh-2"
        assert record.expires_at > utcnow() + timedelta(hours=5)

    @pytest.mark.unit
    async def test_concurrent_callers_trigger_single_refresh(self, coordinator, refresher, token_factory):
        """20 קריאות מקבילות על טוקן שפג → רענון אחד, כולם מקבלים את אותו טוקן"""
        await token_factory(expires_in=-60)

        tokens = await asyncio.gather(*(coordinator.get_valid_token("tenant-1") for _ in range(20)))

        assert len(refresher.calls) == 1
        assert set(tokens) == {"access-1"}
        assert coordinator.get_stats()["refreshes"] == 1
        assert coordinator.get_stats()["lock_waits"] >= 1

    @pytest.mark.unit
    async def test_tenants_refresh_independently(self, coordinator, refresher, token_factory):
        await token_factory(tenant_id="tenant-a", refresh_token="refresh-a", expires_in=-60)
        await token_factory(tenant_id="tenant-b", refresh_token="refresh-b", expires_in=-60)

        await asyncio.gather(
            coordinator.get_valid_token("tenant-a"),
            coordinator.get_valid_token("tenant-b"),
        )

        assert sorted(refresher.calls) == ["refresh-a", "refresh-b"]

    @pytest.mark.unit
    async def test_missing_token_raises_not_found(self, coordinator):
        with pytest.raises(TokenNotFoundError):
            await coordinator.get_valid_token("unknown")

    @pytest.mark.unit
    async def test_inactive_token_is_not_used(self, coordinator, token_factory):
        await token_factory(is_active=False)

        with pytest.raises(TokenNotFoundError):
            await coordinator.get_valid_token("tenant-1")

    @pytest.mark.unit
    async def test_refresh_failure_is_wrapped_and_not_cached(self, coordinator, refresher, token_factory):
        await token_factory(expires_in=-60)
        refresher.error = BlingApiError("POST /oauth/token returned status 400", upstream_status=400)

        with pytest.raises(TokenRefreshError):
            await coordinator.get_valid_token("tenant-1")

        assert coordinator.get_stats()["refresh_failures"] == 1
        assert coordinator.get_stats()["cache"]["size"] == 0

        # הכשלון לא נשמר - הקריאה הבאה מנסה שוב
        refresher.error = None
        assert await coordinator.get_valid_token("tenant-1") == "access-2"

    @pytest.mark.unit
    async def test_lock_wait_is_bounded(self, session_factory, token_factory):
        slow = FakeRefresher(delay=0.5)
        coordinator = TokenRefreshCoordinator(
            session_factory, slow, expiry_buffer_seconds=300, refresh_wait_seconds=0.05,
        )
        await token_factory(expires_in=-60)

        results = await asyncio.gather(
            coordinator.get_valid_token("tenant-1"),
            coordinator.get_valid_token("tenant-1"),
            return_exceptions=True,
        )

        assert results[0] == "access-1"
        assert isinstance(results[1], TokenRefreshTimeoutError)
        assert coordinator.get_stats()["lock_timeouts"] == 1


class TestForceRefresh:

    @pytest.mark.unit
    async def test_rejected_token_is_refreshed(self, coordinator, refresher, token_factory):
        await token_factory(access_token="access-old", expires_in=3600)

        token = await coordinator.force_refresh("tenant-1", "access-old")

        assert token == "access-1"
        assert len(refresher.calls) == 1

    @pytest.mark.unit
    async def test_parallel_401s_refresh_once(self, coordinator, refresher, token_factory):
        """כמה קוראים שקיבלו 401 על אותו טוקן - רק הראשון מרענן"""
        await token_factory(access_token="access-old", expires_in=3600)

        tokens = await asyncio.gather(
            *(coordinator.force_refresh("tenant-1", "access-old") for _ in range(5))
        )

        assert len(refresher.calls) == 1
        assert set(tokens) == {"access-1"}
        assert coordinator.get_stats()["forced_refreshes"] == 5


class TestStoreAndRevoke:

    @pytest.mark.unit
    async def test_store_keeps_previous_refresh_token(self, coordinator, token_factory, session_factory):
        await token_factory(refresh_token="refresh-keep")

        await coordinator.store_token("tenant-1", {"access_token": "access-new", "expires_in": 600})

        record = await _stored(session_factory)
        assert record.access_token == "access-new"
        assert record.refresh_token == "refresh-keep"

    @pytest.mark.unit
    async def test_store_creates_record_with_default_expiry(self, coordinator, session_factory):
        await coordinator.store_token(
            "tenant-new", {"access_token": "a", "refresh_token": "r"}
        )

        record = await _stored(session_factory, "tenant-new")
        assert utcnow() + timedelta(minutes=59) < record.expires_at <= utcnow() + timedelta(hours=1)
        assert await coordinator.get_valid_token("tenant-new") == "a"

    @pytest.mark.unit
    async def test_store_requires_access_token(self, coordinator):
        with pytest.raises(TokenRefreshError):
            await coordinator.store_token("tenant-1", {"refresh_token": "r"})

    @pytest.mark.unit
    async def test_store_requires_some_refresh_token(self, coordinator):
        with pytest.raises(TokenRefreshError):
            await coordinator.store_token("tenant-1", {"access_token": "a"})

    @pytest.mark.unit
    async def test_revoke_deactivates_and_clears_cache(self, coordinator, token_factory):
        await token_factory(access_token="access-ok")
        await coordinator.get_valid_token("tenant-1")

        assert await coordinator.revoke_token("tenant-1") is True
        assert await coordinator.revoke_token("tenant-1") is False

        with pytest.raises(TokenNotFoundError):
            await coordinator.get_valid_token("tenant-1")


class TestMaintenance:

    @pytest.mark.unit
    async def test_proactive_refresh_only_touches_expiring_tokens(self, coordinator, refresher, token_factory):
        await token_factory(tenant_id="soon", refresh_token="refresh-soon", expires_in=400)
        await token_factory(tenant_id="later", refresh_token="refresh-later", expires_in=7200)

        summary = await coordinator.proactive_refresh()

        assert summary == {"candidates": 1, "refreshed": 1, "skipped": 0, "failed": 0}
        assert refresher.calls == ["refresh-soon"]

    @pytest.mark.unit
    async def test_proactive_refresh_counts_failures(self, coordinator, refresher, token_factory):
        await token_factory(expires_in=-10)
        refresher.error = RuntimeError("bling down")

        summary = await coordinator.proactive_refresh()

        assert summary["failed"] == 1
        assert summary["refreshed"] == 0

    @pytest.mark.unit
    async def test_tokens_status(self, coordinator, token_factory):
        await token_factory(tenant_id="a", expires_in=7200)
        await token_factory(tenant_id="b", expires_in=120)
        await token_factory(tenant_id="c", expires_in=-120)

        statuses = {s["tenant_id"]: s["status"] for s in await coordinator.get_tokens_status()}

        assert statuses == {"a": "valid", "b": "expiring_soon", "c": "expired"}

    @pytest.mark.unit
    async def test_cleanup_cache_drops_expired_tokens(self, coordinator):
        coordinator._cache_token("tenant-x", "stale", utcnow() - timedelta(seconds=1))
        coordinator._cache_token("tenant-y", "fresh", utcnow() + timedelta(hours=1))

        assert coordinator.cleanup_cache() == 1
        assert coordinator.get_stats()["cache"]["size"] == 1
