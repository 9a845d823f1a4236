"""
Token Refresh Coordinator - טוקן Bling תקף לכל tenant, רענון אחד בלבד בכל פעם.

זרימה:
1. cache בזיכרון (מחוץ ל-buffer של 5 דקות לפני תפוגה) → מוחזר מיד
2. אחרת - כניסה לקטע single-flight של ה-tenant (asyncio.Lock, המתנה חסומה ל-10 שניות)
3. בתוך הקטע: בדיקה חוזרת של ה-cache (ייתכן שמישהו כבר רענן), טעינת הרשומה מה-DB,
   ורענון מול Bling רק אם עדיין בתוך ה-buffer
4. כשלון ברענון → מחיקת ה-cache והעברת השגיאה לקורא

ה-cache הוא עותק נגזר בלבד: איבוד שלו גורם ל-cache miss, לעולם לא לטוקן שגוי.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Protocol

from sqlalchemy import select, update

from app.core.bounded_cache import BoundedTTLCache
from app.core.config import settings
from app.core.exceptions import (
    AppException,
    TokenNotFoundError,
    TokenRefreshError,
    TokenRefreshTimeoutError,
)
from app.core.logging import get_logger
from app.core.periodic import PeriodicTask
from app.core.time_utils import utcnow
from app.db.database import SessionFactory
from app.db.models.erp_token import ErpToken

logger = get_logger(__name__)


class TokenRefresher(Protocol):
    def refresh_access_token(self, refresh_token: str) -> Awaitable[dict[str, Any]]: ...


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires_at: datetime


class _TenantSection:
    """Lock של tenant + מונה משתמשים, כדי למחוק את הרשומה כשאף אחד לא מחכה"""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class TokenRefreshCoordinator:
    def __init__(
        self,
        session_factory: SessionFactory,
        refresher: TokenRefresher,
        *,
        expiry_buffer_seconds: int | None = None,
        refresh_wait_seconds: float | None = None,
        cache_ttl_seconds: int | None = None,
        cache_max_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._refresher = refresher
        self.expiry_buffer = timedelta(
            seconds=settings.TOKEN_EXPIRY_BUFFER_SECONDS if expiry_buffer_seconds is None else expiry_buffer_seconds
        )
        self.refresh_wait_seconds = (
            settings.TOKEN_REFRESH_WAIT_SECONDS if refresh_wait_seconds is None else refresh_wait_seconds
        )
        self._cache: BoundedTTLCache[str, CachedToken] = BoundedTTLCache(
            max_size=cache_max_size or settings.TOKEN_CACHE_MAX_SIZE,
            ttl_seconds=cache_ttl_seconds or settings.TOKEN_CACHE_TTL_SECONDS,
        )
        self._sections: dict[str, _TenantSection] = {}
        self._stats = {
            "refreshes": 0,
            "refresh_failures": 0,
            "forced_refreshes": 0,
            "lock_waits": 0,
            "lock_timeouts": 0,
            "db_loads": 0,
        }
        self._loops = [
            PeriodicTask(
                "token-proactive-refresh",
                settings.TOKEN_PROACTIVE_REFRESH_INTERVAL_SECONDS,
                self.proactive_refresh,
            ),
            PeriodicTask(
                "token-cache-cleanup",
                settings.TOKEN_CLEANUP_INTERVAL_SECONDS,
                self._cleanup_tick,
            ),
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_valid_token(self, tenant_id: str) -> str:
        """מחזיר access token תקף ל-tenant, מרענן פעם אחת בלבד גם תחת קריאות מקבילות"""
        cached = self._cache.get(tenant_id)
        if cached is not None and self._is_fresh(cached.expires_at):
            return cached.access_token

        async with self._tenant_section(tenant_id):
            # בדיקה חוזרת אחרי נעילה - ייתכן שקורא מקביל כבר רענן
            cached = self._cache.get(tenant_id, count=False)
            if cached is not None and self._is_fresh(cached.expires_at):
                return cached.access_token

            record = await self._load_record(tenant_id)
            if self._is_fresh(record.expires_at):
                self._cache_token(tenant_id, record.access_token, record.expires_at)
                return record.access_token

            return await self._refresh_locked(tenant_id, record.refresh_token, reason="expired")

    async def force_refresh(self, tenant_id: str, stale_token: str) -> str:
        """
        רענון אחרי 401 מ-Bling.

        אם הטוקן השמור כבר שונה מזה שנדחה - מישהו רענן בינתיים ומחזירים אותו
        (כך 20 תשובות 401 מקבילות גורמות לרענון אחד).
        """
        self._stats["forced_refreshes"] += 1
        async with self._tenant_section(tenant_id):
            record = await self._load_record(tenant_id)
            if record.access_token != stale_token and self._is_fresh(record.expires_at):
                self._cache_token(tenant_id, record.access_token, record.expires_at)
                return record.access_token

            self._cache.pop(tenant_id)
            return await self._refresh_locked(tenant_id, record.refresh_token, reason="rejected")

    async def store_token(self, tenant_id: str, token_data: dict[str, Any]) -> ErpToken:
        """
        שמירת טוקן (upsert) ועדכון ה-cache.

        Bling לא תמיד מחזיר refresh_token חדש - במקרה כזה נשמר הקיים.
        """
        access_token = token_data.get("access_token")
        if not access_token:
            raise TokenRefreshError(tenant_id, "token response without access_token")

        expires_in = int(token_data.get("expires_in") or 3600)
        expires_at = utcnow() + timedelta(seconds=expires_in)

        async with self._session_factory() as session:
            result = await session.execute(select(ErpToken).where(ErpToken.tenant_id == tenant_id))
            record = result.scalar_one_or_none()

            refresh_token = token_data.get("refresh_token") or (record.refresh_token if record else None)
            if not refresh_token:
                raise TokenRefreshError(tenant_id, "token response without refresh_token")

            if record is None:
                record = ErpToken(tenant_id=tenant_id)
                session.add(record)

            record.access_token = access_token
            record.refresh_token = refresh_token
            record.token_type = token_data.get("token_type") or "Bearer"
            record.scope = token_data.get("scope")
            record.expires_at = expires_at
            record.is_active = True
            await session.commit()

        self._cache_token(tenant_id, access_token, expires_at)
        logger.info(
            "Token stored",
            extra_data={"tenant_id": tenant_id, "expires_at": expires_at.isoformat()},
        )
        return record

    def invalidate(self, tenant_id: str) -> None:
        self._cache.pop(tenant_id)

    async def revoke_token(self, tenant_id: str) -> bool:
        """ביטול טוקן (ניתוק tenant) - מסמן לא פעיל ומוחק מה-cache"""
        async with self._session_factory() as session:
            result = await session.execute(
                update(ErpToken)
                .where(ErpToken.tenant_id == tenant_id, ErpToken.is_active.is_(True))
                .values(is_active=False, updated_at=utcnow())
            )
            await session.commit()

        self._cache.pop(tenant_id)
        revoked = result.rowcount > 0
        logger.info("Token revoked", extra_data={"tenant_id": tenant_id, "revoked": revoked})
        return revoked

    async def proactive_refresh(self) -> dict[str, int]:
        """רענון מוקדם של טוקנים שפגים בתוך פעמיים ה-buffer, לפני שקורא חם ייתקע עליהם"""
        horizon = utcnow() + self.expiry_buffer * 2
        async with self._session_factory() as session:
            result = await session.execute(
                select(ErpToken.tenant_id).where(
                    ErpToken.is_active.is_(True),
                    ErpToken.expires_at < horizon,
                )
            )
            tenant_ids = [row[0] for row in result.all()]

        summary = {"candidates": len(tenant_ids), "refreshed": 0, "skipped": 0, "failed": 0}
        for tenant_id in tenant_ids:
            try:
                async with self._tenant_section(tenant_id):
                    record = await self._load_record(tenant_id)
                    if record.expires_at >= utcnow() + self.expiry_buffer * 2:
                        summary["skipped"] += 1
                        continue
                    await self._refresh_locked(tenant_id, record.refresh_token, reason="proactive")
                    summary["refreshed"] += 1
            except AppException as e:
                summary["failed"] += 1
                logger.warning(
                    "Proactive token refresh failed",
                    extra_data={"tenant_id": tenant_id, "error": e.message},
                )

        if tenant_ids:
            logger.info("Proactive token refresh finished", extra_data=summary)
        return summary

    def cleanup_cache(self) -> int:
        """מחיקת רשומות cache שעבר ה-TTL שלהן או שהטוקן עצמו פג"""
        now = utcnow()
        removed = self._cache.purge_expired()
        removed += self._cache.evict_where(lambda _tenant, token: token.expires_at <= now)
        if removed:
            logger.debug("Token cache cleaned", extra_data={"removed": removed})
        return removed

    async def get_tokens_status(self) -> list[dict[str, Any]]:
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(select(ErpToken).order_by(ErpToken.tenant_id))
            records = result.scalars().all()

        statuses = []
        for record in records:
            if record.expires_at <= now:
                state = "expired"
            elif record.expires_at - self.expiry_buffer <= now:
                state = "expiring_soon"
            else:
                state = "valid"
            statuses.append({
                "tenant_id": record.tenant_id,
                "is_active": record.is_active,
                "status": state,
                "expires_at": record.expires_at.isoformat(),
                "minutes_until_expiry": round((record.expires_at - now).total_seconds() / 60, 1),
                "cached": record.tenant_id in self._cache,
            })
        return statuses

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "cache": self._cache.stats(),
            "tenants_in_flight": len(self._sections),
            "expiry_buffer_seconds": int(self.expiry_buffer.total_seconds()),
        }

    def start(self) -> None:
        for loop in self._loops:
            loop.start()

    async def stop(self) -> None:
        for loop in self._loops:
            await loop.stop()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_fresh(self, expires_at: datetime) -> bool:
        return expires_at - self.expiry_buffer > utcnow()

    def _cache_token(self, tenant_id: str, access_token: str, expires_at: datetime) -> None:
        self._cache.set(tenant_id, CachedToken(access_token=access_token, expires_at=expires_at))

    async def _cleanup_tick(self) -> None:
        self.cleanup_cache()

    @asynccontextmanager
    async def _tenant_section(self, tenant_id: str) -> AsyncIterator[None]:
        section = self._sections.get(tenant_id)
        if section is None:
            section = self._sections[tenant_id] = _TenantSection()
        section.users += 1
        try:
            if section.lock.locked():
                self._stats["lock_waits"] += 1
            try:
                await asyncio.wait_for(section.lock.acquire(), timeout=self.refresh_wait_seconds)
            except asyncio.TimeoutError as exc:
                self._stats["lock_timeouts"] += 1
                logger.warning(
                    "Timed out waiting for concurrent token refresh",
                    extra_data={"tenant_id": tenant_id, "waited_seconds": self.refresh_wait_seconds},
                )
                raise TokenRefreshTimeoutError(tenant_id, self.refresh_wait_seconds) from exc
            try:
                yield
            finally:
                section.lock.release()
        finally:
            section.users -= 1
            if section.users == 0:
                self._sections.pop(tenant_id, None)

    async def _load_record(self, tenant_id: str) -> ErpToken:
        self._stats["db_loads"] += 1
        async with self._session_factory() as session:
            result = await session.execute(
                select(ErpToken).where(ErpToken.tenant_id == tenant_id, ErpToken.is_active.is_(True))
            )
            record = result.scalar_one_or_none()
        if record is None:
            self._cache.pop(tenant_id)
            raise TokenNotFoundError(tenant_id)
        return record

    async def _refresh_locked(self, tenant_id: str, refresh_token: str, *, reason: str) -> str:
        """רענון מול Bling - נקרא רק מתוך הקטע של ה-tenant"""
        logger.info("Refreshing Bling token", extra_data={"tenant_id": tenant_id, "reason": reason})
        try:
            token_data = await self._refresher.refresh_access_token(refresh_token)
            record = await self.store_token(tenant_id, token_data)
        except AppException as e:
            self._cache.pop(tenant_id)
            self._stats["refresh_failures"] += 1
            logger.error(
                "Token refresh failed",
                extra_data={"tenant_id": tenant_id, "reason": reason, "error": e.message},
            )
            if isinstance(e, TokenRefreshError):
                raise
            raise TokenRefreshError(tenant_id, e.message) from e
        except Exception as e:
            self._cache.pop(tenant_id)
            self._stats["refresh_failures"] += 1
            logger.error(
                "Token refresh failed",
                extra_data={"tenant_id": tenant_id, "reason": reason, "error": str(e)},
                exc_info=True,
            )
            raise TokenRefreshError(tenant_id, str(e)) from e

        self._stats["refreshes"] += 1
        return record.access_token
