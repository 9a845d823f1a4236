"""
Price Sync Engine - סנכרון מחירים מ-Bling למוצרים המקומיים.

Pipeline למוצר: מחיר מרוחק (cache / Bling) → חילוץ שדות → מדיניות תמחור →
עיגול → בדיקת גבולות → סף שינוי משמעותי → זיהוי קונפליקט מול עריכה ידנית →
שמירה + היסטוריה + אירוע.

רק pipeline אחד רץ לכל (tenant, product); קוראים מקבילים מקבלים את אותה תוצאה.
"""
import asyncio
from dataclasses import asdict, dataclass, replace
from datetime import timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, delete, or_, select, update

from app.core.bounded_cache import BoundedTTLCache
from app.core.config import VALID_CONFLICT_RESOLUTIONS, settings
from app.core.exceptions import (
    AppException,
    BlingTransientError,
    PriceConflictError,
    PriceConflictNotFoundError,
    PriceLockTimeoutError,
    ProductNotFoundError,
    ServiceTimeoutError,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation
from app.core.periodic import PeriodicTask
from app.core.retry import calculate_backoff_seconds
from app.core.time_utils import utcnow
from app.db.database import SessionFactory
from app.db.models.price_conflict import (
    HIGH_SEVERITY_PERCENT,
    ConflictAction,
    ConflictSeverity,
    ConflictStatus,
    PriceConflict,
)
from app.db.models.price_history import PriceChangeSource, PriceHistory
from app.db.models.price_policy import PolicyScope, PricePolicy
from app.db.models.product import Product
from app.db.models.tenant_connection import ConnectionStatus, TenantConnection
from app.domain.services.event_bus import EventTypes
from app.domain.services.price_policies import (
    ExtractedPrices,
    apply_policies,
    change_percent,
    detect_significant_change,
    extract_prices,
    prices_differ,
    round_price,
    round_prices,
    to_decimal,
    validate_price_change,
)

logger = get_logger(__name__)


class SyncOutcome:
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    SKIPPED_CONFLICT = "skipped_conflict"
    PENDING_MANUAL = "pending_manual"


@dataclass(frozen=True)
class PriceSyncResult:
    status: str
    tenant_id: str
    product_id: int
    old_price: Decimal | None = None
    new_price: Decimal | None = None
    change_percent: float | None = None
    conflict: bool = False
    conflict_id: int | None = None
    resolution: str | None = None
    requires_manual_resolution: bool = False
    deduplicated: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("old_price", "new_price"):
            if data[key] is not None:
                data[key] = str(data[key])
        return data


class PriceSyncEngine:
    def __init__(
        self,
        session_factory: SessionFactory,
        api_client: Any,
        event_bus: Any = None,
        *,
        tolerance_percent: float | None = None,
        conflict_lookback_seconds: int | None = None,
        conflict_resolution: str | None = None,
        global_markup_percent: float | None = None,
        decimal_places: int | None = None,
        max_increase_percent: float | None = None,
        max_decrease_percent: float | None = None,
        cache_ttl_seconds: int | None = None,
        cache_max_size: int | None = None,
        lock_wait_seconds: float | None = None,
        fetch_max_retries: int | None = None,
        fetch_retry_base_seconds: float = 1.0,
        sweep_interval_seconds: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._api = api_client
        self._event_bus = event_bus

        def _pick(value, default):
            return default if value is None else value

        self.tolerance_percent = _pick(tolerance_percent, settings.PRICE_TOLERANCE_PERCENT)
        self.conflict_lookback = timedelta(
            seconds=_pick(conflict_lookback_seconds, settings.PRICE_CONFLICT_LOOKBACK_SECONDS)
        )
        self.conflict_resolution = _pick(conflict_resolution, settings.PRICE_CONFLICT_RESOLUTION)
        if self.conflict_resolution not in VALID_CONFLICT_RESOLUTIONS:
            raise ValidationException(
                f"Unknown conflict resolution: {self.conflict_resolution}. "
                f"Supported: {', '.join(sorted(VALID_CONFLICT_RESOLUTIONS))}",
                field="conflict_resolution",
            )
        self.global_markup_percent = _pick(global_markup_percent, settings.PRICE_GLOBAL_MARKUP_PERCENT)
        self.decimal_places = _pick(decimal_places, settings.PRICE_DECIMAL_PLACES)
        self.max_increase_percent = _pick(max_increase_percent, settings.PRICE_MAX_INCREASE_PERCENT)
        self.max_decrease_percent = _pick(max_decrease_percent, settings.PRICE_MAX_DECREASE_PERCENT)
        self.lock_wait_seconds = _pick(lock_wait_seconds, settings.PRICE_LOCK_WAIT_SECONDS)
        self.fetch_max_retries = max(1, _pick(fetch_max_retries, settings.PRICE_FETCH_MAX_RETRIES))
        self.fetch_retry_base_seconds = fetch_retry_base_seconds
        self.batch_size = _pick(batch_size, settings.PRICE_SYNC_BATCH_SIZE)

        # נתוני מוצר מ-Bling לפי (tenant, bling_product_id)
        self._cache: BoundedTTLCache[tuple[str, str], dict[str, Any]] = BoundedTTLCache(
            max_size=_pick(cache_max_size, settings.PRICE_CACHE_MAX_SIZE),
            ttl_seconds=_pick(cache_ttl_seconds, settings.PRICE_CACHE_TTL_SECONDS),
        )
        self._inflight: dict[tuple[str, int], asyncio.Task] = {}
        self._sweep_running = False
        self._last_sweep: dict[str, Any] | None = None
        self._stats = {
            "syncs": 0,
            "updated": 0,
            "unchanged": 0,
            "skipped": 0,
            "errors": 0,
            "deduplicated": 0,
            "conflicts_detected": 0,
            "conflicts_resolved": 0,
            "manual_changes": 0,
            "sweeps": 0,
        }
        self._loop = PeriodicTask(
            "price-sweep",
            _pick(sweep_interval_seconds, settings.PRICE_SYNC_INTERVAL_SECONDS),
            self.sync_all_tenant_prices,
        )

    # ------------------------------------------------------------------
    # Single product
    # ------------------------------------------------------------------

    async def sync_product_price(
        self,
        tenant_id: str,
        product_id: int,
        *,
        source: str = PriceChangeSource.AUTOMATIC.value,
        remote_product: dict[str, Any] | None = None,
        force: bool = False,
    ) -> PriceSyncResult:
        try:
            source = PriceChangeSource(source).value
        except ValueError:
            raise ValidationException(f"Unknown price change source: {source}", field="source")

        key = (tenant_id, product_id)
        running = self._inflight.get(key)
        if running is not None:
            self._stats["deduplicated"] += 1
            try:
                result = await asyncio.wait_for(asyncio.shield(running), timeout=self.lock_wait_seconds)
            except asyncio.TimeoutError as exc:
                raise PriceLockTimeoutError(f"{tenant_id}:{product_id}", self.lock_wait_seconds) from exc
            return replace(result, deduplicated=True)

        task = asyncio.create_task(
            self._run_pipeline(tenant_id, product_id, source, remote_product, force),
            name=f"price-sync:{tenant_id}:{product_id}",
        )
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._release(key, t))
        return await asyncio.shield(task)

    def _release(self, key: tuple[str, int], task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _run_pipeline(
        self,
        tenant_id: str,
        product_id: int,
        source: str,
        remote_product: dict[str, Any] | None,
        force: bool,
    ) -> PriceSyncResult:
        self._stats["syncs"] += 1
        try:
            return await self._pipeline(tenant_id, product_id, source, remote_product, force)
        except AppException as e:
            self._stats["errors"] += 1
            logger.warning(
                "Price sync failed",
                extra_data={"tenant_id": tenant_id, "product_id": product_id, "error": e.message},
            )
            raise

    async def _pipeline(
        self,
        tenant_id: str,
        product_id: int,
        source: str,
        remote_product: dict[str, Any] | None,
        force: bool,
    ) -> PriceSyncResult:
        async with self._session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None or product.tenant_id != tenant_id:
                raise ProductNotFoundError(product_id)
            bling_product_id = product.bling_product_id
            category_id = product.category_id
            local_price = to_decimal(product.price) or Decimal("0")

        if not bling_product_id:
            self._stats["skipped"] += 1
            return PriceSyncResult(
                status=SyncOutcome.SKIPPED, tenant_id=tenant_id, product_id=product_id, reason="not_linked"
            )

        remote = remote_product if remote_product is not None else await self._get_remote_product(
            tenant_id, bling_product_id
        )
        prices = extract_prices(remote)
        product_policies, category_policies = await self._load_policies(tenant_id, product_id, category_id)
        prices = apply_policies(
            prices,
            global_markup_percent=self.global_markup_percent,
            product_policies=product_policies,
            category_policies=category_policies,
        )
        prices = round_prices(prices, self.decimal_places)

        if not force:
            validate_price_change(
                local_price,
                prices.price,
                max_increase_percent=self.max_increase_percent,
                max_decrease_percent=self.max_decrease_percent,
            )

        change = detect_significant_change(local_price, prices.price, self.tolerance_percent)
        percent = round(float(change.change_percent), 4)
        if not change.is_significant and not force:
            self._stats["unchanged"] += 1
            return PriceSyncResult(
                status=SyncOutcome.UNCHANGED,
                tenant_id=tenant_id,
                product_id=product_id,
                old_price=local_price,
                new_price=prices.price,
                change_percent=percent,
                reason="within_tolerance",
            )

        conflict = await self._detect_conflict(tenant_id, product_id, local_price, prices.price)
        conflict_id = None
        if conflict:
            dismissed = await self._find_dismissed_conflict(tenant_id, product_id, prices.price)
            if dismissed is not None:
                # אותו מחיר מ-Bling כבר נדחה ידנית - לא פותחים קונפליקט חדש
                self._stats["skipped"] += 1
                return PriceSyncResult(
                    status=SyncOutcome.SKIPPED_CONFLICT,
                    tenant_id=tenant_id,
                    product_id=product_id,
                    old_price=local_price,
                    new_price=prices.price,
                    change_percent=percent,
                    conflict=True,
                    conflict_id=dismissed.id,
                    resolution=dismissed.resolution,
                    reason="dismissed",
                )

            self._stats["conflicts_detected"] += 1
            requires_manual = self.conflict_resolution == "manual"
            conflict_id = await self._record_conflict(
                tenant_id, product_id, bling_product_id, local_price, prices.price, percent
            )
            logger.warning(
                "Price conflict detected",
                extra_data={
                    "tenant_id": tenant_id,
                    "product_id": product_id,
                    "conflict_id": conflict_id,
                    "local_price": str(local_price),
                    "bling_price": str(prices.price),
                    "resolution": self.conflict_resolution,
                },
            )
            await self._publish(
                EventTypes.PRICE_CONFLICT_DETECTED,
                {
                    "conflict_id": conflict_id,
                    "product_id": product_id,
                    "bling_product_id": bling_product_id,
                    "local_price": str(local_price),
                    "bling_price": str(prices.price),
                    "resolution": self.conflict_resolution,
                    "requires_manual_resolution": requires_manual,
                },
                tenant_id,
                priority="high",
            )
            if self.conflict_resolution == "local_wins":
                self._stats["conflicts_resolved"] += 1
                return PriceSyncResult(
                    status=SyncOutcome.SKIPPED_CONFLICT,
                    tenant_id=tenant_id,
                    product_id=product_id,
                    old_price=local_price,
                    new_price=prices.price,
                    change_percent=percent,
                    conflict=True,
                    conflict_id=conflict_id,
                    resolution="local_wins",
                )
            if requires_manual:
                return PriceSyncResult(
                    status=SyncOutcome.PENDING_MANUAL,
                    tenant_id=tenant_id,
                    product_id=product_id,
                    old_price=local_price,
                    new_price=prices.price,
                    change_percent=percent,
                    conflict=True,
                    conflict_id=conflict_id,
                    resolution="manual",
                    requires_manual_resolution=True,
                )
            self._stats["conflicts_resolved"] += 1

        await self._persist_price(
            tenant_id,
            product_id,
            bling_product_id,
            prices,
            change_percent=percent,
            source=source,
            metadata={
                "applied_policies": list(prices.applied_policies),
                "conflict": conflict,
                "conflict_id": conflict_id,
                "resolution": self.conflict_resolution if conflict else None,
                "margin_percent": str(prices.margin_percent) if prices.margin_percent is not None else None,
                "markup_percent": str(prices.markup_percent) if prices.markup_percent is not None else None,
            },
        )
        self._cache.pop((tenant_id, bling_product_id))
        self._stats["updated"] += 1

        await self._publish(
            EventTypes.PRODUCT_PRICE_UPDATED,
            {
                "product_id": product_id,
                "bling_product_id": bling_product_id,
                "old_price": str(local_price),
                "new_price": str(prices.price),
                "change_percent": percent,
                "source": source,
            },
            tenant_id,
        )
        logger.info(
            "Product price updated",
            extra_data={
                "tenant_id": tenant_id,
                "product_id": product_id,
                "old_price": str(local_price),
                "new_price": str(prices.price),
                "source": source,
            },
        )
        return PriceSyncResult(
            status=SyncOutcome.UPDATED,
            tenant_id=tenant_id,
            product_id=product_id,
            old_price=local_price,
            new_price=prices.price,
            change_percent=percent,
            conflict=conflict,
            conflict_id=conflict_id,
            resolution=self.conflict_resolution if conflict else None,
        )

    async def _get_remote_product(self, tenant_id: str, bling_product_id: str) -> dict[str, Any]:
        cache_key = (tenant_id, bling_product_id)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        attempt = 0
        while True:
            try:
                remote = await self._api.get_product(tenant_id, bling_product_id)
                break
            except (BlingTransientError, ServiceTimeoutError) as e:
                attempt += 1
                if attempt >= self.fetch_max_retries:
                    raise
                delay = calculate_backoff_seconds(
                    attempt - 1,
                    base_seconds=self.fetch_retry_base_seconds,
                    max_backoff_seconds=settings.BLING_MAX_BACKOFF_SECONDS,
                )
                logger.warning(
                    "Fetching Bling product failed, retrying",
                    extra_data={
                        "tenant_id": tenant_id,
                        "bling_product_id": bling_product_id,
                        "attempt": attempt,
                        "error": e.message,
                    },
                )
                await asyncio.sleep(delay)

        self._cache.set(cache_key, remote)
        return remote

    async def _load_policies(
        self, tenant_id: str, product_id: int, category_id: int | None
    ) -> tuple[list[PricePolicy], list[PricePolicy]]:
        conditions = [and_(PricePolicy.scope == PolicyScope.PRODUCT.value, PricePolicy.product_id == product_id)]
        if category_id is not None:
            conditions.append(
                and_(PricePolicy.scope == PolicyScope.CATEGORY.value, PricePolicy.category_id == category_id)
            )

        async with self._session_factory() as session:
            result = await session.execute(
                select(PricePolicy)
                .where(PricePolicy.tenant_id == tenant_id, PricePolicy.is_active.is_(True), or_(*conditions))
                .order_by(PricePolicy.priority, PricePolicy.id)
            )
            policies = result.scalars().all()

        product_policies = [p for p in policies if p.scope == PolicyScope.PRODUCT.value]
        category_policies = [p for p in policies if p.scope == PolicyScope.CATEGORY.value]
        return product_policies, category_policies

    async def _detect_conflict(
        self, tenant_id: str, product_id: int, local_price: Decimal, new_price: Decimal
    ) -> bool:
        """עריכה ידנית בחלון ה-lookback + מחיר שונה בפועל = קונפליקט"""
        since = utcnow() - self.conflict_lookback
        async with self._session_factory() as session:
            result = await session.execute(
                select(PriceHistory.id)
                .where(
                    PriceHistory.tenant_id == tenant_id,
                    PriceHistory.product_id == product_id,
                    PriceHistory.source == PriceChangeSource.MANUAL.value,
                    PriceHistory.created_at >= since,
                )
                .limit(1)
            )
            recent_manual = result.scalar_one_or_none()
        return recent_manual is not None and prices_differ(local_price, new_price)

    async def _find_dismissed_conflict(
        self, tenant_id: str, product_id: int, bling_price: Decimal
    ) -> PriceConflict | None:
        """הכרעה ידנית (keep_local / ignore) על אותו מחיר בתוך חלון ה-lookback"""
        since = utcnow() - self.conflict_lookback
        async with self._session_factory() as session:
            result = await session.execute(
                select(PriceConflict)
                .where(
                    PriceConflict.tenant_id == tenant_id,
                    PriceConflict.product_id == product_id,
                    PriceConflict.resolution_type == "manual",
                    PriceConflict.resolution.in_(
                        [ConflictAction.KEEP_LOCAL.value, ConflictAction.IGNORE.value]
                    ),
                    PriceConflict.resolved_at >= since,
                )
                .order_by(PriceConflict.resolved_at.desc(), PriceConflict.id.desc())
                .limit(1)
            )
            latest = result.scalar_one_or_none()
        if latest is None or prices_differ(to_decimal(latest.bling_price), bling_price):
            return None
        return latest

    async def _record_conflict(
        self,
        tenant_id: str,
        product_id: int,
        bling_product_id: str,
        local_price: Decimal,
        bling_price: Decimal,
        percent: float,
    ) -> int:
        """
        bling_wins / local_wins נסגרים מיד (resolution_type=auto).
        manual: שורת pending אחת למוצר - זיהוי חוזר מעדכן אותה.
        """
        now = utcnow()
        severity = (
            ConflictSeverity.HIGH.value if abs(percent) > HIGH_SEVERITY_PERCENT else ConflictSeverity.MEDIUM.value
        )
        async with self._session_factory() as session:
            if self.conflict_resolution == "manual":
                result = await session.execute(
                    select(PriceConflict)
                    .where(
                        PriceConflict.tenant_id == tenant_id,
                        PriceConflict.product_id == product_id,
                        PriceConflict.status == ConflictStatus.PENDING.value,
                    )
                    .order_by(PriceConflict.id)
                    .limit(1)
                )
                pending = result.scalar_one_or_none()
                if pending is not None:
                    pending.local_price = local_price
                    pending.bling_price = bling_price
                    pending.change_percent = percent
                    pending.severity = severity
                    pending.detected_at = now
                    await session.commit()
                    return pending.id

            auto = self.conflict_resolution != "manual"
            conflict = PriceConflict(
                tenant_id=tenant_id,
                product_id=product_id,
                bling_product_id=bling_product_id,
                local_price=local_price,
                bling_price=bling_price,
                change_percent=percent,
                severity=severity,
                strategy=self.conflict_resolution,
                status=ConflictStatus.RESOLVED.value if auto else ConflictStatus.PENDING.value,
                resolution=self.conflict_resolution if auto else None,
                resolution_type="auto" if auto else None,
                resolved_price=(
                    (bling_price if self.conflict_resolution == "bling_wins" else local_price) if auto else None
                ),
                resolved_by="system" if auto else None,
                detected_at=now,
                resolved_at=now if auto else None,
            )
            session.add(conflict)
            await session.commit()
            return conflict.id

    async def _persist_price(
        self,
        tenant_id: str,
        product_id: int,
        bling_product_id: str,
        prices: ExtractedPrices,
        *,
        change_percent: float,
        source: str,
        metadata: dict[str, Any],
    ) -> None:
        now = utcnow()
        async with self._session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            old_price = product.price
            product.price = prices.price
            if prices.cost_price is not None:
                product.cost_price = prices.cost_price
            product.promotional_price = prices.promotional_price
            product.wholesale_price = prices.wholesale_price
            product.price_updated_at = now
            session.add(
                PriceHistory(
                    tenant_id=tenant_id,
                    product_id=product_id,
                    bling_product_id=bling_product_id,
                    old_price=old_price,
                    new_price=prices.price,
                    change_percent=change_percent,
                    source=source,
                    metadata_json=metadata,
                    created_at=now,
                )
            )
            await session.commit()

    async def _publish(
        self, event_type: str, payload: dict[str, Any], tenant_id: str | None, priority: str = "normal"
    ) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(event_type, payload, tenant_id=tenant_id, priority=priority)
        except AppException as e:
            logger.warning(
                "Could not publish price event",
                extra_data={"event_type": event_type, "tenant_id": tenant_id, "error": e.message},
            )

    # ------------------------------------------------------------------
    # Manual edits / history
    # ------------------------------------------------------------------

    async def record_manual_price_change(
        self,
        tenant_id: str,
        product_id: int,
        new_price: Decimal | float | str,
        *,
        changed_by: str | None = None,
    ) -> dict[str, Any]:
        """עריכת מחיר ידנית בפלטפורמה - נרשמת כ-manual ומשמשת לזיהוי קונפליקטים"""
        price = to_decimal(new_price)
        if price is None or price < 0:
            raise ValidationException("new_price must be a non-negative number", field="new_price")

        price = round_price(price, self.decimal_places)
        async with self._session_factory() as session:
            change = await self._apply_manual_price(
                session, tenant_id, product_id, price, metadata={"changed_by": changed_by}
            )
            await session.commit()

        await self._after_manual_change(tenant_id, change)
        return {key: change[key] for key in ("product_id", "old_price", "new_price", "change_percent")}

    async def _apply_manual_price(
        self, session: Any, tenant_id: str, product_id: int, price: Decimal, *, metadata: dict[str, Any]
    ) -> dict[str, Any]:
        """עדכון המחיר ושורת היסטוריה manual בתוך הטרנזקציה של הקורא"""
        now = utcnow()
        product = await session.get(Product, product_id)
        if product is None or product.tenant_id != tenant_id:
            raise ProductNotFoundError(product_id)
        old_price = to_decimal(product.price) or Decimal("0")
        percent = round(float(change_percent(old_price, price)), 4)
        product.price = price
        product.price_updated_at = now
        session.add(
            PriceHistory(
                tenant_id=tenant_id,
                product_id=product_id,
                bling_product_id=product.bling_product_id,
                old_price=old_price,
                new_price=price,
                change_percent=percent,
                source=PriceChangeSource.MANUAL.value,
                metadata_json=metadata,
                created_at=now,
            )
        )
        return {
            "product_id": product_id,
            "bling_product_id": product.bling_product_id,
            "old_price": str(old_price),
            "new_price": str(price),
            "change_percent": percent,
        }

    async def _after_manual_change(self, tenant_id: str, change: dict[str, Any]) -> None:
        if change["bling_product_id"]:
            self._cache.pop((tenant_id, change["bling_product_id"]))
        self._stats["manual_changes"] += 1
        await self._publish(
            EventTypes.PRODUCT_PRICE_UPDATED,
            {
                "product_id": change["product_id"],
                "old_price": change["old_price"],
                "new_price": change["new_price"],
                "change_percent": change["change_percent"],
                "source": PriceChangeSource.MANUAL.value,
            },
            tenant_id,
        )

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def list_price_conflicts(
        self,
        tenant_id: str | None = None,
        *,
        status: str | None = ConflictStatus.PENDING.value,
        product_id: int | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        query = select(PriceConflict)
        if tenant_id:
            query = query.where(PriceConflict.tenant_id == tenant_id)
        if product_id is not None:
            query = query.where(PriceConflict.product_id == product_id)
        if status:
            try:
                query = query.where(PriceConflict.status == ConflictStatus(status).value)
            except ValueError:
                raise ValidationException(f"Unknown conflict status: {status}", field="status")

        async with self._session_factory() as session:
            result = await session.execute(
                query.order_by(PriceConflict.detected_at.desc(), PriceConflict.id.desc())
                .limit(max(1, min(limit, 500)))
            )
            return [row.to_dict() for row in result.scalars().all()]

    async def resolve_price_conflict(
        self,
        conflict_id: int,
        action: str,
        *,
        price: Decimal | float | str | None = None,
        resolved_by: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """
        הכרעה ידנית בקונפליקט pending.

        accept_bling / custom כותבים את המחיר כעריכה ידנית, keep_local משאיר את
        המחיר המקומי, ignore סוגר בלי לגעת במוצר. keep_local ו-ignore גם משתיקים
        זיהוי חוזר של אותו מחיר מ-Bling עד סוף חלון ה-lookback.

        Raises:
            PriceConflictNotFoundError: אין קונפליקט כזה
            PriceConflictError: הקונפליקט כבר הוכרע
        """
        try:
            action = ConflictAction(action)
        except ValueError:
            raise ValidationException(f"Unknown conflict action: {action}", field="action")

        custom_price = None
        if action == ConflictAction.CUSTOM:
            custom_price = to_decimal(price)
            if custom_price is None or custom_price < 0:
                raise ValidationException("price must be a non-negative number for a custom resolution", field="price")
            custom_price = round_price(custom_price, self.decimal_places)

        now = utcnow()
        change = None
        async with self._session_factory() as session:
            conflict = await session.get(PriceConflict, conflict_id)
            if conflict is None:
                raise PriceConflictNotFoundError(conflict_id)
            if conflict.status != ConflictStatus.PENDING.value:
                raise PriceConflictError(
                    conflict.product_id,
                    conflict.resolution or conflict.status,
                    {"conflict_id": conflict_id, "status": conflict.status},
                )

            if action == ConflictAction.ACCEPT_BLING:
                resolved_price = to_decimal(conflict.bling_price)
            elif action == ConflictAction.CUSTOM:
                resolved_price = custom_price
            elif action == ConflictAction.KEEP_LOCAL:
                resolved_price = to_decimal(conflict.local_price)
            else:
                resolved_price = None

            claimed = await session.execute(
                update(PriceConflict)
                .where(PriceConflict.id == conflict_id, PriceConflict.status == ConflictStatus.PENDING.value)
                .values(
                    status=(
                        ConflictStatus.IGNORED.value if action == ConflictAction.IGNORE
                        else ConflictStatus.RESOLVED.value
                    ),
                    resolution=action.value,
                    resolution_type="manual",
                    resolved_price=resolved_price,
                    resolved_by=resolved_by,
                    resolution_reason=reason[:500] if reason else None,
                    resolved_at=now,
                )
            )
            if claimed.rowcount == 0:
                # הוכרע במקביל
                raise PriceConflictError(conflict.product_id, "resolved", {"conflict_id": conflict_id})

            if action in (ConflictAction.ACCEPT_BLING, ConflictAction.CUSTOM):
                change = await self._apply_manual_price(
                    session,
                    conflict.tenant_id,
                    conflict.product_id,
                    resolved_price,
                    metadata={"changed_by": resolved_by, "conflict_id": conflict_id, "resolution": action.value},
                )
            await session.commit()
            await session.refresh(conflict)
            resolved = conflict.to_dict()

        self._stats["conflicts_resolved"] += 1
        if change is not None:
            await self._after_manual_change(resolved["tenant_id"], change)
        await self._publish(
            EventTypes.PRICE_CONFLICT_RESOLVED,
            {
                "conflict_id": conflict_id,
                "product_id": resolved["product_id"],
                "resolution": action.value,
                "resolved_price": resolved["resolved_price"],
                "resolved_by": resolved_by,
            },
            resolved["tenant_id"],
        )
        logger.info(
            "Price conflict resolved",
            extra_data={
                "conflict_id": conflict_id,
                "tenant_id": resolved["tenant_id"],
                "product_id": resolved["product_id"],
                "resolution": action.value,
                "resolved_by": resolved_by,
            },
        )
        return resolved

    async def get_price_history(self, tenant_id: str, product_id: int, limit: int = 50) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PriceHistory)
                .where(PriceHistory.tenant_id == tenant_id, PriceHistory.product_id == product_id)
                .order_by(PriceHistory.created_at.desc(), PriceHistory.id.desc())
                .limit(max(1, min(limit, 500)))
            )
            rows = result.scalars().all()
        return [
            {
                "id": row.id,
                "old_price": str(row.old_price) if row.old_price is not None else None,
                "new_price": str(row.new_price),
                "change_percent": row.change_percent,
                "source": row.source,
                "metadata": row.metadata_json,
                "created_at": row.created_at.isoformat(),
            }
            for row in rows
        ]

    async def cleanup_old_price_history(self, days: int | None = None) -> int:
        cutoff = utcnow() - timedelta(days=settings.PRICE_HISTORY_RETENTION_DAYS if days is None else days)
        async with self._session_factory() as session:
            result = await session.execute(delete(PriceHistory).where(PriceHistory.created_at < cutoff))
            await session.commit()
        if result.rowcount:
            logger.info("Old price history cleaned up", extra_data={"deleted": result.rowcount})
        return result.rowcount

    # ------------------------------------------------------------------
    # Tenant sweeps
    # ------------------------------------------------------------------

    async def sync_tenant_prices(self, tenant_id: str) -> dict[str, Any]:
        summary = {"tenant_id": tenant_id, "processed": 0, "updated": 0, "unchanged": 0,
                   "conflicts": 0, "skipped": 0, "errors": 0}

        async for page in self._api.iter_products(tenant_id, page_size=self.batch_size):
            remote_by_id = {str(item["id"]): item for item in page if item.get("id") is not None}
            if not remote_by_id:
                continue

            async with self._session_factory() as session:
                result = await session.execute(
                    select(Product.id, Product.bling_product_id).where(
                        Product.tenant_id == tenant_id,
                        Product.is_active.is_(True),
                        Product.bling_product_id.in_(list(remote_by_id)),
                    )
                )
                local = result.all()

            for product_id, bling_product_id in local:
                try:
                    outcome = await self.sync_product_price(
                        tenant_id,
                        product_id,
                        source=PriceChangeSource.AUTOMATIC.value,
                        remote_product=remote_by_id[bling_product_id],
                    )
                except AppException as e:
                    summary["errors"] += 1
                    logger.warning(
                        "Price sync of product failed during tenant sweep",
                        extra_data={"tenant_id": tenant_id, "product_id": product_id, "error": e.message},
                    )
                    continue

                summary["processed"] += 1
                if outcome.status == SyncOutcome.UPDATED:
                    summary["updated"] += 1
                elif outcome.status == SyncOutcome.UNCHANGED:
                    summary["unchanged"] += 1
                elif outcome.status == SyncOutcome.SKIPPED:
                    summary["skipped"] += 1
                if outcome.conflict:
                    summary["conflicts"] += 1

        async with self._session_factory() as session:
            await session.execute(
                update(TenantConnection)
                .where(TenantConnection.tenant_id == tenant_id)
                .values(last_sync_at=utcnow())
            )
            await session.commit()

        logger.info("Tenant price sync finished", extra_data=summary)
        return summary

    @log_async_operation("price_sweep")
    async def sync_all_tenant_prices(self) -> dict[str, Any] | None:
        """סריקה של כל ה-tenants המחוברים. לא רצות שתי סריקות במקביל."""
        if self._sweep_running:
            logger.info("Price sweep already running, skipping")
            return None

        self._sweep_running = True
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(TenantConnection.tenant_id)
                    .where(
                        TenantConnection.is_active.is_(True),
                        TenantConnection.status == ConnectionStatus.CONNECTED.value,
                    )
                    .order_by(TenantConnection.tenant_id)
                )
                tenant_ids = [row[0] for row in result.all()]

            totals = {"tenants": len(tenant_ids), "tenants_failed": 0, "processed": 0, "updated": 0,
                      "unchanged": 0, "conflicts": 0, "errors": 0}
            for tenant_id in tenant_ids:
                try:
                    summary = await self.sync_tenant_prices(tenant_id)
                except Exception as e:
                    totals["tenants_failed"] += 1
                    logger.error(
                        "Tenant price sync failed",
                        extra_data={"tenant_id": tenant_id, "error": str(e)},
                        exc_info=True,
                    )
                    continue
                for key in ("processed", "updated", "unchanged", "conflicts", "errors"):
                    totals[key] += summary[key]

            totals["finished_at"] = utcnow().isoformat()
            self._stats["sweeps"] += 1
            self._last_sweep = totals
            await self._publish(EventTypes.PRICES_SYNC_COMPLETED, totals, None)
            return totals
        finally:
            self._sweep_running = False

    @property
    def sweep_running(self) -> bool:
        return self._sweep_running

    def start(self) -> None:
        self._loop.start()

    async def stop(self) -> None:
        await self._loop.stop()

    def get_statistics(self) -> dict[str, Any]:
        cache = self._cache.stats()
        return {
            **self._stats,
            "cache_hits": cache["hits"],
            "cache_misses": cache["misses"],
            "cache_size": cache["size"],
            "in_flight": len(self._inflight),
            "sweep_running": self._sweep_running,
            "last_sweep": self._last_sweep,
            "tolerance_percent": self.tolerance_percent,
            "conflict_resolution": self.conflict_resolution,
        }
