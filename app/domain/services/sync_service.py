"""
Catalog Sync Service - עדכון מיפויי מוצרים/הזמנות ושדות מקומיים מנתוני Bling.

משותף ל-handlers של ה-webhooks (אירוע בודד) ול-jobs (סנכרון מלא / חלקי).
כל הפעולות idempotent: upsert לפי (tenant_id, bling id).
"""
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.core.time_utils import utcnow
from app.db.database import SessionFactory
from app.db.models.order_sync_mapping import OrderSyncMapping
from app.db.models.price_history import PriceChangeSource
from app.db.models.product import Product
from app.db.models.product_sync_mapping import ProductSyncMapping
from app.domain.services.event_bus import EventTypes
from app.domain.services.price_policies import to_decimal

logger = get_logger(__name__)

ProgressCallback = Callable[[float, str | None], Awaitable[None]]

CANCELLED_ORDER_STATUSES = {"cancelado", "cancelled", "canceled"}


async def _no_progress(percent: float, message: str | None = None) -> None:
    return None


def _bling_id(data: dict[str, Any], *nested: str) -> str | None:
    """id ישיר או id בתוך אובייקט מקונן (data.produto.id)"""
    value = data.get("id")
    for key in nested:
        if value is not None:
            break
        inner = data.get(key)
        if isinstance(inner, dict):
            value = inner.get("id")
    return str(value) if value is not None else None


def extract_stock_quantity(data: dict[str, Any]) -> int | None:
    for key in ("saldoVirtualTotal", "saldoFisicoTotal", "quantidade", "stock"):
        value = to_decimal(data.get(key))
        if value is not None:
            return int(value)
    estoque = data.get("estoque")
    if isinstance(estoque, dict):
        return extract_stock_quantity(estoque)
    return None


def extract_order_status(data: dict[str, Any]) -> str | None:
    status = data.get("situacao") or data.get("status")
    if isinstance(status, dict):
        status = status.get("valor") or status.get("nome") or status.get("id")
    return str(status) if status is not None else None


async def upsert_product_mapping(
    session: AsyncSession,
    tenant_id: str,
    bling_product_id: str,
    *,
    event: str,
    sync_status: str = "synced",
    stock_quantity: int | None = None,
) -> ProductSyncMapping:
    result = await session.execute(
        select(ProductSyncMapping).where(
            ProductSyncMapping.tenant_id == tenant_id,
            ProductSyncMapping.bling_product_id == bling_product_id,
        )
    )
    mapping = result.scalar_one_or_none()
    if mapping is None:
        mapping = ProductSyncMapping(tenant_id=tenant_id, bling_product_id=bling_product_id)
        session.add(mapping)
        product = await find_local_product(session, tenant_id, bling_product_id)
        if product is not None:
            mapping.product_id = product.id

    mapping.sync_status = sync_status
    mapping.last_event = event
    mapping.last_synced_at = utcnow()
    if stock_quantity is not None:
        mapping.stock_quantity = stock_quantity
    return mapping


async def upsert_order_mapping(
    session: AsyncSession,
    tenant_id: str,
    order: dict[str, Any],
    *,
    event: str,
) -> OrderSyncMapping | None:
    bling_order_id = _bling_id(order, "pedido")
    if bling_order_id is None:
        return None

    result = await session.execute(
        select(OrderSyncMapping).where(
            OrderSyncMapping.tenant_id == tenant_id,
            OrderSyncMapping.bling_order_id == bling_order_id,
        )
    )
    mapping = result.scalar_one_or_none()
    if mapping is None:
        mapping = OrderSyncMapping(tenant_id=tenant_id, bling_order_id=bling_order_id)
        session.add(mapping)

    status = extract_order_status(order)
    if order.get("numero") is not None:
        mapping.order_number = str(order["numero"])
    if status is not None:
        mapping.bling_status = status
    total = to_decimal(order.get("total"))
    if total is not None:
        mapping.total = total
    cancelled = event.endswith("cancelled") or (status or "").lower() in CANCELLED_ORDER_STATUSES
    mapping.sync_status = "cancelled" if cancelled else "synced"
    mapping.last_event = event
    return mapping


async def find_local_product(session: AsyncSession, tenant_id: str, bling_product_id: str) -> Product | None:
    result = await session.execute(
        select(Product)
        .where(Product.tenant_id == tenant_id, Product.bling_product_id == bling_product_id)
        .order_by(Product.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


class CatalogSyncService:
    """סנכרון מוצרים / מלאי / הזמנות של tenant מול Bling"""

    def __init__(
        self,
        session_factory: SessionFactory,
        api_client: Any,
        price_engine: Any = None,
        event_bus: Any = None,
        *,
        page_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._api = api_client
        self._price_engine = price_engine
        self._event_bus = event_bus
        self.page_size = page_size

    async def _publish(self, event_type: str, payload: dict[str, Any], tenant_id: str) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(event_type, payload, tenant_id=tenant_id)
        except AppException as e:
            logger.warning(
                "Could not publish sync event",
                extra_data={"event_type": event_type, "tenant_id": tenant_id, "error": e.message},
            )

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def apply_remote_product(
        self,
        tenant_id: str,
        remote: dict[str, Any],
        *,
        event: str = "product.sync",
        price_source: str = PriceChangeSource.AUTOMATIC.value,
    ) -> dict[str, Any]:
        """עדכון מיפוי + שדות מקומיים (שם, sku, מלאי), ומחיר דרך ה-price engine"""
        bling_product_id = _bling_id(remote, "produto")
        if bling_product_id is None:
            return {"status": "skipped", "reason": "missing_id"}

        stock = extract_stock_quantity(remote)
        async with self._session_factory() as session:
            mapping = await upsert_product_mapping(
                session, tenant_id, bling_product_id, event=event, stock_quantity=stock
            )
            product = await find_local_product(session, tenant_id, bling_product_id)
            if product is not None:
                mapping.product_id = product.id
                if remote.get("nome"):
                    product.name = str(remote["nome"])[:300]
                if remote.get("codigo"):
                    product.sku = str(remote["codigo"])[:100]
                if stock is not None:
                    product.stock_quantity = stock
            await session.commit()
            product_id = product.id if product is not None else None

        outcome: dict[str, Any] = {"bling_product_id": bling_product_id, "product_id": product_id}
        if product_id is None:
            outcome["status"] = "mapped"
            return outcome

        if self._price_engine is not None and remote.get("preco") is not None:
            result = await self._price_engine.sync_product_price(
                tenant_id, product_id, source=price_source, remote_product=remote
            )
            outcome["price"] = result.status
        outcome["status"] = "synced"
        return outcome

    async def mark_product_deleted(self, tenant_id: str, bling_product_id: str, *, event: str) -> None:
        async with self._session_factory() as session:
            await upsert_product_mapping(session, tenant_id, bling_product_id, event=event, sync_status="deleted")
            await session.commit()

    async def sync_products(
        self,
        tenant_id: str,
        product_ids: list[str] | None = None,
        progress: ProgressCallback = _no_progress,
    ) -> dict[str, Any]:
        summary: dict[str, Any] = {"processed": 0, "synced": 0, "mapped": 0, "errors": 0, "error_details": []}

        async def _apply(remote: dict[str, Any]) -> None:
            try:
                outcome = await self.apply_remote_product(tenant_id, remote)
            except AppException as e:
                summary["errors"] += 1
                if len(summary["error_details"]) < 50:
                    summary["error_details"].append({"bling_product_id": remote.get("id"), "error": e.message})
                return
            summary["processed"] += 1
            if outcome["status"] in ("synced", "mapped"):
                summary[outcome["status"]] += 1

        if product_ids:
            total = len(product_ids)
            for index, bling_id in enumerate(product_ids, start=1):
                try:
                    remote = await self._api.get_product(tenant_id, bling_id)
                except AppException as e:
                    summary["errors"] += 1
                    if len(summary["error_details"]) < 50:
                        summary["error_details"].append({"bling_product_id": bling_id, "error": e.message})
                else:
                    await _apply(remote)
                await progress(index * 100 / total, f"products {index}/{total}")
            return summary

        pages = 0
        async for page in self._api.iter_products(tenant_id, page_size=self.page_size):
            pages += 1
            for remote in page:
                await _apply(remote)
            # מספר העמודים לא ידוע מראש - התקדמות מתכנסת ל-90% עד הסוף
            await progress(min(90, pages * 10), f"products page {pages}")
        await progress(100, "products done")
        return summary

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------

    async def apply_stock_update(
        self, tenant_id: str, bling_product_id: str, quantity: int | None, *, event: str
    ) -> bool:
        """עדכון מלאי מקומי. מחזיר True אם הכמות השתנתה."""
        async with self._session_factory() as session:
            mapping = await upsert_product_mapping(
                session, tenant_id, bling_product_id, event=event, stock_quantity=quantity
            )
            product = await find_local_product(session, tenant_id, bling_product_id)
            changed = False
            previous = None
            if product is not None and quantity is not None:
                mapping.product_id = product.id
                previous = product.stock_quantity
                changed = previous != quantity
                product.stock_quantity = quantity
            await session.commit()
            product_id = product.id if product is not None else None

        if changed:
            await self._publish(
                EventTypes.PRODUCT_STOCK_UPDATED,
                {
                    "product_id": product_id,
                    "bling_product_id": bling_product_id,
                    "old_quantity": previous,
                    "new_quantity": quantity,
                },
                tenant_id,
            )
        return changed

    async def sync_stock(self, tenant_id: str, progress: ProgressCallback = _no_progress) -> dict[str, Any]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProductSyncMapping.bling_product_id).where(
                    ProductSyncMapping.tenant_id == tenant_id,
                    ProductSyncMapping.product_id.is_not(None),
                    ProductSyncMapping.sync_status != "deleted",
                )
            )
            bling_ids = [row[0] for row in result.all()]

        summary = {"checked": 0, "changed": 0, "errors": 0}
        total = len(bling_ids)
        for index, bling_id in enumerate(bling_ids, start=1):
            try:
                stock = await self._api.get_stock(tenant_id, bling_id)
                if await self.apply_stock_update(
                    tenant_id, bling_id, extract_stock_quantity(stock), event="stock.sync"
                ):
                    summary["changed"] += 1
                summary["checked"] += 1
            except AppException as e:
                summary["errors"] += 1
                logger.warning(
                    "Stock sync failed for product",
                    extra_data={"tenant_id": tenant_id, "bling_product_id": bling_id, "error": e.message},
                )
            await progress(index * 100 / total, f"stock {index}/{total}")
        if not total:
            await progress(100, "no mapped products")
        return summary

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def apply_remote_order(self, tenant_id: str, order: dict[str, Any], *, event: str) -> bool:
        async with self._session_factory() as session:
            mapping = await upsert_order_mapping(session, tenant_id, order, event=event)
            await session.commit()
        return mapping is not None

    async def sync_orders(
        self,
        tenant_id: str,
        *,
        order_ids: list[str] | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        progress: ProgressCallback = _no_progress,
    ) -> dict[str, Any]:
        summary = {"processed": 0, "errors": 0}

        if order_ids:
            total = len(order_ids)
            for index, order_id in enumerate(order_ids, start=1):
                try:
                    order = await self._api.get_order(tenant_id, order_id)
                    if await self.apply_remote_order(tenant_id, order, event="order.sync"):
                        summary["processed"] += 1
                except AppException as e:
                    summary["errors"] += 1
                    logger.warning(
                        "Order sync failed",
                        extra_data={"tenant_id": tenant_id, "bling_order_id": order_id, "error": e.message},
                    )
                await progress(index * 100 / total, f"orders {index}/{total}")
            return summary

        pages = 0
        async for page in self._api.iter_orders(
            tenant_id, page_size=self.page_size, date_from=date_from, date_to=date_to
        ):
            pages += 1
            for order in page:
                if await self.apply_remote_order(tenant_id, order, event="order.sync"):
                    summary["processed"] += 1
            await progress(min(90, pages * 10), f"orders page {pages}")
        await progress(100, "orders done")
        return summary
