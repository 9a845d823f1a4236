"""
Default event subscribers.

כל אירוע בקטלוג חייב subscriber - publish לסוג בלי handler נדחה.
אירועים שאין להם לוגיקה עסקית מקבלים handler של audit log בלבד.
"""
from typing import Any

from app.core.logging import get_logger
from app.db.models.price_history import PriceChangeSource
from app.domain.services.event_bus import BusEvent, EventTypes
from app.domain.services.sync_service import _bling_id, find_local_product

logger = get_logger(__name__)
audit_logger = get_logger("bling_sync.audit")

# אירועים שמקבלים handler של audit log בלבד
AUDITED_EVENTS = (
    EventTypes.STOCK_UPDATED,
    EventTypes.ORDER_RECEIVED,
    EventTypes.ORDER_STATUS_CHANGED,
    EventTypes.ORDER_CANCELLED,
    EventTypes.INVOICE_CREATED,
    EventTypes.CUSTOMER_UPDATED,
    EventTypes.WEBHOOK_PROCESSED,
    EventTypes.PRICES_SYNC_COMPLETED,
    EventTypes.JOB_COMPLETED,
    EventTypes.JOB_FAILED,
    EventTypes.PRODUCT_PRICE_UPDATED,
    EventTypes.PRODUCT_STOCK_UPDATED,
    EventTypes.PRICE_CONFLICT_DETECTED,
    EventTypes.PRICE_CONFLICT_RESOLVED,
)


async def audit_event(event: BusEvent) -> None:
    audit_logger.info(
        f"Event {event.event_type}",
        extra_data={
            "event_id": event.id,
            "event_type": event.event_type,
            "tenant_id": event.tenant_id,
            "retry_count": event.retry_count,
            "payload_keys": sorted(event.payload),
        },
    )


class DefaultEventHandlers:
    def __init__(self, session_factory: Any, price_engine: Any, catalog: Any, orchestrator: Any) -> None:
        self._session_factory = session_factory
        self._price_engine = price_engine
        self._catalog = catalog
        self._orchestrator = orchestrator

    async def on_product_changed(self, event: BusEvent) -> None:
        data = event.payload.get("data") or {}
        bling_product_id = _bling_id(data, "produto")
        if not event.tenant_id or bling_product_id is None:
            logger.warning(
                "Product event without tenant or product id",
                extra_data={"event_id": event.id, "event_type": event.event_type},
            )
            return

        async with self._session_factory() as session:
            product = await find_local_product(session, event.tenant_id, bling_product_id)
        if product is None:
            logger.info(
                "Product not mapped locally, price sync skipped",
                extra_data={"tenant_id": event.tenant_id, "bling_product_id": bling_product_id},
            )
            return

        # payload של webhook לא תמיד כולל מחיר - אז ה-engine מביא מ-Bling
        remote = data if data.get("preco") is not None else None
        result = await self._price_engine.sync_product_price(
            event.tenant_id,
            product.id,
            source=PriceChangeSource.WEBHOOK.value,
            remote_product=remote,
        )
        logger.info(
            "Price sync from product event",
            extra_data={"event_id": event.id, "product_id": product.id, "status": result.status},
        )

    async def on_product_deleted(self, event: BusEvent) -> None:
        data = event.payload.get("data") or {}
        bling_product_id = _bling_id(data, "produto")
        if not event.tenant_id or bling_product_id is None:
            return
        await self._catalog.mark_product_deleted(event.tenant_id, bling_product_id, event=event.event_type)

    async def on_sync_requested(self, event: BusEvent) -> None:
        sync_type = event.payload.get("sync_type") or "product_sync"
        job = await self._orchestrator.enqueue_job(
            sync_type,
            event.payload.get("payload") or {},
            tenant_id=event.tenant_id,
            priority=event.payload.get("priority"),
        )
        logger.info(
            "Sync job enqueued from event",
            extra_data={"event_id": event.id, "job_id": job["job_id"], "job_type": sync_type},
        )


def register_default_handlers(runtime: Any) -> DefaultEventHandlers:
    handlers = DefaultEventHandlers(
        runtime.session_factory, runtime.price_engine, runtime.catalog, runtime.orchestrator
    )
    bus = runtime.event_bus
    bus.subscribe(EventTypes.PRODUCT_CREATED, handlers.on_product_changed)
    bus.subscribe(EventTypes.PRODUCT_UPDATED, handlers.on_product_changed)
    bus.subscribe(EventTypes.PRODUCT_DELETED, handlers.on_product_deleted)
    bus.subscribe(EventTypes.SYNC_REQUESTED, handlers.on_sync_requested)
    for event_type in AUDITED_EVENTS:
        bus.subscribe(event_type, audit_event)
    return handlers
