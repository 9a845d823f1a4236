"""
Built-in job handlers.

כל handler הוא idempotent - ריצה חוזרת אחרי retry / recovery לא יוצרת כפילויות
(upsert לפי bling id, מחיקות לפי cutoff).
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select

from app.core.exceptions import AppException, ValidationException
from app.core.logging import get_logger
from app.core.time_utils import utcnow
from app.db.database import SessionFactory
from app.db.models.price_history import PriceHistory
from app.db.models.price_policy import PolicyScope, PolicyType, PricePolicy
from app.db.models.sync_job import SyncJob
from app.domain.services.job_orchestrator import JobContext, JobOrchestrator
from app.domain.services.price_policies import to_decimal

logger = get_logger(__name__)

# (timeout שניות, max retries, priority)
JOB_TYPE_DEFAULTS: dict[str, tuple[int, int, str]] = {
    "full_sync": (1800, 2, "normal"),
    "product_sync": (600, 3, "normal"),
    "order_sync": (300, 3, "high"),
    "stock_sync": (300, 3, "high"),
    "bulk_import": (3600, 1, "low"),
    "cleanup": (600, 1, "low"),
    "report_generation": (900, 2, "low"),
    "webhook_replay": (600, 3, "normal"),
}

MAX_ERROR_DETAILS = 50


def _require_tenant(context: JobContext) -> str:
    if not context.tenant_id:
        raise ValidationException(f"{context.job_type} requires tenant_id", field="tenant_id")
    return context.tenant_id


def _order_date_range(payload: dict[str, Any]) -> tuple[str, str]:
    """טווח תאריכים לפורמט של Bling (YYYY-MM-DD); ברירת מחדל - N ימים אחרונים"""
    today = utcnow().date()
    date_to = payload.get("date_to") or today.isoformat()
    date_from = payload.get("date_from")
    if not date_from:
        days = int(payload.get("days", 30))
        date_from = (today - timedelta(days=days)).isoformat()
    return str(date_from), str(date_to)


def _parse_datetime(value: Any, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationException(f"Invalid date: {value}", field=field)
    if isinstance(value, str) and len(value) == 10 and field == "date_to":
        # תאריך בלבד - כל היום נכלל
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed.replace(tzinfo=None)


class _PhaseProgress:
    """ממפה התקדמות של שלב (0-100) לטווח שלו בתוך ה-job"""

    def __init__(self, context: JobContext, start: float, end: float, label: str) -> None:
        self._context = context
        self._start = start
        self._span = end - start
        self._label = label

    async def __call__(self, percent: float, message: str | None = None) -> None:
        await self._context.report_progress(
            self._start + self._span * percent / 100, f"{self._label}: {message}" if message else self._label
        )


class SyncJobHandlers:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        catalog: Any,
        price_engine: Any,
        webhook_processor: Any,
        token_coordinator: Any,
        event_bus: Any,
        orchestrator: JobOrchestrator,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._price_engine = price_engine
        self._webhooks = webhook_processor
        self._tokens = token_coordinator
        self._event_bus = event_bus
        self._orchestrator = orchestrator

    def register(self, orchestrator: JobOrchestrator | None = None) -> None:
        orchestrator = orchestrator or self._orchestrator
        handlers = {
            "full_sync": self.full_sync,
            "product_sync": self.product_sync,
            "order_sync": self.order_sync,
            "stock_sync": self.stock_sync,
            "bulk_import": self.bulk_import,
            "cleanup": self.cleanup,
            "report_generation": self.report_generation,
            "webhook_replay": self.webhook_replay,
        }
        for name, handler in handlers.items():
            timeout, retries, priority = JOB_TYPE_DEFAULTS[name]
            orchestrator.register_job_type(
                name, handler, timeout_seconds=timeout, max_retries=retries, priority=priority
            )

    # ------------------------------------------------------------------
    # Sync jobs
    # ------------------------------------------------------------------

    async def full_sync(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        tenant_id = _require_tenant(context)
        date_from, date_to = _order_date_range(payload)

        products = await self._catalog.sync_products(
            tenant_id, progress=_PhaseProgress(context, 0, 60, "products")
        )
        stock = await self._catalog.sync_stock(tenant_id, progress=_PhaseProgress(context, 60, 80, "stock"))
        orders = await self._catalog.sync_orders(
            tenant_id,
            date_from=date_from,
            date_to=date_to,
            progress=_PhaseProgress(context, 80, 100, "orders"),
        )
        await context.report_progress(100, "full sync done")
        return {"products": products, "stock": stock, "orders": orders}

    async def product_sync(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        tenant_id = _require_tenant(context)
        product_ids = [str(p) for p in payload.get("product_ids") or []]
        result = await self._catalog.sync_products(
            tenant_id, product_ids or None, progress=context.report_progress
        )
        await context.report_progress(100)
        return result

    async def order_sync(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        tenant_id = _require_tenant(context)
        order_ids = [str(o) for o in payload.get("order_ids") or []]
        if order_ids:
            result = await self._catalog.sync_orders(
                tenant_id, order_ids=order_ids, progress=context.report_progress
            )
        else:
            date_from, date_to = _order_date_range(payload)
            result = await self._catalog.sync_orders(
                tenant_id, date_from=date_from, date_to=date_to, progress=context.report_progress
            )
        await context.report_progress(100)
        return result

    async def stock_sync(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        tenant_id = _require_tenant(context)
        result = await self._catalog.sync_stock(tenant_id, progress=context.report_progress)
        await context.report_progress(100)
        return result

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------

    async def bulk_import(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        tenant_id = _require_tenant(context)
        import_type = payload.get("import_type")
        if import_type not in ("products", "price_policies"):
            raise ValidationException(
                f"Unknown import_type: {import_type}",
                field="import_type",
                details={"allowed": ["products", "price_policies"]},
            )
        items = payload.get("items") or []
        if not isinstance(items, list):
            raise ValidationException("items must be a list", field="items")
        batch_size = max(1, int(payload.get("batch_size", 50)))

        summary: dict[str, Any] = {"import_type": import_type, "total": len(items), "imported": 0,
                                   "errors": 0, "error_details": []}
        for offset in range(0, len(items), batch_size):
            batch = items[offset:offset + batch_size]
            if import_type == "products":
                await self._import_products(tenant_id, batch, offset, summary)
            else:
                await self._import_policies(tenant_id, batch, offset, summary)
            await context.report_progress(
                (offset + len(batch)) * 100 / len(items), f"{offset + len(batch)}/{len(items)}"
            )

        if items and summary["imported"] == 0:
            # רק כשכל הפריטים נכשלו ה-job עצמו נכשל
            raise ValidationException(
                "Bulk import failed for every item",
                details={"error_details": summary["error_details"][:5]},
            )
        await context.report_progress(100)
        return summary

    @staticmethod
    def _record_item_error(summary: dict[str, Any], index: int, error: str) -> None:
        summary["errors"] += 1
        if len(summary["error_details"]) < MAX_ERROR_DETAILS:
            summary["error_details"].append({"index": index, "error": error})

    async def _import_products(
        self, tenant_id: str, batch: list[Any], offset: int, summary: dict[str, Any]
    ) -> None:
        for index, item in enumerate(batch, start=offset):
            if not isinstance(item, dict):
                self._record_item_error(summary, index, "item must be an object")
                continue
            try:
                outcome = await self._catalog.apply_remote_product(
                    tenant_id, item, event="bulk_import", price_source="bulk"
                )
            except AppException as e:
                self._record_item_error(summary, index, e.message)
                continue
            if outcome["status"] == "skipped":
                self._record_item_error(summary, index, outcome.get("reason", "skipped"))
            else:
                summary["imported"] += 1

    async def _import_policies(
        self, tenant_id: str, batch: list[Any], offset: int, summary: dict[str, Any]
    ) -> None:
        valid: list[PricePolicy] = []
        for index, item in enumerate(batch, start=offset):
            if not isinstance(item, dict):
                self._record_item_error(summary, index, "item must be an object")
                continue
            try:
                policy_type = PolicyType(str(item.get("policy_type")))
            except ValueError:
                self._record_item_error(summary, index, f"unknown policy_type {item.get('policy_type')}")
                continue
            value = to_decimal(item.get("value"))
            if value is None or value < Decimal("0"):
                self._record_item_error(summary, index, "value must be a non-negative number")
                continue
            product_id, category_id = item.get("product_id"), item.get("category_id")
            if (product_id is None) == (category_id is None):
                self._record_item_error(summary, index, "exactly one of product_id / category_id is required")
                continue
            valid.append(
                PricePolicy(
                    tenant_id=tenant_id,
                    scope=(PolicyScope.PRODUCT if product_id is not None else PolicyScope.CATEGORY).value,
                    product_id=product_id,
                    category_id=category_id,
                    policy_type=policy_type.value,
                    value=value,
                    priority=int(item.get("priority", 0)),
                    is_active=bool(item.get("is_active", True)),
                )
            )

        if valid:
            async with self._session_factory() as session:
                session.add_all(valid)
                await session.commit()
            summary["imported"] += len(valid)

    # ------------------------------------------------------------------
    # Maintenance / reports
    # ------------------------------------------------------------------

    async def cleanup(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        cleanup_type = payload.get("cleanup_type")
        days = payload.get("older_than_days")
        days = int(days) if days is not None else None

        if cleanup_type == "old_jobs":
            deleted = await self._orchestrator.cleanup_old_jobs(days)
        elif cleanup_type == "old_events":
            deleted = await self._event_bus.cleanup_old_events(days)
        elif cleanup_type == "old_webhooks":
            deleted = await self._webhooks.cleanup_old_records(days)
        elif cleanup_type == "price_history":
            deleted = await self._price_engine.cleanup_old_price_history(days)
        elif cleanup_type == "token_cache":
            deleted = self._tokens.cleanup_cache()
        else:
            raise ValidationException(
                f"Unknown cleanup_type: {cleanup_type}",
                field="cleanup_type",
                details={"allowed": ["old_jobs", "old_events", "old_webhooks", "price_history", "token_cache"]},
            )
        await context.report_progress(100)
        return {"cleanup_type": cleanup_type, "deleted": deleted}

    async def report_generation(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        report_type = payload.get("report_type", "sync_summary")
        days = int(payload.get("days", 7))
        since = utcnow() - timedelta(days=days)

        if report_type == "sync_summary":
            report = await self._sync_summary(context.tenant_id, since)
        elif report_type == "price_changes":
            report = await self._price_changes(context.tenant_id, since)
        elif report_type == "webhook_summary":
            report = await self._webhooks.get_webhook_stats(days, tenant_id=context.tenant_id)
        else:
            raise ValidationException(
                f"Unknown report_type: {report_type}",
                field="report_type",
                details={"allowed": ["sync_summary", "price_changes", "webhook_summary"]},
            )
        await context.report_progress(100)
        return {
            "report_type": report_type,
            "period_days": days,
            "generated_at": utcnow().isoformat(),
            "report": report,
        }

    async def _sync_summary(self, tenant_id: str | None, since: datetime) -> dict[str, Any]:
        query = (
            select(SyncJob.job_type, SyncJob.status, func.count())
            .where(SyncJob.created_at >= since)
            .group_by(SyncJob.job_type, SyncJob.status)
        )
        if tenant_id:
            query = query.where(SyncJob.tenant_id == tenant_id)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).all()

        by_type: dict[str, dict[str, int]] = {}
        for job_type, status, count in rows:
            status_value = status.value if hasattr(status, "value") else str(status)
            by_type.setdefault(job_type, {})[status_value] = count
        return {"total": sum(count for _, _, count in rows), "by_type": by_type}

    async def _price_changes(self, tenant_id: str | None, since: datetime) -> dict[str, Any]:
        query = select(PriceHistory).where(PriceHistory.created_at >= since)
        if tenant_id:
            query = query.where(PriceHistory.tenant_id == tenant_id)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()

        changes = [
            (row, abs(Decimal(row.new_price) - Decimal(row.old_price or 0)))
            for row in rows
        ]
        total_abs = sum((delta for _, delta in changes), Decimal("0"))
        top = sorted(changes, key=lambda item: item[1], reverse=True)[:10]
        return {
            "count": len(changes),
            "average_absolute_change": str((total_abs / len(changes)).quantize(Decimal("0.01"))) if changes else "0.00",
            "by_source": {
                source: sum(1 for row, _ in changes if row.source == source)
                for source in sorted({row.source for row, _ in changes})
            },
            "top_changes": [
                {
                    "product_id": row.product_id,
                    "old_price": str(row.old_price) if row.old_price is not None else None,
                    "new_price": str(row.new_price),
                    "change_percent": row.change_percent,
                    "source": row.source,
                    "created_at": row.created_at.isoformat(),
                }
                for row, _ in top
            ],
        }

    async def webhook_replay(self, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
        tenant_id = _require_tenant(context)
        webhook_ids = [int(i) for i in payload.get("webhook_ids") or []]
        record_ids = await self._webhooks.list_failed_records(
            tenant_id,
            date_from=_parse_datetime(payload.get("date_from"), "date_from"),
            date_to=_parse_datetime(payload.get("date_to"), "date_to"),
            record_ids=webhook_ids or None,
        )

        summary = {"total": len(record_ids), "processed": 0, "failed": 0, "skipped": 0}
        for index, record_id in enumerate(record_ids, start=1):
            outcome = await self._webhooks.replay_webhook(record_id)
            if outcome["status"] == "processed":
                summary["processed"] += 1
            elif outcome["status"] == "failed":
                summary["failed"] += 1
            else:
                summary["skipped"] += 1
            await context.report_progress(index * 100 / len(record_ids), f"{index}/{len(record_ids)}")
        await context.report_progress(100)
        logger.info("Webhook replay finished", extra_data={"tenant_id": tenant_id, **summary})
        return summary


