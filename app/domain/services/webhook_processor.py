"""
Webhook Processor - קליטת webhooks מ-Bling.

סדר הבדיקות:
1. חתימת HMAC-SHA256 על ה-body הגולמי
2. טריות X-Timestamp (חלון של 5 דקות לשני הכיוונים)
   - כשלון ב-1/2 נרשם כ-failed סופי תחת מפתח נפרד (rejected:...) ונדחה
3. פענוח ו-ולידציה של ה-payload - כשלון נרשם כ-failed סופי (audit בלבד)
4. תפיסת מפתח idempotency (INSERT ב-savepoint, ואז החלטה לפי הרשומה הקיימת)
5. עדכון מיפויים + פרסום אירוע מנורמל, ורק אז processed
"""
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    NotFoundException,
    ValidationException,
    WebhookPayloadError,
    WebhookSignatureError,
    WebhookTimestampError,
)
from app.core.logging import get_logger, set_tenant_context
from app.core.periodic import PeriodicTask
from app.core.time_utils import utcnow
from app.db.database import SessionFactory
from app.db.models.tenant_connection import TenantConnection
from app.db.models.webhook_record import WebhookRecord, WebhookStatus
from app.domain.services.event_bus import EventTypes
from app.domain.services.sync_service import (
    CatalogSyncService,
    _bling_id,
    extract_stock_quantity,
    upsert_product_mapping,
)

logger = get_logger(__name__)

# אירוע Bling → אירוע פנימי מנורמל
WEBHOOK_EVENT_MAP: dict[str, str] = {
    "product.created": EventTypes.PRODUCT_CREATED,
    "product.updated": EventTypes.PRODUCT_UPDATED,
    "product.deleted": EventTypes.PRODUCT_DELETED,
    "stock.updated": EventTypes.STOCK_UPDATED,
    "order.created": EventTypes.ORDER_RECEIVED,
    "order.updated": EventTypes.ORDER_RECEIVED,
    "order.status_changed": EventTypes.ORDER_STATUS_CHANGED,
    "order.cancelled": EventTypes.ORDER_CANCELLED,
    "invoice.created": EventTypes.INVOICE_CREATED,
    "customer.updated": EventTypes.CUSTOMER_UPDATED,
}

ALLOWED_WEBHOOK_EVENTS = frozenset(WEBHOOK_EVENT_MAP)

# כותרות שנשמרות ב-audit (בלי החתימה)
_AUDITED_HEADERS = ("x-timestamp", "x-delivery-id", "x-idempotency-key", "user-agent", "content-type")


class WebhookPayload(BaseModel):
    """Incoming Bling webhook body"""

    model_config = ConfigDict(extra="allow")

    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    version: str | int | None = None

    @field_validator("event")
    @classmethod
    def validate_event(cls, v: str) -> str:
        v = v.strip()
        if v not in ALLOWED_WEBHOOK_EVENTS:
            raise ValueError(f"event '{v}' is not supported")
        return v


@dataclass(frozen=True)
class WebhookResult:
    status: str  # processed | duplicate
    record_id: int | None
    idempotency_key: str
    event: str | None = None
    tenant_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "record_id": self.record_id,
            "idempotency_key": self.idempotency_key,
            "event": self.event,
            "tenant_id": self.tenant_id,
            "reason": self.reason,
        }


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def build_idempotency_key(raw_body: bytes, headers: Mapping[str, str]) -> str:
    """מזהה המסירה מ-Bling אם נשלח, אחרת hash של ה-body"""
    delivery_id = headers.get("x-delivery-id") or headers.get("x-idempotency-key")
    if delivery_id:
        return f"delivery:{delivery_id.strip()[:180]}"
    return f"sha256:{hashlib.sha256(raw_body).hexdigest()}"


def build_rejection_key(raw_body: bytes, reason: str) -> str:
    # בקשה לא מאומתת לא תופסת את מפתח ה-idempotency של המסירה האמיתית
    return f"rejected:{reason}:{hashlib.sha256(raw_body).hexdigest()}"


class WebhookProcessor:
    def __init__(
        self,
        session_factory: SessionFactory,
        catalog: CatalogSyncService,
        event_bus: Any,
        *,
        secret: str | None = None,
        max_timestamp_age_seconds: int | None = None,
        max_retries: int | None = None,
        stale_processing_seconds: int | None = None,
        retry_batch_size: int | None = None,
        retry_interval_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._event_bus = event_bus
        self._secret = settings.BLING_WEBHOOK_SECRET if secret is None else secret
        self.max_timestamp_age_seconds = (
            settings.WEBHOOK_MAX_TIMESTAMP_AGE_SECONDS if max_timestamp_age_seconds is None
            else max_timestamp_age_seconds
        )
        self.max_retries = settings.WEBHOOK_MAX_RETRIES if max_retries is None else max_retries
        self.stale_processing = timedelta(
            seconds=settings.WEBHOOK_STALE_PROCESSING_SECONDS if stale_processing_seconds is None
            else stale_processing_seconds
        )
        self.retry_batch_size = retry_batch_size or settings.WEBHOOK_RETRY_BATCH_SIZE
        self._clock = clock
        self._stats = {
            "received": 0,
            "processed": 0,
            "duplicates": 0,
            "rejected_signature": 0,
            "rejected_timestamp": 0,
            "rejected_payload": 0,
            "failed": 0,
            "retried": 0,
        }
        self._loop = PeriodicTask(
            "webhook-retry",
            retry_interval_seconds or settings.WEBHOOK_RETRY_INTERVAL_SECONDS,
            self.retry_failed_webhooks,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_signature(self, raw_body: bytes, signature: str | None) -> None:
        if not self._secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing X-Signature header")

        provided = signature.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[len("sha256="):]
        expected = compute_signature(raw_body, self._secret)
        # השוואה בטוחה מפני timing attacks
        if not hmac.compare_digest(provided.lower(), expected):
            raise WebhookSignatureError()

    def verify_timestamp(self, timestamp: str | None) -> None:
        if not timestamp:
            raise WebhookTimestampError("Missing X-Timestamp header")
        try:
            sent_at = float(timestamp.strip())
        except ValueError:
            raise WebhookTimestampError("X-Timestamp is not a unix timestamp")

        age = self._clock() - sent_at
        if abs(age) > self.max_timestamp_age_seconds:
            raise WebhookTimestampError(
                f"Webhook timestamp outside the {self.max_timestamp_age_seconds}s window",
                age_seconds=round(age, 1),
            )

    @staticmethod
    def parse_payload(raw_body: bytes) -> WebhookPayload:
        try:
            body = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WebhookPayloadError("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise WebhookPayloadError("Webhook body must be a JSON object")
        try:
            return WebhookPayload.model_validate(body)
        except ValidationError as exc:
            raise WebhookPayloadError(
                "Webhook payload failed validation",
                details={"errors": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in exc.errors()
                ]},
            ) from exc

    async def resolve_tenant(self, payload: WebhookPayload) -> str:
        data = payload.data
        tenant_id = data.get("tenantId") or data.get("tenant_id")
        if tenant_id:
            return str(tenant_id)

        extra = payload.model_extra or {}
        company_id = data.get("companyId") or extra.get("companyId")
        if company_id:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(TenantConnection.tenant_id).where(
                        TenantConnection.bling_company_id == str(company_id),
                        TenantConnection.is_active.is_(True),
                    )
                )
                tenant_id = result.scalar_one_or_none()
            if tenant_id:
                return tenant_id

        raise WebhookPayloadError(
            "Cannot resolve tenant for webhook",
            details={"company_id": str(company_id) if company_id else None},
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """
        עיבוד webhook נכנס.

        Raises:
            WebhookSignatureError / WebhookTimestampError: נרשם כ-failed סופי ונדחה
            WebhookPayloadError: נרשם כ-failed ללא ניסיונות חוזרים
            AppException / Exception: כשלון ב-handler - הרשומה failed ותנוסה שוב ב-sweep
        """
        self._stats["received"] += 1
        normalized = {key.lower(): value for key, value in headers.items()}
        audited_headers = {h: normalized[h] for h in _AUDITED_HEADERS if h in normalized}

        try:
            self.verify_signature(raw_body, normalized.get("x-signature"))
        except WebhookSignatureError as e:
            self._stats["rejected_signature"] += 1
            logger.warning("Webhook rejected", extra_data={"rejection": "signature", "reason": e.message})
            await self._record_rejected(build_rejection_key(raw_body, "signature"), raw_body, audited_headers, e)
            raise
        try:
            self.verify_timestamp(normalized.get("x-timestamp"))
        except WebhookTimestampError as e:
            self._stats["rejected_timestamp"] += 1
            logger.warning(
                "Webhook rejected",
                extra_data={"rejection": "timestamp", "reason": e.message, **e.details},
            )
            await self._record_rejected(build_rejection_key(raw_body, "timestamp"), raw_body, audited_headers, e)
            raise

        key = build_idempotency_key(raw_body, normalized)

        try:
            payload = self.parse_payload(raw_body)
            tenant_id = await self.resolve_tenant(payload)
        except WebhookPayloadError as e:
            self._stats["rejected_payload"] += 1
            logger.warning(
                "Webhook rejected",
                extra_data={"rejection": "payload", "reason": e.message, "idempotency_key": key},
            )
            await self._record_rejected(key, raw_body, audited_headers, e)
            raise

        set_tenant_context(tenant_id)
        record_id, claim = await self._claim(key, payload, tenant_id, audited_headers)
        if claim in ("duplicate", "in_progress"):
            self._stats["duplicates"] += 1
            logger.info(
                "Duplicate webhook skipped",
                extra_data={"idempotency_key": key, "record_id": record_id, "reason": claim},
            )
            return WebhookResult(
                status="duplicate",
                record_id=record_id,
                idempotency_key=key,
                event=payload.event,
                tenant_id=tenant_id,
                reason=claim,
            )

        await self._run_handlers(record_id, payload, tenant_id)
        return WebhookResult(
            status="processed",
            record_id=record_id,
            idempotency_key=key,
            event=payload.event,
            tenant_id=tenant_id,
        )

    async def _record_rejected(
        self, key: str, raw_body: bytes, headers: dict[str, str], error: AppException
    ) -> None:
        """audit בלבד: failed עם retry_count = max_retries כדי שה-sweep לא ייגע בה"""
        try:
            body: Any = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            body = {"raw": raw_body[:2000].decode("utf-8", errors="replace")}
        if not isinstance(body, dict):
            body = {"raw": body}

        async with self._session_factory() as session:
            try:
                async with session.begin_nested():
                    session.add(
                        WebhookRecord(
                            idempotency_key=key,
                            event_type=str(body.get("event"))[:50] if body.get("event") else None,
                            payload=body,
                            headers=headers,
                            status=WebhookStatus.FAILED.value,
                            retry_count=self.max_retries,
                            max_retries=self.max_retries,
                            error=error.message[:2000],
                        )
                    )
                await session.commit()
            except IntegrityError:
                logger.info("Rejected webhook already audited", extra_data={"idempotency_key": key})

    async def _claim(
        self, key: str, payload: WebhookPayload, tenant_id: str, headers: dict[str, str]
    ) -> tuple[int | None, str]:
        """
        תפיסת רשומת ה-webhook לעיבוד.

        גישה אופטימיסטית: INSERT קודם, ובהתנגשות - החלטה לפי הרשומה הקיימת:
        processed → duplicate; processing טרי → in_progress;
        processing תקוע או failed עם ניסיונות → reclaimed (UPDATE אטומי).
        """
        async with self._session_factory() as session:
            record = WebhookRecord(
                idempotency_key=key,
                event_type=payload.event,
                tenant_id=tenant_id,
                payload=payload.model_dump(mode="json"),
                headers=headers,
                status=WebhookStatus.PROCESSING.value,
                retry_count=0,
                max_retries=self.max_retries,
            )
            try:
                async with session.begin_nested():
                    session.add(record)
                # commit מיידי כדי שהרשומה תישמר גם אם העיבוד נכשל
                await session.commit()
                return record.id, "claimed"
            except IntegrityError:
                pass  # כבר קיים - בדיקה אם processed או stale

            result = await session.execute(
                select(WebhookRecord.id, WebhookRecord.status).where(WebhookRecord.idempotency_key == key)
            )
            row = result.one_or_none()
            if row is None:
                return None, "in_progress"
            if row.status == WebhookStatus.PROCESSED.value:
                return row.id, "duplicate"

            now = utcnow()
            reclaim = await session.execute(
                update(WebhookRecord)
                .where(
                    WebhookRecord.id == row.id,
                    or_(
                        and_(
                            WebhookRecord.status == WebhookStatus.PROCESSING.value,
                            WebhookRecord.updated_at < now - self.stale_processing,
                        ),
                        and_(
                            WebhookRecord.status == WebhookStatus.FAILED.value,
                            WebhookRecord.retry_count < WebhookRecord.max_retries,
                        ),
                    ),
                )
                .values(
                    status=WebhookStatus.PROCESSING.value,
                    retry_count=WebhookRecord.retry_count + 1,
                    error=None,
                    updated_at=now,
                )
            )
            if reclaim.rowcount > 0:
                await session.commit()
                logger.warning("Reclaimed webhook for reprocessing", extra_data={"record_id": row.id})
                return row.id, "reclaimed"
            return row.id, "in_progress"

    async def _run_handlers(self, record_id: int, payload: WebhookPayload, tenant_id: str) -> None:
        try:
            await self._dispatch(record_id, payload, tenant_id)
        except WebhookPayloadError as e:
            # payload שלא עובר ולידציה לא יעבור גם בניסיון חוזר
            self._stats["rejected_payload"] += 1
            await self._set_status(
                record_id,
                WebhookStatus.FAILED,
                error=e.message[:2000],
                retry_count=WebhookRecord.max_retries,
            )
            logger.warning(
                "Webhook rejected",
                extra_data={
                    "rejection": "payload", "record_id": record_id, "event": payload.event, "reason": e.message,
                },
            )
            raise
        except Exception as e:
            error = e.message if isinstance(e, AppException) else (str(e) or e.__class__.__name__)
            self._stats["failed"] += 1
            await self._set_status(record_id, WebhookStatus.FAILED, error=error[:2000])
            logger.error(
                "Webhook handler failed",
                extra_data={"record_id": record_id, "event": payload.event, "error": error},
            )
            raise
        await self._set_status(record_id, WebhookStatus.PROCESSED, processed_at=utcnow(), error=None)
        self._stats["processed"] += 1
        logger.info(
            "Webhook processed",
            extra_data={"record_id": record_id, "event": payload.event, "tenant_id": tenant_id},
        )

    async def _dispatch(self, record_id: int, payload: WebhookPayload, tenant_id: str) -> None:
        event = payload.event
        data = payload.data

        if event.startswith("product."):
            bling_product_id = _bling_id(data, "produto")
            if bling_product_id is None:
                raise WebhookPayloadError("Product webhook without product id")
            async with self._session_factory() as session:
                await upsert_product_mapping(
                    session,
                    tenant_id,
                    bling_product_id,
                    event=event,
                    sync_status="deleted" if event == "product.deleted" else "pending",
                )
                await session.commit()
        elif event == "stock.updated":
            bling_product_id = _bling_id(data, "produto")
            if bling_product_id is None:
                raise WebhookPayloadError("Stock webhook without product id")
            await self._catalog.apply_stock_update(
                tenant_id, bling_product_id, extract_stock_quantity(data), event=event
            )
        elif event.startswith("order."):
            await self._catalog.apply_remote_order(tenant_id, data, event=event)

        # ניסיון חוזר אחרי שהאירוע המנורמל כבר פורסם לא מפרסם אותו שוב
        published_event_id = await self._published_event_id(record_id)
        if published_event_id is None:
            priority = "high" if event.startswith("order.") else "normal"
            published_event_id = await self._event_bus.publish(
                WEBHOOK_EVENT_MAP[event],
                {"webhook_id": record_id, "event": event, "data": data},
                tenant_id=tenant_id,
                priority=priority,
            )
            await self._set_published(record_id, published_event_id)
        else:
            logger.info(
                "Normalized event already published, skipping",
                extra_data={"record_id": record_id, "event_id": published_event_id},
            )
        await self._event_bus.publish(
            EventTypes.WEBHOOK_PROCESSED,
            {"webhook_id": record_id, "event": event},
            tenant_id=tenant_id,
        )

    async def _published_event_id(self, record_id: int) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookRecord.published_event_id).where(WebhookRecord.id == record_id)
            )
            return result.scalar_one_or_none()

    async def _set_published(self, record_id: int, event_id: str | None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookRecord)
                .where(WebhookRecord.id == record_id)
                .values(published_event_id=str(event_id or "published")[:36], updated_at=utcnow())
            )
            await session.commit()

    async def _set_status(self, record_id: int, status: WebhookStatus, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookRecord)
                .where(WebhookRecord.id == record_id)
                .values(status=status.value, updated_at=utcnow(), **values)
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Retry / replay
    # ------------------------------------------------------------------

    async def retry_failed_webhooks(self, limit: int | None = None) -> dict[str, int]:
        """
        ניסיון חוזר ל-webhooks שנכשלו ב-handler. החתימה והזמן לא נבדקים שוב -
        הם אומתו בקבלה.
        """
        limit = limit or self.retry_batch_size
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookRecord.id)
                .where(
                    WebhookRecord.status == WebhookStatus.FAILED.value,
                    WebhookRecord.retry_count < WebhookRecord.max_retries,
                )
                .order_by(WebhookRecord.received_at, WebhookRecord.id)
                .limit(limit)
            )
            record_ids = [row[0] for row in result.all()]

        summary = {"processed": 0, "succeeded": 0, "failed": 0}
        for record_id in record_ids:
            record = await self._reclaim_for_retry(record_id, respect_budget=True)
            if record is None:
                continue
            summary["processed"] += 1
            self._stats["retried"] += 1
            if await self._redispatch(record):
                summary["succeeded"] += 1
            else:
                summary["failed"] += 1

        if record_ids:
            logger.info("Webhook retry sweep finished", extra_data=summary)
        return summary

    async def replay_webhook(self, record_id: int) -> dict[str, Any]:
        """הרצה חוזרת יזומה (job webhook_replay) - לא מוגבלת בתקציב הניסיונות"""
        async with self._session_factory() as session:
            record = await session.get(WebhookRecord, record_id)
        if record is None:
            raise NotFoundException("Webhook record", record_id)
        if record.status == WebhookStatus.PROCESSED.value:
            return {"record_id": record_id, "status": "already_processed"}
        if record.idempotency_key.startswith("rejected:"):
            # חתימה / זמן לא אומתו - אין מה להריץ
            raise ValidationException("Rejected webhooks cannot be replayed", field="record_id")

        claimed = await self._reclaim_for_retry(record_id, respect_budget=False)
        if claimed is None:
            return {"record_id": record_id, "status": "in_progress"}
        ok = await self._redispatch(claimed)
        return {"record_id": record_id, "status": "processed" if ok else "failed"}

    async def _reclaim_for_retry(self, record_id: int, *, respect_budget: bool) -> WebhookRecord | None:
        conditions = [WebhookRecord.id == record_id, WebhookRecord.status == WebhookStatus.FAILED.value]
        if respect_budget:
            conditions.append(WebhookRecord.retry_count < WebhookRecord.max_retries)

        async with self._session_factory() as session:
            result = await session.execute(
                update(WebhookRecord)
                .where(*conditions)
                .values(
                    status=WebhookStatus.PROCESSING.value,
                    retry_count=WebhookRecord.retry_count + 1,
                    updated_at=utcnow(),
                )
            )
            await session.commit()
            if result.rowcount == 0:
                return None
            return await session.get(WebhookRecord, record_id, populate_existing=True)

    async def _redispatch(self, record: WebhookRecord) -> bool:
        try:
            payload = WebhookPayload.model_validate(record.payload or {})
        except ValidationError as e:
            await self._set_status(record.id, WebhookStatus.FAILED, error=f"Stored payload invalid: {e}"[:2000])
            return False

        tenant_id = record.tenant_id
        if not tenant_id:
            await self._set_status(record.id, WebhookStatus.FAILED, error="Record has no tenant")
            return False

        try:
            await self._run_handlers(record.id, payload, tenant_id)
        except Exception as e:
            logger.warning(
                "Webhook retry failed",
                extra_data={"record_id": record.id, "retry_count": record.retry_count, "error": str(e)},
            )
            return False
        return True

    async def list_failed_records(
        self,
        tenant_id: str,
        *,
        date_from=None,
        date_to=None,
        record_ids: list[int] | None = None,
    ) -> list[int]:
        query = select(WebhookRecord.id).where(
            WebhookRecord.tenant_id == tenant_id,
            WebhookRecord.status == WebhookStatus.FAILED.value,
        )
        if record_ids:
            query = query.where(WebhookRecord.id.in_(record_ids))
        if date_from is not None:
            query = query.where(WebhookRecord.received_at >= date_from)
        if date_to is not None:
            query = query.where(WebhookRecord.received_at <= date_to)
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(WebhookRecord.received_at))
            return [row[0] for row in result.all()]

    # ------------------------------------------------------------------
    # Stats / maintenance
    # ------------------------------------------------------------------

    async def get_webhook_stats(self, days: int = 7, tenant_id: str | None = None) -> dict[str, Any]:
        since = utcnow() - timedelta(days=days)
        filters = [WebhookRecord.received_at >= since]
        if tenant_id:
            filters.append(WebhookRecord.tenant_id == tenant_id)

        async with self._session_factory() as session:
            by_status = await session.execute(
                select(WebhookRecord.status, func.count()).where(*filters).group_by(WebhookRecord.status)
            )
            by_event = await session.execute(
                select(WebhookRecord.event_type, func.count()).where(*filters).group_by(WebhookRecord.event_type)
            )
            status_counts = {status: count for status, count in by_status.all()}
            event_counts = {event or "unknown": count for event, count in by_event.all()}

        return {
            "period_days": days,
            "total": sum(status_counts.values()),
            "by_status": status_counts,
            "by_event": event_counts,
            "counters": dict(self._stats),
        }

    async def cleanup_old_records(self, days: int | None = None) -> int:
        cutoff = utcnow() - timedelta(days=settings.WEBHOOK_RETENTION_DAYS if days is None else days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(WebhookRecord).where(
                    WebhookRecord.status == WebhookStatus.PROCESSED.value,
                    WebhookRecord.received_at < cutoff,
                )
            )
            await session.commit()
        if result.rowcount:
            logger.info("Old webhook records cleaned up", extra_data={"deleted": result.rowcount})
        return result.rowcount

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)

    def start(self) -> None:
        self._loop.start()

    async def stop(self) -> None:
        await self._loop.stop()
