"""
Webhook Record Model - audit trail של כל webhook מ-Bling + מפתח idempotency.

רשומה נוצרת (status=processing) לפני כל side effect. רק רשומות processed
נחסמות מעיבוד חוזר; failed עם ניסיונות שנותרו נאספות ע"י ה-retry sweep.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class WebhookStatus(str, enum.Enum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookRecord(Base):
    """webhook שהתקבל מ-Bling"""

    __tablename__ = "webhook_records"

    id = Column(Integer, primary_key=True, index=True)
    idempotency_key = Column(String(200), nullable=False, unique=True)

    event_type = Column(String(50), nullable=True)
    tenant_id = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=True)
    headers = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default=WebhookStatus.PROCESSING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error = Column(String(2000), nullable=True)
    # id האירוע המנורמל שפורסם - ניסיון חוזר לא מפרסם אותו שוב
    published_event_id = Column(String(36), nullable=True)

    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_webhook_records_status_received", "status", "received_at"),
        Index("ix_webhook_records_tenant_received", "tenant_id", "received_at"),
    )
