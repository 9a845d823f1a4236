"""
Price History Model - היסטוריית שינויי מחיר (append-only).

נמחק רק ע"י ניקוי retention (ברירת מחדל: 90 יום).
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Float, Numeric, JSON, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class PriceChangeSource(str, enum.Enum):
    AUTOMATIC = "automatic"  # סנכרון מתוזמן / job
    WEBHOOK = "webhook"
    MANUAL = "manual"  # עריכה ידנית בפלטפורמה - בסיס לזיהוי קונפליקטים
    BULK = "bulk"


class PriceHistory(Base):
    """שורת היסטוריה לכל שינוי מחיר שנשמר"""

    __tablename__ = "price_history"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    product_id = Column(Integer, nullable=False)
    bling_product_id = Column(String(64), nullable=True)

    old_price = Column(Numeric(12, 2), nullable=True)
    new_price = Column(Numeric(12, 2), nullable=False)
    change_percent = Column(Float, nullable=True)

    source = Column(String(20), nullable=False, default=PriceChangeSource.AUTOMATIC.value)
    metadata_json = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_price_history_product_created", "tenant_id", "product_id", "created_at"),
        Index("ix_price_history_source_created", "source", "created_at"),
    )
