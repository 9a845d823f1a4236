"""
Price Policy Model - כללי תמחור ברמת מוצר או קטגוריה.

מדיניות מוצר גוברת: כשלמוצר יש מדיניות פעילה, מדיניות הקטגוריה לא מוחלת.
"""
import enum

from sqlalchemy import Column, Integer, String, Boolean, Numeric, DateTime, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class PolicyScope(str, enum.Enum):
    PRODUCT = "product"
    CATEGORY = "category"


class PolicyType(str, enum.Enum):
    MARKUP_PERCENT = "markup_percent"
    DISCOUNT_PERCENT = "discount_percent"
    FIXED_PRICE = "fixed_price"
    MIN_PRICE = "min_price"
    MAX_PRICE = "max_price"


class PricePolicy(Base):
    """כלל תמחור בודד"""

    __tablename__ = "price_policies"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    scope = Column(String(20), nullable=False)
    product_id = Column(Integer, nullable=True)
    category_id = Column(Integer, nullable=True)

    policy_type = Column(String(30), nullable=False)
    value = Column(Numeric(12, 4), nullable=False)
    priority = Column(Integer, nullable=False, default=0)  # נמוך יותר = מוחל קודם

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_price_policies_product", "tenant_id", "scope", "product_id"),
        Index("ix_price_policies_category", "tenant_id", "scope", "category_id"),
    )
