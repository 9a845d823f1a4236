"""
Product Model - מוצר בקטלוג המקומי של ה-tenant.

הפלטפורמה יוצרת ועורכת מוצרים; השירות הזה מעדכן מחירים ומלאי מ-Bling.
"""
from decimal import Decimal

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class Product(Base):
    """מוצר מקומי, מקושר ל-Bling דרך bling_product_id"""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    bling_product_id = Column(String(64), nullable=True)
    sku = Column(String(100), nullable=True)
    name = Column(String(300), nullable=False)
    category_id = Column(Integer, nullable=True)

    price = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    cost_price = Column(Numeric(12, 2), nullable=True)
    promotional_price = Column(Numeric(12, 2), nullable=True)
    wholesale_price = Column(Numeric(12, 2), nullable=True)
    stock_quantity = Column(Integer, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    price_updated_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_products_tenant_bling", "tenant_id", "bling_product_id"),
        Index("ix_products_tenant_sku", "tenant_id", "sku"),
    )
