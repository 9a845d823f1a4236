"""
Product Sync Mapping Model - מצב הסנכרון של מוצר Bling אצל ה-tenant.
"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint

from app.core.time_utils import utcnow
from app.db.database import Base


class ProductSyncMapping(Base):
    """מיפוי מוצר Bling ↔ מוצר מקומי + אירוע אחרון שנקלט"""

    __tablename__ = "product_sync_mappings"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    bling_product_id = Column(String(64), nullable=False)
    product_id = Column(Integer, nullable=True)

    sync_status = Column(String(20), nullable=False, default="pending")  # pending | synced | deleted
    last_event = Column(String(50), nullable=True)
    stock_quantity = Column(Integer, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "bling_product_id", name="uq_product_mapping_tenant_bling"),
    )
