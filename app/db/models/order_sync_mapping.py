"""
Order Sync Mapping Model - מצב הסנכרון של הזמנת Bling אצל ה-tenant.
"""
from sqlalchemy import Column, Integer, String, DateTime, Numeric, UniqueConstraint

from app.core.time_utils import utcnow
from app.db.database import Base


class OrderSyncMapping(Base):
    """הזמנת Bling כפי שנקלטה (סטטוס וסכום אחרונים)"""

    __tablename__ = "order_sync_mappings"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    bling_order_id = Column(String(64), nullable=False)
    order_number = Column(String(64), nullable=True)

    bling_status = Column(String(50), nullable=True)
    total = Column(Numeric(12, 2), nullable=True)
    sync_status = Column(String(20), nullable=False, default="synced")  # synced | cancelled
    last_event = Column(String(50), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "bling_order_id", name="uq_order_mapping_tenant_bling"),
    )
