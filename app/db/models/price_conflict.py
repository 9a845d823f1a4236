"""
Price Conflict Model - קונפליקט בין עריכת מחיר ידנית למחיר שהגיע מ-Bling.

bling_wins / local_wins נרשמים כ-resolved אוטומטית. במצב manual נשמרת שורת
pending אחת לכל (tenant, product) עד שמישהו מכריע בה.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Float, Numeric, JSON, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class ConflictStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ConflictSeverity(str, enum.Enum):
    MEDIUM = "medium"
    HIGH = "high"  # פער של יותר מ-20%


class ConflictAction(str, enum.Enum):
    """הכרעה ידנית"""
    ACCEPT_BLING = "accept_bling"
    KEEP_LOCAL = "keep_local"
    CUSTOM = "custom"
    IGNORE = "ignore"


HIGH_SEVERITY_PERCENT = 20.0


class PriceConflict(Base):
    __tablename__ = "price_conflicts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    product_id = Column(Integer, nullable=False)
    bling_product_id = Column(String(64), nullable=True)

    local_price = Column(Numeric(12, 2), nullable=False)
    bling_price = Column(Numeric(12, 2), nullable=False)
    change_percent = Column(Float, nullable=True)
    severity = Column(String(10), nullable=False, default=ConflictSeverity.MEDIUM.value)

    status = Column(String(20), nullable=False, default=ConflictStatus.PENDING.value)
    # האסטרטגיה שהייתה בתוקף בזמן הזיהוי
    strategy = Column(String(20), nullable=False)
    resolution = Column(String(20), nullable=True)
    resolution_type = Column(String(10), nullable=True)  # auto / manual
    resolved_price = Column(Numeric(12, 2), nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolution_reason = Column(String(500), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    detected_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_price_conflicts_product_status", "tenant_id", "product_id", "status"),
        Index("ix_price_conflicts_status_detected", "status", "detected_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "bling_product_id": self.bling_product_id,
            "local_price": str(self.local_price),
            "bling_price": str(self.bling_price),
            "change_percent": self.change_percent,
            "severity": self.severity,
            "status": self.status,
            "strategy": self.strategy,
            "resolution": self.resolution,
            "resolution_type": self.resolution_type,
            "resolved_price": str(self.resolved_price) if self.resolved_price is not None else None,
            "resolved_by": self.resolved_by,
            "resolution_reason": self.resolution_reason,
            "metadata": self.metadata_json,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
