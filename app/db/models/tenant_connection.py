"""
Tenant Connection Model - חיבור של tenant ל-Bling (נכתב ע"י תהליך ה-onboarding).
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean

from app.core.time_utils import utcnow
from app.db.database import Base


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class TenantConnection(Base):
    """חיבור Bling של tenant"""

    __tablename__ = "tenant_connections"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, unique=True)
    bling_company_id = Column(String(64), nullable=True, index=True)

    status = Column(String(20), nullable=False, default=ConnectionStatus.CONNECTED.value)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
