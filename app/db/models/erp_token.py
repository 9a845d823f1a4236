"""
ERP Token Model - טוקן OAuth של Bling, רשומה חיה אחת לכל tenant.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text

from app.core.time_utils import utcnow
from app.db.database import Base


class ErpToken(Base):
    """Access/refresh token של tenant מול Bling"""

    __tablename__ = "erp_tokens"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, unique=True)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_type = Column(String(20), nullable=False, default="Bearer")
    scope = Column(String(500), nullable=True)
    expires_at = Column(DateTime, nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
