"""
Sync Event Model - אירועים פנימיים של ה-event bus (audit + שחזור אחרי restart).
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SQLEnum, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class EventStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"


class EventPriority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# אירועים שלא הגיעו למצב סופי - נטענים מחדש לתור החי ב-startup
PENDING_EVENT_STATUSES = (EventStatus.QUEUED, EventStatus.PROCESSING, EventStatus.RETRYING)


class SyncEvent(Base):
    """אירוע שפורסם ל-bus, בבעלות ה-bus עד completed או dead_lettered"""

    __tablename__ = "sync_events"

    id = Column(String(36), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    priority = Column(SQLEnum(EventPriority), nullable=False, default=EventPriority.NORMAL)

    status = Column(SQLEnum(EventStatus), nullable=False, default=EventStatus.QUEUED)
    retry_count = Column(Integer, nullable=False, default=0)
    error = Column(String(2000), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sync_events_status_created", "status", "created_at"),
    )
