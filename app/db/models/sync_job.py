"""
Sync Job Model - מצב של jobs ארוכים (סנכרון מלא, ייבוא, דוחות) לשחזור אחרי קריסה.

מעברי סטטוס מותרים: queued → running → (completed | retrying → queued | failed).
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Float, JSON, Enum as SQLEnum, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# סטטוסים שנטענים מחדש לתור ב-startup
RECOVERABLE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.RETRYING)


class SyncJob(Base):
    """Job ארוך שרץ מול Bling בשליטת ה-orchestrator"""

    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True)
    job_type = Column(String(50), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=True)

    payload = Column(JSON, nullable=False, default=dict)
    options = Column(JSON, nullable=False, default=dict)

    priority = Column(SQLEnum(JobPriority), nullable=False, default=JobPriority.NORMAL)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.QUEUED)
    progress = Column(Integer, nullable=False, default=0)
    progress_message = Column(String(500), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Float, nullable=False)

    result = Column(JSON, nullable=True)
    error = Column(String(2000), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    last_heartbeat_at = Column(DateTime, nullable=True)

    processing_seconds = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_sync_jobs_status_created", "status", "created_at"),
        Index("ix_sync_jobs_tenant_created", "tenant_id", "created_at"),
    )
