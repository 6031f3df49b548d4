from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, JSON, Text, Index, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from datetime import datetime
from app.db.session import Base


class SyncJobProvider(str, enum.Enum):
    STRIPE = "stripe"
    LEMONSQUEEZY = "lemonsqueezy"
    POLAR = "polar"
    PADDLE = "paddle"


class SyncJobType(str, enum.Enum):
    MANUAL = "manual"
    CRON = "cron"
    PERIODIC = "periodic"
    WEBHOOK = "webhook"


class SyncJobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncRange(str, enum.Enum):
    TODAY = "today"
    LAST_24H = "last24h"
    LAST_7D = "last7d"
    CUSTOM = "custom"
    REALTIME = "realtime"


# Allowed status transitions. completed and failed are terminal.
JOB_STATUS_TRANSITIONS = {
    SyncJobStatus.PENDING: {SyncJobStatus.PROCESSING, SyncJobStatus.FAILED},
    SyncJobStatus.PROCESSING: {SyncJobStatus.COMPLETED, SyncJobStatus.FAILED, SyncJobStatus.PENDING},
    SyncJobStatus.COMPLETED: set(),
    SyncJobStatus.FAILED: set(),
}

TERMINAL_JOB_STATUSES = {SyncJobStatus.COMPLETED, SyncJobStatus.FAILED}


def sources_for(target: SyncJobStatus) -> list:
    """Statuses a job may move out of to reach `target`."""
    return [src for src, targets in JOB_STATUS_TRANSITIONS.items() if target in targets]


def _enum_values(e):
    return [m.value for m in e]


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    website_id = Column(UUID(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(SQLEnum(SyncJobProvider, values_callable=_enum_values, name="sync_job_provider"), nullable=False, index=True)
    type = Column(SQLEnum(SyncJobType, values_callable=_enum_values, name="sync_job_type"), nullable=False)
    status = Column(SQLEnum(SyncJobStatus, values_callable=_enum_values, name="sync_job_status"), default=SyncJobStatus.PENDING, nullable=False, index=True)
    priority = Column(Integer, default=50, nullable=False)  # higher runs first
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    sync_range = Column(SQLEnum(SyncRange, values_callable=_enum_values, name="sync_range"), nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    result = Column(JSON, nullable=True)  # {"synced": n, "skipped": n, "errors": n}
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # dequeue order
        Index("ix_sync_jobs_status_priority_created", "status", "priority", "created_at"),
        Index("ix_sync_jobs_website_provider_status", "website_id", "provider", "status"),
    )
