from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid
import enum
from datetime import datetime
from app.db.session import Base
from app.models.sync_job import SyncJobProvider


class SyncFrequency(str, enum.Enum):
    REALTIME = "realtime"
    HOURLY = "hourly"
    EVERY_6_HOURS = "every-6-hours"
    DAILY = "daily"


class ProviderConfig(Base):
    """
    Per-website payment provider connection and sync schedule.
    One row per (website, provider).
    """
    __tablename__ = "provider_configs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    website_id = Column(UUID(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(SQLEnum(SyncJobProvider, values_callable=lambda e: [m.value for m in e], name="sync_job_provider"), nullable=False)
    api_key = Column(String, nullable=True)  # encrypted
    webhook_secret = Column(String, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)
    frequency = Column(SQLEnum(SyncFrequency, values_callable=lambda e: [m.value for m in e], name="sync_frequency"), default=SyncFrequency.REALTIME, nullable=False)
    last_sync_at = Column(DateTime, nullable=True)
    next_sync_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    website = relationship("Website", back_populates="provider_configs")

    __table_args__ = (
        UniqueConstraint("website_id", "provider", name="uq_provider_configs_website_provider"),
    )
