from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Text, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime
import enum
from app.db.session import Base


class AuditEventType(str, enum.Enum):
    """Types of security events to audit"""
    API_KEY_CONNECTED = "api_key_connected"
    API_KEY_DISCONNECTED = "api_key_disconnected"
    PROVIDER_CONFIG_UPDATED = "provider_config_updated"
    UNAUTHORIZED_CRON_ACCESS = "unauthorized_cron_access"


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    website_id = Column(UUID(as_uuid=True), ForeignKey("websites.id", ondelete="SET NULL"), nullable=True, index=True)
    event_type = Column(SQLEnum(AuditEventType, values_callable=lambda e: [m.value for m in e], name="audit_event_type"), nullable=False, index=True)
    resource_type = Column(String, nullable=True)  # e.g., "stripe", "cron"
    resource_id = Column(String, nullable=True)  # e.g., endpoint path
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    details = Column(Text, nullable=True)  # JSON string with additional details
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
