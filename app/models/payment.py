from sqlalchemy import Column, String, DateTime, Integer, Boolean, ForeignKey, JSON, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from datetime import datetime
from app.db.session import Base


class PaymentProvider(str, enum.Enum):
    STRIPE = "stripe"
    LEMONSQUEEZY = "lemonsqueezy"
    POLAR = "polar"
    PADDLE = "paddle"
    OTHER = "other"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    website_id = Column(UUID(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String, nullable=False, index=True)  # PaymentProvider value
    provider_payment_id = Column(String, nullable=False, index=True)  # payment intent / refund / checkout id
    amount = Column(Integer, nullable=False)  # minor units (cents)
    currency = Column(String(3), default="usd", nullable=False)
    renewal = Column(Boolean, default=False, nullable=False, index=True)
    refunded = Column(Boolean, default=False, nullable=False, index=True)
    customer_email = Column(String, nullable=True, index=True)
    customer_id = Column(String, nullable=True)
    session_id = Column(String, nullable=True, index=True)
    visitor_id = Column(String, nullable=True, index=True)
    payment_metadata = Column(JSON, nullable=True)  # 'metadata' is reserved by SQLAlchemy
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)  # event time
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_payment_id"),
        Index("ix_payments_website_timestamp", "website_id", "timestamp"),
    )
