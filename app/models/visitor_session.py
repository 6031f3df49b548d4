from sqlalchemy import Column, String, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime
from app.db.session import Base


class VisitorSession(Base):
    """
    Anonymous browsing session recorded by the tracking script.
    Only the fields needed to attribute payments are mapped here.
    """
    __tablename__ = "visitor_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    website_id = Column(UUID(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String, nullable=False, index=True)
    visitor_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)  # set by user identification
    email = Column(String, nullable=True, index=True)  # set by user identification
    first_visit_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_visitor_sessions_website_last_seen", "website_id", "last_seen_at"),
    )
