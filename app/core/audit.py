"""
Audit logging for security events
"""
from sqlalchemy.orm import Session
from app.models.audit_log import AuditLog, AuditEventType
from typing import Optional
import json
import logging
import uuid

logger = logging.getLogger(__name__)


def log_security_event(
    db: Session,
    event_type: AuditEventType,
    website_id: Optional[uuid.UUID] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    details: Optional[dict] = None
):
    """
    Log a security event to the audit log.

    Args:
        db: Database session
        event_type: Type of security event
        website_id: Website the event concerns (None for service-wide events)
        resource_type: Type of resource (e.g., "stripe", "cron")
        resource_id: ID of the resource (e.g., endpoint path)
        ip_address: IP address of the request
        user_agent: User agent string
        details: Additional details as a dictionary (will be JSON-encoded)
    """
    try:
        audit_log = AuditLog(
            website_id=website_id,
            event_type=event_type,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=json.dumps(details, default=str) if details else None
        )
        db.add(audit_log)
        db.commit()
    except Exception as e:
        # Audit failures never fail the request
        logger.error("[AUDIT] Failed to log security event %s: %s", event_type.value, e)
        db.rollback()
