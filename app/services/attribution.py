"""
Best-effort attribution of a payment to the visitor session that produced it.

Two signals, strongest first:
1. Visitor/session ids the site forwarded through checkout metadata.
2. The customer email matched against sessions identified with that email,
   within a lookback window ending at the payment time.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.visitor_session import VisitorSession

logger = logging.getLogger(__name__)

SESSION_ID_KEYS = ("session_id", "sessionId", "datafast_session_id")
VISITOR_ID_KEYS = ("visitor_id", "visitorId", "datafast_visitor_id")


@dataclass
class PaymentHints:
    metadata: Optional[Dict[str, Any]] = None
    customer_email: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class AttributionLink:
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None


def _first_value(metadata: Dict[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


def link_payment_to_visitor(
    db: Session,
    hints: PaymentHints,
    website_id: uuid.UUID,
    lookback_days: Optional[int] = None,
) -> Optional[AttributionLink]:
    """
    Find the most plausible visitor/session for a payment.

    Returns None when nothing matches; callers treat that as unattributed.
    """
    metadata = hints.metadata or {}
    paid_at = hints.timestamp or datetime.utcnow()
    days = lookback_days if lookback_days is not None else settings.ATTRIBUTION_LOOKBACK_DAYS

    session_id = _first_value(metadata, SESSION_ID_KEYS)
    if session_id:
        session = db.query(VisitorSession).filter(
            VisitorSession.website_id == website_id,
            VisitorSession.session_id == session_id,
        ).first()
        if session:
            return AttributionLink(visitor_id=session.visitor_id, session_id=session.session_id)

    visitor_id = _first_value(metadata, VISITOR_ID_KEYS)
    if visitor_id:
        session = (
            db.query(VisitorSession)
            .filter(
                VisitorSession.website_id == website_id,
                VisitorSession.visitor_id == visitor_id,
                VisitorSession.first_visit_at <= paid_at,
            )
            .order_by(VisitorSession.last_seen_at.desc())
            .first()
        )
        if session:
            return AttributionLink(visitor_id=visitor_id, session_id=session.session_id)
        # Forwarded ids are trusted even when the session has not been recorded yet
        return AttributionLink(visitor_id=visitor_id, session_id=session_id)

    if session_id:
        return AttributionLink(session_id=session_id)

    if hints.customer_email:
        email = hints.customer_email.strip().lower()
        session = (
            db.query(VisitorSession)
            .filter(
                VisitorSession.website_id == website_id,
                func.lower(VisitorSession.email) == email,
                VisitorSession.last_seen_at >= paid_at - timedelta(days=days),
                VisitorSession.first_visit_at <= paid_at,
            )
            .order_by(VisitorSession.last_seen_at.desc())
            .first()
        )
        if session:
            return AttributionLink(visitor_id=session.visitor_id, session_id=session.session_id)

    return None
