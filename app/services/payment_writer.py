"""
Idempotent payment writes keyed by (provider, provider_payment_id).

The unique constraint on that pair is the only guard against duplicates.
Concurrent writers (job workers, webhooks) race freely: whoever loses the
INSERT gets an IntegrityError, re-reads the winner's row and reconciles the
mutable flags on it. The violation never reaches the caller.
"""
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.payment import Payment, PaymentProvider
from app.services.attribution import PaymentHints, link_payment_to_visitor

logger = logging.getLogger(__name__)


class UpsertOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class PaymentFields:
    website_id: uuid.UUID
    provider: PaymentProvider
    provider_payment_id: str
    amount: int  # minor units
    currency: str = "usd"
    renewal: bool = False
    refunded: bool = False
    customer_email: Optional[str] = None
    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    visitor_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass
class UpsertResult:
    payment: Payment
    outcome: UpsertOutcome


def to_minor_units(amount: Union[int, float, str, Decimal]) -> int:
    """
    Convert a major-unit amount (19.99) to integer minor units (1999).

    Goes through Decimal(str(...)) so binary float noise cannot shift the
    rounding (19.99 * 100 == 1998.9999999999998 as a float).
    """
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def find_payment(db: Session, provider: PaymentProvider, provider_payment_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(
        Payment.provider == PaymentProvider(provider).value,
        Payment.provider_payment_id == provider_payment_id,
    ).first()


def _reconcile(db: Session, payment: Payment, fields: PaymentFields) -> UpsertOutcome:
    """Apply the only mutable business fields (renewal, refunded) to an existing row."""
    changed = False
    if payment.renewal != fields.renewal:
        payment.renewal = fields.renewal
        changed = True
    if payment.refunded != fields.refunded:
        payment.refunded = fields.refunded
        changed = True
    if not changed:
        return UpsertOutcome.UNCHANGED
    payment.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(payment)
    return UpsertOutcome.UPDATED


def upsert_payment(db: Session, fields: PaymentFields) -> UpsertResult:
    """
    Create the payment, or reconcile the existing row with the same natural key.

    Commits its own unit of work.
    """
    provider = PaymentProvider(fields.provider)

    existing = find_payment(db, provider, fields.provider_payment_id)
    if existing:
        return UpsertResult(existing, _reconcile(db, existing, fields))

    visitor_id = fields.visitor_id
    session_id = fields.session_id
    timestamp = fields.timestamp or datetime.utcnow()

    if not visitor_id and not session_id:
        link = link_payment_to_visitor(
            db,
            PaymentHints(metadata=fields.metadata, customer_email=fields.customer_email, timestamp=timestamp),
            fields.website_id,
        )
        if link:
            visitor_id = link.visitor_id
            session_id = link.session_id

    payment = Payment(
        website_id=fields.website_id,
        provider=provider.value,
        provider_payment_id=fields.provider_payment_id,
        amount=int(fields.amount),
        currency=(fields.currency or "usd").lower(),
        renewal=fields.renewal,
        refunded=fields.refunded,
        customer_email=fields.customer_email,
        customer_id=fields.customer_id,
        session_id=session_id,
        visitor_id=visitor_id,
        payment_metadata=fields.metadata or None,
        timestamp=timestamp,
    )

    try:
        db.add(payment)
        db.commit()
    except IntegrityError:
        # Another writer created the same natural key between our read and insert
        db.rollback()
        winner = find_payment(db, provider, fields.provider_payment_id)
        if winner is None:
            # Not a natural-key race (e.g. unknown website); surface it
            raise
        logger.info("[PAYMENTS] Lost create race for %s %s, reconciling existing row",
                    provider.value, fields.provider_payment_id)
        return UpsertResult(winner, _reconcile(db, winner, fields))

    db.refresh(payment)
    return UpsertResult(payment, UpsertOutcome.CREATED)


def delete_payments_by_provider(db: Session, website_id: uuid.UUID, provider: PaymentProvider) -> int:
    """Bulk-delete every payment of one provider for a website."""
    deleted = db.query(Payment).filter(
        Payment.website_id == website_id,
        Payment.provider == PaymentProvider(provider).value,
    ).delete(synchronize_session=False)
    db.commit()
    logger.info("[PAYMENTS] Deleted %s %s payments for website %s", deleted, PaymentProvider(provider).value, website_id)
    return deleted
