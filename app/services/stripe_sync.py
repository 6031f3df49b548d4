"""
Service for pulling Stripe payments and refunds into the payments table.

Runs from sync jobs (historical backfill chunks, scheduled windows) and from
the realtime sweep. Each tenant uses its own restricted API key, passed per
request; the global stripe.api_key is never set because several tenants sync
concurrently in one process.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, Optional

import stripe
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.encryption import encrypt_token
from app.core.exceptions import ProviderAuthenticationError, ProviderNotConfiguredError
from app.models.payment import PaymentProvider
from app.models.provider_config import ProviderConfig, SyncFrequency
from app.models.sync_job import SyncJobProvider
from app.schemas.sync import SyncResult
from app.services import job_queue
from app.services.payment_writer import (
    PaymentFields,
    UpsertOutcome,
    delete_payments_by_provider,
    find_payment,
    upsert_payment,
)
from app.services.providers import PaymentProviderSyncer
from app.services.scheduler import register_payment_provider_sync

logger = logging.getLogger(__name__)

PAGE_LIMIT = 100
DEFAULT_RETRY_AFTER_SECONDS = 2

RESTRICTED_KEY_PERMISSIONS = "Core (Read), Billing (Read), Checkout (Read), and Webhook (Write)"
RESTRICTED_KEY_REQUIRED = (
    "Please use a restricted API key (starts with 'rk_'). Create a restricted API key "
    f"with {RESTRICTED_KEY_PERMISSIONS} permissions."
)
INVALID_KEY = "Invalid Stripe API key. Please check your key and try again."
MISSING_PERMISSIONS = (
    "Stripe API key doesn't have the required permissions. Please create a restricted "
    f"API key with {RESTRICTED_KEY_PERMISSIONS} permissions."
)
VALIDATION_FAILED = (
    "Failed to validate Stripe API key. Please check that your restricted key has "
    f"{RESTRICTED_KEY_PERMISSIONS} permissions."
)


def _retry_after_seconds(error: stripe.StripeError) -> float:
    headers = getattr(error, "headers", None) or {}
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value else DEFAULT_RETRY_AFTER_SECONDS
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS


def _object_id(value: Any) -> Optional[str]:
    """Id of a Stripe reference that may be expanded (object) or not (string)."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _to_datetime(created: Any) -> datetime:
    return datetime.utcfromtimestamp(int(created))


def _to_unix(value: datetime) -> int:
    """Naive datetimes are UTC throughout the app."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _require_amount(obj: Dict[str, Any]) -> int:
    amount = obj.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Stripe object {obj.get('id')} has no integer amount")
    return amount


class StripeClient:
    """
    Thin wrapper over the stripe SDK for one API key.

    List calls page through `created[gte/lte]` with `starting_after`, pause
    between pages and wait out rate limits using the Retry-After header a
    bounded number of times.
    """

    def __init__(
        self,
        api_key: str,
        page_delay: Optional[float] = None,
        max_rate_limit_waits: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.page_delay = settings.STRIPE_PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.max_rate_limit_waits = (
            settings.STRIPE_MAX_RATE_LIMIT_WAITS if max_rate_limit_waits is None else max_rate_limit_waits
        )
        self._sleep = sleep

    def _options(self) -> Dict[str, Any]:
        options = {"api_key": self.api_key}
        if settings.STRIPE_API_VERSION:
            options["stripe_version"] = settings.STRIPE_API_VERSION
        return options

    def _list_all(self, resource, start_date: datetime, end_date: datetime, **extra) -> Iterator[Dict[str, Any]]:
        created = {"gte": _to_unix(start_date), "lte": _to_unix(end_date)}
        starting_after = None
        rate_limit_waits = 0
        pages = 0

        while True:
            if pages and self.page_delay:
                self._sleep(self.page_delay)

            params = dict(limit=PAGE_LIMIT, created=created, **extra)
            if starting_after:
                params["starting_after"] = starting_after

            try:
                page = resource.list(**self._options(), **params)
            except stripe.RateLimitError as e:
                rate_limit_waits += 1
                if rate_limit_waits > self.max_rate_limit_waits:
                    raise
                wait = _retry_after_seconds(e)
                logger.warning("[SYNC] Stripe rate limit hit, waiting %ss (%s/%s)",
                               wait, rate_limit_waits, self.max_rate_limit_waits)
                self._sleep(wait)
                continue
            pages += 1

            data = page.get("data") or []
            for obj in data:
                yield obj

            if not page.get("has_more") or not data:
                break
            starting_after = data[-1]["id"]

    def list_payment_intents(self, start_date: datetime, end_date: datetime) -> Iterator[Dict[str, Any]]:
        return self._list_all(stripe.PaymentIntent, start_date, end_date, expand=["data.invoice"])

    def list_refunds(self, start_date: datetime, end_date: datetime) -> Iterator[Dict[str, Any]]:
        return self._list_all(stripe.Refund, start_date, end_date)

    def retrieve_invoice(self, invoice_id: str):
        return stripe.Invoice.retrieve(invoice_id, **self._options())

    def retrieve_charge(self, charge_id: str):
        return stripe.Charge.retrieve(charge_id, expand=["customer"], **self._options())

    def retrieve_payment_intent(self, payment_intent_id: str):
        return stripe.PaymentIntent.retrieve(payment_intent_id, **self._options())

    def check_access(self) -> None:
        """Round trips covering the permissions a sync needs."""
        stripe.Balance.retrieve(**self._options())
        stripe.Customer.list(limit=1, **self._options())
        stripe.checkout.Session.list(limit=1, **self._options())


@dataclass
class StripeConfigResult:
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class StripeChangeDetection:
    is_new_key: bool
    is_removed: bool


class StripePaymentSyncer(PaymentProviderSyncer):
    provider = SyncJobProvider.STRIPE

    def __init__(self, api_key: str, client: Optional[StripeClient] = None):
        self.api_key = api_key
        self.client = client or StripeClient(api_key)

    def validate_api_key(self, api_key: str) -> StripeConfigResult:
        return validate_stripe_api_key(api_key)

    def delete_payments(self, db: Session, website_id: uuid.UUID) -> int:
        return delete_payments_by_provider(db, website_id, PaymentProvider.STRIPE)

    def sync_payments(self, db: Session, website_id: uuid.UUID, start_date: datetime, end_date: datetime) -> SyncResult:
        """
        Pull succeeded payment intents, then refunds, created in [start_date, end_date].

        Objects that fail to map or store are counted in `errors`. Listing
        failures propagate: credential problems as ProviderAuthenticationError,
        anything else (network, exhausted rate-limit waits) as the stripe error.

        When the website has a stored Stripe key, it is re-checked before every
        write and once at the end. After a disconnect mid-run the website's
        Stripe payments are deleted again and ProviderNotConfiguredError is raised.
        """
        logger.info("[SYNC] Stripe sync for website %s from %s to %s", website_id, start_date, end_date)
        ensure_connected = self._connection_guard(db, website_id)
        try:
            payments = self._sync_objects(
                db, website_id, self.client.list_payment_intents(start_date, end_date),
                self._save_payment_intent, "payment intent", ensure_connected,
            )
            refunds = self._sync_objects(
                db, website_id, self.client.list_refunds(start_date, end_date),
                self._save_refund, "refund", ensure_connected,
            )
        except stripe.AuthenticationError as e:
            raise ProviderAuthenticationError(INVALID_KEY, provider="stripe") from e
        except stripe.PermissionError as e:
            raise ProviderAuthenticationError(MISSING_PERMISSIONS, provider="stripe") from e
        if ensure_connected is not None:
            ensure_connected()

        result = payments + refunds
        logger.info("[SYNC] Stripe sync for website %s done: %s synced, %s skipped, %s errors",
                    website_id, result.synced, result.skipped, result.errors)
        return result

    @staticmethod
    def _stored_key(db: Session, website_id: uuid.UUID) -> Optional[str]:
        return db.query(ProviderConfig.api_key).filter(
            ProviderConfig.website_id == website_id,
            ProviderConfig.provider == SyncJobProvider.STRIPE,
        ).scalar()

    def _connection_guard(self, db: Session, website_id: uuid.UUID) -> Optional[Callable[[], None]]:
        stored = self._stored_key(db, website_id)
        if stored is None:
            # One-off sync with an explicit key
            return None

        def ensure_connected() -> None:
            current = self._stored_key(db, website_id)
            if current == stored:
                return
            if current is None:
                deleted = delete_payments_by_provider(db, website_id, PaymentProvider.STRIPE)
                logger.warning("[SYNC] Stripe was disconnected from website %s mid-sync, removed %s payments",
                               website_id, deleted)
                raise ProviderNotConfiguredError("Stripe was disconnected during sync")
            raise ProviderNotConfiguredError("Stripe API key changed during sync")

        return ensure_connected

    def _sync_objects(
        self,
        db: Session,
        website_id: uuid.UUID,
        objects,
        save,
        label: str,
        ensure_connected: Optional[Callable[[], None]] = None,
    ) -> SyncResult:
        result = SyncResult()
        for obj in objects:
            if obj.get("status") != "succeeded":
                result.skipped += 1
                continue
            if ensure_connected is not None:
                ensure_connected()
            try:
                created = save(db, website_id, obj)
            except Exception as e:
                db.rollback()
                result.errors += 1
                logger.warning("[SYNC] Failed to store Stripe %s %s: %s", label, obj.get("id"), e)
                continue
            if created:
                result.synced += 1
            else:
                result.skipped += 1
        return result

    def _resolve_invoice(self, payment_intent: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        invoice = payment_intent.get("invoice")
        if not invoice:
            return None
        if not isinstance(invoice, str):
            return invoice
        try:
            return self.client.retrieve_invoice(invoice)
        except stripe.StripeError as e:
            logger.warning("[SYNC] Could not retrieve invoice %s: %s", invoice, e)
            return None

    def _save_payment_intent(self, db: Session, website_id: uuid.UUID, payment_intent: Dict[str, Any]) -> bool:
        """Store one succeeded payment intent. Returns True when a new row was created."""
        if find_payment(db, PaymentProvider.STRIPE, payment_intent["id"]):
            return False

        amount = _require_amount(payment_intent)
        invoice = self._resolve_invoice(payment_intent)
        billing_reason = invoice.get("billing_reason") if invoice else None

        if billing_reason == "subscription_cycle":
            payment_type = "renewal"
        elif billing_reason == "subscription_create":
            payment_type = "new"
        else:
            payment_type = "one-time"

        metadata = {
            "paymentType": payment_type,
            "billingReason": billing_reason,
            "invoiceId": invoice.get("id") if invoice else None,
        }
        metadata.update(dict(payment_intent.get("metadata") or {}))

        customer_email = payment_intent.get("receipt_email")
        customer_id = _object_id(payment_intent.get("customer"))
        if invoice:
            customer_email = customer_email or invoice.get("customer_email")
            customer_id = customer_id or _object_id(invoice.get("customer"))

        outcome = upsert_payment(db, PaymentFields(
            website_id=website_id,
            provider=PaymentProvider.STRIPE,
            provider_payment_id=payment_intent["id"],
            amount=amount,
            currency=payment_intent.get("currency") or "usd",
            renewal=payment_type == "renewal",
            refunded=False,
            customer_email=customer_email,
            customer_id=customer_id,
            metadata=metadata,
            timestamp=_to_datetime(payment_intent["created"]),
        )).outcome
        return outcome == UpsertOutcome.CREATED

    def _save_refund(self, db: Session, website_id: uuid.UUID, refund: Dict[str, Any]) -> bool:
        """Store one succeeded refund as its own refunded payment row."""
        if find_payment(db, PaymentProvider.STRIPE, refund["id"]):
            return False

        amount = _require_amount(refund)
        customer_email = None
        customer_id = None
        metadata = {
            "refundId": refund["id"],
            "refundReason": refund.get("reason"),
            "receiptNumber": refund.get("receipt_number"),
        }

        charge_id = _object_id(refund.get("charge"))
        if charge_id:
            try:
                charge = self.client.retrieve_charge(charge_id)
                customer_email = (charge.get("billing_details") or {}).get("email")
                customer_id = _object_id(charge.get("customer"))
                metadata.update(dict(charge.get("metadata") or {}))
            except stripe.StripeError as e:
                logger.warning("[SYNC] Could not retrieve charge %s: %s", charge_id, e)

        payment_intent_id = _object_id(refund.get("payment_intent"))
        if not customer_email and payment_intent_id:
            try:
                payment_intent = self.client.retrieve_payment_intent(payment_intent_id)
                customer_email = payment_intent.get("receipt_email")
                customer_id = _object_id(payment_intent.get("customer")) or customer_id
                metadata.update(dict(payment_intent.get("metadata") or {}))
            except stripe.StripeError as e:
                logger.warning("[SYNC] Could not retrieve payment intent %s: %s", payment_intent_id, e)

        outcome = upsert_payment(db, PaymentFields(
            website_id=website_id,
            provider=PaymentProvider.STRIPE,
            provider_payment_id=refund["id"],
            amount=amount,
            currency=refund.get("currency") or "usd",
            renewal=False,
            refunded=True,
            customer_email=customer_email,
            customer_id=customer_id,
            metadata=metadata,
            timestamp=_to_datetime(refund["created"]),
        )).outcome
        return outcome == UpsertOutcome.CREATED


def sync_stripe_payments(
    db: Session,
    website_id: uuid.UUID,
    api_key: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    client: Optional[StripeClient] = None,
) -> SyncResult:
    """One-off sync; defaults to the full historical window ending now."""
    end = end_date or datetime.utcnow()
    start = start_date or end - timedelta(days=settings.HISTORICAL_SYNC_DAYS)
    return StripePaymentSyncer(api_key, client=client).sync_payments(db, website_id, start, end)


def _is_permission_error(error: stripe.StripeError) -> bool:
    if isinstance(error, stripe.PermissionError):
        return True
    code = getattr(error, "code", None) or ""
    status = getattr(error, "http_status", None) or 0
    message = str(error).lower()
    return (
        code in ("resource_missing", "api_key_expired")
        or status == 403
        or any(text in message for text in ("permission", "forbidden", "not allowed"))
    )


def validate_stripe_api_key(api_key: str, client: Optional[StripeClient] = None) -> StripeConfigResult:
    """Check a candidate key before it is stored. Errors are user-facing messages with a 400 status."""
    key = (api_key or "").strip()
    if settings.STRIPE_REQUIRE_RESTRICTED_KEY and not key.startswith("rk_"):
        return StripeConfigResult(error=RESTRICTED_KEY_REQUIRED, status_code=400)

    try:
        (client or StripeClient(key)).check_access()
    except stripe.AuthenticationError:
        return StripeConfigResult(error=INVALID_KEY, status_code=400)
    except stripe.StripeError as e:
        if _is_permission_error(e):
            return StripeConfigResult(error=MISSING_PERMISSIONS, status_code=400)
        logger.warning("[SYNC] Stripe key validation failed: %s", e)
        return StripeConfigResult(error=getattr(e, "user_message", None) or str(e) or VALIDATION_FAILED, status_code=400)
    return StripeConfigResult()


def initialize_sync_config(config: ProviderConfig) -> ProviderConfig:
    """New connections sync in realtime until the user picks a schedule."""
    config.enabled = True
    config.frequency = SyncFrequency.REALTIME
    config.last_sync_at = None
    config.next_sync_at = None
    return config


def detect_stripe_changes(current_key: Optional[str], new_key: Optional[str]) -> StripeChangeDetection:
    """Compare plaintext keys: a different non-empty key is new, an emptied key is a removal."""
    return StripeChangeDetection(
        is_new_key=bool(new_key) and current_key != new_key,
        is_removed=not new_key and bool(current_key),
    )


def handle_provider_removal(db: Session, website_id: uuid.UUID, provider: SyncJobProvider) -> int:
    """
    Stop pending work, drop the stored credential, then every payment the provider produced.

    The credential goes first: a sync still running re-checks it after each
    write, so nothing it stores outlives the payment delete.
    Returns the deleted payment count.
    """
    provider = SyncJobProvider(provider)
    job_queue.cancel_jobs(db, website_id, provider)
    db.query(ProviderConfig).filter(
        ProviderConfig.website_id == website_id,
        ProviderConfig.provider == provider,
    ).delete(synchronize_session=False)
    db.commit()
    return delete_payments_by_provider(db, website_id, PaymentProvider(provider.value))


def connect_stripe(db: Session, website_id: uuid.UUID, api_key: str) -> ProviderConfig:
    """Persist a validated key (encrypted), seed the schedule and register the historical backfill."""
    key = api_key.strip()
    config = db.query(ProviderConfig).filter(
        ProviderConfig.website_id == website_id,
        ProviderConfig.provider == SyncJobProvider.STRIPE,
    ).first()
    if config is None:
        config = ProviderConfig(website_id=website_id, provider=SyncJobProvider.STRIPE)
        db.add(config)

    config.api_key = encrypt_token(key)
    initialize_sync_config(config)
    db.commit()
    db.refresh(config)

    register_payment_provider_sync(db, website_id, SyncJobProvider.STRIPE, force_initial_sync=True)
    return config


def disconnect_stripe(db: Session, website_id: uuid.UUID) -> int:
    """Remove the Stripe connection: cancel jobs, delete the key and every Stripe payment."""
    return handle_provider_removal(db, website_id, SyncJobProvider.STRIPE)


def process_stripe_config_changes(
    db: Session,
    website_id: uuid.UUID,
    current_key: Optional[str],
    new_key: Optional[str],
) -> StripeConfigResult:
    """
    Apply a key change coming from a config update.

    A new key is validated first and nothing changes when it is rejected.
    A new key registers the historical backfill; callers then fire job processing.
    """
    changes = detect_stripe_changes(current_key, new_key)

    if changes.is_new_key:
        validation = validate_stripe_api_key(new_key)
        if not validation.ok:
            return validation
        connect_stripe(db, website_id, new_key)
    elif changes.is_removed:
        disconnect_stripe(db, website_id)
    return StripeConfigResult()
