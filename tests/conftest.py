"""Shared fixtures: a file-backed SQLite database (threads share it), fake Stripe data, API client."""
import os
import tempfile

# Must be set before app modules create the engine
_db_dir = tempfile.mkdtemp(prefix="revenue-sync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"

import uuid
from datetime import datetime

import pytest
import stripe
from fastapi.testclient import TestClient

from app.core.config import settings
from app.core.encryption import encrypt_token
from app.db.session import Base, SessionLocal, engine
from app.main import app
from app.api import cron as cron_api
from app.api import revenue as revenue_api
from app.api.deps import get_syncer_factory
from app.models import ProviderConfig, SyncFrequency, SyncJobProvider, Website
from app.services.providers import get_provider_syncer
from app.services.stripe_sync import StripePaymentSyncer


class FakeStripeClient:
    """Stands in for StripeClient: serves canned payment intents, refunds and lookups."""

    def __init__(self):
        self.payment_intents = []
        self.refunds = []
        self.invoices = {}
        self.charges = {}
        self.retrieved_payment_intents = {}
        self.list_error = None
        self.list_calls = []

    def list_payment_intents(self, start_date, end_date):
        self.list_calls.append(("payment_intents", start_date, end_date))
        if self.list_error is not None:
            raise self.list_error
        return iter(list(self.payment_intents))

    def list_refunds(self, start_date, end_date):
        self.list_calls.append(("refunds", start_date, end_date))
        return iter(list(self.refunds))

    def retrieve_invoice(self, invoice_id):
        if invoice_id not in self.invoices:
            raise stripe.InvalidRequestError(f"No such invoice: {invoice_id}", "id")
        return self.invoices[invoice_id]

    def retrieve_charge(self, charge_id):
        if charge_id not in self.charges:
            raise stripe.InvalidRequestError(f"No such charge: {charge_id}", "id")
        return self.charges[charge_id]

    def retrieve_payment_intent(self, payment_intent_id):
        if payment_intent_id not in self.retrieved_payment_intents:
            raise stripe.InvalidRequestError(f"No such payment_intent: {payment_intent_id}", "id")
        return self.retrieved_payment_intents[payment_intent_id]

    def check_access(self):
        return None


def make_payment_intent(pi_id, amount=1000, created=None, status="succeeded", **fields):
    created = created or datetime(2026, 9, 1, 12, 0, 0)
    data = {
        "id": pi_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": "usd",
        "status": status,
        "created": int((created - datetime(1970, 1, 1)).total_seconds()),
        "customer": None,
        "receipt_email": None,
        "invoice": None,
        "metadata": {},
    }
    data.update(fields)
    return data


def make_refund(refund_id, amount=500, created=None, status="succeeded", **fields):
    created = created or datetime(2026, 9, 2, 12, 0, 0)
    data = {
        "id": refund_id,
        "object": "refund",
        "amount": amount,
        "currency": "usd",
        "status": status,
        "created": int((created - datetime(1970, 1, 1)).total_seconds()),
        "charge": None,
        "payment_intent": None,
        "reason": "requested_by_customer",
        "receipt_number": None,
    }
    data.update(fields)
    return data


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", None)
    monkeypatch.setattr(settings, "STRIPE_PAGE_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "SYNC_AUTH_ERRORS_TERMINAL", False)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def website(db):
    site = Website(name="Example", domain="example.com")
    db.add(site)
    db.commit()
    db.refresh(site)
    return site


@pytest.fixture
def make_website(db):
    def _make(name="Another", domain=None):
        site = Website(name=name, domain=domain or f"{uuid.uuid4().hex[:8]}.example.com")
        db.add(site)
        db.commit()
        db.refresh(site)
        return site
    return _make


@pytest.fixture
def make_config(db):
    def _make(website, provider=SyncJobProvider.STRIPE, api_key="rk_test_key", frequency=SyncFrequency.REALTIME,
              enabled=True, next_sync_at=None, last_sync_at=None):
        config = ProviderConfig(
            website_id=website.id,
            provider=provider,
            api_key=encrypt_token(api_key) if api_key else None,
            enabled=enabled,
            frequency=frequency,
            next_sync_at=next_sync_at,
            last_sync_at=last_sync_at,
        )
        db.add(config)
        db.commit()
        db.refresh(config)
        return config
    return _make


@pytest.fixture
def fake_stripe():
    return FakeStripeClient()


@pytest.fixture
def syncer_factory(fake_stripe):
    """Real Stripe syncer over the fake client; other providers behave as in production."""
    def _factory(provider, api_key):
        if SyncJobProvider(provider) == SyncJobProvider.STRIPE:
            return StripePaymentSyncer(api_key, client=fake_stripe)
        return get_provider_syncer(provider, api_key)
    return _factory


@pytest.fixture
def triggered(monkeypatch):
    """Records fire-and-forget processing triggers instead of calling the network."""
    calls = []

    def _record(*args, **kwargs):
        calls.append((args, kwargs))

    monkeypatch.setattr(cron_api, "trigger_job_processing", _record)
    monkeypatch.setattr(revenue_api, "trigger_job_processing", _record)
    return calls


@pytest.fixture
def client(syncer_factory, triggered):
    app.dependency_overrides[get_syncer_factory] = lambda: syncer_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def payment_intent():
    return make_payment_intent


@pytest.fixture
def refund():
    return make_refund
