"""Stripe ingestion: mapping, counting, pagination and key validation"""
from datetime import datetime

import pytest
import stripe

from app.core.config import settings
from app.core.encryption import encrypt_token
from app.core.exceptions import ProviderAuthenticationError, ProviderNotConfiguredError
from app.db.session import SessionLocal
from app.models import Payment, ProviderConfig
from app.services.stripe_sync import (
    INVALID_KEY,
    MISSING_PERMISSIONS,
    RESTRICTED_KEY_REQUIRED,
    StripeClient,
    StripePaymentSyncer,
    detect_stripe_changes,
    disconnect_stripe,
    sync_stripe_payments,
    validate_stripe_api_key,
)

START = datetime(2026, 8, 1)
END = datetime(2026, 10, 1)


def _sync(db, website, fake_stripe):
    return StripePaymentSyncer("rk_test_key", client=fake_stripe).sync_payments(db, website.id, START, END)


def _payment(db, provider_payment_id):
    return db.query(Payment).filter(Payment.provider_payment_id == provider_payment_id).one()


def test_malformed_object_counts_as_error_and_rerun_skips(db, website, fake_stripe, payment_intent):
    fake_stripe.payment_intents = [payment_intent(f"pi_{i}", amount=1000 + i) for i in range(9)]
    fake_stripe.payment_intents.insert(4, payment_intent("pi_broken", amount=None))

    result = _sync(db, website, fake_stripe)
    assert (result.synced, result.skipped, result.errors) == (9, 0, 1)
    assert db.query(Payment).count() == 9

    again = _sync(db, website, fake_stripe)
    assert (again.synced, again.skipped, again.errors) == (0, 9, 1)
    assert db.query(Payment).count() == 9


def test_only_succeeded_objects_are_stored(db, website, fake_stripe, payment_intent, refund):
    fake_stripe.payment_intents = [
        payment_intent("pi_ok"),
        payment_intent("pi_pending", status="processing"),
        payment_intent("pi_failed", status="requires_payment_method"),
    ]
    fake_stripe.refunds = [refund("re_pending", status="pending")]

    result = _sync(db, website, fake_stripe)
    assert (result.synced, result.skipped, result.errors) == (1, 3, 0)
    assert [p.provider_payment_id for p in db.query(Payment).all()] == ["pi_ok"]


def test_payment_intent_mapping(db, website, fake_stripe, payment_intent):
    fake_stripe.payment_intents = [payment_intent(
        "pi_1", amount=4900, currency="EUR", customer="cus_1",
        receipt_email="buyer@example.com", created=datetime(2026, 9, 3, 10, 30),
        metadata={"plan": "pro"},
    )]
    _sync(db, website, fake_stripe)

    payment = _payment(db, "pi_1")
    assert payment.amount == 4900
    assert payment.currency == "eur"
    assert payment.customer_id == "cus_1"
    assert payment.customer_email == "buyer@example.com"
    assert payment.timestamp == datetime(2026, 9, 3, 10, 30)
    assert payment.renewal is False
    assert payment.payment_metadata == {
        "paymentType": "one-time", "billingReason": None, "invoiceId": None, "plan": "pro",
    }


def test_renewal_from_expanded_invoice(db, website, fake_stripe, payment_intent):
    invoice = {
        "id": "in_1", "billing_reason": "subscription_cycle",
        "customer_email": "subscriber@example.com", "customer": {"id": "cus_9"},
    }
    fake_stripe.payment_intents = [payment_intent("pi_renewal", invoice=invoice)]
    _sync(db, website, fake_stripe)

    payment = _payment(db, "pi_renewal")
    assert payment.renewal is True
    assert payment.customer_email == "subscriber@example.com"
    assert payment.customer_id == "cus_9"
    assert payment.payment_metadata["paymentType"] == "renewal"
    assert payment.payment_metadata["invoiceId"] == "in_1"


def test_invoice_id_is_retrieved(db, website, fake_stripe, payment_intent):
    fake_stripe.invoices["in_2"] = {"id": "in_2", "billing_reason": "subscription_create"}
    fake_stripe.payment_intents = [
        payment_intent("pi_new", invoice="in_2"),
        payment_intent("pi_missing_invoice", invoice="in_gone"),
    ]
    result = _sync(db, website, fake_stripe)
    assert result.synced == 2

    new = _payment(db, "pi_new")
    assert new.renewal is False
    assert new.payment_metadata["paymentType"] == "new"
    assert _payment(db, "pi_missing_invoice").payment_metadata["paymentType"] == "one-time"


def test_refund_is_its_own_refunded_row(db, website, fake_stripe, payment_intent, refund):
    fake_stripe.payment_intents = [payment_intent("pi_1", amount=2000)]
    fake_stripe.charges["ch_1"] = {
        "id": "ch_1", "billing_details": {"email": "buyer@example.com"},
        "customer": {"id": "cus_1"}, "metadata": {"order": "42"},
    }
    fake_stripe.refunds = [refund("re_1", amount=2000, charge="ch_1", payment_intent="pi_1", receipt_number="1234")]

    result = _sync(db, website, fake_stripe)
    assert result.synced == 2

    original = _payment(db, "pi_1")
    assert original.refunded is False
    row = _payment(db, "re_1")
    assert row.refunded is True
    assert row.amount == 2000
    assert row.customer_email == "buyer@example.com"
    assert row.customer_id == "cus_1"
    assert row.payment_metadata == {
        "refundId": "re_1", "refundReason": "requested_by_customer", "receiptNumber": "1234", "order": "42",
    }


def test_refund_falls_back_to_payment_intent_email(db, website, fake_stripe, refund):
    fake_stripe.retrieved_payment_intents["pi_7"] = {"id": "pi_7", "receipt_email": "late@example.com", "customer": "cus_7"}
    fake_stripe.refunds = [refund("re_7", charge="ch_gone", payment_intent="pi_7")]

    assert _sync(db, website, fake_stripe).synced == 1
    row = _payment(db, "re_7")
    assert row.customer_email == "late@example.com"
    assert row.customer_id == "cus_7"


def test_credential_errors_are_typed(db, website, fake_stripe):
    fake_stripe.list_error = stripe.AuthenticationError("Invalid API Key provided")
    with pytest.raises(ProviderAuthenticationError) as excinfo:
        _sync(db, website, fake_stripe)
    assert excinfo.value.hint == INVALID_KEY

    fake_stripe.list_error = stripe.PermissionError("The provided key does not have access")
    with pytest.raises(ProviderAuthenticationError) as excinfo:
        _sync(db, website, fake_stripe)
    assert excinfo.value.hint == MISSING_PERMISSIONS


def test_other_stripe_errors_propagate(db, website, fake_stripe):
    fake_stripe.list_error = stripe.APIConnectionError("Network down")
    with pytest.raises(stripe.APIConnectionError):
        _sync(db, website, fake_stripe)


def _disconnect_elsewhere(website):
    other = SessionLocal()
    try:
        disconnect_stripe(other, website.id)
    finally:
        other.close()


def test_disconnect_mid_sync_leaves_no_stripe_payments(db, website, make_config, fake_stripe, payment_intent):
    make_config(website)
    fake_stripe.payment_intents = [payment_intent(f"pi_{i}") for i in range(4)]
    syncer = StripePaymentSyncer("rk_test_key", client=fake_stripe)
    save = syncer._save_payment_intent

    def save_racing_disconnect(db, website_id, obj):
        # The disconnect finishes between the credential check and this write
        if obj["id"] == "pi_2":
            _disconnect_elsewhere(website)
        return save(db, website_id, obj)

    syncer._save_payment_intent = save_racing_disconnect

    with pytest.raises(ProviderNotConfiguredError):
        syncer.sync_payments(db, website.id, START, END)

    assert db.query(Payment).count() == 0
    assert db.query(ProviderConfig).count() == 0


def test_disconnect_after_last_write_is_caught(db, website, make_config, fake_stripe, payment_intent):
    make_config(website)
    fake_stripe.payment_intents = [payment_intent("pi_1")]
    syncer = StripePaymentSyncer("rk_test_key", client=fake_stripe)
    list_refunds = fake_stripe.list_refunds

    def list_refunds_after_disconnect(start_date, end_date):
        _disconnect_elsewhere(website)
        return list_refunds(start_date, end_date)

    fake_stripe.list_refunds = list_refunds_after_disconnect

    with pytest.raises(ProviderNotConfiguredError):
        syncer.sync_payments(db, website.id, START, END)
    assert db.query(Payment).count() == 0


def test_key_change_mid_sync_stops_but_keeps_payments(db, website, make_config, fake_stripe, payment_intent):
    config = make_config(website)
    fake_stripe.payment_intents = [payment_intent("pi_1"), payment_intent("pi_2")]
    syncer = StripePaymentSyncer("rk_test_key", client=fake_stripe)
    save = syncer._save_payment_intent

    def save_then_rotate(db, website_id, obj):
        created = save(db, website_id, obj)
        config.api_key = encrypt_token("rk_rotated")
        db.commit()
        return created

    syncer._save_payment_intent = save_then_rotate

    with pytest.raises(ProviderNotConfiguredError, match="changed"):
        syncer.sync_payments(db, website.id, START, END)
    assert [p.provider_payment_id for p in db.query(Payment).all()] == ["pi_1"]


def test_sync_stripe_payments_defaults_to_historical_window(db, website, fake_stripe, monkeypatch):
    monkeypatch.setattr(settings, "HISTORICAL_SYNC_DAYS", 30)
    sync_stripe_payments(db, website.id, "rk_test_key", end_date=END, client=fake_stripe)
    _, start, end = fake_stripe.list_calls[0]
    assert (end - start).days == 30


class FakeResource:
    """Records list() calls and replays scripted pages or errors."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def list(self, **params):
        self.calls.append(params)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _page(ids, has_more):
    return {"data": [{"id": i} for i in ids], "has_more": has_more}


def test_client_paginates_with_tenant_key():
    resource = FakeResource([_page(["a", "b"], True), _page(["c"], False)])
    sleeps = []
    client = StripeClient("rk_tenant", page_delay=0.5, sleep=sleeps.append)

    ids = [obj["id"] for obj in client._list_all(resource, START, END, expand=["data.invoice"])]

    assert ids == ["a", "b", "c"]
    assert [call["api_key"] for call in resource.calls] == ["rk_tenant", "rk_tenant"]
    assert "starting_after" not in resource.calls[0]
    assert resource.calls[1]["starting_after"] == "b"
    assert resource.calls[0]["created"] == {"gte": 1785542400, "lte": 1790812800}
    assert resource.calls[0]["expand"] == ["data.invoice"]
    assert sleeps == [0.5]


def test_client_waits_out_rate_limit():
    limited = stripe.RateLimitError("Too many requests", headers={"retry-after": "1"})
    resource = FakeResource([limited, _page(["a"], False)])
    sleeps = []
    client = StripeClient("rk_tenant", page_delay=0, sleep=sleeps.append)

    assert [obj["id"] for obj in client._list_all(resource, START, END)] == ["a"]
    assert sleeps == [1.0]


def test_client_gives_up_after_max_rate_limit_waits():
    resource = FakeResource([stripe.RateLimitError("Too many requests") for _ in range(3)])
    sleeps = []
    client = StripeClient("rk_tenant", page_delay=0, max_rate_limit_waits=2, sleep=sleeps.append)

    with pytest.raises(stripe.RateLimitError):
        list(client._list_all(resource, START, END))
    assert sleeps == [2, 2]


class RaisingAccessClient:
    def __init__(self, error=None):
        self.error = error

    def check_access(self):
        if self.error is not None:
            raise self.error


def test_validate_requires_restricted_key():
    result = validate_stripe_api_key("sk_live_123", client=RaisingAccessClient())
    assert not result.ok
    assert result.error == RESTRICTED_KEY_REQUIRED
    assert result.status_code == 400


def test_validate_accepts_secret_key_when_allowed(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_REQUIRE_RESTRICTED_KEY", False)
    assert validate_stripe_api_key("sk_test_123", client=RaisingAccessClient()).ok


@pytest.mark.parametrize("error, message", [
    (stripe.AuthenticationError("Invalid API Key provided"), INVALID_KEY),
    (stripe.PermissionError("The provided key does not have the required permissions"), MISSING_PERMISSIONS),
    (stripe.InvalidRequestError("No such resource", None, code="resource_missing"), MISSING_PERMISSIONS),
])
def test_validate_maps_stripe_errors(error, message):
    result = validate_stripe_api_key("rk_test_123", client=RaisingAccessClient(error))
    assert result.error == message
    assert result.status_code == 400


def test_validate_success():
    result = validate_stripe_api_key(" rk_test_123 ", client=RaisingAccessClient())
    assert result.ok
    assert result.status_code is None


@pytest.mark.parametrize("current, new, is_new_key, is_removed", [
    (None, "rk_1", True, False),
    ("rk_1", "rk_1", False, False),
    ("rk_1", "rk_2", True, False),
    ("rk_1", None, False, True),
    ("rk_1", "", False, True),
    (None, None, False, False),
])
def test_detect_stripe_changes(current, new, is_new_key, is_removed):
    changes = detect_stripe_changes(current, new)
    assert (changes.is_new_key, changes.is_removed) == (is_new_key, is_removed)
