from __future__ import annotations

import json
import time

import pytest

from credit_ledger.errors import InvalidPayload, InvalidSignature
from credit_ledger.models.account import SubscriptionStatus
from credit_ledger.models.payment import IgnoredEvent, PaymentEvent, PaymentKind
from credit_ledger.webhooks.stripe_verifier import normalize_stripe_event, verify_stripe_webhook


SECRET = "whsec_test_secret"


def _checkout(mode: str = "payment", **overrides) -> dict:
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": mode,
        "payment_status": "paid",
        "client_reference_id": "u1",
        "customer": "cus_1",
        "payment_intent": "pi_1" if mode == "payment" else None,
        "invoice": "in_1" if mode == "subscription" else None,
        "amount_total": 2500,
        "metadata": {"price_id": "price_starter"},
    }
    session.update(overrides)
    return {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}}


def _invoice(billing_reason: str, **overrides) -> dict:
    invoice = {
        "id": "in_2",
        "object": "invoice",
        "billing_reason": billing_reason,
        "customer": "cus_1",
        "amount_paid": 2500,
        "lines": {"data": [{"price": {"id": "price_pro"}}]},
    }
    invoice.update(overrides)
    return {"id": "evt_2", "type": "invoice.payment_succeeded", "data": {"object": invoice}}


def test_valid_signature_is_normalized(stripe_signature):
    payload = json.dumps(_checkout())

    verified = verify_stripe_webhook(payload.encode(), stripe_signature(payload), SECRET)

    assert isinstance(verified, PaymentEvent)
    assert verified.event_id == "stripe:pi_1"
    assert verified.kind == PaymentKind.ONE_TIME_PURCHASE
    assert verified.account_id == "u1"
    assert verified.billing_customer_id == "cus_1"
    assert verified.product_id == "price_starter"
    assert verified.checkout_session_id == "cs_test_1"


def test_tampered_body_rejected(stripe_signature):
    payload = json.dumps(_checkout())
    header = stripe_signature(payload)
    tampered = payload.replace("price_starter", "price_scale")

    with pytest.raises(InvalidSignature):
        verify_stripe_webhook(tampered.encode(), header, SECRET)


def test_wrong_secret_and_missing_header_rejected(stripe_signature):
    payload = json.dumps(_checkout())

    with pytest.raises(InvalidSignature):
        verify_stripe_webhook(payload.encode(), stripe_signature(payload, "whsec_other"), SECRET)
    with pytest.raises(InvalidSignature):
        verify_stripe_webhook(payload.encode(), None, SECRET)


def test_stale_timestamp_rejected(stripe_signature):
    payload = json.dumps(_checkout())
    header = stripe_signature(payload, timestamp=int(time.time()) - 3600)

    with pytest.raises(InvalidSignature):
        verify_stripe_webhook(payload.encode(), header, SECRET, tolerance=300)


def test_checkout_without_account_reference_is_invalid():
    with pytest.raises(InvalidPayload):
        normalize_stripe_event(_checkout(client_reference_id=None))


def test_checkout_account_from_metadata():
    event = _checkout(client_reference_id=None, metadata={"account_id": "u9"})
    assert normalize_stripe_event(event).account_id == "u9"


def test_unpaid_checkout_ignored():
    assert isinstance(normalize_stripe_event(_checkout(payment_status="unpaid")), IgnoredEvent)


def test_subscription_checkout_shares_id_with_first_invoice():
    checkout = normalize_stripe_event(_checkout(mode="subscription", invoice="in_2"))
    invoice = normalize_stripe_event(_invoice("subscription_create"))

    assert checkout.kind == PaymentKind.SUBSCRIPTION_CREATED
    assert invoice.kind == PaymentKind.SUBSCRIPTION_CREATED
    assert checkout.event_id == invoice.event_id == "stripe:in_2"


def test_renewal_invoice():
    verified = normalize_stripe_event(_invoice("subscription_cycle"))

    assert verified.kind == PaymentKind.SUBSCRIPTION_RENEWED
    assert verified.account_id is None
    assert verified.billing_customer_id == "cus_1"
    assert verified.product_id == "price_pro"


def test_renewal_invoice_account_from_subscription_metadata():
    verified = normalize_stripe_event(
        _invoice(
            "subscription_cycle",
            parent={"subscription_details": {"metadata": {"account_id": "u1"}}},
        )
    )
    assert verified.account_id == "u1"


def test_manual_invoice_ignored():
    assert isinstance(normalize_stripe_event(_invoice("manual")), IgnoredEvent)


def test_subscription_lifecycle_events():
    subscription = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "past_due",
        "current_period_end": 1767225600,
        "items": {"data": [{"price": {"id": "price_pro"}}]},
    }
    updated = normalize_stripe_event(
        {"id": "evt_3", "type": "customer.subscription.updated", "data": {"object": subscription}}
    )
    deleted = normalize_stripe_event(
        {"id": "evt_4", "type": "customer.subscription.deleted", "data": {"object": subscription}}
    )

    assert updated.kind == PaymentKind.SUBSCRIPTION_UPDATED
    assert updated.event_id == "stripe:evt_3"
    assert updated.subscription.status == SubscriptionStatus.PAST_DUE
    assert updated.subscription.plan_id == "price_pro"
    assert updated.subscription.current_period_end.year == 2026
    assert deleted.kind == PaymentKind.SUBSCRIPTION_CANCELED
    assert deleted.subscription.status == SubscriptionStatus.CANCELED


def test_unrelated_event_ignored():
    event = {"id": "evt_5", "type": "customer.created", "data": {"object": {}}}
    assert isinstance(normalize_stripe_event(event), IgnoredEvent)
