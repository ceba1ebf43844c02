"""
Stripe webhook verification and normalization.

Signature checking is delegated to the Stripe library over the raw request
body; the verified JSON is then reduced to a `PaymentEvent` (or an
`IgnoredEvent`) so nothing downstream sees Stripe-shaped payloads.

Event ids are chosen so that different deliveries describing the same money
movement collide in the idempotency guard: a subscription checkout and the
subscription's first invoice both use the invoice id.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

import stripe

from ..errors import InvalidPayload, InvalidSignature, ProcessorUnavailable
from ..models.account import SubscriptionState, SubscriptionStatus
from ..models.payment import (
    IgnoredEvent,
    PaymentEvent,
    PaymentKind,
    PaymentProvider,
    VerifiedWebhook,
)


logger = logging.getLogger(__name__)

STRIPE_SIGNATURE_HEADER = "stripe-signature"

CHECKOUT_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
INVOICE_EVENTS = {"invoice.payment_succeeded", "invoice.paid"}
SUBSCRIPTION_UPDATE_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
}
SUBSCRIPTION_DELETED_EVENT = "customer.subscription.deleted"

_INVOICE_KINDS = {
    "subscription_create": PaymentKind.SUBSCRIPTION_CREATED,
    "subscription_cycle": PaymentKind.SUBSCRIPTION_RENEWED,
}
_SETTLED_CHECKOUT_STATUSES = {"paid", "no_payment_required"}

# Resolves the price id of a checkout session whose payload carries none.
LineItemLookup = Callable[[str], Awaitable[Optional[str]]]


def verify_stripe_webhook(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    tolerance: int = 300,
) -> VerifiedWebhook:
    """
    Verify a Stripe delivery and normalize it.

    Raises `InvalidSignature` or `InvalidPayload`; never touches the ledger.
    """
    if not sig_header:
        raise InvalidSignature(f"missing {STRIPE_SIGNATURE_HEADER} header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidPayload("webhook body is not UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(text, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(str(exc)) from exc

    try:
        event = json.loads(text)
    except ValueError as exc:
        raise InvalidPayload("webhook body is not valid JSON") from exc
    if not isinstance(event, dict):
        raise InvalidPayload("webhook body must be a JSON object")
    return normalize_stripe_event(event)


def normalize_stripe_event(event: Mapping[str, Any]) -> VerifiedWebhook:
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in CHECKOUT_EVENTS:
        return _from_checkout_session(event_type, obj)
    if event_type in INVOICE_EVENTS:
        return _from_invoice(event_type, obj)
    if event_type in SUBSCRIPTION_UPDATE_EVENTS:
        return _from_subscription(event, obj, PaymentKind.SUBSCRIPTION_UPDATED)
    if event_type == SUBSCRIPTION_DELETED_EVENT:
        return _from_subscription(event, obj, PaymentKind.SUBSCRIPTION_CANCELED)

    return _ignored(event_type, "event type does not affect credits")


def _from_checkout_session(event_type: str, session: Mapping[str, Any]) -> VerifiedWebhook:
    session_id = session.get("id")
    if not session_id:
        raise InvalidPayload("checkout session without id")

    payment_status = session.get("payment_status")
    if payment_status is not None and payment_status not in _SETTLED_CHECKOUT_STATUSES:
        return _ignored(event_type, f"checkout payment status {payment_status!r}")

    account_id = session.get("client_reference_id") or _metadata(session).get("account_id")
    if not account_id:
        raise InvalidPayload("missing client_reference_id on checkout session")

    if session.get("mode") == "subscription":
        kind = PaymentKind.SUBSCRIPTION_CREATED
        reference = session.get("invoice") or session_id
    else:
        kind = PaymentKind.ONE_TIME_PURCHASE
        reference = session.get("payment_intent") or session_id

    return PaymentEvent(
        event_id=f"stripe:{reference}",
        provider=PaymentProvider.STRIPE,
        kind=kind,
        account_id=str(account_id),
        billing_customer_id=session.get("customer"),
        product_id=_checkout_price_id(session),
        amount_paid=_as_str(session.get("amount_total")),
        checkout_session_id=session_id,
    )


def _from_invoice(event_type: str, invoice: Mapping[str, Any]) -> VerifiedWebhook:
    billing_reason = invoice.get("billing_reason")
    kind = _INVOICE_KINDS.get(billing_reason)
    if kind is None:
        return _ignored(event_type, f"invoice billing reason {billing_reason!r}")

    invoice_id = invoice.get("id")
    if not invoice_id:
        raise InvalidPayload("invoice without id")

    return PaymentEvent(
        event_id=f"stripe:{invoice_id}",
        provider=PaymentProvider.STRIPE,
        kind=kind,
        account_id=_invoice_account_id(invoice),
        billing_customer_id=invoice.get("customer"),
        product_id=_invoice_price_id(invoice),
        amount_paid=_as_str(invoice.get("amount_paid")),
    )


def _from_subscription(
    event: Mapping[str, Any], subscription: Mapping[str, Any], kind: PaymentKind
) -> VerifiedWebhook:
    event_id = event.get("id")
    if not event_id:
        raise InvalidPayload("event without id")

    if kind == PaymentKind.SUBSCRIPTION_CANCELED:
        status = SubscriptionStatus.CANCELED
    else:
        try:
            status = SubscriptionStatus(subscription.get("status"))
        except ValueError:
            return _ignored(
                str(event.get("type")),
                f"unknown subscription status {subscription.get('status')!r}",
            )

    item = _first(subscription.get("items"))
    state = SubscriptionState(
        status=status,
        plan_id=_price_of(item),
        subscription_id=subscription.get("id"),
        current_period_end=_timestamp(
            subscription.get("current_period_end") or item.get("current_period_end")
        ),
    )
    return PaymentEvent(
        event_id=f"stripe:{event_id}",
        provider=PaymentProvider.STRIPE,
        kind=kind,
        account_id=_metadata(subscription).get("account_id"),
        billing_customer_id=subscription.get("customer"),
        product_id=state.plan_id,
        subscription=state,
    )


def _checkout_price_id(session: Mapping[str, Any]) -> Optional[str]:
    price_id = _metadata(session).get("price_id")
    if price_id:
        return str(price_id)
    return _price_of(_first(session.get("line_items")))


def _invoice_price_id(invoice: Mapping[str, Any]) -> Optional[str]:
    line = _first(invoice.get("lines"))
    price_id = _price_of(line)
    if price_id:
        return price_id
    # Newer API versions move the price under pricing.price_details
    details = (line.get("pricing") or {}).get("price_details") or {}
    return details.get("price")


def _invoice_account_id(invoice: Mapping[str, Any]) -> Optional[str]:
    account_id = _metadata(invoice).get("account_id")
    if account_id:
        return str(account_id)
    for holder in (invoice, invoice.get("parent") or {}):
        details = holder.get("subscription_details") or {}
        account_id = (details.get("metadata") or {}).get("account_id")
        if account_id:
            return str(account_id)
    return None


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _first(collection: Any) -> Mapping[str, Any]:
    if not isinstance(collection, Mapping):
        return {}
    data = collection.get("data") or []
    return data[0] if data else {}


def _price_of(item: Mapping[str, Any]) -> Optional[str]:
    price = item.get("price")
    if isinstance(price, Mapping):
        return price.get("id")
    if isinstance(price, str):
        return price
    return None


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _ignored(event_type: str, reason: str) -> IgnoredEvent:
    logger.info("Ignoring Stripe event %s: %s", event_type, reason)
    return IgnoredEvent(provider=PaymentProvider.STRIPE, event_type=event_type, reason=reason)


class StripeLineItemLookup:
    """
    Fetches the first line item's price of a checkout session from the Stripe API.

    The Stripe client is synchronous, so the call runs in a worker thread.
    """

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def __call__(self, session_id: str) -> Optional[str]:
        try:
            line_items = await asyncio.to_thread(
                stripe.checkout.Session.list_line_items,
                session_id,
                limit=1,
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise ProcessorUnavailable(f"line item lookup failed: {exc}") from exc
        if not line_items.data:
            return None
        price = line_items.data[0].price
        return price.id if price is not None else None
