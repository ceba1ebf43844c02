"""
NOWPayments IPN verification.

The processor signs the IPN body as HMAC-SHA512 over the JSON document
re-serialized with every object's keys sorted (recursively) and compact
separators, and sends the hex digest in the ``x-nowpayments-sig`` header.
The body must be re-serialized exactly that way before comparing; hashing
the raw bytes rejects legitimate payloads whose keys arrive unsorted.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Mapping, Optional

from ..errors import InvalidPayload, InvalidSignature
from ..models.payment import (
    IgnoredEvent,
    PaymentEvent,
    PaymentKind,
    PaymentProvider,
    VerifiedWebhook,
)
from ..services.credit_translator import normalize_crypto_amount


NOWPAYMENTS_SIGNATURE_HEADER = "x-nowpayments-sig"
FINISHED_STATUS = "finished"


def canonical_json(body: Any) -> str:
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign_ipn(body: Any, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical_json(body).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def verify_nowpayments_ipn(
    payload: bytes, signature: Optional[str], secret: str
) -> VerifiedWebhook:
    """
    Verify an IPN delivery and normalize it.

    Returns a `PaymentEvent` for finished payments and an `IgnoredEvent` for
    every other status. Raises `InvalidSignature` or `InvalidPayload`; never
    touches the ledger.
    """
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise InvalidPayload("IPN body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise InvalidPayload("IPN body must be a JSON object")

    if not signature:
        raise InvalidSignature(f"missing {NOWPAYMENTS_SIGNATURE_HEADER} header")
    expected = sign_ipn(body, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        raise InvalidSignature("IPN signature mismatch")

    return _normalize(body, signature)


def _normalize(body: Mapping[str, Any], signature: str) -> VerifiedWebhook:
    status = body.get("payment_status")
    if status != FINISHED_STATUS:
        return IgnoredEvent(
            provider=PaymentProvider.NOWPAYMENTS,
            event_type=f"payment.{status}",
            reason=f"payment status {status!r} does not grant credits",
        )

    order_id = body.get("order_id")
    if order_id is None or str(order_id).strip() == "":
        raise InvalidPayload("missing order_id")

    try:
        amount = normalize_crypto_amount(body.get("price_amount"))
    except ValueError as exc:
        raise InvalidPayload(str(exc)) from exc

    payment_id = body.get("payment_id")
    if payment_id is not None and str(payment_id) != "":
        event_id = f"nowpayments:{payment_id}"
    else:
        event_id = f"nowpayments:sig:{signature}"

    return PaymentEvent(
        event_id=event_id,
        provider=PaymentProvider.NOWPAYMENTS,
        kind=PaymentKind.ONE_TIME_PURCHASE,
        account_id=str(order_id),
        product_id=amount,
        amount_paid=amount,
    )
