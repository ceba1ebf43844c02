from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from ..models.payment import PaymentKind, PaymentProvider


logger = logging.getLogger(__name__)

_CREDITED_KINDS = {
    PaymentKind.ONE_TIME_PURCHASE,
    PaymentKind.SUBSCRIPTION_CREATED,
    PaymentKind.SUBSCRIPTION_RENEWED,
}


def normalize_crypto_amount(amount: object) -> str:
    """
    Fixed-point key used by the crypto amount table: 25 -> "25.00000000".

    Raises ValueError for values that are not finite decimals.
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid payment amount {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid payment amount {amount!r}")
    return f"{value:.8f}"


class CreditTranslator:
    """
    Maps a normalized payment to the number of credits it grants.

    Pure lookup over static tables: processor price ids for card payments and
    fixed-point paid amounts for crypto payments. Unknown identifiers grant
    nothing and are logged; they are not errors, so a misconfigured tier
    never blocks the webhook acknowledgement.
    """

    def __init__(
        self,
        price_credits: Mapping[str, int],
        crypto_amount_credits: Mapping[str, int],
    ) -> None:
        self._price_credits = dict(price_credits)
        self._crypto_amount_credits = {
            normalize_crypto_amount(amount): credits
            for amount, credits in crypto_amount_credits.items()
        }

    def translate(
        self,
        kind: PaymentKind,
        product_id: Optional[str],
        amount_paid: Optional[str] = None,
        provider: PaymentProvider = PaymentProvider.STRIPE,
    ) -> int:
        if kind not in _CREDITED_KINDS:
            return 0

        if provider == PaymentProvider.NOWPAYMENTS:
            key = product_id or amount_paid
            table = self._crypto_amount_credits
        else:
            key = product_id
            table = self._price_credits

        if not key or key not in table:
            logger.warning(
                "No credits configured for %s %s identifier %r (paid %s)",
                provider.value,
                kind.value,
                key,
                amount_paid,
            )
            return 0
        return table[key]
