from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Union

from pydantic import BaseModel, Field

from .account import SubscriptionState
from .base import DBSerializableModel, utcnow


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    NOWPAYMENTS = "nowpayments"


class PaymentKind(str, Enum):
    ONE_TIME_PURCHASE = "one_time_purchase"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class PaymentEvent(BaseModel):
    """
    Processor-independent form of an inbound payment webhook.

    `account_id` is set when the payload names the account explicitly;
    otherwise the account is resolved through `billing_customer_id`.
    `credits_delta` stays 0 until the credit translator has run.
    """

    event_id: str
    provider: PaymentProvider
    kind: PaymentKind
    account_id: Optional[str] = None
    billing_customer_id: Optional[str] = None
    product_id: Optional[str] = Field(
        default=None,
        description="Price identifier (card) or normalized paid amount (crypto) used for translation.",
    )
    amount_paid: Optional[str] = None
    checkout_session_id: Optional[str] = None
    subscription: Optional[SubscriptionState] = None
    credits_delta: int = Field(default=0, ge=0)


class IgnoredEvent(BaseModel):
    """Verified webhook that carries nothing to reconcile (pending payment, unrelated type)."""

    provider: PaymentProvider
    event_type: str
    reason: str


VerifiedWebhook = Union[PaymentEvent, IgnoredEvent]


class ProcessedEventRecord(DBSerializableModel):
    """
    Append-only marker that an external event's credit effect was applied.
    """

    collection_name: ClassVar[str] = "processed_payment_events"

    id: str = Field(description="External event id; unique per real-world payment.")
    provider: PaymentProvider
    account_id: Optional[str] = None
    credits: int = 0
    processed_at: datetime = Field(default_factory=utcnow)


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NO_CREDITS = "no_credits"
    NOT_LINKED = "not_linked"
    STATE_UPDATED = "state_updated"
    IGNORED = "ignored"


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    event_id: Optional[str] = None
    account_id: Optional[str] = None
    credits: int = 0
