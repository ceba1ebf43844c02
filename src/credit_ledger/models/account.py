from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class SignupMethod(str, Enum):
    EMAIL = "email"
    WALLET = "wallet"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    CANCELED = "canceled"


class SubscriptionState(BaseModel):
    """
    Card-processor subscription snapshot kept on the account.

    Only subscription lifecycle events mutate it; it never affects counters.
    """

    status: SubscriptionStatus
    plan_id: Optional[str] = Field(
        default=None, description="Processor price identifier of the subscribed plan."
    )
    subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None


class Account(DBSerializableModel):
    """
    Ledger record for one user, keyed by wallet address or auth subject.
    """

    collection_name: ClassVar[str] = "users"

    id: str
    credits: int = 0
    free_actions: int = Field(
        default=0, description="No-cost allotment (free audits) consumed before credits."
    )
    is_admin: bool = False
    billing_customer_id: Optional[str] = Field(
        default=None,
        description="Card-processor customer id; set once when a checkout links it.",
    )
    subscription: Optional[SubscriptionState] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    signup_method: Optional[SignupMethod] = None
    created_at: datetime = Field(default_factory=utcnow)


class AccountBalance(BaseModel):
    credits: int
    free_actions: int
