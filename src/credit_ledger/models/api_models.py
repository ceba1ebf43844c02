from typing import Any, Optional

from pydantic import BaseModel, Field

from .account import SignupMethod


class EnsureAccountRequest(BaseModel):
    account_id: str
    signup_method: SignupMethod = SignupMethod.EMAIL
    email: str | None = None
    display_name: str | None = None


class AccountResponse(BaseModel):
    account_id: str
    credits: int
    free_actions: int
    created: bool = False


class CreditBalanceResponse(BaseModel):
    account_id: str
    credits: int
    free_actions: int


class AdminGrantRequest(BaseModel):
    account_id: str
    credits: int = Field(gt=0)
    note: str | None = None


class MeteredActionRequest(BaseModel):
    prompt: str
    items: int = Field(default=1, ge=1, description="Batch size for per-item actions.")
    options: dict[str, Any] = Field(default_factory=dict)


class MeteredActionResponse(BaseModel):
    reservation_id: str
    action: str
    credits_charged: int
    free_actions_used: int
    result: Any


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Optional[str] = None


class AdminAccountSummary(BaseModel):
    account_id: str
    credits: int
    free_actions: int
    is_admin: bool = False
    email: Optional[str] = None
    billing_customer_id: Optional[str] = None
