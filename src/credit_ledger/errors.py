from __future__ import annotations

from typing import Optional


class CreditLedgerError(Exception):
    """Base class for every classified failure raised by the ledger subsystem."""

    code: str = "CREDIT_LEDGER_ERROR"


class AccountNotFound(CreditLedgerError):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str) -> None:
        super().__init__(f"account {account_id!r} not found")
        self.account_id = account_id


class StoreUnavailable(CreditLedgerError):
    """The document store could not be reached or rejected the write."""

    code = "STORE_UNAVAILABLE"


class EventAlreadyProcessed(CreditLedgerError):
    """
    Raised when an external event id is marked twice.

    Webhook handlers treat it as a duplicate delivery and acknowledge it.
    """

    code = "DUPLICATE_EVENT"

    def __init__(self, event_id: str) -> None:
        super().__init__(f"event {event_id!r} already processed")
        self.event_id = event_id


class InvalidSignature(CreditLedgerError):
    code = "INVALID_SIGNATURE"


class InvalidPayload(CreditLedgerError):
    code = "INVALID_PAYLOAD"


class WebhookNotConfigured(CreditLedgerError):
    code = "WEBHOOK_NOT_CONFIGURED"


class InsufficientCredits(CreditLedgerError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, account_id: str, required: int, available: int) -> None:
        super().__init__(
            f"insufficient credits: {required} required, {available} available"
        )
        self.account_id = account_id
        self.required = required
        self.available = available


class GenerationFailed(CreditLedgerError):
    """A metered action failed before committing; nothing remains charged."""

    code = "GENERATION_FAILED"


class RefundFailed(CreditLedgerError):
    """
    A reservation could not be returned after a failed action.

    The account stays debited until an operator reconciles it by hand.
    """

    code = "REFUND_FAILED"

    def __init__(
        self,
        account_id: str,
        credits: int,
        free_actions: int,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"refund of {credits} credits / {free_actions} free actions "
            f"for account {account_id!r} failed"
        )
        self.account_id = account_id
        self.credits = credits
        self.free_actions = free_actions
        self.reason = reason


class Unauthorized(CreditLedgerError):
    code = "UNAUTHORIZED"


class ProcessorUnavailable(CreditLedgerError):
    """A payment processor API call made while reconciling a webhook failed."""

    code = "PROCESSOR_UNAVAILABLE"
