from __future__ import annotations

import logging
from typing import Optional

from ..errors import AccountNotFound, EventAlreadyProcessed, StoreUnavailable
from ..logging.ledger_logger import LedgerLogger
from ..models.payment import (
    IgnoredEvent,
    PaymentEvent,
    PaymentKind,
    ReconciliationOutcome,
    ReconciliationResult,
    VerifiedWebhook,
)
from ..webhooks.stripe_verifier import LineItemLookup
from .account_service import AccountService
from .alert_service import AlertService
from .credit_service import CreditService
from .credit_translator import CreditTranslator
from .idempotency_guard import IdempotencyGuard


logger = logging.getLogger(__name__)


class PaymentReconciler:
    """
    Applies verified payment webhooks to the ledger.

    Ordering per event: resolve the account, apply billing-identity and
    subscription-state side effects, translate to credits, mark the event id
    in the idempotency guard, then credit the account. Marking before
    crediting means a racing duplicate delivery can never credit twice.

    If the credit itself fails the mark is released and the error propagates,
    so the sender's retry gets another chance (at-least-once credit). Should
    the release fail as well, the event stays marked without its credit and an
    alert is raised for manual reconciliation.

    An event that names an account the store does not know is acknowledged as
    `NOT_LINKED`, never raised, and leaves no mark behind.
    """

    def __init__(
        self,
        accounts: AccountService,
        credits: CreditService,
        guard: IdempotencyGuard,
        translator: CreditTranslator,
        ledger: LedgerLogger,
        alerts: AlertService,
        line_item_lookup: Optional[LineItemLookup] = None,
    ) -> None:
        self._accounts = accounts
        self._credits = credits
        self._guard = guard
        self._translator = translator
        self._ledger = ledger
        self._alerts = alerts
        self._line_item_lookup = line_item_lookup

    async def apply(self, verified: VerifiedWebhook) -> ReconciliationResult:
        if isinstance(verified, IgnoredEvent):
            return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED)

        event = verified
        account_id = await self._resolve_account(event)
        if account_id is None:
            return await self._not_linked(event)

        try:
            if event.account_id and event.billing_customer_id:
                await self._accounts.link_billing_identity(
                    account_id, event.billing_customer_id
                )
            if event.subscription is not None:
                await self._accounts.update_subscription(account_id, event.subscription)
        except AccountNotFound:
            return await self._not_linked(event, account_id)

        if await self._guard.already_processed(event.event_id):
            return self._duplicate(event, account_id)

        product_id = await self._product_id(event)
        event = event.model_copy(
            update={
                "product_id": product_id,
                "credits_delta": self._translator.translate(
                    event.kind, product_id, event.amount_paid, event.provider
                ),
            }
        )
        credits = event.credits_delta
        if credits == 0:
            outcome = (
                ReconciliationOutcome.STATE_UPDATED
                if event.subscription is not None
                else ReconciliationOutcome.NO_CREDITS
            )
            return ReconciliationResult(
                outcome=outcome, event_id=event.event_id, account_id=account_id
            )

        try:
            await self._guard.mark_processed(
                event.event_id, event.provider, account_id=account_id, credits=credits
            )
        except EventAlreadyProcessed:
            return self._duplicate(event, account_id)

        try:
            await self._credits.adjust(
                account_id,
                credits,
                reason=f"{event.provider.value} {event.kind.value}",
                correlation_id=event.event_id,
            )
        except StoreUnavailable as exc:
            await self._release(event, account_id, credits, exc)
            raise
        except AccountNotFound as exc:
            await self._release(event, account_id, credits, exc)
            return await self._not_linked(event, account_id)

        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            event_id=event.event_id,
            account_id=account_id,
            credits=credits,
        )

    async def _resolve_account(self, event: PaymentEvent) -> Optional[str]:
        if event.account_id:
            return event.account_id
        if event.billing_customer_id:
            account = await self._accounts.resolve_billing_customer(event.billing_customer_id)
            if account is not None:
                return account.id
        return None

    async def _product_id(self, event: PaymentEvent) -> Optional[str]:
        if event.product_id or self._line_item_lookup is None:
            return event.product_id
        if event.kind == PaymentKind.ONE_TIME_PURCHASE and event.checkout_session_id:
            return await self._line_item_lookup(event.checkout_session_id)
        return None

    async def _not_linked(
        self, event: PaymentEvent, account_id: Optional[str] = None
    ) -> ReconciliationResult:
        # Not queued for later: the sender is acknowledged and the event is
        # left in the audit log for manual linking.
        await self._ledger.log_error(
            message="Payment event not linked to any account",
            details={
                "event_id": event.event_id,
                "kind": event.kind.value,
                "billing_customer_id": event.billing_customer_id,
                "unknown_account_id": account_id,
            },
            correlation_id=event.event_id,
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.NOT_LINKED, event_id=event.event_id
        )

    def _duplicate(self, event: PaymentEvent, account_id: str) -> ReconciliationResult:
        logger.info(
            "Duplicate delivery of %s for account %s; skipping credit",
            event.event_id,
            account_id,
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.DUPLICATE,
            event_id=event.event_id,
            account_id=account_id,
        )

    async def _release(
        self, event: PaymentEvent, account_id: str, credits: int, cause: Exception
    ) -> None:
        try:
            await self._guard.release(event.event_id)
        except StoreUnavailable as exc:
            await self._ledger.log_alert(
                message="Payment event marked but not credited",
                details={
                    "event_id": event.event_id,
                    "credits": credits,
                    "cause": str(cause),
                    "release_error": str(exc),
                },
                account_id=account_id,
                correlation_id=event.event_id,
            )
            await self._alerts.alert_guard_release_failed(
                event.event_id, account_id, credits, reason=str(exc)
            )
