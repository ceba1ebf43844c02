from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..config import Settings
from ..db.base import BaseLedgerStore
from ..errors import AccountNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.account import Account, SignupMethod, SubscriptionState


logger = logging.getLogger(__name__)


class AccountService:
    """
    Account lifecycle: idempotent creation on first sign-in, billing identity
    linkage and subscription state.
    """

    def __init__(self, store: BaseLedgerStore, ledger: LedgerLogger, settings: Settings) -> None:
        self._store = store
        self._ledger = ledger
        self._settings = settings

    async def ensure_account(
        self,
        account_id: str,
        signup_method: SignupMethod = SignupMethod.EMAIL,
        email: str | None = None,
        display_name: str | None = None,
    ) -> Tuple[Account, bool]:
        """
        Create the account with its sign-up grant unless it already exists.

        An existing record is returned untouched, so repeated sign-ins never
        re-grant credits.
        """
        credits, free_actions = self._signup_grant(signup_method)
        account = Account(
            id=account_id,
            credits=credits,
            free_actions=free_actions,
            email=email,
            display_name=display_name,
            signup_method=signup_method,
        )
        stored, created = await self._store.create_account(account)
        if created:
            await self._ledger.log_transaction(
                account_id=account_id,
                message="Account created",
                details={
                    "signup_method": signup_method.value,
                    "credits": credits,
                    "free_actions": free_actions,
                },
            )
        return stored, created

    async def get_account(self, account_id: str) -> Account:
        account = await self._store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def resolve_billing_customer(self, customer_id: str) -> Optional[Account]:
        return await self._store.find_account_by_billing_customer(customer_id)

    async def link_billing_identity(self, account_id: str, customer_id: str) -> bool:
        linked = await self._store.set_billing_customer_id(account_id, customer_id)
        if linked:
            await self._ledger.log_transaction(
                account_id=account_id,
                message="Billing identity linked",
                details={"customer_id": customer_id},
            )
            return True

        account = await self.get_account(account_id)
        if account.billing_customer_id != customer_id:
            logger.warning(
                "Account %s already linked to %s; ignoring %s",
                account_id,
                account.billing_customer_id,
                customer_id,
            )
        return False

    async def update_subscription(self, account_id: str, state: SubscriptionState) -> None:
        await self._store.set_subscription_state(account_id, state)
        await self._ledger.log_transaction(
            account_id=account_id,
            message="Subscription state updated",
            details=state.model_dump(mode="json"),
        )

    def _signup_grant(self, signup_method: SignupMethod) -> Tuple[int, int]:
        if signup_method == SignupMethod.WALLET:
            return (
                self._settings.WALLET_SIGNUP_CREDITS,
                self._settings.WALLET_SIGNUP_FREE_ACTIONS,
            )
        return (
            self._settings.EMAIL_SIGNUP_CREDITS,
            self._settings.EMAIL_SIGNUP_FREE_ACTIONS,
        )
