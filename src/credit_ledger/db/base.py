from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from ..errors import InsufficientCredits
from ..models.account import Account, AccountBalance, SubscriptionState
from ..models.alert import OperatorAlert
from ..models.ledger import LedgerEntry
from ..models.payment import ProcessedEventRecord


class BaseLedgerStore(ABC):
    """
    DB-agnostic async store interface.

    Balance changes go exclusively through `adjust`, a single relative
    increment applied atomically by the backend. Implementations must never
    read a balance, compute the new value in Python and write it back.
    A negative delta is conditional on the counter covering it; a debit that
    would take either counter below zero changes nothing and raises
    `InsufficientCredits`.

    Infrastructure failures are raised as `StoreUnavailable`; a missing
    account as `AccountNotFound`.
    """

    # Account operations
    @abstractmethod
    async def create_account(self, account: Account) -> Tuple[Account, bool]:
        """
        Insert the account unless one with the same id exists.

        Returns the stored account and whether it was created by this call.
        An existing record is never overwritten.
        """
        ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def find_account_by_billing_customer(
        self, customer_id: str
    ) -> Optional[Account]: ...

    @abstractmethod
    async def set_billing_customer_id(self, account_id: str, customer_id: str) -> bool:
        """Set the billing identity if the account has none; returns True when set."""
        ...

    @abstractmethod
    async def set_subscription_state(
        self, account_id: str, state: SubscriptionState
    ) -> None: ...

    @abstractmethod
    async def list_accounts(self, limit: int = 100) -> List[Account]:
        """Accounts ordered by id, at most `limit` of them."""
        ...

    # Counters
    @abstractmethod
    async def read_balance(self, account_id: str) -> AccountBalance: ...

    @abstractmethod
    async def adjust(
        self, account_id: str, credits_delta: int, free_actions_delta: int = 0
    ) -> None: ...

    # Processed webhook events
    @abstractmethod
    async def insert_processed_event(
        self, record: ProcessedEventRecord
    ) -> ProcessedEventRecord:
        """Insert the marker; raises `EventAlreadyProcessed` if the id exists."""
        ...

    @abstractmethod
    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEventRecord]: ...

    @abstractmethod
    async def delete_processed_event(self, event_id: str) -> None: ...

    # Audit
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def add_alert(self, alert: OperatorAlert) -> OperatorAlert: ...


def check_debit(
    account_id: str, balance: AccountBalance, credits_delta: int, free_actions_delta: int
) -> None:
    """Raise `InsufficientCredits` if applying the deltas would overdraw `balance`."""
    if credits_delta < 0 and balance.credits + credits_delta < 0:
        raise InsufficientCredits(account_id, -credits_delta, balance.credits)
    if free_actions_delta < 0 and balance.free_actions + free_actions_delta < 0:
        raise InsufficientCredits(account_id, -free_actions_delta, balance.free_actions)
