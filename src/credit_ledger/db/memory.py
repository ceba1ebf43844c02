from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Tuple

from .base import BaseLedgerStore, check_debit
from ..errors import AccountNotFound, EventAlreadyProcessed
from ..models.account import Account, AccountBalance, SubscriptionState
from ..models.alert import OperatorAlert
from ..models.ledger import LedgerEntry
from ..models.payment import ProcessedEventRecord


class InMemoryLedgerStore(BaseLedgerStore):
    """
    Simple in-memory implementation used for tests and local development.

    A single lock guards the account map so that `adjust` composes under
    concurrent callers the same way a server-side increment does.
    NOT suitable for production.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._processed: Dict[str, ProcessedEventRecord] = {}
        self._ledger: List[LedgerEntry] = []
        self._alerts: List[OperatorAlert] = []
        self._lock = asyncio.Lock()
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    # Account operations
    async def create_account(self, account: Account) -> Tuple[Account, bool]:
        async with self._lock:
            existing = self._accounts.get(account.id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._accounts[account.id] = account.model_copy(deep=True)
            return account, True

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy(deep=True) if account is not None else None

    async def find_account_by_billing_customer(
        self, customer_id: str
    ) -> Optional[Account]:
        for account in self._accounts.values():
            if account.billing_customer_id == customer_id:
                return account.model_copy(deep=True)
        return None

    async def set_billing_customer_id(self, account_id: str, customer_id: str) -> bool:
        async with self._lock:
            account = self._require(account_id)
            if account.billing_customer_id:
                return False
            account.billing_customer_id = customer_id
            return True

    async def set_subscription_state(
        self, account_id: str, state: SubscriptionState
    ) -> None:
        async with self._lock:
            self._require(account_id).subscription = state.model_copy()

    async def list_accounts(self, limit: int = 100) -> List[Account]:
        ordered = sorted(self._accounts.values(), key=lambda account: account.id)
        return [account.model_copy(deep=True) for account in ordered[:limit]]

    # Counters
    async def read_balance(self, account_id: str) -> AccountBalance:
        account = self._require(account_id)
        return AccountBalance(credits=account.credits, free_actions=account.free_actions)

    async def adjust(
        self, account_id: str, credits_delta: int, free_actions_delta: int = 0
    ) -> None:
        async with self._lock:
            account = self._require(account_id)
            check_debit(
                account_id,
                AccountBalance(credits=account.credits, free_actions=account.free_actions),
                credits_delta,
                free_actions_delta,
            )
            account.credits += credits_delta
            account.free_actions += free_actions_delta

    # Processed webhook events
    async def insert_processed_event(
        self, record: ProcessedEventRecord
    ) -> ProcessedEventRecord:
        async with self._lock:
            if record.id in self._processed:
                raise EventAlreadyProcessed(record.id)
            self._processed[record.id] = record
            return record

    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEventRecord]:
        return self._processed.get(event_id)

    async def delete_processed_event(self, event_id: str) -> None:
        async with self._lock:
            self._processed.pop(event_id, None)

    # Audit
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    async def add_alert(self, alert: OperatorAlert) -> OperatorAlert:
        if alert.id is None:
            alert.id = self._next_id()
        self._alerts.append(alert)
        return alert

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)

    @property
    def alerts(self) -> List[OperatorAlert]:
        return list(self._alerts)

    def _require(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account
