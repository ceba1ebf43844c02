from __future__ import annotations

from typing import Optional

from ..db.base import BaseLedgerStore
from ..logging.ledger_logger import LedgerLogger
from ..models.account import AccountBalance


class CreditService:
    """
    Ledger access shared by every flow that moves credits.

    Methods are intentionally narrow: a point read and a relative adjustment.
    `adjust` delegates the arithmetic to the store's atomic increment and
    records the change in the audit ledger afterwards.
    """

    def __init__(self, store: BaseLedgerStore, ledger: LedgerLogger) -> None:
        self._store = store
        self._ledger = ledger

    async def read_balance(self, account_id: str) -> AccountBalance:
        """Point-in-time read; raises AccountNotFound or StoreUnavailable."""
        return await self._store.read_balance(account_id)

    async def adjust(
        self,
        account_id: str,
        credits_delta: int,
        free_actions_delta: int = 0,
        reason: str | None = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        if credits_delta == 0 and free_actions_delta == 0:
            raise ValueError("adjustment must change at least one counter")

        await self._store.adjust(account_id, credits_delta, free_actions_delta)

        await self._ledger.log_transaction(
            account_id=account_id,
            message="Balance adjusted",
            details={
                "credits_delta": credits_delta,
                "free_actions_delta": free_actions_delta,
                "reason": reason or "",
            },
            correlation_id=correlation_id,
        )
