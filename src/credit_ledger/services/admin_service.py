from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..db.base import BaseLedgerStore
from ..errors import Unauthorized
from ..logging.ledger_logger import LedgerLogger
from ..models.account import Account, AccountBalance
from .credit_service import CreditService


MAX_ACCOUNT_PAGE = 500


class AdminService:
    """
    Manual balance grants and the account overview for administrators.

    Human-paced and not replayed by any network sender, so no idempotency
    guard is involved; every grant is audited with the acting admin's id.
    """

    def __init__(
        self, store: BaseLedgerStore, credits: CreditService, ledger: LedgerLogger
    ) -> None:
        self._store = store
        self._credits = credits
        self._ledger = ledger

    async def grant(
        self,
        actor_id: str,
        account_id: str,
        credits: int,
        note: Optional[str] = None,
    ) -> AccountBalance:
        await self._require_admin(
            actor_id,
            "Rejected credit grant from non-admin",
            {"account_id": account_id, "credits": credits},
        )

        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise ValueError("credits must be a positive integer")

        await self._credits.adjust(
            account_id,
            credits,
            reason=f"admin grant by {actor_id}",
        )
        await self._ledger.log_transaction(
            account_id=account_id,
            message="Admin credit grant",
            details={"actor_id": actor_id, "credits": credits, "note": note or ""},
        )
        return await self._credits.read_balance(account_id)

    async def list_accounts(self, actor_id: str, limit: int = 100) -> List[Account]:
        await self._require_admin(
            actor_id, "Rejected account listing from non-admin", {"limit": limit}
        )
        if limit < 1 or limit > MAX_ACCOUNT_PAGE:
            raise ValueError(f"limit must be between 1 and {MAX_ACCOUNT_PAGE}")
        return await self._store.list_accounts(limit=limit)

    async def _require_admin(
        self, actor_id: str, message: str, details: Dict[str, Any]
    ) -> None:
        actor = await self._store.get_account(actor_id)
        if actor is None or not actor.is_admin:
            await self._ledger.log_security(
                message=message, details={"actor_id": actor_id, **details}
            )
            raise Unauthorized(f"{actor_id!r} is not an administrator")
