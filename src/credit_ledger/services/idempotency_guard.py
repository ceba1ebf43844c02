from __future__ import annotations

import logging
from typing import Optional

from ..db.base import BaseLedgerStore
from ..models.payment import PaymentProvider, ProcessedEventRecord


logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """
    Durable record of external payment events whose credit has been applied.

    `mark_processed` is the single serialization point for an event id: the
    store's unique key makes the second of two racing deliveries fail with
    `EventAlreadyProcessed`. Callers mark first and adjust second.
    """

    def __init__(self, store: BaseLedgerStore) -> None:
        self._store = store

    async def already_processed(self, event_id: str) -> bool:
        return await self._store.get_processed_event(event_id) is not None

    async def mark_processed(
        self,
        event_id: str,
        provider: PaymentProvider,
        account_id: Optional[str] = None,
        credits: int = 0,
    ) -> ProcessedEventRecord:
        record = ProcessedEventRecord(
            id=event_id, provider=provider, account_id=account_id, credits=credits
        )
        return await self._store.insert_processed_event(record)

    async def release(self, event_id: str) -> None:
        """
        Remove a mark whose ledger adjustment failed, so the sender's retry
        can apply the credit instead of being dropped as a duplicate.
        """
        await self._store.delete_processed_event(event_id)
        logger.info("Released processed-event mark %s", event_id)
