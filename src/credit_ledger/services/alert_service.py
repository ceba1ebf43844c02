from __future__ import annotations

import logging
from typing import Any, Optional

from ..alerts.queue import AlertQueue
from ..db.base import BaseLedgerStore
from ..errors import StoreUnavailable
from ..models.alert import AlertStatus, AlertType, OperatorAlert


logger = logging.getLogger(__name__)


class AlertService:
    """
    Records operator alerts and hands each one to the alert queue.

    Alerts are raised on the paths where the ledger cannot repair itself
    (failed refunds, a guard mark that could not be released), so storing
    the alert must not depend on the store being healthy: the queue is
    always attempted.
    """

    def __init__(
        self,
        store: BaseLedgerStore,
        queue: AlertQueue,
        low_credit_threshold: int = 0,
    ) -> None:
        self._store = store
        self._queue = queue
        self._low_credit_threshold = low_credit_threshold

    async def alert_refund_failed(
        self, account_id: str, credits: int, free_actions: int, reason: str
    ) -> None:
        await self._raise(
            AlertType.REFUND_FAILED,
            account_id=account_id,
            payload={"credits": credits, "free_actions": free_actions, "reason": reason},
        )

    async def alert_guard_release_failed(
        self, event_id: str, account_id: Optional[str], credits: int, reason: str
    ) -> None:
        await self._raise(
            AlertType.GUARD_RELEASE_FAILED,
            account_id=account_id,
            payload={"event_id": event_id, "credits": credits, "reason": reason},
        )

    async def alert_invalid_signature(self, provider: str, reason: str) -> None:
        await self._raise(
            AlertType.INVALID_SIGNATURE,
            account_id=None,
            payload={"provider": provider, "reason": reason},
        )

    async def notify_low_credits(self, account_id: str, credits: int) -> None:
        if credits > self._low_credit_threshold:
            return
        await self._raise(
            AlertType.LOW_CREDITS,
            account_id=account_id,
            payload={"credits": credits, "threshold": self._low_credit_threshold},
        )

    async def _raise(
        self, alert_type: AlertType, account_id: Optional[str], payload: dict[str, Any]
    ) -> None:
        alert = OperatorAlert(account_id=account_id, alert_type=alert_type, payload=payload)
        try:
            alert = await self._store.add_alert(alert)
        except StoreUnavailable:
            alert.status = AlertStatus.FAILED
            logger.exception(
                "Alert %s could not be stored", alert_type.value,
                extra={"account_id": account_id, "payload": payload},
            )

        await self._queue.enqueue(alert)
