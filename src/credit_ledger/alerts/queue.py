from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..models.alert import AlertStatus, AlertType, OperatorAlert


logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AlertType.REFUND_FAILED: logging.ERROR,
    AlertType.GUARD_RELEASE_FAILED: logging.ERROR,
    AlertType.INVALID_SIGNATURE: logging.WARNING,
    AlertType.LOW_CREDITS: logging.INFO,
}


def alert_message(alert: OperatorAlert) -> Dict[str, Any]:
    """
    Outbound form of an alert.

    `stored` is False when the alert could not be written to the store, in
    which case `alert_id` is None and this message is the only record.
    """
    return {
        "alert_id": alert.id,
        "type": alert.alert_type.value,
        "account_id": alert.account_id,
        "stored": alert.status != AlertStatus.FAILED,
        "payload": dict(alert.payload),
    }


class AlertQueue(ABC):
    """Hands operator alerts to whoever is on call (pager, chat relay, email)."""

    @abstractmethod
    async def enqueue(self, alert: OperatorAlert) -> None:
        ...


class LoggingAlertQueue(AlertQueue):
    """
    Default queue: one log record per alert, at a level matching its severity.

    Money-losing alerts (failed refunds, marked-but-uncredited events) are
    logged as errors so log-based paging picks them up.
    """

    async def enqueue(self, alert: OperatorAlert) -> None:
        level = _LOG_LEVELS.get(alert.alert_type, logging.WARNING)
        logger.log(
            level,
            "Operator alert %s for account %s",
            alert.alert_type.value,
            alert.account_id or "-",
            extra={"alert": alert_message(alert)},
        )


class InMemoryAlertQueue(AlertQueue):
    """Keeps enqueued alerts in order; used by tests and local runs."""

    def __init__(self) -> None:
        self.alerts: List[OperatorAlert] = []

    async def enqueue(self, alert: OperatorAlert) -> None:
        self.alerts.append(alert.model_copy(deep=True))

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [alert_message(alert) for alert in self.alerts]
