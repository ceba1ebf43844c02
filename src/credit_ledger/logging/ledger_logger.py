from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseLedgerStore
from ..errors import StoreUnavailable
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)

_STDLIB_LEVELS = {
    LedgerEventType.TRANSACTION: logging.INFO,
    LedgerEventType.SYSTEM: logging.INFO,
    LedgerEventType.ERROR: logging.WARNING,
    LedgerEventType.SECURITY: logging.WARNING,
    LedgerEventType.ALERT: logging.ERROR,
}


class LedgerLogger:
    """
    Structured ledger logger that writes to the database, a file and the
    standard logging hierarchy.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators. DB logging uses the `LedgerEntry` model and the
    configured `BaseLedgerStore`. A store outage never turns an audit write
    into a failure of the operation being audited.
    """

    def __init__(self, store: BaseLedgerStore, file_path: Path) -> None:
        self._store = store
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        account_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.TRANSACTION,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.ERROR,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_security(
        self,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.SECURITY,
            account_id=None,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_alert(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.ALERT,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        account_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = LedgerEntry(
            event_type=event_type,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        logger.log(
            _STDLIB_LEVELS[event_type],
            "%s: %s",
            event_type.value,
            message,
            extra={"account_id": account_id, "details": details, "correlation_id": correlation_id},
        )

        try:
            await self._store.add_ledger_entry(entry)
        except StoreUnavailable:
            logger.exception(
                "Ledger entry could not be persisted; kept in file log only",
                extra={"account_id": account_id, "ledger_message": message},
            )

        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            logger.warning("Ledger file log unavailable at %s", self._file_path)
