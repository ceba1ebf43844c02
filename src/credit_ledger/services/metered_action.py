from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Type

from pydantic import BaseModel, Field, PydanticUserError, ValidationError

from ..config import Settings
from ..errors import (
    AccountNotFound,
    GenerationFailed,
    InsufficientCredits,
    RefundFailed,
    StoreUnavailable,
)
from ..generation.base import GenerationBackend, GenerationRequest
from ..logging.ledger_logger import LedgerLogger
from ..models.reservation import PendingReservation, ReservationState
from .alert_service import AlertService
from .credit_service import CreditService


logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    PLAN = "plan"
    GENERATION = "generation"
    NFT_COLLECTION = "nft_collection"
    AUDIT = "audit"


class MeteredAction(BaseModel):
    action_type: ActionType
    cost: int = Field(gt=0)
    free_eligible: bool = False


class ActionCatalog:
    """Static prices of the metered actions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def price(self, action_type: ActionType, items: int = 1) -> MeteredAction:
        if items < 1:
            raise ValueError("items must be at least 1")
        if action_type == ActionType.PLAN:
            return MeteredAction(action_type=action_type, cost=self._settings.PLAN_COST)
        if action_type == ActionType.AUDIT:
            return MeteredAction(
                action_type=action_type, cost=self._settings.AUDIT_COST, free_eligible=True
            )
        if action_type == ActionType.NFT_COLLECTION:
            # First item at the base generation price, one credit per extra item
            return MeteredAction(
                action_type=action_type, cost=self._settings.GENERATION_COST + (items - 1)
            )
        return MeteredAction(action_type=action_type, cost=self._settings.GENERATION_COST)


class MeteredActionResult(BaseModel):
    result: Any
    reservation: PendingReservation


class MeteredActionCoordinator:
    """
    Runs one paid generation: reserve, execute, then commit or refund.

    The debit is applied before the backend is called, so a crash during the
    call can never produce unmetered output. Every non-successful outcome
    (exception, malformed result, timeout, cancellation) returns exactly the
    amounts debited, through the same relative adjustment. No lock is held
    across the backend call.
    """

    def __init__(
        self,
        credits: CreditService,
        backend: GenerationBackend,
        ledger: LedgerLogger,
        alerts: AlertService,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._credits = credits
        self._backend = backend
        self._ledger = ledger
        self._alerts = alerts
        self._timeout_seconds = timeout_seconds

    async def run(
        self,
        account_id: str,
        action: MeteredAction,
        request: GenerationRequest,
        output_model: Optional[Type[BaseModel]] = None,
    ) -> MeteredActionResult:
        if output_model is not None and request.output_schema is None:
            request = request.model_copy(
                update={"output_schema": self._output_schema(action, output_model)}
            )

        reservation = PendingReservation(
            account_id=account_id, purpose=action.action_type.value, cost=action.cost
        )
        reservation.transition(ReservationState.IDLE)
        await self._reserve(reservation, action)

        reservation.transition(ReservationState.EXECUTING)
        try:
            raw = await asyncio.wait_for(
                self._backend.generate(request), timeout=self._timeout_seconds
            )
            result = self._validate(raw, output_model)
        except asyncio.CancelledError:
            await self._refund(reservation, "cancelled")
            raise
        except asyncio.TimeoutError as exc:
            await self._refund(reservation, "timeout")
            raise GenerationFailed(
                f"{action.action_type.value} timed out after {self._timeout_seconds}s; "
                "no credits were charged"
            ) from exc
        except Exception as exc:
            await self._refund(reservation, str(exc) or type(exc).__name__)
            raise GenerationFailed(
                f"{action.action_type.value} failed; no credits were charged"
            ) from exc

        reservation.transition(ReservationState.COMMITTED)
        await self._ledger.log_transaction(
            account_id=account_id,
            message="Metered action committed",
            details={
                "purpose": reservation.purpose,
                "credits": reservation.credits,
                "free_actions": reservation.free_actions,
                "states": [state.value for state in reservation.states],
            },
            correlation_id=reservation.id,
        )
        await self._check_low_balance(account_id)
        return MeteredActionResult(result=result, reservation=reservation)

    async def _reserve(self, reservation: PendingReservation, action: MeteredAction) -> None:
        reservation.transition(ReservationState.RESERVING)
        try:
            balance = await self._credits.read_balance(reservation.account_id)
        except (StoreUnavailable, AccountNotFound):
            reservation.transition(ReservationState.REJECTED)
            raise

        if action.free_eligible and balance.free_actions > 0:
            reservation.free_actions = 1
        elif balance.credits >= action.cost:
            reservation.credits = action.cost
        else:
            reservation.transition(ReservationState.REJECTED)
            await self._ledger.log_error(
                message="Insufficient credits for metered action",
                details={
                    "purpose": reservation.purpose,
                    "required": action.cost,
                    "credits": balance.credits,
                    "free_actions": balance.free_actions,
                },
                account_id=reservation.account_id,
                correlation_id=reservation.id,
            )
            raise InsufficientCredits(reservation.account_id, action.cost, balance.credits)

        try:
            await self._credits.adjust(
                reservation.account_id,
                -reservation.credits,
                -reservation.free_actions,
                reason=f"reserve {reservation.purpose}",
                correlation_id=reservation.id,
            )
        except (StoreUnavailable, AccountNotFound, InsufficientCredits):
            reservation.transition(ReservationState.REJECTED)
            raise
        reservation.transition(ReservationState.RESERVED)

    async def _refund(self, reservation: PendingReservation, reason: str) -> None:
        reservation.transition(ReservationState.REFUNDING)
        reservation.error = reason
        try:
            await self._credits.adjust(
                reservation.account_id,
                reservation.credits,
                reservation.free_actions,
                reason=f"refund {reservation.purpose}: {reason}",
                correlation_id=reservation.id,
            )
        except (StoreUnavailable, AccountNotFound) as exc:
            reservation.transition(ReservationState.REFUND_FAILED)
            await self._ledger.log_alert(
                message="Refund of reserved credits failed",
                details={
                    "reservation_id": reservation.id,
                    "purpose": reservation.purpose,
                    "credits": reservation.credits,
                    "free_actions": reservation.free_actions,
                    "reason": reason,
                    "error": str(exc),
                },
                account_id=reservation.account_id,
                correlation_id=reservation.id,
            )
            await self._alerts.alert_refund_failed(
                reservation.account_id,
                reservation.credits,
                reservation.free_actions,
                reason=str(exc),
            )
            raise RefundFailed(
                reservation.account_id,
                reservation.credits,
                reservation.free_actions,
                reason=reason,
            ) from exc
        reservation.transition(ReservationState.REFUNDED)

    @staticmethod
    def _output_schema(action: MeteredAction, output_model: Type[BaseModel]) -> dict:
        try:
            return output_model.model_json_schema()
        except PydanticUserError as exc:
            raise GenerationFailed(
                f"{action.action_type.value} output schema cannot be built; "
                "no credits were charged"
            ) from exc

    @staticmethod
    def _validate(raw: Any, output_model: Optional[Type[BaseModel]]) -> Any:
        if output_model is not None:
            try:
                return output_model.model_validate(raw)
            except ValidationError as exc:
                raise GenerationFailed(f"malformed generation output: {exc}") from exc
        if not raw:
            raise GenerationFailed("generation returned no output")
        return raw

    async def _check_low_balance(self, account_id: str) -> None:
        try:
            balance = await self._credits.read_balance(account_id)
        except StoreUnavailable:
            logger.warning("Skipping low-credit check for %s: store unavailable", account_id)
            return
        await self._alerts.notify_low_credits(account_id, balance.credits)
