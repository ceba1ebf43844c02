from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .base import utcnow


class ReservationState(str, Enum):
    IDLE = "idle"
    RESERVING = "reserving"
    RESERVED = "reserved"
    EXECUTING = "executing"
    COMMITTED = "committed"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    REJECTED = "rejected"
    REFUND_FAILED = "refund_failed"


class ReservationTransition(BaseModel):
    state: ReservationState
    at: datetime = Field(default_factory=utcnow)


class PendingReservation(BaseModel):
    """
    Credits provisionally debited for one metered action.

    Lives only for the duration of the request; the ledger counters and the
    audit log are the durable record.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    account_id: str
    purpose: str
    cost: int = Field(gt=0)
    credits: int = 0
    free_actions: int = 0
    state: ReservationState = ReservationState.IDLE
    history: List[ReservationTransition] = Field(default_factory=list)
    error: Optional[str] = None

    def transition(self, state: ReservationState) -> None:
        self.state = state
        self.history.append(ReservationTransition(state=state))

    @property
    def states(self) -> List[ReservationState]:
        return [t.state for t in self.history]
