from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class AlertType(str, Enum):
    REFUND_FAILED = "refund_failed"
    GUARD_RELEASE_FAILED = "guard_release_failed"
    INVALID_SIGNATURE = "invalid_signature"
    LOW_CREDITS = "low_credits"


class AlertStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class OperatorAlert(DBSerializableModel):
    """
    Stored representation of alerts that need operator or user attention.
    """

    collection_name: ClassVar[str] = "credit_alerts"

    id: Optional[str] = Field(default=None)
    account_id: Optional[str] = None
    alert_type: AlertType
    payload: dict = Field(default_factory=dict)
    status: AlertStatus = AlertStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
