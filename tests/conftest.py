from __future__ import annotations

import hashlib
import hmac
import time

import pytest

from credit_ledger.alerts.queue import InMemoryAlertQueue
from credit_ledger.config import Settings
from credit_ledger.db.memory import InMemoryLedgerStore
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.services.alert_service import AlertService


STRIPE_SECRET = "whsec_test_secret"
IPN_SECRET = "ipn-test-secret"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        LEDGER_LOG_PATH=str(tmp_path / "ledger.log"),
        STRIPE_WEBHOOK_SECRET=STRIPE_SECRET,
        STRIPE_STARTER_PRICE_ID="price_starter",
        STRIPE_PRO_PRICE_ID="price_pro",
        STRIPE_SCALE_PRICE_ID="price_scale",
        NOWPAYMENTS_IPN_SECRET=IPN_SECRET,
    )


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(store, tmp_path) -> LedgerLogger:
    return LedgerLogger(store=store, file_path=tmp_path / "ledger.log")


@pytest.fixture
def alert_queue() -> InMemoryAlertQueue:
    return InMemoryAlertQueue()


@pytest.fixture
def alerts(store, alert_queue) -> AlertService:
    return AlertService(store=store, queue=alert_queue, low_credit_threshold=3)


@pytest.fixture
def stripe_signature():
    """Builds a `Stripe-Signature` header the way Stripe signs deliveries."""

    def _sign(payload: str, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{payload}".encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    return _sign
