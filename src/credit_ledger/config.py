"""
Ledger configuration using Pydantic Settings.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


_PLACEHOLDER_SECRETS = {
    "",
    "sk_test_...",
    "whsec_...",
    "<REPLACE_ME_WITH_YOUR_KEY>",
    "REPLACE_ME",
}


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a local .env file)."""

    # Document store; empty URI selects the in-memory store
    MONGO_URI: str = ""
    MONGO_DB: str = "credit_ledger"

    # Card processor
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_STARTER_PRICE_ID: str = ""
    STRIPE_PRO_PRICE_ID: str = ""
    STRIPE_SCALE_PRICE_ID: str = ""
    STRIPE_EXTRA_PRICE_CREDITS: Dict[str, int] = {}

    # Crypto processor
    NOWPAYMENTS_IPN_SECRET: str = ""
    NOWPAYMENTS_AMOUNT_CREDITS: Dict[str, int] = {
        "25.00000000": 40,
        "50.00000000": 100,
        "100.00000000": 250,
    }

    # Audit log
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"

    # Metered actions
    GENERATION_TIMEOUT_SECONDS: float = 120.0
    PLAN_COST: int = 3
    GENERATION_COST: int = 1
    AUDIT_COST: int = 2
    LOW_CREDIT_THRESHOLD: int = 3

    # Sign-up grants
    EMAIL_SIGNUP_CREDITS: int = 8
    EMAIL_SIGNUP_FREE_ACTIONS: int = 0
    WALLET_SIGNUP_CREDITS: int = 5
    WALLET_SIGNUP_FREE_ACTIONS: int = 5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def stripe_webhook_secret(self) -> Optional[str]:
        return _configured(self.STRIPE_WEBHOOK_SECRET)

    @property
    def stripe_secret_key(self) -> Optional[str]:
        return _configured(self.STRIPE_SECRET_KEY)

    @property
    def nowpayments_ipn_secret(self) -> Optional[str]:
        return _configured(self.NOWPAYMENTS_IPN_SECRET)

    def stripe_price_credits(self) -> Dict[str, int]:
        """Price id -> credits granted, skipping tiers whose price id is not set."""
        table = {
            self.STRIPE_STARTER_PRICE_ID: 40,
            self.STRIPE_PRO_PRICE_ID: 100,
            self.STRIPE_SCALE_PRICE_ID: 250,
        }
        table.update(self.STRIPE_EXTRA_PRICE_CREDITS)
        return {price_id: credits for price_id, credits in table.items() if price_id}


def _configured(value: str) -> Optional[str]:
    value = (value or "").strip()
    if value in _PLACEHOLDER_SECRETS:
        return None
    return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
