from __future__ import annotations

import json

import pytest

from credit_ledger.db.memory import InMemoryLedgerStore
from credit_ledger.errors import AccountNotFound
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.account import Account, SignupMethod
from credit_ledger.models.ledger import LedgerEventType
from credit_ledger.services.account_service import AccountService
from credit_ledger.services.credit_service import CreditService


@pytest.mark.asyncio
async def test_adjust_and_read_balance(tmp_path):
    store = InMemoryLedgerStore()
    ledger = LedgerLogger(store=store, file_path=tmp_path / "ledger.log")
    service = CreditService(store=store, ledger=ledger)
    await store.create_account(Account(id="user-1"))

    await service.adjust("user-1", 100, reason="top up")
    await service.adjust("user-1", -40, reason="spend")

    balance = await service.read_balance("user-1")
    assert balance.credits == 60
    assert balance.free_actions == 0


@pytest.mark.asyncio
async def test_zero_adjustment_rejected(tmp_path):
    store = InMemoryLedgerStore()
    ledger = LedgerLogger(store=store, file_path=tmp_path / "ledger.log")
    service = CreditService(store=store, ledger=ledger)
    await store.create_account(Account(id="user-1"))

    with pytest.raises(ValueError):
        await service.adjust("user-1", 0, 0)


@pytest.mark.asyncio
async def test_adjust_unknown_account(tmp_path):
    store = InMemoryLedgerStore()
    ledger = LedgerLogger(store=store, file_path=tmp_path / "ledger.log")
    service = CreditService(store=store, ledger=ledger)

    with pytest.raises(AccountNotFound):
        await service.adjust("ghost", 5)
    assert store.ledger_entries == []


@pytest.mark.asyncio
async def test_adjustments_written_to_db_and_file(tmp_path):
    store = InMemoryLedgerStore()
    log_path = tmp_path / "ledger.log"
    ledger = LedgerLogger(store=store, file_path=log_path)
    service = CreditService(store=store, ledger=ledger)
    await store.create_account(Account(id="user-1"))

    await service.adjust("user-1", 7, reason="grant", correlation_id="corr-1")

    [entry] = store.ledger_entries
    assert entry.event_type == LedgerEventType.TRANSACTION
    assert entry.details["credits_delta"] == 7
    assert entry.correlation_id == "corr-1"

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["account_id"] == "user-1"


@pytest.mark.asyncio
async def test_signup_grants(settings, store, ledger):
    accounts = AccountService(store=store, ledger=ledger, settings=settings)

    email_account, created = await accounts.ensure_account("u-email")
    wallet_account, _ = await accounts.ensure_account(
        "0xabc", signup_method=SignupMethod.WALLET
    )

    assert created is True
    assert (email_account.credits, email_account.free_actions) == (8, 0)
    assert (wallet_account.credits, wallet_account.free_actions) == (5, 5)
    assert wallet_account.is_admin is False


@pytest.mark.asyncio
async def test_repeated_sign_in_never_regrants(settings, store, ledger):
    accounts = AccountService(store=store, ledger=ledger, settings=settings)
    credits = CreditService(store=store, ledger=ledger)

    await accounts.ensure_account("u1")
    await credits.adjust("u1", -8)
    account, created = await accounts.ensure_account("u1")

    assert created is False
    assert account.credits == 0


@pytest.mark.asyncio
async def test_billing_identity_set_once(settings, store, ledger, caplog):
    accounts = AccountService(store=store, ledger=ledger, settings=settings)
    await accounts.ensure_account("u1")

    assert await accounts.link_billing_identity("u1", "cus_1") is True
    assert await accounts.link_billing_identity("u1", "cus_1") is False
    assert await accounts.link_billing_identity("u1", "cus_2") is False
    assert "already linked" in caplog.text

    resolved = await accounts.resolve_billing_customer("cus_1")
    assert resolved is not None and resolved.id == "u1"
