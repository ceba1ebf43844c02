from __future__ import annotations

import asyncio

import pytest

from credit_ledger.alerts.queue import InMemoryAlertQueue
from credit_ledger.db.memory import InMemoryLedgerStore
from credit_ledger.errors import StoreUnavailable
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.account import Account, SubscriptionState, SubscriptionStatus
from credit_ledger.models.alert import AlertType
from credit_ledger.models.payment import (
    IgnoredEvent,
    PaymentEvent,
    PaymentKind,
    PaymentProvider,
    ReconciliationOutcome,
)
from credit_ledger.services.account_service import AccountService
from credit_ledger.services.alert_service import AlertService
from credit_ledger.services.credit_service import CreditService
from credit_ledger.services.credit_translator import CreditTranslator
from credit_ledger.services.idempotency_guard import IdempotencyGuard
from credit_ledger.services.reconciliation_service import PaymentReconciler


class FlakyStore(InMemoryLedgerStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_adjust = False
        self.fail_delete = False

    async def adjust(self, account_id, credits_delta, free_actions_delta=0):
        if self.fail_adjust:
            raise StoreUnavailable("write timed out")
        await super().adjust(account_id, credits_delta, free_actions_delta)

    async def delete_processed_event(self, event_id):
        if self.fail_delete:
            raise StoreUnavailable("delete timed out")
        await super().delete_processed_event(event_id)


def _reconciler(store, settings, tmp_path, line_item_lookup=None) -> PaymentReconciler:
    ledger = LedgerLogger(store=store, file_path=tmp_path / "ledger.log")
    return PaymentReconciler(
        accounts=AccountService(store=store, ledger=ledger, settings=settings),
        credits=CreditService(store=store, ledger=ledger),
        guard=IdempotencyGuard(store=store),
        translator=CreditTranslator(
            price_credits=settings.stripe_price_credits(),
            crypto_amount_credits=settings.NOWPAYMENTS_AMOUNT_CREDITS,
        ),
        ledger=ledger,
        alerts=AlertService(store=store, queue=InMemoryAlertQueue()),
        line_item_lookup=line_item_lookup,
    )


def _purchase(event_id: str = "stripe:pi_1", **overrides) -> PaymentEvent:
    fields = dict(
        event_id=event_id,
        provider=PaymentProvider.STRIPE,
        kind=PaymentKind.ONE_TIME_PURCHASE,
        account_id="u1",
        billing_customer_id="cus_1",
        product_id="price_starter",
        checkout_session_id="cs_1",
    )
    fields.update(overrides)
    return PaymentEvent(**fields)


@pytest.mark.asyncio
async def test_replayed_event_credits_once(settings, tmp_path):
    store = InMemoryLedgerStore()
    await store.create_account(Account(id="u1"))
    reconciler = _reconciler(store, settings, tmp_path)

    outcomes = [(await reconciler.apply(_purchase())).outcome for _ in range(3)]

    assert outcomes == [
        ReconciliationOutcome.APPLIED,
        ReconciliationOutcome.DUPLICATE,
        ReconciliationOutcome.DUPLICATE,
    ]
    assert (await store.read_balance("u1")).credits == 40


@pytest.mark.asyncio
async def test_concurrent_duplicates_credit_once(settings, tmp_path):
    store = InMemoryLedgerStore()
    await store.create_account(Account(id="u1"))
    reconciler = _reconciler(store, settings, tmp_path)

    results = await asyncio.gather(*[reconciler.apply(_purchase()) for _ in range(5)])

    applied = [r for r in results if r.outcome == ReconciliationOutcome.APPLIED]
    assert len(applied) == 1
    assert (await store.read_balance("u1")).credits == 40


@pytest.mark.asyncio
async def test_crypto_waiting_then_finished(settings, tmp_path):
    store = InMemoryLedgerStore()
    await store.create_account(Account(id="u1"))
    reconciler = _reconciler(store, settings, tmp_path)

    waiting = IgnoredEvent(
        provider=PaymentProvider.NOWPAYMENTS, event_type="payment.waiting", reason="not finished"
    )
    result = await reconciler.apply(waiting)
    assert result.outcome == ReconciliationOutcome.IGNORED
    assert (await store.read_balance("u1")).credits == 0

    finished = PaymentEvent(
        event_id="nowpayments:42",
        provider=PaymentProvider.NOWPAYMENTS,
        kind=PaymentKind.ONE_TIME_PURCHASE,
        account_id="u1",
        product_id="25.00000000",
        amount_paid="25.00000000",
    )
    result = await reconciler.apply(finished)
    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.credits == 40
    assert (await store.read_balance("u1")).credits == 40


@pytest.mark.asyncio
async def test_failed_credit_releases_mark_for_retry(settings, tmp_path):
    store = FlakyStore()
    await store.create_account(Account(id="u1"))
    reconciler = _reconciler(store, settings, tmp_path)

    store.fail_adjust = True
    with pytest.raises(StoreUnavailable):
        await reconciler.apply(_purchase())
    assert await store.get_processed_event("stripe:pi_1") is None

    store.fail_adjust = False
    result = await reconciler.apply(_purchase())
    assert result.outcome == ReconciliationOutcome.APPLIED
    assert (await store.read_balance("u1")).credits == 40


@pytest.mark.asyncio
async def test_failed_release_raises_alert(settings, tmp_path):
    store = FlakyStore()
    await store.create_account(Account(id="u1"))
    reconciler = _reconciler(store, settings, tmp_path)
    store.fail_adjust = True
    store.fail_delete = True

    with pytest.raises(StoreUnavailable):
        await reconciler.apply(_purchase())

    assert await store.get_processed_event("stripe:pi_1") is not None
    assert [a.alert_type for a in store.alerts] == [AlertType.GUARD_RELEASE_FAILED]


@pytest.mark.asyncio
async def test_unlinked_renewal_is_acknowledged(settings, tmp_path):
    store = InMemoryLedgerStore()
    reconciler = _reconciler(store, settings, tmp_path)
    renewal = _purchase(
        "stripe:in_9",
        kind=PaymentKind.SUBSCRIPTION_RENEWED,
        account_id=None,
        billing_customer_id="cus_unknown",
        product_id="price_pro",
    )

    result = await reconciler.apply(renewal)

    assert result.outcome == ReconciliationOutcome.NOT_LINKED
    assert await store.get_processed_event("stripe:in_9") is None
    assert any(e.message == "Payment event not linked to any account" for e in store.ledger_entries)


@pytest.mark.asyncio
async def test_renewal_resolved_through_billing_identity(settings, tmp_path):
    store = InMemoryLedgerStore()
    await store.create_account(Account(id="u1"))
    reconciler = _reconciler(store, settings, tmp_path)

    await reconciler.apply(_purchase())
    renewal = _purchase(
        "stripe:in_9",
        kind=PaymentKind.SUBSCRIPTION_RENEWED,
        account_id=None,
        product_id="price_pro",
    )
    result = await reconciler.apply(renewal)

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.account_id == "u1"
    assert (await store.read_balance("u1")).credits == 140


@pytest.mark.asyncio
async def test_unknown_price_grants_nothing(settings, tmp_path):
    store = InMemoryLedgerStore()
    await store.create_account(Account(id="u1"))
    reconciler = _reconciler(store, settings, tmp_path)

    result = await reconciler.apply(_purchase(product_id="price_unknown"))

    assert result.outcome == ReconciliationOutcome.NO_CREDITS
    assert await store.get_processed_event("stripe:pi_1") is None
    assert (await store.read_balance("u1")).credits == 0


@pytest.mark.asyncio
async def test_line_item_lookup_supplies_missing_price(settings, tmp_path):
    store = InMemoryLedgerStore()
    await store.create_account(Account(id="u1"))
    looked_up = []

    async def lookup(session_id: str):
        looked_up.append(session_id)
        return "price_scale"

    reconciler = _reconciler(store, settings, tmp_path, line_item_lookup=lookup)
    result = await reconciler.apply(_purchase(product_id=None))

    assert looked_up == ["cs_1"]
    assert result.credits == 250


@pytest.mark.asyncio
async def test_subscription_state_only_events(settings, tmp_path):
    store = InMemoryLedgerStore()
    await store.create_account(Account(id="u1", billing_customer_id="cus_1"))
    reconciler = _reconciler(store, settings, tmp_path)
    canceled = PaymentEvent(
        event_id="stripe:evt_7",
        provider=PaymentProvider.STRIPE,
        kind=PaymentKind.SUBSCRIPTION_CANCELED,
        billing_customer_id="cus_1",
        product_id="price_pro",
        subscription=SubscriptionState(
            status=SubscriptionStatus.CANCELED, plan_id="price_pro", subscription_id="sub_1"
        ),
    )

    result = await reconciler.apply(canceled)

    assert result.outcome == ReconciliationOutcome.STATE_UPDATED
    account = await store.get_account("u1")
    assert account.subscription.status == SubscriptionStatus.CANCELED
    assert account.credits == 0


@pytest.mark.asyncio
async def test_subscription_checkout_and_first_invoice_credit_once(settings, tmp_path):
    store = InMemoryLedgerStore()
    await store.create_account(Account(id="u1"))
    reconciler = _reconciler(store, settings, tmp_path)

    checkout = _purchase("stripe:in_1", kind=PaymentKind.SUBSCRIPTION_CREATED, product_id="price_pro")
    invoice = _purchase(
        "stripe:in_1",
        kind=PaymentKind.SUBSCRIPTION_CREATED,
        account_id=None,
        product_id="price_pro",
        checkout_session_id=None,
    )

    assert (await reconciler.apply(checkout)).outcome == ReconciliationOutcome.APPLIED
    assert (await reconciler.apply(invoice)).outcome == ReconciliationOutcome.DUPLICATE
    assert (await store.read_balance("u1")).credits == 100


@pytest.mark.asyncio
async def test_unknown_referenced_account_is_not_linked(settings, tmp_path):
    store = InMemoryLedgerStore()
    reconciler = _reconciler(store, settings, tmp_path)

    checkout = await reconciler.apply(_purchase(account_id="ghost"))
    crypto = await reconciler.apply(
        PaymentEvent(
            event_id="nowpayments:5",
            provider=PaymentProvider.NOWPAYMENTS,
            kind=PaymentKind.ONE_TIME_PURCHASE,
            account_id="ghost",
            product_id="25.00000000",
            amount_paid="25.00000000",
        )
    )

    assert checkout.outcome == ReconciliationOutcome.NOT_LINKED
    assert crypto.outcome == ReconciliationOutcome.NOT_LINKED
    assert await store.get_processed_event("stripe:pi_1") is None
    assert await store.get_processed_event("nowpayments:5") is None
    unlinked = [e for e in store.ledger_entries if e.message == "Payment event not linked to any account"]
    assert [e.details["unknown_account_id"] for e in unlinked] == ["ghost", "ghost"]
