"""
FastAPI application factory for the credit ledger.

Run with:
  uvicorn credit_ledger.api.app:create_app --factory
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..alerts.queue import AlertQueue, LoggingAlertQueue
from ..config import Settings, get_settings
from ..db.base import BaseLedgerStore
from ..db.memory import InMemoryLedgerStore
from ..db.mongo import MongoLedgerStore
from ..errors import (
    AccountNotFound,
    CreditLedgerError,
    GenerationFailed,
    InsufficientCredits,
    InvalidPayload,
    InvalidSignature,
    ProcessorUnavailable,
    RefundFailed,
    StoreUnavailable,
    Unauthorized,
    WebhookNotConfigured,
)
from ..generation.base import GenerationBackend
from ..logging.ledger_logger import LedgerLogger
from ..services.account_service import AccountService
from ..services.admin_service import AdminService
from ..services.alert_service import AlertService
from ..services.credit_service import CreditService
from ..services.credit_translator import CreditTranslator
from ..services.idempotency_guard import IdempotencyGuard
from ..services.metered_action import ActionCatalog, MeteredActionCoordinator
from ..services.reconciliation_service import PaymentReconciler
from ..webhooks.stripe_verifier import LineItemLookup, StripeLineItemLookup
from .router import ACTIONS_PREFIX, WEBHOOK_PREFIX, router, webhook_router


class LedgerServices:
    """Wires the store, audit log and services shared by all routes."""

    def __init__(
        self,
        settings: Settings,
        store: BaseLedgerStore,
        alert_queue: AlertQueue,
        generation_backend: Optional[GenerationBackend] = None,
        line_item_lookup: Optional[LineItemLookup] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.alert_queue = alert_queue
        self.ledger = LedgerLogger(store=store, file_path=Path(settings.LEDGER_LOG_PATH))
        self.alerts = AlertService(
            store=store,
            queue=alert_queue,
            low_credit_threshold=settings.LOW_CREDIT_THRESHOLD,
        )
        self.credits = CreditService(store=store, ledger=self.ledger)
        self.accounts = AccountService(store=store, ledger=self.ledger, settings=settings)
        self.guard = IdempotencyGuard(store=store)
        self.translator = CreditTranslator(
            price_credits=settings.stripe_price_credits(),
            crypto_amount_credits=settings.NOWPAYMENTS_AMOUNT_CREDITS,
        )
        self.reconciler = PaymentReconciler(
            accounts=self.accounts,
            credits=self.credits,
            guard=self.guard,
            translator=self.translator,
            ledger=self.ledger,
            alerts=self.alerts,
            line_item_lookup=line_item_lookup,
        )
        self.admin = AdminService(store=store, credits=self.credits, ledger=self.ledger)
        self.catalog = ActionCatalog(settings)
        self.coordinator: Optional[MeteredActionCoordinator] = None
        if generation_backend is not None:
            self.coordinator = MeteredActionCoordinator(
                credits=self.credits,
                backend=generation_backend,
                ledger=self.ledger,
                alerts=self.alerts,
                timeout_seconds=settings.GENERATION_TIMEOUT_SECONDS,
            )


def _create_store(settings: Settings) -> BaseLedgerStore:
    if settings.MONGO_URI:
        return MongoLedgerStore.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    return InMemoryLedgerStore()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseLedgerStore] = None,
    generation_backend: Optional[GenerationBackend] = None,
    line_item_lookup: Optional[LineItemLookup] = None,
    alert_queue: Optional[AlertQueue] = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or _create_store(settings)
    if line_item_lookup is None and settings.stripe_secret_key:
        line_item_lookup = StripeLineItemLookup(settings.stripe_secret_key)

    services = LedgerServices(
        settings=settings,
        store=store,
        alert_queue=alert_queue or LoggingAlertQueue(),
        generation_backend=generation_backend,
        line_item_lookup=line_item_lookup,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(store, MongoLedgerStore):
            await store.ensure_indexes()
        yield

    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.state.services = services
    app.include_router(webhook_router)
    app.include_router(router)
    _register_error_handlers(app)
    return app


def _error(status_code: int, exc: CreditLedgerError, **extra: object) -> JSONResponse:
    content = {"detail": str(exc), "code": exc.code}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidSignature)
    @app.exception_handler(InvalidPayload)
    async def _bad_request(request: Request, exc: CreditLedgerError) -> JSONResponse:
        return _error(400, exc)

    @app.exception_handler(Unauthorized)
    async def _forbidden(request: Request, exc: Unauthorized) -> JSONResponse:
        return _error(403, exc)

    @app.exception_handler(AccountNotFound)
    async def _not_found(request: Request, exc: AccountNotFound) -> JSONResponse:
        return _error(404, exc)

    @app.exception_handler(InsufficientCredits)
    async def _insufficient(request: Request, exc: InsufficientCredits) -> JSONResponse:
        return _error(402, exc, required=exc.required, available=exc.available)

    @app.exception_handler(GenerationFailed)
    async def _generation_failed(request: Request, exc: GenerationFailed) -> JSONResponse:
        return _error(502, exc, credits_charged=0)

    @app.exception_handler(RefundFailed)
    async def _refund_failed(request: Request, exc: RefundFailed) -> JSONResponse:
        return _error(500, exc)

    @app.exception_handler(WebhookNotConfigured)
    async def _not_configured(request: Request, exc: WebhookNotConfigured) -> JSONResponse:
        return _error(503, exc)

    @app.exception_handler(StoreUnavailable)
    @app.exception_handler(ProcessorUnavailable)
    async def _unavailable(request: Request, exc: CreditLedgerError) -> JSONResponse:
        # Webhook senders retry on 5xx; 500 keeps them retrying until the credit lands
        if request.url.path.startswith(WEBHOOK_PREFIX):
            return _error(500, exc)
        if request.url.path.startswith(ACTIONS_PREFIX):
            return _error(503, exc, credits_charged=0)
        return _error(503, exc)
