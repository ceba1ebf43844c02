from __future__ import annotations

from typing import Callable, List, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, status

from ..errors import InvalidSignature, WebhookNotConfigured
from ..generation.base import GenerationRequest
from ..models.api_models import (
    AccountResponse,
    AdminAccountSummary,
    AdminGrantRequest,
    CreditBalanceResponse,
    EnsureAccountRequest,
    MeteredActionRequest,
    MeteredActionResponse,
    WebhookAck,
)
from ..models.payment import PaymentProvider, VerifiedWebhook
from ..services.admin_service import MAX_ACCOUNT_PAGE
from ..services.metered_action import ActionType
from ..webhooks.crypto_verifier import NOWPAYMENTS_SIGNATURE_HEADER, verify_nowpayments_ipn
from ..webhooks.stripe_verifier import STRIPE_SIGNATURE_HEADER, verify_stripe_webhook


WEBHOOK_PREFIX = "/webhooks"
ACTIONS_PREFIX = "/actions"

webhook_router = APIRouter(prefix=WEBHOOK_PREFIX, tags=["webhooks"])
router = APIRouter(tags=["credits"])


def _services(request: Request):
    return request.app.state.services


def _require_caller(account_id: Optional[str]) -> str:
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Account-Id header",
        )
    return account_id


async def _verify(
    request: Request,
    provider: PaymentProvider,
    verify: Callable[[], VerifiedWebhook],
) -> VerifiedWebhook:
    try:
        return verify()
    except InvalidSignature as exc:
        services = _services(request)
        await services.ledger.log_security(
            message="Rejected webhook with invalid signature",
            details={
                "provider": provider.value,
                "reason": str(exc),
                "client": request.client.host if request.client else None,
            },
        )
        await services.alerts.alert_invalid_signature(provider.value, str(exc))
        raise


@webhook_router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request) -> WebhookAck:
    services = _services(request)
    secret = services.settings.stripe_webhook_secret
    if not secret:
        raise WebhookNotConfigured("Stripe webhook secret is not configured")

    payload = await request.body()
    verified = await _verify(
        request,
        PaymentProvider.STRIPE,
        lambda: verify_stripe_webhook(
            payload,
            request.headers.get(STRIPE_SIGNATURE_HEADER),
            secret,
            tolerance=services.settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        ),
    )
    result = await services.reconciler.apply(verified)
    return WebhookAck(outcome=result.outcome.value)


@webhook_router.post("/nowpayments", response_model=WebhookAck)
async def nowpayments_webhook(request: Request) -> WebhookAck:
    services = _services(request)
    secret = services.settings.nowpayments_ipn_secret
    if not secret:
        raise WebhookNotConfigured("NOWPayments IPN secret is not configured")

    payload = await request.body()
    verified = await _verify(
        request,
        PaymentProvider.NOWPAYMENTS,
        lambda: verify_nowpayments_ipn(
            payload, request.headers.get(NOWPAYMENTS_SIGNATURE_HEADER), secret
        ),
    )
    result = await services.reconciler.apply(verified)
    return WebhookAck(outcome=result.outcome.value)


@router.post("/accounts", response_model=AccountResponse)
async def ensure_account(payload: EnsureAccountRequest, request: Request) -> AccountResponse:
    account, created = await _services(request).accounts.ensure_account(
        payload.account_id,
        signup_method=payload.signup_method,
        email=payload.email,
        display_name=payload.display_name,
    )
    return AccountResponse(
        account_id=account.id,
        credits=account.credits,
        free_actions=account.free_actions,
        created=created,
    )


@router.get("/credits/balance/{account_id}", response_model=CreditBalanceResponse)
async def get_balance(account_id: str, request: Request) -> CreditBalanceResponse:
    balance = await _services(request).credits.read_balance(account_id)
    return CreditBalanceResponse(
        account_id=account_id,
        credits=balance.credits,
        free_actions=balance.free_actions,
    )


@router.post("/admin/credits/grant", response_model=CreditBalanceResponse)
async def admin_grant(
    payload: AdminGrantRequest,
    request: Request,
    x_account_id: Optional[str] = Header(default=None),
) -> CreditBalanceResponse:
    actor_id = _require_caller(x_account_id)
    try:
        balance = await _services(request).admin.grant(
            actor_id, payload.account_id, payload.credits, note=payload.note
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc
    return CreditBalanceResponse(
        account_id=payload.account_id,
        credits=balance.credits,
        free_actions=balance.free_actions,
    )


@router.get("/admin/accounts", response_model=List[AdminAccountSummary])
async def admin_list_accounts(
    request: Request,
    limit: int = Query(default=100, ge=1, le=MAX_ACCOUNT_PAGE),
    x_account_id: Optional[str] = Header(default=None),
) -> List[AdminAccountSummary]:
    actor_id = _require_caller(x_account_id)
    accounts = await _services(request).admin.list_accounts(actor_id, limit=limit)
    return [
        AdminAccountSummary(
            account_id=account.id,
            credits=account.credits,
            free_actions=account.free_actions,
            is_admin=account.is_admin,
            email=account.email,
            billing_customer_id=account.billing_customer_id,
        )
        for account in accounts
    ]


@router.post(ACTIONS_PREFIX + "/{action}", response_model=MeteredActionResponse)
async def run_metered_action(
    action: ActionType,
    payload: MeteredActionRequest,
    request: Request,
    x_account_id: Optional[str] = Header(default=None),
) -> MeteredActionResponse:
    account_id = _require_caller(x_account_id)
    services = _services(request)
    if services.coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No generation backend configured",
        )

    metered = services.catalog.price(action, items=payload.items)
    outcome = await services.coordinator.run(
        account_id,
        metered,
        GenerationRequest(action=action.value, prompt=payload.prompt, options=payload.options),
    )
    reservation = outcome.reservation
    return MeteredActionResponse(
        reservation_id=reservation.id,
        action=action.value,
        credits_charged=reservation.credits,
        free_actions_used=reservation.free_actions,
        result=outcome.result,
    )
