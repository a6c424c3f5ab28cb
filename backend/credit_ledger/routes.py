"""
Credit Ledger API Routes

Credits:
- GET /api/credits/balance - Current balance and plan tier
- GET /api/credits/account - Account (provisioned on first call)
- GET /api/credits/ledger - Transaction history
- GET /api/credits/tools - Tool credit costs
- POST /api/credits/estimate - Cost of a tool, no charge
- POST /api/credits/debit - Charge a tool before it runs
- GET /api/credits/audit - Balance vs ledger consistency
- POST /api/credits/admin/grant - Manual credit (admin)

Payments:
- GET /api/payments/plans - Purchase plans
- POST /api/payments/checkout - Create Stripe Checkout session
- POST /api/payments/verify - Reconcile a returning checkout
- GET /api/payments/history - Purchase entries
- POST /api/payments/webhook - Stripe webhook handler
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Query

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import db
from utils.auth import get_current_principal, get_admin_principal
from credit_ledger.balance_service import BalanceService
from credit_ledger.errors import AccountNotProvisioned, LedgerError, UnknownPlan
from credit_ledger.grant_policy import GrantPolicy
from credit_ledger.guard import RateLimiter, ToolGuard
from credit_ledger.models import (
    AdminGrantRequest,
    CheckoutRequest,
    DebitRequest,
    EstimateResponse,
    VerifyPaymentRequest
)
from credit_ledger.payment_provider import StripePaymentProvider, field
from credit_ledger.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

credits_router = APIRouter(prefix="/credits", tags=["Credits"])
payments_router = APIRouter(prefix="/payments", tags=["Payments"])

# Shared across requests
rate_limiter = RateLimiter()
grant_policy = GrantPolicy()
payment_provider = StripePaymentProvider(grant_policy)

HTTP_STATUS = {
    "UNKNOWN_TOOL": 400,
    "INSUFFICIENT_CREDITS": 402,
    "RATE_LIMIT": 429,
    "ACCOUNT_NOT_PROVISIONED": 409,
    "EMAIL_ALREADY_BOUND": 409,
    "LEDGER_UNAVAILABLE": 503,
    "PAYMENT_NOT_COMPLETED": 402,
    "OWNERSHIP_MISMATCH": 403,
    "UNKNOWN_PLAN": 422,
    "PAYMENT_PROVIDER_ERROR": 502,
    "INVALID_SIGNATURE": 400,
}


def http_error(e: LedgerError, status_code: int = None) -> HTTPException:
    return HTTPException(
        status_code=status_code or HTTP_STATUS.get(e.error_code, 400),
        detail=e.to_dict()
    )


async def provisioned(principal: dict) -> BalanceService:
    """Balance service for the caller, with the caller's account in place."""
    service = BalanceService(db)
    try:
        await service.ensure_account(principal["id"], principal.get("email"))
    except LedgerError as e:
        raise http_error(e)
    return service


# ==================== CREDIT ENDPOINTS ====================

@credits_router.get("/balance")
async def get_balance(principal: dict = Depends(get_current_principal)):
    """Get current principal's credit balance."""
    service = await provisioned(principal)
    try:
        account = await service.get_account(principal["id"])
    except LedgerError as e:
        raise http_error(e)

    return {
        "balance": account.balance,
        "plan_tier": account.plan_tier
    }


@credits_router.get("/account")
async def get_account(principal: dict = Depends(get_current_principal)):
    service = BalanceService(db)
    try:
        account = await service.ensure_account(principal["id"], principal.get("email"))
    except LedgerError as e:
        raise http_error(e)
    return account.model_dump()


@credits_router.get("/ledger")
async def get_ledger(
    limit: int = Query(50, ge=1, le=200),
    principal: dict = Depends(get_current_principal)
):
    """
    Get credit history (ledger entries), newest first.

    Shows all transactions: signup grant, purchases, usage, refunds.
    """
    service = await provisioned(principal)
    try:
        entries = await service.get_ledger(principal["id"], limit)
    except LedgerError as e:
        raise http_error(e)

    return {
        "entries": [e.model_dump() for e in entries],
        "count": len(entries)
    }


@credits_router.get("/tools")
async def get_tool_costs():
    """Credit cost of every AI tool."""
    return {"tools": grant_policy.list_tools()}


@credits_router.post("/estimate", response_model=EstimateResponse)
async def estimate_tool(
    request: DebitRequest,
    principal: dict = Depends(get_current_principal)
):
    """
    Estimate credit cost for a tool.

    Does NOT deduct any credits.
    """
    service = await provisioned(principal)
    guard = ToolGuard(service, rate_limiter)
    try:
        return await guard.estimate(principal["id"], request.tool)
    except LedgerError as e:
        raise http_error(e)


@credits_router.post("/debit")
async def debit_tool(
    request: DebitRequest,
    principal: dict = Depends(get_current_principal)
):
    """
    Charge a tool's cost. Call BEFORE running the AI operation.
    """
    service = await provisioned(principal)
    guard = ToolGuard(service, rate_limiter)
    try:
        result = await guard.charge(principal["id"], request.tool)
    except LedgerError as e:
        raise http_error(e)

    if not result.allowed:
        raise HTTPException(
            status_code=HTTP_STATUS.get(result.error_code, 400),
            detail={
                "error_code": result.error_code,
                "message": result.error_message,
                "cost": result.cost,
                "balance": result.remaining_balance
            }
        )

    return {
        "deducted": result.cost,
        "remaining": result.remaining_balance,
        "tool": result.tool,
        "entry_id": result.entry_id
    }


@credits_router.get("/audit")
async def audit_balance(principal: dict = Depends(get_current_principal)):
    """Compare the balance with the sum of ledger deltas."""
    service = await provisioned(principal)
    try:
        report = await service.verify_consistency(principal["id"])
    except LedgerError as e:
        raise http_error(e)
    return report.model_dump()


@credits_router.post("/admin/grant")
async def admin_grant(
    body: AdminGrantRequest,
    admin: dict = Depends(get_admin_principal)
):
    """
    Manually credit an existing principal (refund or missed signup grant).

    The idempotency key makes repeated submissions harmless. Unknown
    principals get 404 instead of a fresh account with a signup bonus.
    """
    service = BalanceService(db)
    try:
        if await service.get_account(body.principal_id) is None:
            raise http_error(AccountNotProvisioned(body.principal_id), 404)
        result = await service.credit(
            body.principal_id,
            body.amount,
            idempotency_key=f"admin:{body.idempotency_key}",
            description=body.description,
            kind=body.kind
        )
    except LedgerError as e:
        raise http_error(e)

    logger.info(
        f"Admin {admin['email']} granted {body.amount} credits to {body.principal_id} "
        f"(applied={result.applied})"
    )
    return result.model_dump()


# ==================== PAYMENT ENDPOINTS ====================

@payments_router.get("/plans")
async def get_plans():
    """
    Get available credit plans for purchase.
    """
    return {
        "plans": grant_policy.list_plans(),
        "currency": "USD"
    }


@payments_router.post("/checkout")
async def create_checkout(
    body: CheckoutRequest,
    principal: dict = Depends(get_current_principal)
):
    """
    Create a Stripe Checkout session and return its URL.

    Credits are granted by /verify or the webhook, whichever comes first.
    """
    await provisioned(principal)
    try:
        url = await payment_provider.create_checkout(body.plan, principal["id"], principal.get("email"))
    except UnknownPlan as e:
        raise http_error(e, status_code=400)
    except LedgerError as e:
        raise http_error(e)

    return {"checkout_url": url}


@payments_router.post("/verify")
async def verify_payment(
    body: VerifyPaymentRequest,
    principal: dict = Depends(get_current_principal)
):
    """
    Called by the frontend after returning from Stripe Checkout.

    Safe to call repeatedly and safe to race with the webhook.
    """
    service = await provisioned(principal)
    reconciler = ReconciliationService(service, payment_provider)
    try:
        result = await reconciler.reconcile(body.session_id, expected_principal=principal["id"])
    except LedgerError as e:
        raise http_error(e)

    return {
        "credited": result.credited,
        "already_credited": result.already_credited,
        "plan": result.plan,
        "balance": result.balance,
        "plan_tier": result.plan_tier
    }


@payments_router.get("/history")
async def get_payment_history(principal: dict = Depends(get_current_principal)):
    service = await provisioned(principal)
    try:
        entries = await service.get_ledger(principal["id"], limit=None, kind="purchase")
    except LedgerError as e:
        raise http_error(e)
    return {"payments": [e.model_dump() for e in entries]}


@payments_router.post("/webhook")
async def stripe_webhook(request: Request):
    """
    Stripe webhook handler.

    Handles checkout.session.completed; every other event is acknowledged
    and ignored. Storage or provider failures answer 5xx so Stripe retries.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = payment_provider.construct_event(payload, signature)
    except LedgerError as e:
        raise http_error(e)

    logger.info(f"Stripe webhook received: {field(event, 'type')}")

    reconciler = ReconciliationService(BalanceService(db), payment_provider)
    try:
        outcome = await reconciler.handle_event(event)
    except LedgerError as e:
        raise http_error(e)

    return {"received": True, **outcome}
