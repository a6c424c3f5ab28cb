"""
Payment Reconciliation Service

Bridges a completed payment to exactly one Balance Service credit.

Two independent triggers land here and may race in either order:
- the browser returning from Checkout (``reconcile`` with the caller as
  expected principal)
- the provider's webhook (``handle_event``)

Neither takes a lock. The payment reference doubles as the credit's
idempotency key, and the Balance Service applies each key at most once.
"""

import logging
from typing import Any, Dict, Optional

from .balance_service import BalanceService
from .config import STRIPE_CHECKOUT_COMPLETED_EVENT
from .errors import (
    EmailAlreadyBound,
    LedgerError,
    LedgerUnavailable,
    OwnershipMismatch,
    PaymentNotCompleted,
    PaymentProviderError
)
from .models import ReconcileResult
from .payment_provider import StripePaymentProvider, field

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Confirms payments with the provider and credits them exactly once."""

    def __init__(self, balance_service: BalanceService, provider: StripePaymentProvider):
        self.balance_service = balance_service
        self.provider = provider
        self.policy = balance_service.policy

    async def reconcile(
        self,
        payment_reference: str,
        expected_principal: Optional[str] = None
    ) -> ReconcileResult:
        """
        Verify a payment and credit its plan.

        Raises:
            PaymentNotCompleted: provider reports the payment as not paid
            OwnershipMismatch: payment has no owner, or belongs to someone other than expected_principal
            UnknownPlan: payment metadata names a plan the price table lacks
            PaymentProviderError: provider lookup failed
        """
        # 1. Ask the provider
        payment = await self.provider.get_payment_status(payment_reference)

        # 2. Only paid checkouts are credited
        if not payment.paid:
            logger.info(f"Payment {payment_reference} not completed (status={payment.status})")
            raise PaymentNotCompleted(payment_reference)

        # 3. Ownership
        if expected_principal is not None and payment.principal_id != expected_principal:
            logger.warning(
                f"Ownership mismatch on {payment_reference}: "
                f"caller={expected_principal} payment={payment.principal_id}"
            )
            raise OwnershipMismatch(payment_reference)

        principal_id = payment.principal_id
        if not principal_id:
            logger.error(f"Payment {payment_reference} carries no principal metadata")
            raise OwnershipMismatch(payment_reference)

        # 4. Plan grant, no guessing
        plan = self.policy.plan(payment.plan_id)
        credits = plan["credits"]

        # Webhooks can arrive before the purchaser's first authenticated call
        try:
            await self.balance_service.ensure_account(principal_id, payment.email)
        except EmailAlreadyBound:
            logger.warning(f"Checkout email for {payment_reference} belongs to another account, provisioning without it")
            await self.balance_service.ensure_account(principal_id)

        # 5. Exactly-once credit keyed by the payment reference
        result = await self.balance_service.credit(
            principal_id,
            credits,
            idempotency_key=payment_reference,
            description=f"{plan['name']} - {credits} credits",
            kind="purchase"
        )

        # Tier follows every confirmed payment; a retry repairs an upgrade
        # that failed after the credit landed
        await self.balance_service.upgrade_plan(principal_id, payment.plan_id)

        if result.applied:
            logger.info(f"Payment {payment_reference}: +{credits} credits for {principal_id} ({payment.plan_id})")
        else:
            # 6. Duplicate delivery is a success outcome
            logger.info(f"Payment {payment_reference} already credited")

        account = await self.balance_service.get_account(principal_id)

        return ReconcileResult(
            reference=payment_reference,
            principal_id=principal_id,
            plan=payment.plan_id,
            credited=credits if result.applied else 0,
            already_credited=not result.applied,
            balance=account.balance if account else result.balance,
            plan_tier=account.plan_tier if account else None
        )

    async def handle_event(self, event: Any) -> Dict[str, Any]:
        """
        Route a verified webhook event.

        Expected domain failures are acknowledged so the provider stops
        redelivering; storage and provider failures propagate so it retries.
        """
        event_type = field(event, "type")
        session = field(field(event, "data"), "object")

        if event_type != STRIPE_CHECKOUT_COMPLETED_EVENT:
            logger.info(f"Ignoring webhook event type: {event_type}")
            return {"status": "ignored", "event_type": event_type}

        reference = field(session, "id")
        if not reference:
            logger.error("checkout.session.completed without a session id")
            return {"status": "rejected", "reason": "missing session id"}

        try:
            result = await self.reconcile(reference)
        except (LedgerUnavailable, PaymentProviderError):
            raise
        except LedgerError as e:
            logger.error(f"Webhook reconciliation of {reference} rejected: {e.error_code} {e.message}")
            return {"status": "rejected", "reference": reference, "error_code": e.error_code}

        return {
            "status": "already_credited" if result.already_credited else "credited",
            "reference": reference,
            "credited": result.credited,
        }
