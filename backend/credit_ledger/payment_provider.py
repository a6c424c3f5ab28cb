"""
Stripe Service for Credit Plan Purchases

Implements Stripe Checkout for one-time credit plan purchases.

Features:
- Checkout session creation with principal/plan metadata
- Payment status lookup by checkout session id
- Webhook signature verification

Required Environment Variables:
- STRIPE_SECRET_KEY
- STRIPE_WEBHOOK_SECRET
- STRIPE_PRICE_PERSONAL / _CREATOR / _STUDIO / _FLEX
"""

import asyncio
import functools
import json
import logging
import os
from typing import Any, Optional

import stripe

from utils.environment import is_production

from .config import STRIPE_PAID_STATUS, checkout_cancel_url, checkout_success_url
from .errors import InvalidWebhookSignature, PaymentProviderError
from .grant_policy import GrantPolicy
from .models import PaymentStatus

logger = logging.getLogger(__name__)

# Checkout session metadata keys
META_PRINCIPAL = "supabase_user_id"
META_EMAIL = "email"
META_PLAN = "plan_name"


def field(obj: Any, name: str) -> Any:
    """Read a key from a StripeObject or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class StripePaymentProvider:
    """Stripe Checkout adapter used by reconciliation and the payment routes."""

    def __init__(self, policy: Optional[GrantPolicy] = None):
        self.policy = policy or GrantPolicy()

    @property
    def secret_key(self) -> str:
        return os.environ.get("STRIPE_SECRET_KEY", "")

    @property
    def webhook_secret(self) -> str:
        return os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    async def _call(self, func, *args, **kwargs):
        """Run a blocking Stripe SDK call off the event loop."""
        if not self.secret_key:
            raise PaymentProviderError("Stripe is not configured")
        stripe.api_key = self.secret_key

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe rejected request: {e}")
            raise PaymentProviderError(f"Invalid payment request: {e.user_message or e}")
        except stripe.StripeError as e:
            logger.error(f"Stripe call failed: {e}")
            raise PaymentProviderError(f"Payment provider unavailable: {e.user_message or e}")

    async def create_checkout(self, plan_id: str, principal_id: str, email: Optional[str] = None) -> str:
        """
        Create a hosted Checkout session for a plan.

        Returns:
            Redirect URL of the Checkout page
        """
        plan = self.policy.plan(plan_id)
        price_id = self.policy.stripe_price_id(plan_id)
        if not price_id:
            logger.error(f"No Stripe price configured for plan {plan_id}")
            raise PaymentProviderError(f"{plan['name']} is not configured for checkout")

        params = {
            "mode": "payment",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": checkout_success_url(plan_id),
            "cancel_url": checkout_cancel_url(),
            "metadata": {
                META_PRINCIPAL: principal_id,
                META_PLAN: plan_id,
                META_EMAIL: email or "",
            },
            "allow_promotion_codes": True,
        }
        if email:
            params["customer_email"] = email

        session = await self._call(stripe.checkout.Session.create, **params)
        logger.info(f"Created checkout {field(session, 'id')} for {principal_id} ({plan_id})")
        return field(session, "url")

    async def get_payment_status(self, reference: str) -> PaymentStatus:
        """Fetch a checkout session and summarize its payment state."""
        session = await self._call(stripe.checkout.Session.retrieve, reference)
        return self.to_payment_status(session)

    @staticmethod
    def to_payment_status(session: Any) -> PaymentStatus:
        metadata = field(session, "metadata") or {}
        details = field(session, "customer_details")
        email = (
            field(metadata, META_EMAIL)
            or field(session, "customer_email")
            or field(details, "email")
        )
        status = field(session, "payment_status")

        return PaymentStatus(
            reference=field(session, "id"),
            paid=status == STRIPE_PAID_STATUS,
            status=status,
            principal_id=field(metadata, META_PRINCIPAL) or None,
            email=email.lower() if email else None,
            plan_id=field(metadata, META_PLAN) or None,
            amount=field(session, "amount_total") or 0,
            currency=field(session, "currency"),
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        """Verify and parse a webhook payload."""
        if not self.webhook_secret:
            if is_production():
                raise PaymentProviderError("Stripe webhook secret is not configured")
            logger.warning("STRIPE_WEBHOOK_SECRET not configured, accepting unsigned webhook")
            try:
                return json.loads(payload.decode())
            except ValueError:
                raise InvalidWebhookSignature("Invalid payload")

        if not signature:
            raise InvalidWebhookSignature("Missing Stripe signature")

        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise InvalidWebhookSignature("Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise InvalidWebhookSignature()
