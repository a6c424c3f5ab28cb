"""
Credit Ledger API Tests

Tests for:
- GET /api/credits/balance, /account, /ledger, /tools, /audit
- POST /api/credits/estimate, /debit, /admin/grant
- GET /api/payments/plans, /history
- POST /api/payments/checkout, /verify, /webhook
- GET /api/health
"""

import asyncio
import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi.testclient import TestClient

from conftest import auth_headers, make_token, paid_session
from credit_ledger import routes
from credit_ledger.balance_service import BalanceService
from credit_ledger.errors import InvalidWebhookSignature, LedgerUnavailable, PaymentProviderError
from credit_ledger.guard import RateLimiter
from credit_ledger.ledger_store import LedgerStore
import server


@pytest.fixture
def route_db(mock_db, monkeypatch):
    asyncio.run(LedgerStore(mock_db).ensure_indexes())
    monkeypatch.setattr(routes, "db", mock_db)
    monkeypatch.setattr(server, "db", mock_db)
    monkeypatch.setattr(routes, "rate_limiter", RateLimiter())
    return mock_db


@pytest.fixture
def provider(monkeypatch):
    provider = MagicMock()
    provider.get_payment_status = AsyncMock(return_value=paid_session())
    provider.create_checkout = AsyncMock(return_value="https://checkout.stripe.com/c/cs_test_1")
    provider.construct_event = MagicMock()
    monkeypatch.setattr(routes, "payment_provider", provider)
    return provider


@pytest.fixture
def client(route_db, provider):
    # No context manager: startup would connect to a real MongoDB
    return TestClient(server.app)


class TestAuthentication:

    def test_missing_token(self, client):
        response = client.get("/api/credits/balance")
        assert response.status_code == 401

    def test_expired_token(self, client):
        token = make_token(expires_in=-60)
        response = client.get("/api/credits/balance", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_wrong_secret(self, client):
        token = make_token(secret="some-other-secret-that-is-long-enough")
        response = client.get("/api/credits/balance", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_wrong_audience(self, client):
        token = make_token(audience="anon")
        response = client.get("/api/credits/balance", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestCreditEndpoints:

    def test_first_call_provisions_account(self, client):
        response = client.get("/api/credits/balance", headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == {"balance": 100, "plan_tier": "free"}

    def test_account(self, client):
        response = client.get("/api/credits/account", headers=auth_headers())
        data = response.json()
        assert response.status_code == 200
        assert data["principal_id"] == "user-1"
        assert data["email"] == "user1@example.com"
        assert data["balance"] == 100

    def test_email_bound_to_other_principal(self, client):
        client.get("/api/credits/account", headers=auth_headers(sub="user-1", email="shared@example.com"))
        response = client.get("/api/credits/account", headers=auth_headers(sub="user-2", email="shared@example.com"))

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "EMAIL_ALREADY_BOUND"

    def test_existing_account_with_taken_email(self, client, route_db):
        asyncio.run(BalanceService(route_db).ensure_account("user-2"))
        client.get("/api/credits/account", headers=auth_headers(sub="user-1", email="shared@example.com"))

        response = client.get("/api/credits/account", headers=auth_headers(sub="user-2", email="shared@example.com"))

        assert response.status_code == 200
        assert response.json()["principal_id"] == "user-2"
        assert response.json()["balance"] == 100

    def test_tools(self, client):
        response = client.get("/api/credits/tools")
        assert response.status_code == 200
        assert response.json()["tools"]["image_generate"] == 12

    def test_estimate(self, client):
        response = client.post("/api/credits/estimate", json={"tool": "photo_animator"}, headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == {
            "tool": "photo_animator",
            "cost": 45,
            "current_balance": 100,
            "sufficient_credits": True
        }

    def test_estimate_unknown_tool(self, client):
        response = client.post("/api/credits/estimate", json={"tool": "nope"}, headers=auth_headers())
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "UNKNOWN_TOOL"

    def test_debit(self, client):
        response = client.post("/api/credits/debit", json={"tool": "image_generate"}, headers=auth_headers())
        data = response.json()
        assert response.status_code == 200
        assert data["deducted"] == 12
        assert data["remaining"] == 88
        assert data["tool"] == "image_generate"

    def test_debit_unknown_tool(self, client):
        response = client.post("/api/credits/debit", json={"tool": "nope"}, headers=auth_headers())
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "UNKNOWN_TOOL"

    def test_debit_insufficient_credits(self, client):
        headers = auth_headers()
        for _ in range(2):
            assert client.post("/api/credits/debit", json={"tool": "prompt_video"}, headers=headers).status_code == 200

        response = client.post("/api/credits/debit", json={"tool": "prompt_video"}, headers=headers)
        detail = response.json()["detail"]
        assert response.status_code == 402
        assert detail["error_code"] == "INSUFFICIENT_CREDITS"
        assert detail["balance"] == 10

    def test_debit_rate_limited(self, client, monkeypatch):
        monkeypatch.setattr(
            routes, "rate_limiter",
            RateLimiter({"max_charges_per_minute": 1, "max_video_charges": 5, "video_window_seconds": 600})
        )
        headers = auth_headers()
        assert client.post("/api/credits/debit", json={"tool": "voice_chat"}, headers=headers).status_code == 200

        response = client.post("/api/credits/debit", json={"tool": "voice_chat"}, headers=headers)
        assert response.status_code == 429
        assert response.json()["detail"]["error_code"] == "RATE_LIMIT"

    def test_ledger_and_audit(self, client):
        headers = auth_headers()
        client.post("/api/credits/debit", json={"tool": "image_editor"}, headers=headers)

        ledger = client.get("/api/credits/ledger?limit=10", headers=headers).json()
        assert ledger["count"] == 2
        assert {e["kind"] for e in ledger["entries"]} == {"signup_grant", "usage"}

        audit = client.get("/api/credits/audit", headers=headers).json()
        assert audit["balance"] == 92
        assert audit["ledger_sum"] == 92
        assert audit["consistent"] is True

    def test_storage_outage_is_503(self, client, monkeypatch):
        async def unavailable(self, principal_id):
            raise LedgerUnavailable("no primary")

        monkeypatch.setattr(LedgerStore, "find_account", unavailable)
        response = client.get("/api/credits/balance", headers=auth_headers())
        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "LEDGER_UNAVAILABLE"


class TestAdminGrant:

    def test_requires_admin(self, client):
        response = client.post(
            "/api/credits/admin/grant",
            json={"principal_id": "user-1", "amount": 45, "idempotency_key": "ticket-9"},
            headers=auth_headers()
        )
        assert response.status_code == 403

    def test_grant_is_idempotent(self, client):
        admin = auth_headers(sub="admin-1", email="admin@example.com")
        body = {"principal_id": "user-1", "amount": 45, "idempotency_key": "ticket-9", "kind": "refund"}

        client.get("/api/credits/account", headers=auth_headers())

        first = client.post("/api/credits/admin/grant", json=body, headers=admin)
        second = client.post("/api/credits/admin/grant", json=body, headers=admin)

        assert first.status_code == 200
        assert first.json()["applied"] is True
        assert first.json()["balance"] == 145
        assert second.json()["applied"] is False
        assert second.json()["balance"] == 145

    def test_unknown_principal_not_provisioned(self, client, route_db):
        admin = auth_headers(sub="admin-1", email="admin@example.com")
        body = {"principal_id": "user-typo", "amount": 45, "idempotency_key": "ticket-10", "kind": "refund"}

        response = client.post("/api/credits/admin/grant", json=body, headers=admin)

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "ACCOUNT_NOT_PROVISIONED"
        assert asyncio.run(route_db["accounts"].count_documents({"principal_id": "user-typo"})) == 0

    def test_rejects_non_positive_amount(self, client):
        admin = auth_headers(sub="admin-1", email="admin@example.com")
        response = client.post(
            "/api/credits/admin/grant",
            json={"principal_id": "user-1", "amount": 0, "idempotency_key": "ticket-9"},
            headers=admin
        )
        assert response.status_code == 422


class TestPaymentEndpoints:

    def test_plans(self, client):
        response = client.get("/api/payments/plans")
        data = response.json()
        assert response.status_code == 200
        assert data["currency"] == "USD"
        assert {p["id"] for p in data["plans"]} == {"personal", "creator", "studio", "flex"}

    def test_checkout(self, client, provider):
        response = client.post("/api/payments/checkout", json={"plan": "personal"}, headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == {"checkout_url": "https://checkout.stripe.com/c/cs_test_1"}
        provider.create_checkout.assert_awaited_once_with("personal", "user-1", "user1@example.com")

    def test_checkout_unknown_plan(self, client, monkeypatch):
        monkeypatch.setattr(routes, "payment_provider", routes.StripePaymentProvider())
        response = client.post("/api/payments/checkout", json={"plan": "enterprise"}, headers=auth_headers())
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "UNKNOWN_PLAN"

    def test_checkout_provider_failure(self, client, provider):
        provider.create_checkout.side_effect = PaymentProviderError("Stripe down")
        response = client.post("/api/payments/checkout", json={"plan": "personal"}, headers=auth_headers())
        assert response.status_code == 502

    def test_verify_then_repeat(self, client):
        headers = auth_headers()
        first = client.post("/api/payments/verify", json={"session_id": "cs_test_1"}, headers=headers)
        second = client.post("/api/payments/verify", json={"session_id": "cs_test_1"}, headers=headers)

        assert first.status_code == 200
        assert first.json()["credited"] == 600
        assert first.json()["balance"] == 700
        assert first.json()["plan_tier"] == "personal"
        assert second.json()["already_credited"] is True
        assert second.json()["balance"] == 700

        history = client.get("/api/payments/history", headers=headers).json()
        assert len(history["payments"]) == 1
        assert history["payments"][0]["delta"] == 600

    def test_verify_unpaid(self, client, provider):
        provider.get_payment_status.return_value = paid_session(paid=False)
        response = client.post("/api/payments/verify", json={"session_id": "cs_test_1"}, headers=auth_headers())
        assert response.status_code == 402
        assert response.json()["detail"]["error_code"] == "PAYMENT_NOT_COMPLETED"

    def test_verify_someone_elses_payment(self, client):
        response = client.post(
            "/api/payments/verify",
            json={"session_id": "cs_test_1"},
            headers=auth_headers(sub="user-2", email="user2@example.com")
        )
        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "OWNERSHIP_MISMATCH"

    def test_verify_unknown_plan(self, client, provider):
        provider.get_payment_status.return_value = paid_session(plan_id="enterprise")
        response = client.post("/api/payments/verify", json={"session_id": "cs_test_1"}, headers=auth_headers())
        assert response.status_code == 422
        assert response.json()["detail"]["error_code"] == "UNKNOWN_PLAN"


class TestWebhook:

    def event(self, event_type="checkout.session.completed"):
        return {"id": "evt_1", "type": event_type, "data": {"object": {"id": "cs_test_1"}}}

    def test_completed_checkout_credits(self, client, provider):
        provider.construct_event.return_value = self.event()

        response = client.post("/api/payments/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["status"] == "credited"

        balance = client.get("/api/credits/balance", headers=auth_headers()).json()
        assert balance["balance"] == 700

    def test_webhook_then_verify(self, client, provider):
        provider.construct_event.return_value = self.event()
        client.post("/api/payments/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})

        response = client.post("/api/payments/verify", json={"session_id": "cs_test_1"}, headers=auth_headers())
        assert response.json()["already_credited"] is True
        assert response.json()["balance"] == 700

    def test_other_event_ignored(self, client, provider):
        provider.construct_event.return_value = self.event("invoice.paid")
        response = client.post("/api/payments/webhook", content=b"{}")
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_bad_signature(self, client, provider):
        provider.construct_event.side_effect = InvalidWebhookSignature()
        response = client.post("/api/payments/webhook", content=b"{}", headers={"stripe-signature": "bad"})
        assert response.status_code == 400

    def test_provider_outage_asks_for_retry(self, client, provider):
        provider.construct_event.return_value = self.event()
        provider.get_payment_status.side_effect = PaymentProviderError("Stripe down")
        response = client.post("/api/payments/webhook", content=b"{}")
        assert response.status_code == 502


class TestHealth:

    def test_healthy(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
