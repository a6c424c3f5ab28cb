"""
Shared fixtures for the credit ledger test suite.

MongoDB is replaced by mongomock-motor; Stripe never gets called.
"""

import os
import sys
import time
from pathlib import Path

# database.py validates these on import
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "credit_ledger_test")
os.environ["ENVIRONMENT"] = "test"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-with-enough-length-for-hs256"
os.environ["ADMIN_EMAILS"] = "admin@example.com"

sys.path.insert(0, str(Path(__file__).parent.parent))

import jwt
import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from credit_ledger.balance_service import BalanceService
from credit_ledger.ledger_store import LedgerStore
from credit_ledger.models import PaymentStatus


@pytest.fixture
def mock_db():
    """Fresh in-memory database per test."""
    return AsyncMongoMockClient()["credit_ledger_test"]


@pytest_asyncio.fixture
async def db(mock_db):
    """In-memory database with the production indexes."""
    await LedgerStore(mock_db).ensure_indexes()
    return mock_db


@pytest.fixture
def balance_service(db):
    return BalanceService(db)


def make_token(sub="user-1", email="user1@example.com", expires_in=3600, secret=None, audience="authenticated"):
    """Mint a Supabase-style access token."""
    payload = {
        "sub": sub,
        "email": email,
        "aud": audience,
        "exp": int(time.time()) + expires_in,
    }
    return jwt.encode(payload, secret or os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")


def auth_headers(sub="user-1", email="user1@example.com"):
    return {"Authorization": f"Bearer {make_token(sub=sub, email=email)}"}


def paid_session(reference="cs_test_1", principal_id="user-1", plan_id="personal", email="user1@example.com", paid=True):
    """PaymentStatus as the provider adapter would report it."""
    return PaymentStatus(
        reference=reference,
        paid=paid,
        status="paid" if paid else "unpaid",
        principal_id=principal_id,
        email=email,
        plan_id=plan_id,
        amount=2200,
        currency="usd"
    )
