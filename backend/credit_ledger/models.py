"""
Credit Ledger Data Models

Pydantic models for ledger operations.
These define the structure of documents stored in the MongoDB collections
and the typed outcomes returned by the services.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal


EntryKind = Literal["signup_grant", "purchase", "usage", "refund"]


# ==================== ACCOUNT MODELS ====================

class Account(BaseModel):
    """A principal's credit account"""
    principal_id: str
    email: Optional[str] = None
    balance: int = Field(0, ge=0)
    plan_tier: str = "free"
    created_at: Optional[str] = None  # ISO datetime string
    updated_at: Optional[str] = None


# ==================== LEDGER MODELS ====================

class LedgerEntry(BaseModel):
    """Immutable ledger entry, appended together with its balance change"""
    entry_id: str
    principal_id: str
    email: Optional[str] = None
    delta: int
    kind: EntryKind
    idempotency_key: Optional[str] = None
    description: str = ""
    balance_after: Optional[int] = None
    created_at: str  # ISO datetime string


# ==================== OPERATION OUTCOMES ====================

class DebitResult(BaseModel):
    """Outcome of a debit; failure leaves the balance untouched"""
    success: bool
    remaining_balance: int
    entry_id: Optional[str] = None


class CreditResult(BaseModel):
    """Outcome of a credit; applied=False means the key was already used"""
    applied: bool
    balance: int
    entry_id: Optional[str] = None


class ChargeResult(BaseModel):
    """Result from the tool charging guard"""
    allowed: bool
    tool: str
    cost: int = 0
    remaining_balance: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    entry_id: Optional[str] = None


class ConsistencyReport(BaseModel):
    """Offline check that the balance equals the sum of ledger deltas"""
    principal_id: str
    balance: int
    ledger_sum: int
    entry_count: int
    pending: int
    consistent: bool


# ==================== PAYMENT MODELS ====================

class PaymentStatus(BaseModel):
    """Payment provider's view of a checkout"""
    reference: str
    paid: bool
    status: Optional[str] = None
    principal_id: Optional[str] = None
    email: Optional[str] = None
    plan_id: Optional[str] = None
    amount: int = 0  # minor units (cents)
    currency: Optional[str] = None


class ReconcileResult(BaseModel):
    """Outcome of reconciling one payment reference"""
    reference: str
    principal_id: str
    plan: str
    credited: int
    already_credited: bool
    balance: int
    plan_tier: Optional[str] = None


# ==================== REQUEST/RESPONSE MODELS ====================

class DebitRequest(BaseModel):
    tool: str = Field(..., description="Tool identifier, e.g. image_generate")


class EstimateResponse(BaseModel):
    tool: str
    cost: int
    current_balance: int
    sufficient_credits: bool


class CheckoutRequest(BaseModel):
    plan: str = Field(..., description="Plan ID: personal, creator, studio or flex")


class VerifyPaymentRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class AdminGrantRequest(BaseModel):
    principal_id: str
    amount: int = Field(..., ge=1)
    idempotency_key: str = Field(..., min_length=1)
    kind: Literal["refund", "signup_grant"] = "refund"
    description: str = "Manual credit"


class LedgerPage(BaseModel):
    entries: List[LedgerEntry]
    count: int
