"""
Credit ledger error taxonomy.

Every error carries a stable ``error_code`` so the HTTP layer can map it
to a response without string matching.
"""

from typing import Optional

from .config import ERROR_CODES


class LedgerError(Exception):
    """Base class for all expected credit ledger failures."""

    error_code = "LEDGER_ERROR"

    def __init__(self, message: Optional[str] = None):
        self.message = message or ERROR_CODES.get(self.error_code, self.error_code)
        super().__init__(self.message)

    def to_dict(self):
        return {"error_code": self.error_code, "message": self.message}


class UnknownTool(LedgerError):
    error_code = "UNKNOWN_TOOL"

    def __init__(self, tool_id: str):
        self.tool_id = tool_id
        super().__init__(f"Unknown tool: {tool_id}")


class UnknownPlan(LedgerError):
    error_code = "UNKNOWN_PLAN"

    def __init__(self, plan_id: Optional[str]):
        self.plan_id = plan_id
        super().__init__(f"Unknown plan: {plan_id}")


class AccountNotProvisioned(LedgerError):
    error_code = "ACCOUNT_NOT_PROVISIONED"

    def __init__(self, principal_id: str):
        self.principal_id = principal_id
        super().__init__(f"No credit account for principal {principal_id}")


class EmailAlreadyBound(LedgerError):
    error_code = "EMAIL_ALREADY_BOUND"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email {email} is already linked to another account")


class LedgerUnavailable(LedgerError):
    """Storage failure. Always safe to retry."""

    error_code = "LEDGER_UNAVAILABLE"


# ==================== RECONCILIATION ====================

class PaymentNotCompleted(LedgerError):
    error_code = "PAYMENT_NOT_COMPLETED"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Payment {reference} is not completed")


class OwnershipMismatch(LedgerError):
    error_code = "OWNERSHIP_MISMATCH"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Payment {reference} does not belong to the caller")


class PaymentProviderError(LedgerError):
    error_code = "PAYMENT_PROVIDER_ERROR"


class InvalidWebhookSignature(LedgerError):
    error_code = "INVALID_SIGNATURE"
