"""
Balance Service

The sole authority for reading and mutating credit balances:
- Idempotent account provisioning with the signup grant
- Balance queries
- Debits (atomic compare-and-swap, no double spend)
- Credits (exactly once per idempotency key)
- Ledger history and consistency audit

CRITICAL: Nothing outside this service writes a balance. Callers never
compute a new balance themselves; they call debit/credit and read the
balance the service returns.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from .config import DEFAULT_PLAN_TIER
from .errors import AccountNotProvisioned, EmailAlreadyBound, LedgerUnavailable
from .grant_policy import GrantPolicy
from .ledger_store import LedgerStore
from .models import Account, ConsistencyReport, CreditResult, DebitResult, LedgerEntry

logger = logging.getLogger(__name__)

CREDIT_KINDS = {"purchase", "signup_grant", "refund"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower() or None


class BalanceService:
    """Service for managing credit balances."""

    def __init__(self, db, policy: Optional[GrantPolicy] = None):
        self.store = LedgerStore(db)
        self.policy = policy or GrantPolicy()

    # ==================== ACCOUNTS ====================

    async def get_account(self, principal_id: str) -> Optional[Account]:
        doc = await self.store.find_account(principal_id)
        return Account(**doc) if doc else None

    async def get_balance(self, principal_id: str) -> int:
        """Current balance; an unprovisioned principal reads as 0."""
        doc = await self.store.find_account(principal_id)
        return int(doc.get("balance", 0)) if doc else 0

    async def ensure_account(self, principal_id: str, email: Optional[str] = None) -> Account:
        """
        Get the account, creating it with the signup bonus on first sight.

        The account document and its signup_grant entry are inserted in one
        write, and concurrent callers for the same unseen principal end up
        with exactly one account and one grant.
        """
        email = _normalize_email(email)
        existing = await self.store.find_account(principal_id)
        if existing:
            if email and not existing.get("email"):
                try:
                    await self.store.attach_email(principal_id, email)
                    existing["email"] = email
                except EmailAlreadyBound:
                    logger.warning(f"Email {email} already belongs to another account, not attaching it to {principal_id}")
            return Account(**existing)

        now = _now()
        bonus = self.policy.signup_bonus()
        grant = self._new_entry(
            principal_id=principal_id,
            email=email,
            delta=bonus,
            kind="signup_grant",
            description="Signup bonus",
            idempotency_key=f"signup:{principal_id}",
            now=now,
            balance_after=bonus
        )

        account_doc = {
            "principal_id": principal_id,
            "email": email,
            "balance": bonus,
            "plan_tier": DEFAULT_PLAN_TIER,
            "plan_rank": self.policy.plan_rank(DEFAULT_PLAN_TIER),
            "applied_keys": [grant["idempotency_key"]],
            "pending_entries": [grant],
            "created_at": now,
            "updated_at": now
        }

        account, created = await self.store.insert_account(account_doc)
        if created:
            logger.info(f"Provisioned credit account for {principal_id} with {bonus} credits")
            await self._flush(account)
        return Account(**account)

    # ==================== MUTATIONS ====================

    async def debit(self, principal_id: str, amount: int, description: str) -> DebitResult:
        """
        Atomically debit credits.

        Insufficient balance returns success=False with the unchanged
        balance and writes no ledger entry.
        """
        if amount <= 0:
            raise ValueError("debit amount must be positive")

        now = _now()
        entry = self._new_entry(
            principal_id=principal_id,
            email=None,
            delta=-amount,
            kind="usage",
            description=description,
            now=now
        )

        account = await self.store.apply_debit(principal_id, amount, entry, now)
        if account is None:
            current = await self.store.find_account(principal_id)
            if current is None:
                raise AccountNotProvisioned(principal_id)
            balance = int(current.get("balance", 0))
            logger.info(f"Debit of {amount} refused for {principal_id}: balance {balance}")
            return DebitResult(success=False, remaining_balance=balance)

        balance = int(account["balance"])
        await self._flush(account, entry["entry_id"], balance)
        return DebitResult(success=True, remaining_balance=balance, entry_id=entry["entry_id"])

    async def credit(
        self,
        principal_id: str,
        amount: int,
        idempotency_key: str,
        description: str,
        kind: str = "purchase"
    ) -> CreditResult:
        """
        Credit credits exactly once per idempotency key.

        A repeated key (retry, webhook redelivery, page reload) leaves the
        balance alone and returns applied=False with the current balance.
        A key is bound to the first principal it is presented for and is
        never applied to any other account.
        """
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        if not idempotency_key:
            raise ValueError("idempotency_key is required")
        if kind not in CREDIT_KINDS:
            raise ValueError(f"invalid credit kind: {kind}")

        now = _now()
        entry = self._new_entry(
            principal_id=principal_id,
            email=None,
            delta=amount,
            kind=kind,
            description=description,
            idempotency_key=idempotency_key,
            now=now
        )

        owner = await self.store.claim_key(idempotency_key, principal_id, now)
        if owner != principal_id:
            current = await self.store.find_account(principal_id)
            if current is None:
                raise AccountNotProvisioned(principal_id)
            logger.warning(f"Credit key {idempotency_key} belongs to {owner}, not applied to {principal_id}")
            return CreditResult(applied=False, balance=int(current.get("balance", 0)))

        account = await self.store.apply_credit(principal_id, amount, idempotency_key, entry, now)
        if account is None:
            current = await self.store.find_account(principal_id)
            if current is None:
                raise AccountNotProvisioned(principal_id)
            logger.warning(f"Duplicate credit suppressed for {principal_id} (key={idempotency_key})")
            return CreditResult(applied=False, balance=int(current.get("balance", 0)))

        balance = int(account["balance"])
        await self._flush(account, entry["entry_id"], balance)
        logger.info(f"Credited {amount} credits to {principal_id} (kind={kind}, key={idempotency_key})")
        return CreditResult(applied=True, balance=balance, entry_id=entry["entry_id"])

    async def upgrade_plan(self, principal_id: str, plan_tier: str) -> bool:
        """Raise the informational plan tier; smaller purchases never downgrade."""
        rank = self.policy.plan_rank(plan_tier)
        upgraded = await self.store.raise_plan_tier(principal_id, plan_tier, rank, _now())
        if upgraded:
            logger.info(f"Plan tier for {principal_id} upgraded to {plan_tier}")
        return upgraded

    # ==================== HISTORY ====================

    async def get_ledger(
        self,
        principal_id: str,
        limit: Optional[int] = 50,
        kind: Optional[str] = None
    ) -> List[LedgerEntry]:
        """Recent entries, newest first, including not-yet-flushed ones."""
        account = await self.store.find_account(principal_id)
        return await self._collect_entries(account, principal_id, limit, kind)

    async def verify_consistency(self, principal_id: str) -> ConsistencyReport:
        """
        Check that the balance equals the sum of every ledger delta.

        Meant for offline audits: writes racing with the check can make a
        healthy account look inconsistent for that one read.
        """
        account = await self.store.find_account(principal_id)
        if account is None:
            raise AccountNotProvisioned(principal_id)

        entries = await self._collect_entries(account, principal_id, None, None)
        ledger_sum = sum(e.delta for e in entries)
        balance = int(account.get("balance", 0))

        report = ConsistencyReport(
            principal_id=principal_id,
            balance=balance,
            ledger_sum=ledger_sum,
            entry_count=len(entries),
            pending=len(account.get("pending_entries", [])),
            consistent=(balance == ledger_sum)
        )
        if not report.consistent:
            logger.error(f"Ledger mismatch for {principal_id}: balance={balance} ledger_sum={ledger_sum}")
        return report

    async def flush_pending(self, limit: int = 100) -> int:
        """Sweep journal entries left behind by failed flushes."""
        flushed = 0
        for account in await self.store.accounts_with_pending(limit):
            try:
                flushed += await self.store.flush_entries(account["principal_id"], account["pending_entries"])
            except DuplicateKeyError as e:
                logger.error(f"Pending entries for {account['principal_id']} conflict with ledger_entries, skipped: {e}")
        if flushed:
            logger.info(f"Flushed {flushed} pending ledger entries")
        return flushed

    # ==================== INTERNALS ====================

    async def _collect_entries(
        self,
        account: Optional[Dict[str, Any]],
        principal_id: str,
        limit: Optional[int],
        kind: Optional[str]
    ) -> List[LedgerEntry]:
        # The account is read before ledger_entries: an entry flushed in
        # between then shows up in both places and is de-duplicated here.
        entries = {}
        for pending in (account or {}).get("pending_entries", []):
            if kind and pending.get("kind") != kind:
                continue
            entries[pending["entry_id"]] = pending

        for entry in await self.store.list_entries(principal_id, limit, kind):
            entries.setdefault(entry["entry_id"], entry)

        ordered = sorted(entries.values(), key=lambda e: e["created_at"], reverse=True)
        if limit:
            ordered = ordered[:limit]
        return [LedgerEntry(**e) for e in ordered]

    def _new_entry(
        self,
        principal_id: str,
        email: Optional[str],
        delta: int,
        kind: str,
        description: str,
        now: str,
        idempotency_key: Optional[str] = None,
        balance_after: Optional[int] = None
    ) -> Dict[str, Any]:
        return {
            "entry_id": str(uuid.uuid4()),
            "principal_id": principal_id,
            "email": email,
            "delta": delta,
            "kind": kind,
            "idempotency_key": idempotency_key,
            "description": description,
            "balance_after": balance_after,
            "created_at": now
        }

    async def _flush(
        self,
        account: Dict[str, Any],
        entry_id: Optional[str] = None,
        balance_after: Optional[int] = None
    ):
        """Move the account's journal into ledger_entries; failures stay pending."""
        entries = []
        for pending in account.get("pending_entries", []):
            if pending["entry_id"] == entry_id and balance_after is not None:
                pending = {**pending, "balance_after": balance_after}
            if account.get("email") and not pending.get("email"):
                pending = {**pending, "email": account["email"]}
            entries.append(pending)

        try:
            await self.store.flush_entries(account["principal_id"], entries)
        except (LedgerUnavailable, DuplicateKeyError) as e:
            logger.error(f"Ledger flush failed for {account['principal_id']}, left pending: {e}")
