"""
Ledger Store - MongoDB persistence for accounts and ledger entries

Collections:
- accounts: one document per principal, holds the spendable balance
- ledger_entries: immutable transaction log
- idempotency_keys: which principal each credit key was first claimed for

CRITICAL: A balance change and its ledger entry are written by ONE
conditional single-document update on the account. The entry is appended
to the account's ``pending_entries`` journal in that same update and only
afterwards copied into ``ledger_entries`` (see ``flush_entries``). Readers
merge both places, so a balance change is never observable without its
entry.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import EmailAlreadyBound, LedgerUnavailable

logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"
LEDGER_ENTRIES = "ledger_entries"
IDEMPOTENCY_KEYS = "idempotency_keys"

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    # accounts: principal_id is canonical, email is the secondary lookup key
    (ACCOUNTS, [("principal_id", 1)], {"unique": True, "name": "idx_principal_id_unique"}),
    (ACCOUNTS, [("email", 1)], {"unique": True, "sparse": True, "name": "idx_email_unique"}),
    (ACCOUNTS, [("applied_keys", 1)], {"unique": True, "name": "idx_applied_keys_unique"}),

    # ledger_entries
    (LEDGER_ENTRIES, [("entry_id", 1)], {"unique": True, "name": "idx_entry_id_unique"}),
    (LEDGER_ENTRIES, [("idempotency_key", 1)], {"unique": True, "sparse": True, "name": "idx_idempotency_key_unique"}),
    (LEDGER_ENTRIES, [("principal_id", 1), ("created_at", -1)], {"name": "idx_principal_created"}),

    # idempotency_keys: _id is the key itself
    (IDEMPOTENCY_KEYS, [("principal_id", 1)], {"name": "idx_key_owner"}),
]


@contextmanager
def storage_errors():
    """Re-raise driver failures as LedgerUnavailable (retryable)."""
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error(f"Ledger storage failure: {e}")
        raise LedgerUnavailable(str(e)) from e


def _compact(doc: Dict[str, Any]) -> Dict[str, Any]:
    # Sparse unique indexes only skip documents where the field is absent
    return {k: v for k, v in doc.items() if v is not None}


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc:
        doc.pop("_id", None)
    return doc


class LedgerStore:
    """Thin data-access layer over the ledger collections."""

    def __init__(self, db):
        self.db = db
        self.accounts = db[ACCOUNTS]
        self.ledger = db[LEDGER_ENTRIES]
        self.keys = db[IDEMPOTENCY_KEYS]

    async def ensure_indexes(self):
        with storage_errors():
            for collection, keys, options in REQUIRED_INDEXES:
                await self.db[collection].create_index(keys, **options)

    async def ping(self) -> bool:
        with storage_errors():
            await self.accounts.find_one({}, {"_id": 1})
        return True

    # ==================== ACCOUNTS ====================

    async def find_account(self, principal_id: str) -> Optional[Dict[str, Any]]:
        with storage_errors():
            return await self.accounts.find_one({"principal_id": principal_id}, {"_id": 0})

    async def find_account_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with storage_errors():
            return await self.accounts.find_one({"email": email.lower()}, {"_id": 0})

    async def insert_account(self, account_doc: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """
        Create the account unless one already exists for the principal.

        The unique index on principal_id is the concurrency guard: of two
        racing creators exactly one inserts, the other gets a duplicate key
        error and reads the winner's document.

        Returns:
            (account, created)
        """
        principal_id = account_doc["principal_id"]
        doc = _compact(account_doc)

        try:
            with storage_errors():
                result = await self.accounts.update_one(
                    {"principal_id": principal_id},
                    {"$setOnInsert": doc},
                    upsert=True
                )
        except DuplicateKeyError:
            existing = await self.find_account(principal_id)
            if existing:
                return existing, False
            # principal is new, so the email index rejected it
            raise EmailAlreadyBound(doc.get("email", ""))

        account = await self.find_account(principal_id)
        return account, result.upserted_id is not None

    async def attach_email(self, principal_id: str, email: str) -> bool:
        """Record an email on an account that was created without one."""
        try:
            with storage_errors():
                result = await self.accounts.update_one(
                    {"principal_id": principal_id, "email": {"$exists": False}},
                    {"$set": {"email": email}}
                )
        except DuplicateKeyError:
            raise EmailAlreadyBound(email)
        return result.modified_count > 0

    # ==================== ATOMIC MUTATIONS ====================

    async def apply_debit(
        self,
        principal_id: str,
        amount: int,
        entry: Dict[str, Any],
        now: str
    ) -> Optional[Dict[str, Any]]:
        """
        Compare-and-swap debit. Matches only if the balance covers the amount,
        so a negative balance is impossible under any interleaving.

        Returns the updated account, or None when nothing matched.
        """
        with storage_errors():
            doc = await self.accounts.find_one_and_update(
                {"principal_id": principal_id, "balance": {"$gte": amount}},
                {
                    "$inc": {"balance": -amount},
                    "$push": {"pending_entries": _compact(entry)},
                    "$set": {"updated_at": now}
                },
                return_document=ReturnDocument.AFTER
            )
        return _strip_id(doc)

    async def apply_credit(
        self,
        principal_id: str,
        amount: int,
        idempotency_key: str,
        entry: Dict[str, Any],
        now: str
    ) -> Optional[Dict[str, Any]]:
        """
        Exactly-once credit. Matches only if the key has never been applied
        to this account, and records the key in the same update. Keys are
        kept unique across accounts by ``claim_key`` and the applied_keys
        index.

        Returns the updated account, or None when nothing matched.
        """
        try:
            with storage_errors():
                doc = await self.accounts.find_one_and_update(
                    {"principal_id": principal_id, "applied_keys": {"$ne": idempotency_key}},
                    {
                        "$inc": {"balance": amount},
                        "$push": {"pending_entries": _compact(entry)},
                        "$addToSet": {"applied_keys": idempotency_key},
                        "$set": {"updated_at": now}
                    },
                    return_document=ReturnDocument.AFTER
                )
        except DuplicateKeyError:
            # idx_applied_keys_unique: another account already holds the key
            logger.warning(f"Credit key {idempotency_key} is bound to another account")
            return None
        return _strip_id(doc)

    async def claim_key(self, idempotency_key: str, principal_id: str, now: str) -> str:
        """
        Bind a credit key to the principal it is first presented for.

        Returns the owning principal. A retry for the owner sees its own id
        back; any other principal sees the owner and must not apply the key.
        """
        try:
            with storage_errors():
                await self.keys.insert_one(
                    {"_id": idempotency_key, "principal_id": principal_id, "claimed_at": now}
                )
            return principal_id
        except DuplicateKeyError:
            with storage_errors():
                claim = await self.keys.find_one({"_id": idempotency_key})
            return claim["principal_id"] if claim else principal_id

    async def raise_plan_tier(self, principal_id: str, plan_tier: str, rank: int, now: str) -> bool:
        """Move the account to a strictly higher tier; never downgrades."""
        with storage_errors():
            result = await self.accounts.update_one(
                {"principal_id": principal_id, "plan_rank": {"$lt": rank}},
                {"$set": {"plan_tier": plan_tier, "plan_rank": rank, "updated_at": now}}
            )
        return result.modified_count > 0

    # ==================== JOURNAL FLUSH ====================

    async def flush_entries(self, principal_id: str, entries: List[Dict[str, Any]]) -> int:
        """
        Copy pending journal entries into ledger_entries, then drop them from
        the account. Insert happens before removal, so every entry is always
        visible in at least one place. Safe to repeat.
        """
        flushed = 0
        for entry in entries:
            with storage_errors():
                await self.ledger.update_one(
                    {"entry_id": entry["entry_id"]},
                    {"$setOnInsert": _compact(entry)},
                    upsert=True
                )
                await self.accounts.update_one(
                    {"principal_id": principal_id},
                    {"$pull": {"pending_entries": {"entry_id": entry["entry_id"]}}}
                )
            flushed += 1
        return flushed

    async def accounts_with_pending(self, limit: int = 100) -> List[Dict[str, Any]]:
        with storage_errors():
            cursor = self.accounts.find(
                {"pending_entries.entry_id": {"$exists": True}},
                {"_id": 0, "principal_id": 1, "pending_entries": 1}
            ).limit(limit)
            return await cursor.to_list(length=limit)

    # ==================== LEDGER READS ====================

    async def list_entries(
        self,
        principal_id: str,
        limit: Optional[int] = None,
        kind: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query = {"principal_id": principal_id}
        if kind:
            query["kind"] = kind

        with storage_errors():
            cursor = self.ledger.find(query, {"_id": 0}).sort("created_at", -1)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=limit)
