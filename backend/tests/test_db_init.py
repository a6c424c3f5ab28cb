"""
Test Suite: Credit Ledger DB Init
=================================

- Production runs need explicit confirmation
- Init is idempotent and dry-run changes nothing
- --flush sweeps stranded journal entries
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock

sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_ledger import db_init
from credit_ledger.balance_service import BalanceService
from credit_ledger.errors import LedgerUnavailable
from credit_ledger.ledger_store import ACCOUNTS, LEDGER_ENTRIES


class TestEnvironmentGuard:

    def test_development_allowed(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "development")
        allowed, _ = db_init.check_environment()
        assert allowed is True

    def test_production_requires_confirmation(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.delenv("CREDIT_LEDGER_INIT_CONFIRM", raising=False)
        allowed, message = db_init.check_environment()
        assert allowed is False
        assert "CREDIT_LEDGER_INIT_CONFIRM" in message

        monkeypatch.setenv("CREDIT_LEDGER_INIT_CONFIRM", "YES")
        allowed, _ = db_init.check_environment()
        assert allowed is True


class TestRunInit:

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, mock_db):
        await db_init.run_init(mock_db, dry_run=True)
        assert await mock_db.list_collection_names() == []

    @pytest.mark.asyncio
    async def test_creates_indexes_idempotently(self, mock_db):
        await db_init.run_init(mock_db)
        await db_init.run_init(mock_db)

        names = await mock_db.list_collection_names()
        assert ACCOUNTS in names
        assert LEDGER_ENTRIES in names

        account_indexes = await mock_db[ACCOUNTS].index_information()
        assert "idx_principal_id_unique" in account_indexes
        ledger_indexes = await mock_db[LEDGER_ENTRIES].index_information()
        assert "idx_entry_id_unique" in ledger_indexes

        stamp = await mock_db[db_init.META_COLLECTION].find_one({"_id": "credit_ledger_init"})
        assert stamp["version"] == db_init.INIT_VERSION

    @pytest.mark.asyncio
    async def test_flush_sweeps_pending(self, db):
        service = BalanceService(db)
        await service.ensure_account("user-1")
        service.store.flush_entries = AsyncMock(side_effect=LedgerUnavailable("timeout"))
        await service.debit("user-1", 12, "Used: image_generate")

        await db_init.run_init(db, flush=True)

        assert await db[ACCOUNTS].count_documents({"pending_entries.entry_id": {"$exists": True}}) == 0
        assert await db[LEDGER_ENTRIES].count_documents({"principal_id": "user-1"}) == 2
