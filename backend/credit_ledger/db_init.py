"""
Credit Ledger Database Initialization Script

Rules:
1. Environment guard - production requires CREDIT_LEDGER_INIT_CONFIRM=YES
2. Idempotent - running multiple times never duplicates anything
3. No destructive operations - no dropping, deleting or truncation
4. Lazy account creation - accounts are created on first use, not here
5. Dry-run mode - --dry-run prints what it would do
6. Journal sweep - --flush moves stranded pending entries into ledger_entries

Usage:
    python -m credit_ledger.db_init
    python -m credit_ledger.db_init --dry-run
    python -m credit_ledger.db_init --flush
    ENVIRONMENT=production CREDIT_LEDGER_INIT_CONFIRM=YES python -m credit_ledger.db_init
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure, PyMongoError

from credit_ledger.balance_service import BalanceService
from credit_ledger.ledger_store import ACCOUNTS, IDEMPOTENCY_KEYS, LEDGER_ENTRIES, REQUIRED_INDEXES

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

META_COLLECTION = "credit_ledger_meta"

REQUIRED_COLLECTIONS = [ACCOUNTS, LEDGER_ENTRIES, IDEMPOTENCY_KEYS, META_COLLECTION]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    environment = os.environ.get("ENVIRONMENT", "development").lower()

    if environment == "production":
        confirm = os.environ.get("CREDIT_LEDGER_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: CREDIT_LEDGER_INIT_CONFIRM=YES\n"
                f"Current value: CREDIT_LEDGER_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {environment}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()
    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db[META_COLLECTION].update_one(
        {"_id": "credit_ledger_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def flush_pending_entries(db, dry_run: bool = False) -> str:
    """Sweep journal entries a failed flush left on accounts."""
    if dry_run:
        stranded = await db[ACCOUNTS].count_documents({"pending_entries.entry_id": {"$exists": True}})
        return f"  [DRY-RUN] Would flush pending entries of {stranded} account(s)"

    service = BalanceService(db)
    total = 0
    while True:
        flushed = await service.flush_pending(limit=100)
        if not flushed:
            break
        total += flushed
    return f"  [FLUSH] Moved {total} pending entries into '{LEDGER_ENTRIES}'"


async def run_init(db, dry_run: bool = False, flush: bool = False):
    """Create collections, indexes and the version stamp on an open database."""
    logger.info("\n=== Collections ===")
    for collection_name in REQUIRED_COLLECTIONS:
        logger.info(await create_collection_if_not_exists(db, collection_name, dry_run))

    logger.info("\n=== Indexes ===")
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        logger.info(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

    if flush:
        logger.info("\n=== Pending Journal ===")
        logger.info(await flush_pending_entries(db, dry_run))

    logger.info("\n=== Version Stamp ===")
    logger.info(await update_version_stamp(db, dry_run))


async def main_async(dry_run: bool = False, flush: bool = False):
    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except PyMongoError as e:
        logger.error(f"MongoDB connection failed: {e}")
        client.close()
        sys.exit(1)

    try:
        await run_init(client[db_name], dry_run=dry_run, flush=flush)
    finally:
        client.close()

    logger.info("\n" + "=" * 50)
    logger.info("SUCCESS: Credit ledger DB init completed")
    logger.info("=" * 50)


def main():
    parser = argparse.ArgumentParser(
        description="Credit Ledger Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m credit_ledger.db_init

    # Dry run (no changes)
    python -m credit_ledger.db_init --dry-run

    # Production
    ENVIRONMENT=production CREDIT_LEDGER_INIT_CONFIRM=YES python -m credit_ledger.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    parser.add_argument(
        '--flush',
        action='store_true',
        help='Move pending journal entries into ledger_entries'
    )

    args = parser.parse_args()

    asyncio.run(main_async(dry_run=args.dry_run, flush=args.flush))


if __name__ == "__main__":
    main()
