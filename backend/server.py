from credit_ledger.routes import credits_router, payments_router
from credit_ledger.ledger_store import LedgerStore
from credit_ledger.balance_service import BalanceService
from credit_ledger.errors import LedgerUnavailable
from utils.environment import get_environment
from fastapi import FastAPI, APIRouter, HTTPException
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from database import db, client, check_db_connection
import os
import logging
from datetime import datetime, timezone

# Create the main app
app = FastAPI(title="Credit Ledger - Prepaid Credits for AI Tools")

api_router = APIRouter(prefix="/api")

scheduler = AsyncIOScheduler()


@api_router.get("/health")
async def health():
    try:
        await LedgerStore(db).ping()
    except LedgerUnavailable as e:
        raise HTTPException(status_code=503, detail={"status": "unhealthy", "error": e.message})
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(credits_router)
api_router.include_router(payments_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def scheduled_ledger_flush():
    """Move journal entries stranded by failed flushes into ledger_entries."""
    try:
        await BalanceService(db).flush_pending()
    except LedgerUnavailable as e:
        logger.error(f"Scheduled ledger flush failed: {e}")


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    await LedgerStore(db).ensure_indexes()
    logger.info(f"Credit ledger ready (environment={get_environment()})")

    scheduler.add_job(
        scheduled_ledger_flush,
        'interval',
        minutes=5,
        id="ledger_flush",
        replace_existing=True
    )
    scheduler.start()
    logger.info("Scheduler started - ledger flush: every 5 min")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down")

    # Close MongoDB client
    client.close()
