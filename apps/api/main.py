"""
Dropboard Billing - FastAPI Backend
Wallet ledger and subscription renewal service entry point.
"""

import asyncio
from fastapi import FastAPI
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import cron, health, wallet
from services.renewal.service import build_renewal_service


async def _periodic_subscription_renewal() -> None:
    interval_minutes = max(int(settings.RENEWAL_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            service = build_renewal_service()
            result = await service.process_subscription_renewals()
            expired = await service.process_expired_downgrades()
            print(
                f"💳 Subscription renewal tick: processed={result.total_processed} "
                f"renewed={result.renewed} reminders={result.reminders_sent} "
                f"downgraded={result.downgraded + expired} failed={result.failed}"
            )
        except Exception as exc:
            print(f"⚠️ Subscription renewal tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Dropboard Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    renewal_task = None
    if int(settings.RENEWAL_INTERVAL_MINUTES) > 0:
        renewal_task = asyncio.create_task(_periodic_subscription_renewal())
        print(
            "📅 Subscription renewal loop enabled "
            f"(every {int(settings.RENEWAL_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if renewal_task is not None:
        renewal_task.cancel()
        try:
            await renewal_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Dropboard Billing API",
    description="Prepaid wallet ledger and subscription auto-renewal",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["Health"])
app.include_router(wallet.router, prefix="/wallet", tags=["Wallet"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Dropboard Billing API",
        "version": "0.1.0",
        "status": "running"
    }
