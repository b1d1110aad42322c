"""
FastAPI Application Entry Point.

This is the main application file for the Marketplace Settlement Engine.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi import HTTPException
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.observability import ObservabilityMiddleware
from backend.app.core.redis_client import ping_redis
from backend.app.db.session import engine, Base, AsyncSessionLocal
from backend.app.services.scheduler import SettlementScheduler
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from backend.app.models.audit_log import AuditLog
from backend.app.models.wallet import Wallet
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.commission_policy import CommissionPolicy
from backend.app.models.product import Product
from backend.app.models.delivery_item import DeliveryItem
from backend.app.models.order import Order
from backend.app.models.idempotency_record import IdempotencyRecord
from backend.app.models.purchase_intent import PurchaseIntent
from backend.app.models.notification import Notification
from backend.app.models.dlq import DeadLetterQueue
from backend.app.models.withdrawal import Withdrawal

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Starts the settlement scheduler when enabled and stops it on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = SettlementScheduler(AsyncSessionLocal)
        scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Wallet, escrow and delivery settlement for a digital goods marketplace",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and cache reachability
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "up" if await ping_redis() else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the Marketplace Settlement Engine API",
        "docs": "/docs",
        "health": "/health",
    }
