"""
FastAPI entrypoint for the PoolPay settlement backend.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from poolpay.core.config import settings
from poolpay.api.router import api_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.SCHEDULER_ENABLED:
        from poolpay.services.scheduler import SettlementScheduler
        scheduler = SettlementScheduler()
        scheduler.start()
    yield
    if scheduler:
        scheduler.stop()


app = FastAPI(
    title="PoolPay API",
    description="Mining pool payout settlement backend",
    version="1.0.0",
    lifespan=lifespan
)

# Include API routes
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"message": "PoolPay API is running"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
