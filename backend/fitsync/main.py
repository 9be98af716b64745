"""
FitSync API

FastAPI application for importing fitness activities from Strava.
"""

from contextlib import asynccontextmanager
import logging
import sys

from fastapi import FastAPI

from fitsync.config import settings
from fitsync.db.session import init_db
from fitsync.api.v1.router import api_router


# === Logging Setup ===
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)


# === Lifespan ===
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting FitSync API...")
    await init_db()
    logger.info("Database initialized")

    if not settings.internal_api_key:
        logger.warning("INTERNAL_API_KEY not set, integration routes will answer 503")
    if not settings.token_encryption_keys:
        logger.warning("TOKEN_ENCRYPTION_KEYS not set, credentials cannot be stored")

    yield

    logger.info("Shutting down...")


# === App Creation ===
app = FastAPI(
    title="FitSync API",
    description="Resilient Strava activity import into training sessions",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# === Routes ===
app.include_router(api_router, prefix="/api/v1")


# === Health Check ===
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "0.1.0"}
