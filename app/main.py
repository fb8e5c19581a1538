"""
IceWall — ad-click traffic classification.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.classify import router as classify_router
from app.api.learning import router as learning_router
from app.middleware.security import SecurityHeadersMiddleware
from app.models.database import dispose_engine
from app.config import get_settings

import structlog


def configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
        ],
    )


configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("icewall_starting", high_trust_network=settings.high_trust_network)
    yield
    await dispose_engine()
    logger.info("icewall_shutting_down")


app = FastAPI(
    title="IceWall",
    description="Ad-click traffic classification — economic value first, everything else second.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

# --- Routes ---
app.include_router(classify_router)
app.include_router(learning_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "icewall", "version": "0.1.0"}
