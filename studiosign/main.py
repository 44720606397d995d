"""
Studio e-signature service - main FastAPI application.
Contracts and multi-signer envelopes signed through emailed magic links.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from studiosign.config import get_cors_origins, get_settings
from studiosign.exceptions import (
    AppException,
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from studiosign.routers import admin, health, public_contract
from studiosign.services.engine import get_engine
from studiosign.utils.logging import RequestIdMiddleware, get_logger, setup_logging

logger = get_logger(__name__)


async def run_expiry_sweep(interval_seconds: int) -> None:
    """
    Periodically seal envelopes every signer has finished, then apply derived
    expiry so closed documents do not wait for a visitor.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            engine = get_engine()
            await engine.envelopes.complete_stranded()
            engine.signing.sweep_expired()
        except Exception as e:
            logger.error(f"Expiry sweep failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        environment=settings.environment,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )
    logger.info(f"Starting StudioSign v1.0.0 ({settings.environment})")

    sweeper = None
    if settings.expiry_sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(run_expiry_sweep(settings.expiry_sweep_interval_seconds))

    yield

    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down StudioSign")


app = FastAPI(
    title="StudioSign",
    description="""Electronic signatures for photography studio contracts.

## Authentication

### Admin API
Studio tooling calls `/admin/*` with the `X-Admin-Secret` header.

### Signing
Recipients open the emailed magic link, confirm a one-time code sent to
their email, and act on the document with the returned `sessionId`.
""",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "signing", "description": "Public signing flow (magic link + email code)"},
        {"name": "admin", "description": "Contract and envelope administration"},
        {"name": "health", "description": "Health check endpoints"},
    ],
)

# Middleware
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(health.router)
app.include_router(public_contract.router)
app.include_router(admin.router)


# Run with uvicorn
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "studiosign.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8000)),
        reload=get_settings().debug,
    )
