"""
Health check endpoints for diagnosing service dependencies.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from studiosign.services.engine import SigningEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["health"],
)

READY_CHECK_PATH = "health/ready-check"


@router.get("")
async def health_check():
    """Liveness check for Cloud Run."""
    return {"status": "healthy", "version": "1.0.0"}


@router.get("/ready")
async def readiness_check(engine: SigningEngine = Depends(get_engine)):
    """
    Readiness check: the store answers a query and artifact storage accepts
    a write and a read.
    """
    result = {"store": False, "storage": False, "error": None}

    try:
        result["store"] = engine.store.ping()
    except Exception as e:
        result["error"] = f"Store unavailable: {e}"

    try:
        engine.storage.write_bytes(READY_CHECK_PATH, b"ok", content_type="text/plain")
        result["storage"] = engine.storage.read_bytes(READY_CHECK_PATH) == b"ok"
    except Exception as e:
        result["error"] = f"Storage unavailable: {e}"

    healthy = result["store"] and result["storage"]
    if not healthy:
        logger.warning(f"Readiness check failed: {result}")
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "unhealthy", **result},
    )
