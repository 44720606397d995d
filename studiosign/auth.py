"""
Request authentication helpers.

Admin endpoints are guarded by a shared secret in X-Admin-Secret. Public
signing endpoints are authorised by magic-link tokens and signing sessions,
which the signing services validate themselves.
"""
import logging
import secrets as secrets_module
from typing import Optional

from fastapi import Depends, Request

from studiosign.config import Settings, get_settings
from studiosign.exceptions import AuthenticationError

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address, handling proxies and Cloud Run.
    """
    # Cloud Run / load balancer headers
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


def get_user_agent(request: Request) -> Optional[str]:
    user_agent = request.headers.get("User-Agent")
    return user_agent[:512] if user_agent else None


async def verify_admin_secret(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Verify admin API secret from X-Admin-Secret header.
    """
    admin_secret = request.headers.get("X-Admin-Secret")

    if not admin_secret:
        raise AuthenticationError(
            "Admin secret required",
            "MISSING_ADMIN_SECRET"
        )

    if not settings.admin_api_secret:
        logger.error("ADMIN_API_SECRET not configured")
        raise AuthenticationError(
            "Admin authentication not configured",
            "ADMIN_NOT_CONFIGURED"
        )

    # Constant-time comparison to prevent timing attacks
    if not secrets_module.compare_digest(admin_secret, settings.admin_api_secret):
        raise AuthenticationError(
            "Invalid admin secret",
            "INVALID_ADMIN_SECRET"
        )

    return True
