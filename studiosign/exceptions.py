"""
Custom exceptions and error handlers.

Domain errors raised by the signing engine map one-to-one onto HTTP
responses. Authentication-adjacent errors carry enough detail for the client
to offer a retry; state and integrity errors carry the offending state/hash.
"""
import logging
from typing import List, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from studiosign.utils.logging import get_request_id

logger = logging.getLogger(__name__)


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=404,
            code="NOT_FOUND",
            message=f"{resource} not found: {resource_id}",
        )


# Magic-link tokens

class InvalidToken(AppException):
    def __init__(self, reason: str = "NOT_FOUND"):
        super().__init__(
            status_code=404,
            code="INVALID_TOKEN",
            message="This signing link is invalid or has been replaced.",
            details={"reason": reason},
        )


class ExpiredToken(AppException):
    def __init__(self):
        super().__init__(
            status_code=410,
            code="EXPIRED_TOKEN",
            message="This signing link has expired.",
        )


class TokenAlreadyConsumed(AppException):
    def __init__(self):
        super().__init__(
            status_code=410,
            code="TOKEN_ALREADY_CONSUMED",
            message="This signing link has already been used.",
        )


# OTP challenges

class ChallengeNotFound(AppException):
    def __init__(self):
        super().__init__(
            status_code=400,
            code="CHALLENGE_NOT_FOUND",
            message="No verification code is pending. Please request a new code.",
        )


class ChallengeExpired(AppException):
    def __init__(self):
        super().__init__(
            status_code=410,
            code="CHALLENGE_EXPIRED",
            message="The verification code has expired. Please request a new code.",
        )


class ChallengeMismatch(AppException):
    def __init__(self, attempts_remaining: int):
        self.attempts_remaining = attempts_remaining
        super().__init__(
            status_code=401,
            code="CHALLENGE_MISMATCH",
            message=f"Incorrect verification code. {attempts_remaining} attempt(s) remaining.",
            details={"attemptsRemaining": attempts_remaining},
        )


class ChallengeAttemptsExhausted(AppException):
    def __init__(self):
        super().__init__(
            status_code=429,
            code="CHALLENGE_ATTEMPTS_EXHAUSTED",
            message="Too many incorrect attempts. Please request a new code.",
        )


class SessionExpired(AppException):
    def __init__(self, message: str = "Your signing session has expired. Please verify again."):
        super().__init__(
            status_code=401,
            code="SESSION_EXPIRED",
            message=message,
        )


# Signing state

class IllegalStateTransition(AppException):
    def __init__(self, current: str, attempted: Optional[str] = None, message: Optional[str] = None):
        self.current = current
        self.attempted = attempted
        details = {"current": current}
        if attempted:
            details["attempted"] = attempted
        super().__init__(
            status_code=409,
            code="ILLEGAL_STATE_TRANSITION",
            message=message or f"Operation not allowed while status is {current}",
            details=details,
        )


class SequenceNotEligible(AppException):
    def __init__(self, waiting_for: Optional[List[str]] = None):
        super().__init__(
            status_code=409,
            code="SEQUENCE_NOT_ELIGIBLE",
            message="It is not your turn to sign yet.",
            details={"waitingFor": waiting_for or []},
        )


class AlreadySigned(AppException):
    def __init__(self):
        super().__init__(
            status_code=409,
            code="ALREADY_SIGNED",
            message="This document has already been signed.",
        )


class IntegrityMismatch(AppException):
    def __init__(self, sealed_hash: Optional[str], recomputed_hash: Optional[str]):
        super().__init__(
            status_code=409,
            code="INTEGRITY_MISMATCH",
            message="Stored artifact does not match its sealed hash.",
            details={"sealedHash": sealed_hash, "recomputedHash": recomputed_hash},
        )


class RenderFailure(AppException):
    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(
            status_code=422,
            code="RENDER_FAILURE",
            message=message,
            details={"missing": missing} if missing else None,
        )


class ValidationFailure(AppException):
    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = errors
        super().__init__(
            status_code=422,
            code="VALIDATION_FAILURE",
            message=message or (errors[0] if len(errors) == 1 else "Validation failed"),
            details={"errors": errors},
        )


class DeliveryFailure(AppException):
    """Email could not be delivered after all retries."""

    def __init__(self, message: str = "We could not send the email. Please try again."):
        super().__init__(
            status_code=503,
            code="DELIVERY_FAILED",
            message=message,
        )


class RateLimitException(AppException):
    """Rate limit exceeded."""

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(
            status_code=429,
            code="RATE_LIMIT_EXCEEDED",
            message=message or f"Too many requests. Please try again in {retry_after} seconds.",
            details={"retry_after": retry_after},
        )


class AuthenticationError(HTTPException):
    """Admin authentication error."""

    def __init__(self, message: str, code: str = "AUTH_ERROR"):
        super().__init__(
            status_code=401,
            detail={"code": code, "message": message},
        )


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Build standardized error response."""
    response = {
        "error": True,
        "code": code,
        "message": message,
        "request_id": get_request_id(),
    }
    if details:
        response["details"] = details
        # errors[] is part of the public signing contract
        if "errors" in details:
            response["errors"] = details["errors"]
        if "attemptsRemaining" in details:
            response["attemptsRemaining"] = details["attemptsRemaining"]
    return response


async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handle application exceptions."""
    logger.warning(f"AppException: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(
            exc.status_code,
            exc.code,
            exc.message,
            exc.details,
        ),
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(f"HTTPException: {exc.status_code} - {exc.detail}")

    if isinstance(exc.detail, dict):
        code = exc.detail.get("code", "HTTP_ERROR")
        message = exc.detail.get("message", str(exc.detail))
    else:
        code = "HTTP_ERROR"
        message = str(exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(exc.status_code, code, message),
    )


async def validation_exception_handler(
    request: Request,
    exc: ValidationError,
) -> JSONResponse:
    """Handle Pydantic and request validation errors."""
    logger.warning(f"ValidationError: {exc.errors()}")

    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=422,
        content=build_error_response(
            422,
            "VALIDATION_ERROR",
            "Request validation failed",
            {"errors": errors},
        ),
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")

    return JSONResponse(
        status_code=500,
        content=build_error_response(
            500,
            "INTERNAL_ERROR",
            "An unexpected error occurred",
        ),
    )


__all__ = [
    "AppException",
    "NotFoundError",
    "InvalidToken",
    "ExpiredToken",
    "TokenAlreadyConsumed",
    "ChallengeNotFound",
    "ChallengeExpired",
    "ChallengeMismatch",
    "ChallengeAttemptsExhausted",
    "SessionExpired",
    "IllegalStateTransition",
    "SequenceNotEligible",
    "AlreadySigned",
    "IntegrityMismatch",
    "RenderFailure",
    "ValidationFailure",
    "DeliveryFailure",
    "RateLimitException",
    "AuthenticationError",
    "build_error_response",
    "app_exception_handler",
    "http_exception_handler",
    "validation_exception_handler",
    "generic_exception_handler",
]
