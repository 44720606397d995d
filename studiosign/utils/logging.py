"""
Logging configuration with request_id correlation.
Structured logging for Cloud Logging compatibility.

PII Protection:
- Never log raw tokens, OTP codes, session ids, salts, or emails
- Use fingerprints (sha256[:8]) for correlation
- All PII fields must go through fingerprint() / mask_email()
"""
import hashlib
import logging
import sys
import uuid
import json
from contextvars import ContextVar
from typing import Dict, Optional
from datetime import datetime, timezone

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


def fingerprint(value: Optional[str], prefix: str = "") -> str:
    """
    Create a safe fingerprint for logging PII values.

    Args:
        value: The sensitive value to fingerprint (token, email, session id, etc.)
        prefix: Optional prefix for the fingerprint (e.g., "tok_", "email_")

    Returns:
        8-char hex fingerprint with optional prefix, or "none" if value is None/empty

    Example:
        fingerprint("secret_token_123", "tok_") -> "tok_a1b2c3d4"
    """
    if not value:
        return f"{prefix}none" if prefix else "none"
    fp = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{fp}" if prefix else fp


def mask_email(email: Optional[str]) -> str:
    """Mask email for display and logs: john@example.com -> j***@example.com"""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"


# Context variables for request correlation
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
document_id_var: ContextVar[Optional[str]] = ContextVar("document_id", default=None)
signer_id_var: ContextVar[Optional[str]] = ContextVar("signer_id", default=None)
session_fp_var: ContextVar[Optional[str]] = ContextVar("session_fp", default=None)
token_fp_var: ContextVar[Optional[str]] = ContextVar("token_fp", default=None)

# (log key, variable, short tag for development output). Every value here is safe to log.
_CONTEXT_FIELDS = (
    ("document_id", document_id_var, "doc"),
    ("signer_id", signer_id_var, "signer"),
    ("session_fp", session_fp_var, "sess"),
    ("token_fp", token_fp_var, "tok"),
)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def set_context(
    document_id: Optional[str] = None,
    signer_id: Optional[str] = None,
    session_fp: Optional[str] = None,
    token_fp: Optional[str] = None,
) -> None:
    """
    Set logging context variables. Empty values leave the current one in place.

    session_fp and token_fp must already be fingerprints.
    """
    values = {"document_id": document_id, "signer_id": signer_id, "session_fp": session_fp, "token_fp": token_fp}
    for key, var, _ in _CONTEXT_FIELDS:
        if values[key]:
            var.set(values[key])


def current_context() -> Dict[str, str]:
    """The correlation fields set for the current request."""
    return {key: var.get() for key, var, _ in _CONTEXT_FIELDS if var.get()}


def clear_context() -> None:
    request_id_var.set(None)
    for _, var, _ in _CONTEXT_FIELDS:
        var.set(None)


class CloudLoggingFormatter(logging.Formatter):
    """
    Formatter for Google Cloud Logging structured logs.
    Outputs JSON format compatible with Cloud Logging.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "severity": record.levelname,
            "message": record.getMessage(),
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "logger": record.name,
            "logging.googleapis.com/sourceLocation": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        request_id = request_id_var.get()
        if request_id:
            log_entry["logging.googleapis.com/trace"] = request_id
            log_entry["request_id"] = request_id
        log_entry.update(current_context())

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_entry["data"] = record.extra_data

        return json.dumps(log_entry, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter for local development."""

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get()
        parts = [f"[{record.levelname}]", f"[{request_id[:8] if request_id else '-'}]"]
        for _, var, tag in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                parts.append(f"[{tag}:{value[:8]}]")

        message = f"{' '.join(parts)} {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(environment: str = "development", level: int = logging.INFO) -> None:
    """
    Configure logging based on environment.
    - production: JSON structured logs for Cloud Logging
    - development: Human-readable format
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if environment == "production":
        handler.setFormatter(CloudLoggingFormatter())
    else:
        handler.setFormatter(DevelopmentFormatter())

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)


# Path segments followed by a document id
_DOCUMENT_SEGMENTS = {"contracts", "envelopes", "view", "verify"}


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware that assigns a unique request_id to each request.
    Also extracts document_id from path if present.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_id(request_id)

        # /admin/contracts/{id}, /contract/view/{id}, POST /contract/sign/{id}, ...
        # GET /sign/{token} and GET /contract/sign/{token} carry a raw token, never logged.
        path_parts = [p for p in request.url.path.split("/") if p]
        for i, part in enumerate(path_parts[:-1]):
            if part in _DOCUMENT_SEGMENTS:
                document_id_var.set(path_parts[i + 1])
                break
            if i > 0 and path_parts[i - 1] == "contract" and (
                part == "decline" or (part == "sign" and request.method == "POST")
            ):
                document_id_var.set(path_parts[i + 1])
                break

        request.state.request_id = request_id

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_context()


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)
