"""
Security utilities: token hashing, OTP code hashing, content hashing.
"""
import hashlib
import hmac
import logging
import secrets
from typing import Optional, Tuple

from studiosign.config import get_settings

logger = logging.getLogger(__name__)


def hash_signing_token(token: str, salt: Optional[str] = None) -> str:
    """
    Hash a magic-link token using SHA-256 with salt.
    Only this hash is stored; the plain token exists only in the emailed link.

    Note: Never log raw token or salt - use fingerprints only.
    """
    if salt is None:
        salt = get_settings().signing_token_salt

    salted = f"{salt}{token}"
    result = hashlib.sha256(salted.encode()).hexdigest()

    logger.debug(
        f"hash_signing_token: token_fp={hashlib.sha256(token.encode()).hexdigest()[:8]}, "
        f"hash_fp={result[:8]}"
    )
    return result


def generate_signing_token(salt: Optional[str] = None) -> Tuple[str, str]:
    """
    Generate a new magic-link token and its hash.
    The token is 32 random bytes, hex encoded.

    Returns:
        Tuple of (plain_token, hashed_token)
    """
    token = secrets.token_hex(32)
    return token, hash_signing_token(token, salt)


def verify_signing_token(plain_token: str, stored_hash: str, salt: Optional[str] = None) -> bool:
    """Verify a signing token against its stored hash."""
    computed_hash = hash_signing_token(plain_token, salt)
    return secrets.compare_digest(computed_hash, stored_hash)


def generate_numeric_code(length: int = 6) -> str:
    """Generate a zero-padded numeric code from a secure random source."""
    return str(secrets.randbelow(10 ** length)).zfill(length)


def hash_otp_code(challenge_id: str, code: str, secret: Optional[str] = None) -> str:
    """
    HMAC-SHA256 of an OTP code bound to its challenge.
    Binding to the challenge id makes a stored hash useless for any other challenge.
    """
    if secret is None:
        secret = get_settings().otp_secret
    message = f"{challenge_id}:{code}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_otp_code(challenge_id: str, code: str, stored_hash: str, secret: Optional[str] = None) -> bool:
    """Constant-time comparison of a supplied code against the stored hash."""
    return secrets.compare_digest(hash_otp_code(challenge_id, code, secret), stored_hash)


def compute_bytes_hash(data: bytes) -> str:
    """Compute SHA-256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()
