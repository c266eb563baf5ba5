"""Secure tokens, keyed hashing and timing-safe comparison.

Every secret-vs-secret comparison in hackguard goes through
``constant_time_equal``; never ``==``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

from hackguard.logging import get_logger
from hackguard.service.errors import ConfigurationError

logger = get_logger(__name__)

MIN_TOKEN_BYTES = 32

# Only ever used outside production, and always announced with a warning.
PLACEHOLDER_SECRETS = {
    "SESSION_SECRET": "insecure-dev-session-secret-change-in-production",
    "CSRF_SECRET": "insecure-dev-csrf-secret-change-in-production",
}


def generate_token(byte_length: int = MIN_TOKEN_BYTES) -> str:
    """Return ``byte_length`` bytes from the OS CSPRNG, hex encoded."""
    if byte_length < MIN_TOKEN_BYTES:
        raise ValueError(f"tokens need at least {MIN_TOKEN_BYTES} bytes of entropy")
    return secrets.token_bytes(byte_length).hex()


def sign(secret: str, data: str) -> str:
    """HMAC-SHA256 of ``data`` under ``secret``, hex encoded."""
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equal(a: str, b: str) -> bool:
    """Compare two strings without leaking where they first differ.

    Inputs of different byte length are rejected up front; length cannot be
    hidden without padding.
    """
    a_bytes = a.encode("utf-8")
    b_bytes = b.encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)


def verify_signature(secret: str, data: str, signature: str) -> bool:
    return constant_time_equal(sign(secret, data), signature)


def hash_token(token: str) -> str:
    """SHA-256 digest used to key storage by a secret without storing it."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def resolve_secret(value: Optional[str], name: str, *, production: bool) -> str:
    """Return a usable signing secret or fail startup.

    A missing secret is fatal in production. Elsewhere a fixed placeholder is
    used, and a warning is logged every time that happens.
    """
    if value and value.strip():
        return value
    if production:
        raise ConfigurationError(f"{name} must be set in production")
    logger.warning(
        "insecure_secret_fallback",
        setting=name,
        message=f"{name} is not set; using an insecure placeholder. "
        "Never run like this in production.",
    )
    return PLACEHOLDER_SECRETS.get(name, f"insecure-dev-{name.lower()}")
