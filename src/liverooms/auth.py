"""Authentication utilities for liverooms.

Users authenticate with a bearer secret issued once at creation time. Only the
SHA-256 hash of the secret is stored.
"""

import hashlib
import secrets


def generate_secret() -> str:
    """Generate a new random secret (64 hex chars = 32 bytes)."""
    return secrets.token_hex(32)


def hash_secret(secret: str) -> str:
    """Hash a secret for storage/comparison. Returns full SHA-256."""
    return hashlib.sha256(secret.encode()).hexdigest()


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None
