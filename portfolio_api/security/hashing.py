"""
Hashing and token helpers for subscriber identities and action tokens.

Email addresses are keyed by a deterministic SHA-256 of the normalized address so
the plaintext never serves as a primary key. Raw action tokens are shown to the
recipient once; only their hash is stored.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

TOKEN_BYTES = 32

__all__ = [
    "sha256_hex",
    "normalize_email",
    "hash_email",
    "hash_token",
    "random_token",
    "mask_email",
]


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def hash_email(email: str | None) -> str:
    """Deterministically hash a single email address."""
    return sha256_hex(normalize_email(email))


def hash_token(token: str) -> str:
    return sha256_hex(token.strip())


def random_token(num_bytes: int = TOKEN_BYTES) -> str:
    """URL-safe base64 token without padding."""
    raw = secrets.token_bytes(num_bytes)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def mask_email(email: str | None) -> str:
    """
    Mask an address for logs, e.g. ``jane.doe@example.com`` -> ``j***e@e***.com``.
    """
    normalized = normalize_email(email)
    user, _, domain = normalized.partition("@")
    if not user or not domain:
        return "***"

    if len(user) <= 2:
        safe_user = f"{user[0]}*"
    else:
        safe_user = f"{user[0]}***{user[-1]}"

    parts = domain.split(".")
    if len(parts) >= 2:
        safe_domain = f"{parts[0][:1] or '*'}***." + ".".join(parts[1:])
    else:
        safe_domain = f"{domain[0]}***"
    return f"{safe_user}@{safe_domain}"
