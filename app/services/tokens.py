"""
Opaque token generation and keyed hashing.

Refresh, password reset and email verification tokens are 256-bit random
values handed to the client once. Only HMAC-SHA256(token_hash_secret, token)
is persisted, so a leaked table cannot be replayed without the secret.
"""

import hashlib
import hmac
import secrets

from app.config import settings

TOKEN_BYTES = 32


def generate_opaque_token() -> str:
    """URL-safe random token (256 bits of entropy)."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str, secret: str | None = None) -> str:
    """Keyed hash of a raw token as 64 hex chars."""
    key = (secret if secret is not None else settings.token_hash_secret).encode("utf-8")
    return hmac.new(key, token.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_prefix(token_hash: str) -> str:
    """Truncated hash for log lines."""
    return token_hash[:16]
