"""One-time link tokens.

The raw token only ever travels inside the emailed URL; the database stores
``hash_token(raw)``. The hash is unsalted so it can serve as a lookup key.
"""

import hashlib
import secrets

TOKEN_BYTES = 32


def generate_token() -> str:
    """Generate a 256-bit random token, hex encoded (URL safe)."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenInvalidOrExpired(LookupError):
    """Token unknown, expired or already used. Callers report all three alike."""
