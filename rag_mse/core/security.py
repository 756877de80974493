"""Security utilities for session tokens and password hashing."""

import re
from datetime import datetime, timedelta, timezone
from uuid import UUID

import bcrypt
import jwt

from rag_mse.core.config import settings


# =============================================================================
# Session Token (JWT in cookie, issued by the identity provider)
# =============================================================================

def create_session_token(
    user_id: UUID,
    role: str,
    token_version: int,
) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET).
    Token contains user identity, role and revocation version.
    """
    payload = {
        "sub": str(user_id),
        "role": role,
        "token_version": token_version,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


# =============================================================================
# Passwords
# =============================================================================

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 72  # bcrypt truncates beyond 72 bytes


class PasswordPolicyError(ValueError):
    """Password does not satisfy the policy; ``errors`` lists every violation."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def password_policy_errors(password: str) -> list[str]:
    errors: list[str] = []
    if len(password.encode("utf-8")) > MAX_PASSWORD_LENGTH:
        errors.append(f"Passwort darf maximal {MAX_PASSWORD_LENGTH} Zeichen lang sein")
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Passwort muss mindestens {MIN_PASSWORD_LENGTH} Zeichen lang sein")
    if not re.search(r"[A-ZÄÖÜ]", password):
        errors.append("Passwort muss mindestens einen Großbuchstaben enthalten")
    if not re.search(r"[a-zäöüß]", password):
        errors.append("Passwort muss mindestens einen Kleinbuchstaben enthalten")
    if not re.search(r"\d", password):
        errors.append("Passwort muss mindestens eine Ziffer enthalten")
    return errors


def validate_new_password(password: str, confirm_password: str | None = None) -> None:
    """
    Enforce the password policy.

    Raises:
        PasswordPolicyError: listing all violations
    """
    errors = password_policy_errors(password)
    if confirm_password is not None and password != confirm_password:
        errors.append("Passwörter stimmen nicht überein")
    if errors:
        raise PasswordPolicyError(errors)


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
