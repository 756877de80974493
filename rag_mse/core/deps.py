"""FastAPI dependencies for authentication, authorization, rate limiting and database access."""

import math
from typing import Generator
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from rag_mse.core.rate_limit import (
    TOKEN_RULE,
    AttemptLimiter,
    AttemptRule,
    RateLimiterUnavailable,
    RateLimitResult,
    guarded_check,
)
from rag_mse.core.security import decode_session_token
from rag_mse.db.session import SessionLocal
from rag_mse.utils.clock import Clock, utcnow


# Cookie and header names
COOKIE_NAME = "rag_mse_session"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"

NO_CACHE_HEADERS = {"Cache-Control": "no-store, no-cache, must-revalidate"}

RATE_LIMIT_UNAVAILABLE_MESSAGE = "Dienst vorübergehend nicht verfügbar. Bitte versuchen Sie es später erneut."


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    """Clock dependency (naive UTC). Tests override it to pin time."""
    return utcnow


def get_current_user(
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Get authenticated user from the session cookie.

    Validates:
    - Session cookie exists
    - JWT is valid and not expired
    - User exists and is active
    - Token version matches (for revocation support)

    Raises:
        HTTPException 401: Authentication failed
    """
    # Import here to avoid circular imports
    from rag_mse.db.models import User

    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Nicht autorisiert")

    try:
        payload = decode_session_token(token)
        user_id = UUID(str(payload.get("sub")))
    except (jwt.InvalidTokenError, ValueError):
        raise HTTPException(status_code=401, detail="Nicht autorisiert")

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Nicht autorisiert")

    # Token version check (revocation support)
    if user.token_version != payload.get("token_version"):
        raise HTTPException(status_code=401, detail="Sitzung abgelaufen")

    return user


def get_current_session(
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Get the caller identity as a UserSession.

    Raises:
        HTTPException 401: Not authenticated
        HTTPException 403: Unknown role
    """
    from rag_mse.db.enums import Role
    from rag_mse.schemas.auth import UserSession

    user = get_current_user(request, db)

    # Validate role is a known enum value - return 403 not 500
    if not Role.has_value(user.role):
        raise HTTPException(status_code=403, detail="Keine Berechtigung")

    return UserSession(
        user_id=user.id,
        role=Role(user.role),
        email=user.email,
        name=user.name,
    )


def require_admin(session=Depends(get_current_session)):
    """
    Admin-only endpoints.

    Raises:
        HTTPException 403: caller is not an admin
    """
    if not session.is_admin:
        raise HTTPException(status_code=403, detail="Keine Berechtigung")
    return session


def require_csrf_header(request: Request) -> None:
    """
    Verify CSRF header on mutations.

    Apply to state-changing endpoints (POST, PATCH, DELETE).

    Raises:
        HTTPException 403: Missing or invalid CSRF header
    """
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise HTTPException(
            status_code=403,
            detail=f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'"
        )


# =============================================================================
# Rate limiting helpers
# =============================================================================

def rate_limited_error(result: RateLimitResult, now: float, headers: dict | None = None) -> HTTPException:
    """429 with a Retry-After header; the message names the lockout in minutes when there is one."""
    response_headers = dict(headers or {})
    if result.blocked_until:
        retry_after = max(1, math.ceil(result.blocked_until - now))
        minutes = max(1, math.ceil(retry_after / 60))
        detail = f"Zu viele fehlgeschlagene Versuche. Bitte versuchen Sie es in {minutes} Minute(n) erneut."
    else:
        retry_after = 60
        detail = "Zu viele Versuche. Bitte versuchen Sie es später erneut."
    response_headers["Retry-After"] = str(retry_after)
    return HTTPException(status_code=429, detail=detail, headers=response_headers)


def enforce_attempt_limit(
    attempt_limiter: AttemptLimiter,
    client_key: str,
    resource_key: str,
    *,
    fail_open: bool,
    action: str,
    rule: AttemptRule = TOKEN_RULE,
    headers: dict | None = None,
) -> RateLimitResult:
    """
    Count an attempt against (client, resource) and raise when it is denied.

    Raises:
        HTTPException 429: limit reached
        HTTPException 503: limiter unavailable and the call site fails closed
    """
    try:
        result = guarded_check(
            lambda: attempt_limiter.check(client_key, resource_key, rule),
            fail_open=fail_open,
            action=action,
            client_key=client_key,
        )
    except RateLimiterUnavailable:
        raise HTTPException(status_code=503, detail=RATE_LIMIT_UNAVAILABLE_MESSAGE, headers=headers)
    if not result.allowed:
        raise rate_limited_error(result, attempt_limiter.clock(), headers)
    return result


def enforce_fixed_window(
    attempt_limiter: AttemptLimiter,
    prefix: str,
    client_key: str,
    *,
    window_seconds: int,
    max_attempts: int,
    action: str,
) -> None:
    """
    Fixed-window request limit for low-risk endpoints. Fails open.

    Raises:
        HTTPException 429: limit reached
    """
    result = guarded_check(
        lambda: attempt_limiter.check_fixed_window(prefix, client_key, window_seconds, max_attempts),
        fail_open=True,
        action=action,
        client_key=client_key,
    )
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail="Zu viele Anfragen. Bitte später erneut versuchen.",
            headers={"Retry-After": str(window_seconds)},
        )
