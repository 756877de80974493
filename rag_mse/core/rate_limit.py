"""Rate limiting.

Two layers:

- ``limiter``: slowapi limiter applying the general per-client API limit.
- ``AttemptLimiter``: attempt counters with escalating lockouts for the
  token-consuming endpoints, plus fixed-window counters for the contact form
  and geocoding proxy. Counters live in Redis (or memory when Redis is not
  configured) and every read-modify-write is atomic.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import redis
from slowapi import Limiter

from rag_mse.core.config import settings
from rag_mse.core.redis_client import get_redis_url, get_sync_redis_client
from rag_mse.core.structured_logging import build_log_context
from rag_mse.services.client_ip_service import get_client_key

logger = logging.getLogger(__name__)

# =============================================================================
# General API limit (slowapi)
# =============================================================================

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)


def _build_limiter() -> Limiter:
    redis_url = get_redis_url()
    if IS_TESTING or not redis_url:
        return Limiter(key_func=get_client_key, storage_uri="memory://", default_limits=DEFAULT_LIMITS)
    # Try Redis, fall back to memory if connection fails
    try:
        redis.from_url(redis_url, socket_connect_timeout=1).ping()
    except redis.exceptions.RedisError as e:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        return Limiter(key_func=get_client_key, storage_uri="memory://", default_limits=DEFAULT_LIMITS)
    return Limiter(key_func=get_client_key, storage_uri=redis_url, default_limits=DEFAULT_LIMITS)


limiter = _build_limiter()


# =============================================================================
# Attempt limiter
# =============================================================================

REDIS_ERROR_TYPES: tuple[type[BaseException], ...] = (redis.exceptions.RedisError, OSError)

RATE_LIMIT_PREFIX = "ratelimit:"
CLIENT_PREFIX = f"{RATE_LIMIT_PREFIX}ip:"
TOKEN_PREFIX = f"{RATE_LIMIT_PREFIX}token:"
FORGOT_PASSWORD_PREFIX = f"{RATE_LIMIT_PREFIX}forgot:"
CONTACT_PREFIX = f"{RATE_LIMIT_PREFIX}contact:"
GEOCODE_PREFIX = f"{RATE_LIMIT_PREFIX}geocode:"

CLIENT_MAX_ATTEMPTS = 25
CLIENT_WINDOW_SECONDS = 15 * 60

CONTACT_WINDOW_SECONDS = 60
CONTACT_MAX_ATTEMPTS = 5
GEOCODE_WINDOW_SECONDS = 60
GEOCODE_MAX_ATTEMPTS = 10


class RateLimiterUnavailable(RuntimeError):
    """The counter store could not be reached."""


@dataclass(frozen=True)
class Threshold:
    attempts: int
    block_seconds: int


@dataclass(frozen=True)
class AttemptRule:
    """Window and escalating lockouts for one kind of protected resource."""

    prefix: str
    window_seconds: int
    thresholds: tuple[Threshold, ...]
    # Counter per (client, resource) pair instead of per resource.
    per_client: bool = False

    def storage_key(self, client_key: str, resource_key: str) -> str:
        if self.per_client:
            return f"{self.prefix}{client_key}:{resource_key}"
        return f"{self.prefix}{resource_key}"

    def block_seconds_for(self, attempt_count: int) -> int:
        block = 0
        for threshold in self.thresholds:
            if attempt_count >= threshold.attempts:
                block = threshold.block_seconds
        return block


TOKEN_RULE = AttemptRule(
    prefix=TOKEN_PREFIX,
    window_seconds=15 * 60,
    thresholds=(
        Threshold(4, 5 * 60),
        Threshold(7, 15 * 60),
        Threshold(10, 60 * 60),
    ),
)

FORGOT_PASSWORD_RULE = AttemptRule(
    prefix=FORGOT_PASSWORD_PREFIX,
    window_seconds=60 * 60,
    thresholds=(
        Threshold(3, 15 * 60),
        Threshold(6, 60 * 60),
        Threshold(10, 24 * 60 * 60),
    ),
    per_client=True,
)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    attempt_count: int
    blocked_until: float | None = None  # epoch seconds


# Mutators receive the current entry (or None) and return
# (entry to write or None, ttl seconds, result).
Mutator = Callable[[dict[str, Any] | None], tuple[dict[str, Any] | None, float, Any]]


class MemoryAttemptStore:
    """Process-local store for tests and single-process development."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def _get(self, key: str) -> Any:
        item = self._entries.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def update(self, key: str, mutator: Mutator) -> Any:
        with self._lock:
            current = self._get(key)
            entry, ttl, result = mutator(dict(current) if current else None)
            if entry is not None:
                self._entries[key] = (entry, self._clock() + ttl)
            return result

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def incr_window(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            item = self._entries.get(key)
            if item is None or item[1] <= now:
                self._entries[key] = (1, now + window_seconds)
                return 1
            count = item[0] + 1
            self._entries[key] = (count, item[1])
            return count


class RedisAttemptStore:
    """JSON entries in Redis, updated under WATCH/MULTI."""

    def __init__(self, client: redis.Redis):
        self._client = client

    def update(self, key: str, mutator: Mutator) -> Any:
        def _transaction(pipe):
            raw = pipe.get(key)
            current = None
            if raw:
                try:
                    current = json.loads(raw)
                except ValueError:
                    current = None
            entry, ttl, result = mutator(current)
            pipe.multi()
            if entry is not None:
                pipe.set(key, json.dumps(entry), ex=max(1, math.ceil(ttl)))
            return result

        return self._client.transaction(_transaction, key, value_from_callable=True)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def incr_window(self, key: str, window_seconds: int) -> int:
        count = self._client.incr(key)
        if count == 1:
            self._client.pexpire(key, window_seconds * 1000)
        return int(count)


class AttemptLimiter:
    """
    Attempt counters keyed by (client, resource).

    Every check also counts against the client's global budget
    (CLIENT_MAX_ATTEMPTS per CLIENT_WINDOW_SECONDS). Store failures surface as
    RateLimiterUnavailable so each call site can pick fail-open or fail-closed.
    """

    def __init__(
        self,
        store: MemoryAttemptStore | RedisAttemptStore,
        clock: Callable[[], float] = time.time,
        client_max_attempts: int = CLIENT_MAX_ATTEMPTS,
        client_window_seconds: int = CLIENT_WINDOW_SECONDS,
    ):
        self.store = store
        self.clock = clock
        self.client_max_attempts = client_max_attempts
        self.client_window_seconds = client_window_seconds

    def _call(self, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except REDIS_ERROR_TYPES as e:
            raise RateLimiterUnavailable(str(e)) from e

    def _increment_client(self, client_key: str, now: float) -> RateLimitResult:
        window = self.client_window_seconds
        max_attempts = self.client_max_attempts

        def mutate(entry):
            if entry is None or entry["reset_at"] <= now:
                fresh = {"count": 1, "reset_at": now + window, "last_attempt_at": now}
                return fresh, window, RateLimitResult(True, 1)
            if entry["count"] >= max_attempts:
                return None, 0, RateLimitResult(False, entry["count"])
            entry["count"] += 1
            entry["last_attempt_at"] = now
            return entry, entry["reset_at"] - now, RateLimitResult(True, entry["count"])

        return self.store.update(f"{CLIENT_PREFIX}{client_key}", mutate)

    def check(self, client_key: str, resource_key: str, rule: AttemptRule = TOKEN_RULE) -> RateLimitResult:
        """Count an attempt and report whether it may proceed."""
        return self._call(lambda: self._check(client_key, resource_key, rule))

    def _check(self, client_key: str, resource_key: str, rule: AttemptRule) -> RateLimitResult:
        now = self.clock()
        client_result = self._increment_client(client_key, now)
        if not client_result.allowed:
            return client_result

        def mutate(entry):
            blocked_until = entry.get("blocked_until") if entry else None
            if blocked_until and blocked_until > now:
                return None, 0, RateLimitResult(False, entry["count"], blocked_until)
            if entry is None or entry["reset_at"] <= now:
                fresh = {"count": 1, "reset_at": now + rule.window_seconds, "last_attempt_at": now}
                return fresh, rule.window_seconds, RateLimitResult(True, 1)

            entry["count"] += 1
            entry["last_attempt_at"] = now
            block_seconds = rule.block_seconds_for(entry["count"])
            if block_seconds:
                entry["blocked_until"] = now + block_seconds
                ttl = max(entry["reset_at"], entry["blocked_until"]) - now
                return entry, ttl, RateLimitResult(False, entry["count"], entry["blocked_until"])
            return entry, entry["reset_at"] - now, RateLimitResult(True, entry["count"])

        return self.store.update(rule.storage_key(client_key, resource_key), mutate)

    def record_success(self, client_key: str, resource_key: str, rule: AttemptRule = TOKEN_RULE) -> None:
        """Clear the resource counter and refund one client attempt."""
        self._call(lambda: self._record_success(client_key, resource_key, rule))

    def _record_success(self, client_key: str, resource_key: str, rule: AttemptRule) -> None:
        now = self.clock()
        self.store.delete(rule.storage_key(client_key, resource_key))

        def refund(entry):
            if entry is None or entry["reset_at"] <= now:
                return None, 0, None
            entry["count"] = max(0, entry["count"] - 1)
            return entry, entry["reset_at"] - now, None

        self.store.update(f"{CLIENT_PREFIX}{client_key}", refund)

    def check_fixed_window(
        self,
        prefix: str,
        client_key: str,
        window_seconds: int,
        max_attempts: int,
    ) -> RateLimitResult:
        """Plain counter that resets when its window expires."""
        count = self._call(lambda: self.store.incr_window(f"{prefix}{client_key}", window_seconds))
        return RateLimitResult(allowed=count <= max_attempts, attempt_count=count)


def guarded_check(
    check: Callable[[], RateLimitResult],
    *,
    fail_open: bool,
    action: str,
    client_key: str | None = None,
) -> RateLimitResult:
    """
    Run a limiter check with the call site's failure policy.

    fail_open=True logs and allows when the store is unreachable;
    fail_open=False re-raises RateLimiterUnavailable.
    """
    try:
        return check()
    except RateLimiterUnavailable as e:
        if not fail_open:
            logger.error(
                "Rate limiter unavailable, rejecting request",
                extra=build_log_context(action=action, client_key=client_key, error=str(e)),
            )
            raise
        logger.warning(
            "Rate limiter unavailable, continuing without enforcement",
            extra=build_log_context(action=action, client_key=client_key, error=str(e)),
        )
        return RateLimitResult(allowed=True, attempt_count=0)


def record_success_quietly(
    attempt_limiter: AttemptLimiter,
    client_key: str,
    resource_key: str,
    rule: AttemptRule = TOKEN_RULE,
) -> None:
    """record_success after the effect is committed; store errors are logged only."""
    try:
        attempt_limiter.record_success(client_key, resource_key, rule)
    except RateLimiterUnavailable as e:
        logger.warning(
            "Could not clear rate limit counter",
            extra=build_log_context(client_key=client_key, error=str(e)),
        )


_attempt_limiter: AttemptLimiter | None = None


def get_attempt_limiter() -> AttemptLimiter:
    """Shared AttemptLimiter (FastAPI dependency)."""
    global _attempt_limiter
    if _attempt_limiter is None:
        client = get_sync_redis_client()
        store = RedisAttemptStore(client) if client is not None else MemoryAttemptStore()
        _attempt_limiter = AttemptLimiter(store)
    return _attempt_limiter
