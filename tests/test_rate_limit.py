"""Tests for the attempt limiter and its failure policies."""
import pytest
import redis

from rag_mse.core.rate_limit import (
    FORGOT_PASSWORD_RULE,
    TOKEN_RULE,
    AttemptLimiter,
    MemoryAttemptStore,
    RateLimiterUnavailable,
    guarded_check,
    record_success_quietly,
)


class Clock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenStore:
    def update(self, key, mutator):
        raise redis.exceptions.ConnectionError("redis down")

    def delete(self, key):
        raise redis.exceptions.ConnectionError("redis down")

    def incr_window(self, key, window_seconds):
        raise redis.exceptions.ConnectionError("redis down")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def limiter(clock):
    return AttemptLimiter(MemoryAttemptStore(clock=clock), clock=clock)


def test_token_attempts_block_on_fourth_try(limiter):
    results = [limiter.check("1.2.3.4", "token-hash") for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[-1].attempt_count == 4
    assert results[-1].blocked_until == pytest.approx(1_000_000.0 + 5 * 60)


def test_block_outlasts_lockout_until_window_ends(limiter, clock):
    for _ in range(4):
        limiter.check("1.2.3.4", "token-hash")

    # Still inside the counting window: the next failure locks again
    clock.now += 5 * 60 + 1
    assert not limiter.check("1.2.3.4", "token-hash").allowed

    clock.now += TOKEN_RULE.window_seconds
    result = limiter.check("1.2.3.4", "token-hash")
    assert result.allowed
    assert result.blocked_until is None


def test_lockout_escalates_with_attempt_count():
    assert TOKEN_RULE.block_seconds_for(3) == 0
    assert TOKEN_RULE.block_seconds_for(4) == 5 * 60
    assert TOKEN_RULE.block_seconds_for(7) == 15 * 60
    assert TOKEN_RULE.block_seconds_for(12) == 60 * 60


def test_resources_are_counted_separately(limiter):
    for _ in range(3):
        limiter.check("1.2.3.4", "token-a")
    assert limiter.check("1.2.3.4", "token-b").allowed


def test_window_expiry_resets_counter(limiter, clock):
    for _ in range(3):
        limiter.check("1.2.3.4", "token-hash")
    clock.now += TOKEN_RULE.window_seconds + 1
    result = limiter.check("1.2.3.4", "token-hash")
    assert result.allowed
    assert result.attempt_count == 1


def test_record_success_clears_resource_counter(limiter):
    for _ in range(3):
        limiter.check("1.2.3.4", "token-hash")
    limiter.record_success("1.2.3.4", "token-hash")
    result = limiter.check("1.2.3.4", "token-hash")
    assert result.allowed
    assert result.attempt_count == 1


def test_client_budget_spans_resources(clock):
    limiter = AttemptLimiter(MemoryAttemptStore(clock=clock), clock=clock, client_max_attempts=5)
    allowed = [limiter.check("1.2.3.4", f"token-{i}").allowed for i in range(6)]
    assert allowed == [True] * 5 + [False]
    # Other clients are unaffected
    assert limiter.check("5.6.7.8", "token-0").allowed


def test_forgot_password_rule_blocks_on_third_request(limiter):
    results = [limiter.check("1.2.3.4", "ghost@example.com", FORGOT_PASSWORD_RULE) for _ in range(3)]
    assert [r.allowed for r in results] == [True, True, False]


def test_forgot_password_rule_counts_per_client(limiter):
    for _ in range(3):
        limiter.check("203.0.113.7", "mitglied@rag-mse.de", FORGOT_PASSWORD_RULE)

    assert not limiter.check("203.0.113.7", "mitglied@rag-mse.de", FORGOT_PASSWORD_RULE).allowed
    result = limiter.check("198.51.100.9", "mitglied@rag-mse.de", FORGOT_PASSWORD_RULE)
    assert result.allowed
    assert result.attempt_count == 1


def test_fixed_window(limiter, clock):
    counts = [limiter.check_fixed_window("contact:", "1.2.3.4", 60, 2) for _ in range(3)]
    assert [r.allowed for r in counts] == [True, True, False]
    clock.now += 61
    assert limiter.check_fixed_window("contact:", "1.2.3.4", 60, 2).allowed


def test_store_errors_surface_as_unavailable(clock):
    limiter = AttemptLimiter(BrokenStore(), clock=clock)
    with pytest.raises(RateLimiterUnavailable):
        limiter.check("1.2.3.4", "token-hash")


def test_guarded_check_fail_open_allows(clock):
    limiter = AttemptLimiter(BrokenStore(), clock=clock)
    result = guarded_check(lambda: limiter.check("1.2.3.4", "t"), fail_open=True, action="test")
    assert result.allowed
    assert result.attempt_count == 0


def test_guarded_check_fail_closed_raises(clock):
    limiter = AttemptLimiter(BrokenStore(), clock=clock)
    with pytest.raises(RateLimiterUnavailable):
        guarded_check(lambda: limiter.check("1.2.3.4", "t"), fail_open=False, action="test")


def test_record_success_quietly_swallows_store_errors(clock):
    limiter = AttemptLimiter(BrokenStore(), clock=clock)
    record_success_quietly(limiter, "1.2.3.4", "t")
