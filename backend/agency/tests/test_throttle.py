"""Unit tests for per-identity login throttling."""
from __future__ import annotations

import asyncio

import pytest

from backend.agency.app.clock import FrozenClock
from backend.agency.app.errors import MissingCredentials, TooManyAttempts
from backend.agency.app.throttle import LoginThrottle


def _throttle(clock: FrozenClock, **overrides) -> LoginThrottle:
    options = {"max_attempts": 5, "window_seconds": 900, "ttl_seconds": 1800, "clock": clock}
    options.update(overrides)
    return LoginThrottle(**options)


@pytest.mark.asyncio
async def test_attempts_below_limit_are_allowed(clock):
    throttle = _throttle(clock)

    for expected in range(1, 6):
        status = await throttle.hit("a@b.com")
        assert status.attempts == expected
        assert status.remaining == 5 - expected


@pytest.mark.asyncio
async def test_sixth_attempt_within_window_is_rejected(clock):
    throttle = _throttle(clock)
    for _ in range(5):
        await throttle.hit("a@b.com")
        clock.advance(seconds=30)

    with pytest.raises(TooManyAttempts) as excinfo:
        await throttle.hit("a@b.com")

    error = excinfo.value
    assert error.attempts == 5
    assert error.max_attempts == 5
    assert error.retry_after == 870
    payload = error.to_payload()
    assert payload["retryAfter"] > 0
    assert payload["windowMinutes"] == 15
    assert error.status_code == 429


@pytest.mark.asyncio
async def test_rejected_attempts_are_not_counted(clock):
    throttle = _throttle(clock)
    for _ in range(5):
        await throttle.hit("a@b.com")

    for _ in range(3):
        with pytest.raises(TooManyAttempts):
            await throttle.hit("a@b.com")

    assert throttle.peek("a@b.com").attempts == 5


@pytest.mark.asyncio
async def test_counter_resets_once_window_elapses(clock):
    throttle = _throttle(clock)
    for _ in range(5):
        await throttle.hit("a@b.com")

    clock.advance(minutes=15)
    status = await throttle.hit("a@b.com")

    assert status.attempts == 1


@pytest.mark.asyncio
async def test_retry_after_shrinks_with_time(clock):
    throttle = _throttle(clock)
    for _ in range(5):
        await throttle.hit("a@b.com")

    clock.advance(minutes=5)
    with pytest.raises(TooManyAttempts) as excinfo:
        await throttle.hit("a@b.com")

    assert excinfo.value.retry_after == 600


@pytest.mark.asyncio
async def test_keys_are_normalised(clock):
    throttle = _throttle(clock, max_attempts=2)
    await throttle.hit("A@B.com")
    await throttle.hit("  a@b.COM ")

    with pytest.raises(TooManyAttempts):
        await throttle.hit("a@b.com")


@pytest.mark.asyncio
async def test_reset_forgets_attempts(clock):
    throttle = _throttle(clock)
    for _ in range(4):
        await throttle.hit("a@b.com")

    await throttle.reset("a@b.com")

    assert throttle.peek("a@b.com") is None
    assert (await throttle.hit("a@b.com")).attempts == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("email", [None, "", "   "])
async def test_missing_email_is_rejected(clock, email):
    throttle = _throttle(clock)

    with pytest.raises(MissingCredentials):
        await throttle.hit(email)


@pytest.mark.asyncio
async def test_records_expire_after_ttl(clock):
    throttle = _throttle(clock)
    await throttle.hit("a@b.com")

    clock.advance(minutes=31)

    assert throttle.peek("a@b.com") is None
    assert len(throttle) == 0


@pytest.mark.asyncio
async def test_capacity_evicts_record_closest_to_expiry(clock):
    throttle = _throttle(clock, capacity=2)
    await throttle.hit("first@b.com")
    clock.advance(seconds=10)
    await throttle.hit("second@b.com")
    clock.advance(seconds=10)
    await throttle.hit("third@b.com")

    assert len(throttle) == 2
    assert throttle.peek("first@b.com") is None
    assert throttle.peek("second@b.com") is not None
    assert throttle.peek("third@b.com") is not None


@pytest.mark.asyncio
async def test_concurrent_attempts_for_one_key_are_counted_once_each(clock):
    throttle = _throttle(clock)

    results = await asyncio.gather(
        *(throttle.hit("a@b.com") for _ in range(8)),
        return_exceptions=True,
    )

    allowed = [result for result in results if not isinstance(result, Exception)]
    rejected = [result for result in results if isinstance(result, TooManyAttempts)]
    assert len(allowed) == 5
    assert len(rejected) == 3
    assert sorted(status.attempts for status in allowed) == [1, 2, 3, 4, 5]


def test_invalid_configuration_is_rejected(clock):
    with pytest.raises(ValueError):
        LoginThrottle(max_attempts=0, window_seconds=900, ttl_seconds=1800, clock=clock)
