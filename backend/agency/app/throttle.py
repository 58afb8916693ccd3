"""Per-identity login attempt throttling."""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from .clock import Clock, SystemClock
from .errors import MissingCredentials, TooManyAttempts
from .locks import KeyedLock
from .logging import get_logger, mask_email


logger = get_logger("agency.throttle")


@dataclass(slots=True)
class LoginAttemptRecord:
    """Attempts counted for one normalized email."""

    attempts: int
    last_attempt: datetime
    ttl: datetime


@dataclass(frozen=True, slots=True)
class ThrottleStatus:
    """Counter state after an allowed attempt."""

    attempts: int
    max_attempts: int
    remaining: int


class LoginThrottle:
    """Counts login attempts per email inside a rolling window.

    The map is process local and bounded; once ``capacity`` keys are tracked
    the record closest to its expiry is evicted to make room.
    """

    def __init__(
        self,
        *,
        max_attempts: int,
        window_seconds: int,
        ttl_seconds: int,
        capacity: int = 1000,
        clock: Clock | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be at least 1")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self._max_attempts = max_attempts
        self._window = timedelta(seconds=window_seconds)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._capacity = capacity
        self._clock = clock or SystemClock()
        self._records: dict[str, LoginAttemptRecord] = {}
        self._locks = KeyedLock()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def window_seconds(self) -> int:
        return int(self._window.total_seconds())

    def __len__(self) -> int:
        return len(self._records)

    @staticmethod
    def _normalise_key(email: str | None) -> str:
        if email is None:
            raise MissingCredentials()
        key = email.strip().lower()
        if not key:
            raise MissingCredentials()
        return key

    def _read(self, key: str, now: datetime) -> LoginAttemptRecord | None:
        record = self._records.get(key)
        if record is not None and record.ttl <= now:
            self._records.pop(key, None)
            return None
        return record

    def _evict_if_full(self) -> None:
        if len(self._records) < self._capacity:
            return
        victim = min(self._records, key=lambda item: self._records[item].ttl)
        self._records.pop(victim, None)

    def peek(self, email: str) -> LoginAttemptRecord | None:
        """Return the live record for ``email`` without counting an attempt."""

        key = self._normalise_key(email)
        return self._read(key, self._clock.now())

    async def hit(self, email: str | None) -> ThrottleStatus:
        """Count one login attempt for ``email`` or raise :class:`TooManyAttempts`."""

        key = self._normalise_key(email)
        async with self._locks.hold(key):
            now = self._clock.now()
            record = self._read(key, now)

            if record is not None:
                elapsed = now - record.last_attempt
                if record.attempts >= self._max_attempts and elapsed < self._window:
                    retry_after = math.ceil((self._window - elapsed).total_seconds())
                    logger.warning(
                        "throttle.blocked",
                        email=mask_email(key),
                        attempts=record.attempts,
                        retry_after=retry_after,
                    )
                    raise TooManyAttempts(
                        retry_after=max(retry_after, 1),
                        attempts=record.attempts,
                        max_attempts=self._max_attempts,
                        window_minutes=math.ceil(self._window.total_seconds() / 60),
                    )
                if elapsed >= self._window:
                    record.attempts = 0
            else:
                self._evict_if_full()
                record = LoginAttemptRecord(attempts=0, last_attempt=now, ttl=now + self._ttl)
                self._records[key] = record

            record.attempts += 1
            record.last_attempt = now
            record.ttl = now + self._ttl
            return ThrottleStatus(
                attempts=record.attempts,
                max_attempts=self._max_attempts,
                remaining=max(self._max_attempts - record.attempts, 0),
            )

    async def reset(self, email: str) -> None:
        """Forget the attempts counted for ``email`` after a successful login."""

        key = self._normalise_key(email)
        async with self._locks.hold(key):
            self._records.pop(key, None)

    def clear(self) -> None:
        self._records.clear()


__all__ = ["LoginAttemptRecord", "LoginThrottle", "ThrottleStatus"]
