"""Brute-force lockout decisions.

An account is either unlocked (``locked_until`` is None or in the past) or
locked until a future instant. These functions only compute the next state;
callers persist it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCK_DURATION = timedelta(minutes=15)


class LockoutState(NamedTuple):
    failed_login_attempts: int
    locked_until: Optional[datetime]


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    lock_duration: timedelta = DEFAULT_LOCK_DURATION

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.lock_duration <= timedelta(0):
            raise ValueError("lock_duration must be positive")

    def register_failure(
        self, state: LockoutState, now: datetime
    ) -> LockoutState:
        # Counter keeps climbing across an expired lock, so one more miss re-locks
        attempts = state.failed_login_attempts + 1
        if attempts >= self.max_attempts:
            return LockoutState(attempts, now + self.lock_duration)
        return LockoutState(attempts, None)
