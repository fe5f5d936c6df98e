"""Policy-day boundaries for the daily spend counter."""

from __future__ import annotations

import time
from typing import Callable, Optional


DAY_SECONDS = 86400


def policy_day(timestamp: float, day_seconds: int = DAY_SECONDS) -> int:
    """Return the policy-day id (UTC days since the epoch) for a timestamp."""
    return int(timestamp // day_seconds)


def seconds_until_reset(timestamp: float, day_seconds: int = DAY_SECONDS) -> int:
    """Seconds until the next policy-day boundary, in 1..day_seconds."""
    next_boundary = (policy_day(timestamp, day_seconds) + 1) * day_seconds
    return max(1, int(next_boundary - timestamp))


class PolicyClock:
    """Injectable time source used by the engine and factory."""

    def __init__(
        self,
        now: Optional[Callable[[], float]] = None,
        day_seconds: int = DAY_SECONDS,
    ):
        if day_seconds <= 0:
            raise ValueError("day_seconds must be positive")
        self._now = now or time.time
        self.day_seconds = day_seconds

    def now(self) -> float:
        return float(self._now())

    def today(self) -> int:
        return policy_day(self.now(), self.day_seconds)

    def seconds_until_reset(self) -> int:
        return seconds_until_reset(self.now(), self.day_seconds)
