"""Tests for policy-day boundaries."""

import pytest

from x402guard.clock import DAY_SECONDS, PolicyClock, policy_day, seconds_until_reset


def test_policy_day_boundaries():
    assert policy_day(0) == 0
    assert policy_day(DAY_SECONDS - 1) == 0
    assert policy_day(DAY_SECONDS) == 1
    assert policy_day(DAY_SECONDS * 19_999 + 0.5) == 19_999


def test_seconds_until_reset_range():
    assert seconds_until_reset(0) == DAY_SECONDS
    assert seconds_until_reset(DAY_SECONDS - 1) == 1
    assert seconds_until_reset(DAY_SECONDS - 0.25) == 1
    assert seconds_until_reset(DAY_SECONDS + 3600) == DAY_SECONDS - 3600


def test_clock_uses_injected_time():
    now = [DAY_SECONDS * 5 + 10]
    clock = PolicyClock(now=lambda: now[0])
    assert clock.today() == 5
    assert clock.seconds_until_reset() == DAY_SECONDS - 10
    now[0] += DAY_SECONDS
    assert clock.today() == 6


def test_custom_day_length():
    clock = PolicyClock(now=lambda: 125.0, day_seconds=60)
    assert clock.today() == 2
    assert clock.seconds_until_reset() == 55


def test_rejects_non_positive_day():
    with pytest.raises(ValueError):
        PolicyClock(day_seconds=0)
