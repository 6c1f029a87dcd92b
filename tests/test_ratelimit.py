"""Tests for the fixed window request limiter."""

from __future__ import annotations

import pytest

from sales_erp.ratelimit import FixedWindowRateLimiter
from sales_erp.settings import RateLimitSettings


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_budget_is_counted_per_client():
    limiter = FixedWindowRateLimiter(2, 60, clock=ManualClock())

    assert [limiter.allow("10.0.0.1") for _ in range(3)] == [True, True, False]
    assert limiter.allow("10.0.0.2") is True


def test_budget_resets_when_the_window_rolls_over(caplog):
    clock = ManualClock()
    limiter = FixedWindowRateLimiter(1, 60, clock=clock)

    assert limiter.allow("10.0.0.1") is True
    assert limiter.allow("10.0.0.1") is False
    assert limiter.allow("10.0.0.1") is False
    assert len([record for record in caplog.records if "Rate limit reached" in record.getMessage()]) == 1

    clock.now = 60.0
    assert limiter.allow("10.0.0.1") is True


def test_from_settings_uses_configured_budget():
    limiter = FixedWindowRateLimiter.from_settings(RateLimitSettings())

    assert (limiter.requests, limiter.window_seconds) == (1000, 60)


@pytest.mark.parametrize(("requests", "window_seconds"), [(0, 60), (10, 0)])
def test_non_positive_budget_is_rejected(requests, window_seconds):
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(requests, window_seconds)
