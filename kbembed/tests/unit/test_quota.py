from __future__ import annotations

from datetime import datetime, timezone

from kbembed.domain.records import UsageLimits
from kbembed.services.quota import (
    REASON_DAILY_REQUESTS,
    REASON_MONTHLY_TOKENS,
    UsageCounts,
    evaluate_usage,
    isoformat_z,
    next_day_start,
    next_month_start,
    reset_at_for,
    retry_after_seconds,
)


NOW = datetime(2026, 12, 31, 23, 59, 30, tzinfo=timezone.utc)


def test_reservation_within_limits_increments_counters() -> None:
    decision, day, month = evaluate_usage(
        limits=UsageLimits(daily_requests=10, monthly_requests=100),
        day=UsageCounts(requests=2, tokens_in=10),
        month=UsageCounts(requests=5),
        requests=1,
        tokens_in=4,
        tokens_out=0,
        now=NOW,
    )
    assert decision.allowed
    assert decision.reason is None
    assert day == UsageCounts(requests=3, tokens_in=14)
    assert month.requests == 6
    assert decision.daily_requests == 3


def test_denied_reservation_leaves_counters_untouched() -> None:
    day_before = UsageCounts(requests=10)
    decision, day, month = evaluate_usage(
        limits=UsageLimits(daily_requests=10, monthly_requests=100),
        day=day_before,
        month=UsageCounts(requests=10),
        requests=1,
        tokens_in=1,
        tokens_out=0,
        now=NOW,
    )
    assert not decision.allowed
    assert decision.reason == REASON_DAILY_REQUESTS
    assert day is day_before
    assert month.requests == 10


def test_null_token_ceiling_is_unlimited_and_month_tokens_trip() -> None:
    unlimited, _, _ = evaluate_usage(
        limits=UsageLimits(daily_requests=10, monthly_requests=100),
        day=UsageCounts(),
        month=UsageCounts(),
        requests=0,
        tokens_in=10**9,
        tokens_out=0,
        now=NOW,
    )
    assert unlimited.allowed

    denied, _, _ = evaluate_usage(
        limits=UsageLimits(daily_requests=10, monthly_requests=100, daily_tokens=None, monthly_tokens=50),
        day=UsageCounts(),
        month=UsageCounts(tokens_in=40),
        requests=0,
        tokens_in=5,
        tokens_out=6,
        now=NOW,
    )
    assert denied.reason == REASON_MONTHLY_TOKENS
    assert reset_at_for(denied) == denied.monthly_reset_at


def test_reset_boundaries_roll_over_year() -> None:
    assert next_day_start(NOW) == datetime(2027, 1, 1, tzinfo=timezone.utc)
    assert next_month_start(NOW) == datetime(2027, 1, 1, tzinfo=timezone.utc)
    assert retry_after_seconds(next_day_start(NOW), NOW) == 30
    assert retry_after_seconds(NOW, NOW) == 1
    assert isoformat_z(NOW) == "2026-12-31T23:59:30Z"
