from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import math

from kbembed.domain.records import UsageDecision, UsageLimits


PERIOD_DAY = "day"
PERIOD_MONTH = "month"

REASON_DAILY_REQUESTS = "daily_requests_exceeded"
REASON_MONTHLY_REQUESTS = "monthly_requests_exceeded"
REASON_DAILY_TOKENS = "daily_tokens_exceeded"
REASON_MONTHLY_TOKENS = "monthly_tokens_exceeded"


@dataclass(frozen=True)
class UsageCounts:
    # Counter values for one project and period.
    requests: int = 0
    tokens_in: int = 0
    tokens_out: int = 0

    @property
    def tokens(self) -> int:
        return self.tokens_in + self.tokens_out

    def plus(self, *, requests: int, tokens_in: int, tokens_out: int) -> UsageCounts:
        return UsageCounts(
            requests=self.requests + requests,
            tokens_in=self.tokens_in + tokens_in,
            tokens_out=self.tokens_out + tokens_out,
        )


def utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def day_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def next_day_start(now: datetime) -> datetime:
    return day_start(now) + timedelta(days=1)


def next_month_start(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def _exceeds(limit: int | None, proposed: int) -> bool:
    # Null ceilings are unlimited.
    return limit is not None and proposed > limit


def evaluate_usage(
    *,
    limits: UsageLimits,
    day: UsageCounts,
    month: UsageCounts,
    requests: int,
    tokens_in: int,
    tokens_out: int,
    now: datetime,
) -> tuple[UsageDecision, UsageCounts, UsageCounts]:
    """Decide a reservation against both periods.

    Returns the decision plus the counters the store must persist. Denied
    reservations leave the counters untouched.
    """
    day_proposed = day.plus(requests=requests, tokens_in=tokens_in, tokens_out=tokens_out)
    month_proposed = month.plus(requests=requests, tokens_in=tokens_in, tokens_out=tokens_out)

    reason: str | None = None
    if _exceeds(limits.daily_requests, day_proposed.requests):
        reason = REASON_DAILY_REQUESTS
    elif _exceeds(limits.monthly_requests, month_proposed.requests):
        reason = REASON_MONTHLY_REQUESTS
    elif _exceeds(limits.daily_tokens, day_proposed.tokens):
        reason = REASON_DAILY_TOKENS
    elif _exceeds(limits.monthly_tokens, month_proposed.tokens):
        reason = REASON_MONTHLY_TOKENS

    allowed = reason is None
    day_after = day_proposed if allowed else day
    month_after = month_proposed if allowed else month
    decision = UsageDecision(
        allowed=allowed,
        reason=reason,
        daily_requests=day_after.requests,
        monthly_requests=month_after.requests,
        daily_tokens=day_after.tokens,
        monthly_tokens=month_after.tokens,
        daily_reset_at=next_day_start(now),
        monthly_reset_at=next_month_start(now),
    )
    return decision, day_after, month_after


def reset_at_for(decision: UsageDecision) -> datetime:
    # Denials point callers at the reset of the period that tripped.
    if decision.reason and decision.reason.startswith("monthly_"):
        return decision.monthly_reset_at
    return decision.daily_reset_at


def retry_after_seconds(reset_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((reset_at - now).total_seconds()))


def isoformat_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
