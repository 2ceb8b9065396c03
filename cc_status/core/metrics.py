"""
Derived usage metrics.

Turns the active block and the quota estimate into the figures the status
line shows: usage percentage, burn rate with a linear projection to the end
of the block, the reset countdown, and today's cost.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Iterable, Optional

from .blocks import UsageBlock
from .quota import QuotaEstimate
from .records import UsageRecord

NEAR_RESET_MS = 30 * 60 * 1000
BURN_RATE_HIGH = 1000
BURN_RATE_MODERATE = 500

CostFunction = Callable[[UsageRecord], float]


@dataclass(frozen=True)
class UsageSummary:
    """Active block usage against the quota."""
    percentage: float
    tokens_used: int
    tokens_limit: int
    is_over_limit: bool


@dataclass(frozen=True)
class Projection:
    """Linear extrapolation to the end of the active block."""
    total_tokens: int
    total_cost: float
    remaining_minutes: int


@dataclass(frozen=True)
class BurnRateSummary:
    """Consumption rate of the active block."""
    tokens_per_minute: float
    indicator_tokens_per_minute: float  # input + output only
    cost_per_hour: float
    projection: Optional[Projection]


@dataclass(frozen=True)
class SessionTimerSummary:
    """Countdown to the next quota reset."""
    time_remaining_formatted: str
    reset_time_formatted: str
    is_near_reset: bool
    time_remaining_ms: int


@dataclass(frozen=True)
class DailyCostSummary:
    cost: float


def compute_usage_summary(block: Optional[UsageBlock], quota: QuotaEstimate) -> UsageSummary:
    """Usage of the active block as a share of the quota.

    No active block means zero usage. The percentage is rounded to one
    decimal; the over-limit flag uses the unrounded value.
    """
    tokens_used = block.total_tokens if block is not None else 0
    limit = quota.limit
    percentage = 100.0 * tokens_used / limit if limit > 0 else 0.0
    return UsageSummary(
        percentage=round(percentage, 1),
        tokens_used=tokens_used,
        tokens_limit=limit,
        is_over_limit=percentage > 100,
    )


def _elapsed_minutes(block: Optional[UsageBlock]) -> Optional[float]:
    if block is None or len(block.records) < 2:
        return None
    minutes = (block.last_record_time - block.first_record_time).total_seconds() / 60
    if minutes <= 0:
        return None
    return minutes


def compute_tokens_per_minute(block: Optional[UsageBlock]) -> Optional[float]:
    """All-token burn rate between the first and last record, or None.

    None (never NaN or infinity) with fewer than two records or no elapsed time.
    """
    minutes = _elapsed_minutes(block)
    if minutes is None:
        return None
    return block.total_tokens / minutes


def compute_indicator_tokens_per_minute(block: Optional[UsageBlock]) -> Optional[float]:
    """Burn rate over input and output tokens only, for threshold coloring."""
    minutes = _elapsed_minutes(block)
    if minutes is None:
        return None
    return block.tokens.fresh_tokens / minutes


def compute_projection(
    block: UsageBlock,
    now: datetime,
    tokens_per_minute: Optional[float],
    cost_per_minute: float,
    current_cost: float,
) -> Optional[Projection]:
    """Extend the current rate to the block's fixed end time."""
    if tokens_per_minute is None:
        return None
    remaining_minutes = max(0.0, (block.end_time - now).total_seconds() / 60)
    return Projection(
        total_tokens=int(round(block.total_tokens + tokens_per_minute * remaining_minutes)),
        total_cost=current_cost + cost_per_minute * remaining_minutes,
        remaining_minutes=int(round(remaining_minutes)),
    )


def compute_burn_rate(
    block: Optional[UsageBlock],
    now: datetime,
    cost_of: CostFunction,
) -> Optional[BurnRateSummary]:
    """Burn rate summary for the active block.

    Args:
        block: Active block, or None
        now: Current instant
        cost_of: Cost of one record (recorded or priced)

    Returns:
        BurnRateSummary, or None when the rate is undefined
    """
    tokens_per_minute = compute_tokens_per_minute(block)
    if tokens_per_minute is None:
        return None

    minutes = _elapsed_minutes(block)
    current_cost = sum(cost_of(record) for record in block.records)
    cost_per_minute = current_cost / minutes

    return BurnRateSummary(
        tokens_per_minute=tokens_per_minute,
        indicator_tokens_per_minute=compute_indicator_tokens_per_minute(block),
        cost_per_hour=cost_per_minute * 60,
        projection=compute_projection(block, now, tokens_per_minute, cost_per_minute, current_cost),
    )


def burn_rate_level(indicator_tokens_per_minute: Optional[float]) -> str:
    """Classify an indicator burn rate as "high", "moderate" or "normal"."""
    if indicator_tokens_per_minute is None:
        return "normal"
    if indicator_tokens_per_minute >= BURN_RATE_HIGH:
        return "high"
    if indicator_tokens_per_minute >= BURN_RATE_MODERATE:
        return "moderate"
    return "normal"


def reset_countdown_ms(reset_at: datetime, now: datetime) -> int:
    """Milliseconds until ``reset_at``, floored at zero."""
    return max(0, int((reset_at - now).total_seconds() * 1000))


def format_time_remaining(milliseconds: int) -> str:
    """Compact duration: "0m", "45m", "4h", "2h 5m"."""
    minutes = int(max(0, milliseconds) / 60000 + 0.5)
    if minutes <= 0:
        return "0m"
    hours, rest = divmod(minutes, 60)
    if hours == 0:
        return f"{minutes}m"
    if rest == 0:
        return f"{hours}h"
    return f"{hours}h {rest}m"


def format_reset_time(reset_at: datetime, tz: Optional[tzinfo] = None) -> str:
    """Hour of the reset in local time, e.g. "6PM"."""
    local = reset_at.astimezone(tz)
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}{suffix}"


def resolve_reset_time(
    block: Optional[UsageBlock],
    now: datetime,
    override: Optional[datetime] = None,
) -> Optional[datetime]:
    """Pick the instant the current window resets.

    Configured override, then the latest future reset time reported by a
    record of the active block, then the block's fixed end.
    """
    if override is not None:
        return override
    if block is None:
        return None

    reported = [
        record.limit_reset_time
        for record in block.records
        if record.limit_reset_time is not None and record.limit_reset_time > now
    ]
    if reported:
        return max(reported)
    return block.end_time


def compute_session_timer(
    reset_at: Optional[datetime],
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> Optional[SessionTimerSummary]:
    if reset_at is None:
        return None
    remaining = reset_countdown_ms(reset_at, now)
    return SessionTimerSummary(
        time_remaining_formatted=format_time_remaining(remaining),
        reset_time_formatted=format_reset_time(reset_at, tz),
        is_near_reset=remaining < NEAR_RESET_MS,
        time_remaining_ms=remaining,
    )


def start_of_day(now: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Local midnight of the day containing ``now``."""
    local = now.astimezone(tz)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def compute_daily_cost(
    records: Iterable[UsageRecord],
    now: datetime,
    cost_of: CostFunction,
    tz: Optional[tzinfo] = None,
) -> DailyCostSummary:
    """Total cost of the records stamped on the current local day."""
    day_start = start_of_day(now, tz)
    day_end = day_start + timedelta(days=1)
    total = 0.0
    for record in records:
        if record.is_sidechain:
            continue
        if day_start <= record.timestamp < day_end:
            total += cost_of(record)
    return DailyCostSummary(cost=total)
