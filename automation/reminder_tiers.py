import math

from datetime import datetime, timedelta

from enum import Enum


class ReminderTier(str, Enum):
    """Reminder ladder, highest urgency first. Values match the dispatch log."""

    ONE_HOUR = "1_hour"
    TWELVE_HOURS = "12_hours"
    TWENTY_FOUR_HOURS = "24_hours"
    THREE_DAYS = "3_days"
    SEVEN_DAYS = "7_days"
    TWENTY_FIVE_PERCENT = "25_percent"
    FIFTY_PERCENT = "50_percent"


# Evaluated in order; the first threshold that covers the remaining time wins.
FIXED_THRESHOLDS: tuple[tuple[ReminderTier, timedelta], ...] = (
    (ReminderTier.ONE_HOUR, timedelta(hours=1)),
    (ReminderTier.TWELVE_HOURS, timedelta(hours=12)),
    (ReminderTier.TWENTY_FOUR_HOURS, timedelta(hours=24)),
    (ReminderTier.THREE_DAYS, timedelta(days=3)),
    (ReminderTier.SEVEN_DAYS, timedelta(days=7)),
)

PERCENT_THRESHOLDS: tuple[tuple[ReminderTier, float], ...] = (
    (ReminderTier.TWENTY_FIVE_PERCENT, 25.0),
    (ReminderTier.FIFTY_PERCENT, 50.0),
)

HOUR_TIERS = frozenset(
    {
        ReminderTier.ONE_HOUR,
        ReminderTier.TWELVE_HOURS,
        ReminderTier.TWENTY_FOUR_HOURS,
    }
)

URGENCY_LEVELS = {
    ReminderTier.ONE_HOUR: "critical",
    ReminderTier.TWELVE_HOURS: "critical",
    ReminderTier.TWENTY_FOUR_HOURS: "high",
    ReminderTier.THREE_DAYS: "medium",
    ReminderTier.SEVEN_DAYS: "medium",
    ReminderTier.TWENTY_FIVE_PERCENT: "low",
    ReminderTier.FIFTY_PERCENT: "low",
}


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware, got naive {value!r}")


def _require_positive_interval(interval: timedelta) -> None:
    if interval <= timedelta(0):
        raise ValueError(f"Check-in interval must be positive, got {interval}")


def classify(
    now: datetime,
    deadline: datetime,
    interval: timedelta,
) -> ReminderTier | None:
    """Return the reminder tier due at ``now`` for ``deadline``, or None.

    Fixed-duration tiers always win over the percentage tiers; the
    percentage of ``interval`` left is only consulted once more than seven
    days remain. An expired deadline yields None.

    Raises ValueError for a non-positive interval or a naive timestamp.
    """
    _require_positive_interval(interval)
    _require_aware(now, "now")
    _require_aware(deadline, "deadline")

    remaining = deadline - now
    if remaining <= timedelta(0):
        return None

    for tier, threshold in FIXED_THRESHOLDS:
        if remaining <= threshold:
            return tier

    percent_remaining = (remaining / interval) * 100
    for tier, percent in PERCENT_THRESHOLDS:
        if percent_remaining <= percent:
            return tier

    return None


def scheduled_for(
    tier: ReminderTier,
    deadline: datetime,
    interval: timedelta,
) -> datetime:
    """Instant at which ``tier`` becomes due for ``deadline``."""
    _require_positive_interval(interval)
    for fixed_tier, threshold in FIXED_THRESHOLDS:
        if fixed_tier == tier:
            return deadline - threshold
    for percent_tier, percent in PERCENT_THRESHOLDS:
        if percent_tier == tier:
            return deadline - interval * (percent / 100)
    raise ValueError(f"Unknown reminder tier: {tier!r}")


def urgency_level(tier: ReminderTier) -> str:
    return URGENCY_LEVELS[tier]


def format_time_remaining(tier: ReminderTier, remaining: timedelta) -> str:
    seconds = max(0.0, remaining.total_seconds())
    if tier in HOUR_TIERS:
        hours = max(1, math.ceil(seconds / 3600))
        return f"{hours} hour{'s' if hours != 1 else ''}"
    days = max(1, math.ceil(seconds / 86400))
    return f"{days} day{'s' if days != 1 else ''}"
