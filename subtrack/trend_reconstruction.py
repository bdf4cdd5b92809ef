"""Historical spend series rebuilt from current subscription state.

There is no record of when a subscription was paused or cancelled, so a
subscription that is ACTIVE today counts, at today's price, in every period
ending after its ``start_date``. Paused and cancelled subscriptions never
count, not even for periods when they were still running.
"""
from __future__ import annotations

from calendar import month_abbr, month_name
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, List

from subtrack.billing_cycle import monthly_equivalent, weekly_equivalent
from subtrack.currency_conversion import ExchangeRateTable, convert_amount, round_money
from subtrack.subscriptions import Subscription

ZERO = Decimal("0")
DEFAULT_PERIOD_COUNT = 6


class TrendPeriod(str, Enum):
    MONTHLY = "monthly"
    WEEKLY = "weekly"


@dataclass(frozen=True)
class TrendPoint:
    label: str
    full_label: str
    total: Decimal
    count: int
    period_start: date
    period_end: date


def reconstruct_trends(
    subscriptions: Iterable[Subscription],
    display_currency: str,
    period: TrendPeriod | str = TrendPeriod.MONTHLY,
    count: int = DEFAULT_PERIOD_COUNT,
    now: datetime | None = None,
    rate_table: ExchangeRateTable | None = None,
) -> List[TrendPoint]:
    normalized_period = _validate_period(period)
    if count < 1:
        raise ValueError("count must be at least 1.")
    now = now or datetime.now()
    active = [sub for sub in subscriptions if sub.is_active]

    if normalized_period is TrendPeriod.MONTHLY:
        current_start = month_start(now.date())
        step: Callable[[date, int], date] = shift_month
        normalize = monthly_equivalent
        labels = _month_labels
    else:
        current_start = week_start(now.date())
        step = shift_week
        normalize = weekly_equivalent
        labels = _week_labels

    points: List[TrendPoint] = []
    for offset in range(count - 1, -1, -1):
        period_start = step(current_start, -offset)
        period_end = step(period_start, 1)
        members = _members_at(active, period_end)
        total = ZERO
        for sub in members:
            converted = convert_amount(
                sub.price, sub.currency, display_currency, rate_table=rate_table
            )
            total += normalize(converted, sub.billing_cycle)
        label, full_label = labels(period_start, period_end)
        points.append(
            TrendPoint(
                label=label,
                full_label=full_label,
                total=round_money(total),
                count=len(members),
                period_start=period_start,
                period_end=period_end,
            )
        )
    return points


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def week_start(value: date) -> date:
    return value - timedelta(days=value.weekday())


def shift_week(value: date, weeks: int) -> date:
    return value + timedelta(days=7 * weeks)


def _members_at(active: List[Subscription], period_end: date) -> List[Subscription]:
    boundary = datetime.combine(period_end, datetime.min.time())
    return [sub for sub in active if _as_datetime(sub.start_date) <= boundary]


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.combine(value, datetime.min.time())


def _month_labels(period_start: date, period_end: date) -> tuple[str, str]:
    return (
        f"{month_abbr[period_start.month]} {period_start.year}",
        f"{month_name[period_start.month]} {period_start.year}",
    )


def _week_labels(period_start: date, period_end: date) -> tuple[str, str]:
    last_day = period_end - timedelta(days=1)
    return (
        f"{month_abbr[period_start.month]} {period_start.day}",
        f"{month_abbr[period_start.month]} {period_start.day} - "
        f"{month_abbr[last_day.month]} {last_day.day}, {last_day.year}",
    )


def _validate_period(period: TrendPeriod | str) -> TrendPeriod:
    if isinstance(period, TrendPeriod):
        return period
    try:
        return TrendPeriod(period.strip().lower())
    except ValueError as exc:
        raise ValueError("Only monthly or weekly trends are supported.") from exc
