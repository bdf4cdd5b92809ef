from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List

from subtrack.billing_cycle import monthly_equivalent
from subtrack.currency_conversion import ExchangeRateTable, convert_amount, round_money
from subtrack.subscriptions import Category, Subscription

ZERO = Decimal("0")
UPCOMING_WINDOW_DAYS = 30
UPCOMING_LIMIT = 5


@dataclass(frozen=True)
class CategoryTotal:
    count: int
    total: Decimal


@dataclass(frozen=True)
class SpendSummary:
    total_active: int
    monthly_total: Decimal
    annual_total: Decimal
    display_currency: str
    by_category: Dict[Category, CategoryTotal] = field(default_factory=dict)


def aggregate_spend(
    subscriptions: Iterable[Subscription],
    display_currency: str,
    rate_table: ExchangeRateTable | None = None,
) -> SpendSummary:
    active = [sub for sub in subscriptions if sub.is_active]

    monthly_total = ZERO
    for sub in active:
        converted = convert_amount(sub.price, sub.currency, display_currency, rate_table=rate_table)
        monthly_total += monthly_equivalent(converted, sub.billing_cycle)
    monthly_total = round_money(monthly_total)

    return SpendSummary(
        total_active=len(active),
        monthly_total=monthly_total,
        annual_total=monthly_total * 12,
        display_currency=display_currency,
        by_category=_totals_by_category(active, display_currency, rate_table),
    )


def upcoming_bills(
    subscriptions: Iterable[Subscription],
    now: datetime | None = None,
    days: int = UPCOMING_WINDOW_DAYS,
    limit: int = UPCOMING_LIMIT,
) -> List[Subscription]:
    now = now or datetime.now()
    window_end = now + timedelta(days=days)
    upcoming = [
        sub
        for sub in subscriptions
        if sub.is_active and sub.next_billing is not None and now <= sub.next_billing <= window_end
    ]
    upcoming.sort(key=lambda sub: sub.next_billing)
    return upcoming[:limit]


def _totals_by_category(
    active: List[Subscription],
    display_currency: str,
    rate_table: ExchangeRateTable | None,
) -> Dict[Category, CategoryTotal]:
    # Category totals are converted prices, not cycle-normalized.
    counts: Dict[Category, int] = {}
    totals: Dict[Category, Decimal] = {}
    for sub in active:
        category = Category(sub.category)
        counts[category] = counts.get(category, 0) + 1
        totals[category] = totals.get(category, ZERO) + convert_amount(
            sub.price, sub.currency, display_currency, rate_table=rate_table
        )
    return {
        category: CategoryTotal(count=counts[category], total=round_money(totals[category]))
        for category in counts
    }
