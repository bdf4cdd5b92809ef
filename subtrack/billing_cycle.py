from __future__ import annotations

from calendar import monthrange
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
import logging

logger = logging.getLogger(__name__)

WEEKS_PER_MONTH = Decimal("4.33")
WEEKLY_DAYS = 7


class BillingCycle(str, Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMI_ANNUAL = "SEMI_ANNUAL"
    ANNUAL = "ANNUAL"


CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.SEMI_ANNUAL: 6,
    BillingCycle.ANNUAL: 12,
}


def coerce_billing_cycle(value: BillingCycle | str) -> BillingCycle:
    """Map a raw cycle value onto the enum.

    Unrecognised values are billed as monthly so stored rows with a legacy
    cycle still count towards totals.
    """
    if isinstance(value, BillingCycle):
        return value
    normalized = "".join(ch for ch in str(value).strip().upper() if ch.isalnum() or ch == "_")
    normalized = normalized.replace("SEMIANNUAL", "SEMI_ANNUAL")
    try:
        return BillingCycle(normalized)
    except ValueError:
        logger.warning("Unknown billing cycle %r, treating it as MONTHLY", value)
        return BillingCycle.MONTHLY


def monthly_equivalent(amount: Decimal, cycle: BillingCycle | str) -> Decimal:
    cycle = coerce_billing_cycle(cycle)
    if cycle is BillingCycle.WEEKLY:
        return amount * WEEKS_PER_MONTH
    if cycle is BillingCycle.MONTHLY:
        return amount
    if cycle is BillingCycle.QUARTERLY:
        return amount / 3
    if cycle is BillingCycle.SEMI_ANNUAL:
        return amount / 6
    if cycle is BillingCycle.ANNUAL:
        return amount / 12
    raise ValueError(f"Unsupported billing cycle: {cycle}")


def weekly_equivalent(amount: Decimal, cycle: BillingCycle | str) -> Decimal:
    cycle = coerce_billing_cycle(cycle)
    if cycle is BillingCycle.WEEKLY:
        return amount
    return monthly_equivalent(amount, cycle) / WEEKS_PER_MONTH


def calculate_next_billing(
    billing_day: int,
    cycle: BillingCycle | str,
    now: datetime | None = None,
) -> datetime:
    """First charge date for a new subscription billed on ``billing_day``."""
    if not 1 <= billing_day <= 31:
        raise ValueError("billing_day must be between 1 and 31.")
    cycle = coerce_billing_cycle(cycle)
    now = now or datetime.now()
    candidate = _clamped(now.year, now.month, billing_day)
    if candidate > now:
        return candidate
    if cycle is BillingCycle.WEEKLY:
        return candidate + timedelta(days=WEEKLY_DAYS)
    return add_months(candidate, CYCLE_MONTHS[cycle], billing_day)


def add_months(value: datetime, months: int, anchor_day: int) -> datetime:
    total_month = value.month - 1 + months
    year = value.year + total_month // 12
    month = total_month % 12 + 1
    return _clamped(year, month, anchor_day)


def _clamped(year: int, month: int, day: int) -> datetime:
    last_day = monthrange(year, month)[1]
    return datetime(year, month, min(day, last_day))
