from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from subtrack.billing_cycle import BillingCycle, coerce_billing_cycle


class Category(str, Enum):
    STREAMING = "STREAMING"
    GAMING = "GAMING"
    MUSIC = "MUSIC"
    PRODUCTIVITY = "PRODUCTIVITY"
    CLOUD_STORAGE = "CLOUD_STORAGE"
    EDUCATION = "EDUCATION"
    FITNESS = "FITNESS"
    NEWS = "NEWS"
    SOFTWARE = "SOFTWARE"
    OTHER = "OTHER"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    TRIAL = "TRIAL"


CATEGORY_LABELS: dict[Category, str] = {
    Category.STREAMING: "Streaming",
    Category.GAMING: "Gaming",
    Category.MUSIC: "Music",
    Category.PRODUCTIVITY: "Productivity",
    Category.CLOUD_STORAGE: "Cloud Storage",
    Category.EDUCATION: "Education",
    Category.FITNESS: "Fitness",
    Category.NEWS: "News",
    Category.SOFTWARE: "Software",
    Category.OTHER: "Other",
}

CATEGORY_CHART_COLORS: dict[Category, str] = {
    Category.STREAMING: "#a855f7",
    Category.GAMING: "#ef4444",
    Category.MUSIC: "#ec4899",
    Category.PRODUCTIVITY: "#3b82f6",
    Category.CLOUD_STORAGE: "#06b6d4",
    Category.EDUCATION: "#eab308",
    Category.FITNESS: "#22c55e",
    Category.NEWS: "#f97316",
    Category.SOFTWARE: "#6366f1",
    Category.OTHER: "#6b7280",
}


@dataclass(frozen=True)
class Subscription:
    name: str
    price: Decimal
    currency: str
    next_billing: datetime
    start_date: datetime
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    category: Category = Category.OTHER
    billing_day: int = 1
    id: int | None = None
    user_id: int | None = None
    description: str | None = None
    color: str | None = None
    notes: str | None = None
    logo: str | None = None
    url: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


def subscription_from_row(row: Mapping[str, Any]) -> Subscription:
    """Build a Subscription from a ``subscriptions`` table mapping."""
    price = row["price"]
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        price=price if isinstance(price, Decimal) else Decimal(str(price)),
        currency=row["currency"],
        billing_cycle=coerce_billing_cycle(row["billing_cycle"]),
        billing_day=row["billing_day"],
        next_billing=row["next_billing"],
        start_date=row["start_date"],
        status=SubscriptionStatus(row["status"]),
        category=Category(row["category"]),
        color=row["color"],
        notes=row["notes"],
        logo=row["logo"],
        url=row["url"],
    )
