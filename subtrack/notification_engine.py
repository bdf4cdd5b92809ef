"""Payment and trial reminders materialized as notification rows.

Reminders are generated when the notification surface is read; there is no
scheduler. A reminder belongs to one billing cycle of one subscription: the
``(user_id, subscription_id, type, expires_at)`` tuple is unique, and
``expires_at`` is the subscription's ``next_billing`` at generation time.
"""
from __future__ import annotations

from calendar import month_abbr
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
import logging
import math
from typing import Any, Dict, List

from sqlalchemy import and_, case, delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from subtrack.currency_conversion import ExchangeRateTable, convert_amount, format_currency
from subtrack.database import notifications, subscriptions
from subtrack.subscriptions import Subscription, SubscriptionStatus, subscription_from_row

logger = logging.getLogger(__name__)

NOTICE_WINDOW = timedelta(days=2)
SECONDS_PER_DAY = 24 * 60 * 60
DEFAULT_LIMIT = 50


class NotificationType(str, Enum):
    UPCOMING_PAYMENT = "UPCOMING_PAYMENT"
    URGENT_PAYMENT = "URGENT_PAYMENT"
    TRIAL_ENDING = "TRIAL_ENDING"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


REMINDER_TYPES = tuple(kind.value for kind in NotificationType)
PRIORITY_RANK = {Priority.HIGH.value: 3, Priority.MEDIUM.value: 2, Priority.LOW.value: 1}


@dataclass(frozen=True)
class GenerationResult:
    cleaned: int
    payments: int
    trials: int

    @property
    def total(self) -> int:
        return self.payments + self.trials


def days_until(target: datetime, now: datetime) -> int:
    return math.ceil((target - now).total_seconds() / SECONDS_PER_DAY)


def create_notification(
    conn: Connection,
    *,
    user_id: int,
    type: NotificationType | str,
    title: str,
    message: str,
    priority: Priority | str = Priority.LOW,
    subscription_id: int | None = None,
    action_url: str | None = None,
    meta: Dict[str, Any] | None = None,
    expires_at: datetime | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    stmt = (
        insert(notifications)
        .values(
            user_id=user_id,
            subscription_id=subscription_id,
            type=NotificationType(type).value,
            title=title,
            message=message,
            priority=Priority(priority).value,
            read=False,
            action_url=action_url,
            meta=meta,
            expires_at=expires_at,
            created_at=now or datetime.now(),
        )
        .returning(*notifications.c)
    )
    return dict(conn.execute(stmt).mappings().one())


def generate_payment_notifications(
    engine: Engine,
    user_id: int,
    now: datetime | None = None,
    display_currency: str | None = None,
    rate_table: ExchangeRateTable | None = None,
) -> List[Dict[str, Any]]:
    """Create today/tomorrow charge reminders for active subscriptions."""
    return _generate(
        engine,
        user_id,
        SubscriptionStatus.ACTIVE,
        now or datetime.now(),
        display_currency,
        rate_table,
    )


def generate_trial_ending_notifications(
    engine: Engine,
    user_id: int,
    now: datetime | None = None,
    display_currency: str | None = None,
    rate_table: ExchangeRateTable | None = None,
) -> List[Dict[str, Any]]:
    """Create reminders for trials converting to paid today or tomorrow."""
    return _generate(
        engine,
        user_id,
        SubscriptionStatus.TRIAL,
        now or datetime.now(),
        display_currency,
        rate_table,
    )


def cleanup_paid_notifications(
    engine: Engine, user_id: int, now: datetime | None = None
) -> int:
    """Delete reminders whose charge already happened or that sit beyond tomorrow.

    The second rule removes backlog generated under a wider notice window, so it
    must run before each generation pass.
    """
    now = now or datetime.now()
    horizon = datetime.combine(now.date(), time.min) + NOTICE_WINDOW
    stmt = delete(notifications).where(
        notifications.c.user_id == user_id,
        notifications.c.type.in_(REMINDER_TYPES),
        or_(notifications.c.expires_at < now, notifications.c.expires_at > horizon),
    )
    with engine.begin() as conn:
        removed = conn.execute(stmt).rowcount or 0
    if removed:
        logger.info("Removed %d stale notifications for user %s", removed, user_id)
    return removed


def cleanup_expired_notifications(engine: Engine, now: datetime | None = None) -> int:
    now = now or datetime.now()
    stmt = delete(notifications).where(notifications.c.expires_at < now)
    with engine.begin() as conn:
        return conn.execute(stmt).rowcount or 0


def generate_all_notifications(
    engine: Engine,
    user_id: int,
    now: datetime | None = None,
    display_currency: str | None = None,
    rate_table: ExchangeRateTable | None = None,
) -> GenerationResult:
    now = now or datetime.now()
    cleaned = cleanup_paid_notifications(engine, user_id, now=now)
    payments = generate_payment_notifications(
        engine, user_id, now=now, display_currency=display_currency, rate_table=rate_table
    )
    trials = generate_trial_ending_notifications(
        engine, user_id, now=now, display_currency=display_currency, rate_table=rate_table
    )
    result = GenerationResult(cleaned=cleaned, payments=len(payments), trials=len(trials))
    logger.debug(
        "Notification refresh for user %s: cleaned=%d payments=%d trials=%d",
        user_id,
        result.cleaned,
        result.payments,
        result.trials,
    )
    return result


def get_user_notifications(
    engine: Engine,
    user_id: int,
    unread_only: bool = False,
    include_expired: bool = False,
    limit: int = DEFAULT_LIMIT,
    now: datetime | None = None,
) -> List[Dict[str, Any]]:
    now = now or datetime.now()
    conditions = [notifications.c.user_id == user_id]
    if unread_only:
        conditions.append(notifications.c.read.is_(False))
    if not include_expired:
        conditions.append(_not_expired(now))
    priority_rank = case(PRIORITY_RANK, value=notifications.c.priority, else_=0)
    stmt = (
        select(notifications)
        .where(and_(*conditions))
        .order_by(
            notifications.c.expires_at.is_(None).asc(),
            notifications.c.expires_at.asc(),
            priority_rank.desc(),
            notifications.c.created_at.desc(),
            notifications.c.id.desc(),
        )
        .limit(max(1, min(limit or DEFAULT_LIMIT, DEFAULT_LIMIT)))
    )
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [dict(row) for row in rows]


def get_unread_count(engine: Engine, user_id: int, now: datetime | None = None) -> int:
    now = now or datetime.now()
    stmt = select(func.count()).select_from(notifications).where(
        notifications.c.user_id == user_id,
        notifications.c.read.is_(False),
        _not_expired(now),
    )
    with engine.begin() as conn:
        return int(conn.execute(stmt).scalar_one() or 0)


def mark_as_read(
    engine: Engine, notification_id: int, user_id: int
) -> Dict[str, Any] | None:
    """Flag one notification as read; ``None`` when the caller does not own it."""
    with engine.begin() as conn:
        row = conn.execute(
            select(notifications).where(
                notifications.c.id == notification_id,
                notifications.c.user_id == user_id,
            )
        ).mappings().first()
        if not row:
            return None
        if row["read"]:
            return dict(row)
        conn.execute(
            update(notifications)
            .where(notifications.c.id == notification_id, notifications.c.user_id == user_id)
            .values(read=True)
        )
    return {**row, "read": True}


def mark_all_as_read(engine: Engine, user_id: int) -> int:
    with engine.begin() as conn:
        result = conn.execute(
            update(notifications)
            .where(notifications.c.user_id == user_id, notifications.c.read.is_(False))
            .values(read=True)
        )
    return result.rowcount or 0


def _generate(
    engine: Engine,
    user_id: int,
    status: SubscriptionStatus,
    now: datetime,
    display_currency: str | None,
    rate_table: ExchangeRateTable | None,
) -> List[Dict[str, Any]]:
    created: List[Dict[str, Any]] = []
    for sub in _due_subscriptions(engine, user_id, status, now):
        remaining_days = days_until(sub.next_billing, now)
        if remaining_days > 1:
            continue
        if status is SubscriptionStatus.TRIAL:
            kind, priority = NotificationType.TRIAL_ENDING, Priority.HIGH
        elif remaining_days == 0:
            kind, priority = NotificationType.URGENT_PAYMENT, Priority.HIGH
        else:
            kind, priority = NotificationType.UPCOMING_PAYMENT, Priority.MEDIUM

        title, message = _render(kind, sub, remaining_days, display_currency, rate_table)
        try:
            with engine.begin() as conn:
                if _already_notified(conn, user_id, sub, kind):
                    continue
                row = create_notification(
                    conn,
                    user_id=user_id,
                    type=kind,
                    title=title,
                    message=message,
                    priority=priority,
                    subscription_id=sub.id,
                    action_url=f"/subscriptions/{sub.id}",
                    meta={
                        "subscriptionId": sub.id,
                        "amount": str(sub.price),
                        "currency": sub.currency,
                        "daysUntil": remaining_days,
                    },
                    expires_at=sub.next_billing,
                    now=now,
                )
        except IntegrityError:
            logger.warning(
                "Skipping duplicate %s notification for subscription %s", kind.value, sub.id
            )
            continue
        created.append(row)
    return created


def _due_subscriptions(
    engine: Engine, user_id: int, status: SubscriptionStatus, now: datetime
) -> List[Subscription]:
    stmt = (
        select(subscriptions)
        .where(
            subscriptions.c.user_id == user_id,
            subscriptions.c.status == status.value,
            subscriptions.c.next_billing >= now,
            subscriptions.c.next_billing < now + NOTICE_WINDOW,
        )
        .order_by(subscriptions.c.next_billing.asc(), subscriptions.c.id.asc())
    )
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [subscription_from_row(row) for row in rows]


def _already_notified(
    conn: Connection, user_id: int, sub: Subscription, kind: NotificationType
) -> bool:
    existing = conn.execute(
        select(notifications.c.id)
        .where(
            notifications.c.user_id == user_id,
            notifications.c.subscription_id == sub.id,
            notifications.c.type == kind.value,
            notifications.c.expires_at == sub.next_billing,
        )
        .limit(1)
    ).first()
    return existing is not None


def _not_expired(now: datetime):
    return or_(notifications.c.expires_at.is_(None), notifications.c.expires_at >= now)


def _render(
    kind: NotificationType,
    sub: Subscription,
    remaining_days: int,
    display_currency: str | None,
    rate_table: ExchangeRateTable | None,
) -> tuple[str, str]:
    if display_currency and display_currency != sub.currency:
        converted = convert_amount(sub.price, sub.currency, display_currency, rate_table=rate_table)
        amount = format_currency(converted, display_currency)
    else:
        amount = format_currency(sub.price, sub.currency)
    when = "today" if remaining_days == 0 else "tomorrow"
    date_text = f"{month_abbr[sub.next_billing.month]} {sub.next_billing.day}"

    if kind is NotificationType.TRIAL_ENDING:
        return (
            f"Trial ends {when} - {sub.name}",
            f"You will be charged {amount} on {date_text}. Cancel if you no longer need it.",
        )
    if kind is NotificationType.URGENT_PAYMENT:
        return f"Payment today - {sub.name}", f"{amount} will be charged today"
    return f"Upcoming payment - {sub.name}", f"{amount} due {when} ({date_text})"
