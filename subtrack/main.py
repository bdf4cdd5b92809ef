import logging
import os
from datetime import datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from subtrack.billing_cycle import BillingCycle, calculate_next_billing
from subtrack.currency_conversion import (
    DEFAULT_RATE_TABLE,
    SUPPORTED_CURRENCIES,
    load_rate_table,
    normalize_currency,
)
from subtrack.database import build_engine, init_db, subscriptions, users
from subtrack.notification_engine import (
    generate_all_notifications,
    get_unread_count,
    get_user_notifications,
    mark_all_as_read,
    mark_as_read,
)
from subtrack.spend_aggregator import aggregate_spend, upcoming_bills
from subtrack.subscriptions import (
    CATEGORY_CHART_COLORS,
    CATEGORY_LABELS,
    Category,
    SubscriptionStatus,
    subscription_from_row,
)
from subtrack.trend_reconstruction import DEFAULT_PERIOD_COUNT, reconstruct_trends

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./subtrack.db")
engine = build_engine(database_url)


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "CLP")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
rates_file = os.getenv("EXCHANGE_RATES_FILE")
RATE_TABLE = load_rate_table(rates_file) if rates_file else DEFAULT_RATE_TABLE


@app.on_event("startup")
def startup() -> None:
    init_db(engine)


@app.exception_handler(SQLAlchemyError)
def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    display_currency: str | None = None


class UserSettingsResponse(BaseModel):
    id: int
    email: str
    display_currency: str


def _naive(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


CENT = Decimal("0.01")


def _validate_price(price: Decimal) -> Decimal:
    if price < 0:
        raise ValueError("Price must not be negative.")
    if price != price.quantize(CENT):
        raise ValueError("Price must have at most 2 decimal places.")
    return price


def _validate_enum(enum_cls, value: str, label: str) -> str:
    try:
        return enum_cls(value.strip().upper()).value
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {label}. Use one of: {allowed}.") from exc


class SubscriptionPayload(BaseModel):
    name: str
    description: str | None = None
    price: Decimal
    currency: str | None = None
    billing_cycle: str = BillingCycle.MONTHLY.value
    billing_day: int = 1
    next_billing: datetime | None = None
    start_date: datetime | None = None
    category: str = Category.OTHER.value
    status: str = SubscriptionStatus.ACTIVE.value
    color: str | None = None
    notes: str | None = None
    logo: str | None = None
    url: str | None = None

    @classmethod
    def validate_payload(cls, payload: "SubscriptionPayload") -> "SubscriptionPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Subscription name required.")
        if len(payload.name) > 100:
            raise ValueError("Subscription name must be at most 100 characters.")
        payload.price = _validate_price(payload.price)
        if payload.currency is not None:
            payload.currency = normalize_currency(payload.currency)
        payload.billing_cycle = _validate_enum(BillingCycle, payload.billing_cycle, "billing cycle")
        if not 1 <= payload.billing_day <= 31:
            raise ValueError("Billing day must be between 1 and 31.")
        payload.category = _validate_enum(Category, payload.category, "category")
        payload.status = _validate_enum(SubscriptionStatus, payload.status, "status")
        payload.next_billing = _naive(payload.next_billing)
        payload.start_date = _naive(payload.start_date)
        payload.notes = payload.notes.strip() if payload.notes else None
        payload.logo = payload.logo or None
        payload.url = payload.url or None
        return payload


NON_NULL_FIELDS = (
    "name",
    "price",
    "currency",
    "billing_cycle",
    "billing_day",
    "next_billing",
    "start_date",
    "category",
    "status",
)


class SubscriptionUpdatePayload(BaseModel):
    name: str | None = None
    description: str | None = None
    price: Decimal | None = None
    currency: str | None = None
    billing_cycle: str | None = None
    billing_day: int | None = None
    next_billing: datetime | None = None
    start_date: datetime | None = None
    category: str | None = None
    status: str | None = None
    color: str | None = None
    notes: str | None = None
    logo: str | None = None
    url: str | None = None

    def validated_values(self) -> dict:
        values = self.model_dump(exclude_unset=True)
        if "name" in values:
            values["name"] = (values["name"] or "").strip()
            if not values["name"]:
                raise ValueError("Subscription name required.")
        if values.get("price") is not None:
            values["price"] = _validate_price(values["price"])
        if values.get("currency") is not None:
            values["currency"] = normalize_currency(values["currency"])
        if values.get("billing_cycle") is not None:
            values["billing_cycle"] = _validate_enum(BillingCycle, values["billing_cycle"], "billing cycle")
        if values.get("billing_day") is not None and not 1 <= values["billing_day"] <= 31:
            raise ValueError("Billing day must be between 1 and 31.")
        if values.get("category") is not None:
            values["category"] = _validate_enum(Category, values["category"], "category")
        if values.get("status") is not None:
            values["status"] = _validate_enum(SubscriptionStatus, values["status"], "status")
        for key in ("next_billing", "start_date"):
            if key in values:
                values[key] = _naive(values[key])
        for key in ("logo", "url"):
            if key in values and values[key] == "":
                values[key] = None
        missing = [key for key in NON_NULL_FIELDS if key in values and values[key] is None]
        if missing:
            raise ValueError(f"Fields cannot be null: {', '.join(missing)}.")
        return values


class SubscriptionResponse(BaseModel):
    id: int
    user_id: int
    name: str
    description: str | None = None
    price: Decimal
    currency: str
    billing_cycle: str
    billing_day: int
    next_billing: datetime
    start_date: datetime
    category: str
    status: str
    color: str | None = None
    notes: str | None = None
    logo: str | None = None
    url: str | None = None
    created_at: datetime | None = None


class CategoryTotalResponse(BaseModel):
    label: str
    color: str
    count: int
    total: Decimal


class DashboardStatsResponse(BaseModel):
    total_active: int
    monthly_total: Decimal
    annual_total: Decimal
    display_currency: str
    upcoming_bills: list[SubscriptionResponse]
    by_category: dict[str, CategoryTotalResponse]


class TrendPointResponse(BaseModel):
    label: str
    full_label: str
    total: Decimal
    count: int


class TrendsResponse(BaseModel):
    period: str
    display_currency: str
    trends: list[TrendPointResponse]


class NotificationResponse(BaseModel):
    id: int
    type: str
    title: str
    message: str
    priority: str
    read: bool
    subscription_id: int | None = None
    action_url: str | None = None
    meta: dict | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread_count: int


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def resolve_display_currency(conn, user_id: int, requested: str | None = None) -> str:
    if requested:
        return normalize_currency(requested)
    stored = conn.execute(
        select(users.c.display_currency).where(users.c.id == user_id)
    ).scalar_one_or_none()
    if stored:
        try:
            return normalize_currency(stored)
        except ValueError:
            pass
    return SYSTEM_DEFAULT_CURRENCY


def fetch_subscription_rows(conn, user_id: int):
    return conn.execute(
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .order_by(subscriptions.c.next_billing.asc(), subscriptions.c.id.asc())
    ).mappings().all()


def subscription_response(row) -> SubscriptionResponse:
    return SubscriptionResponse(**{key: row[key] for key in SubscriptionResponse.model_fields})


def notification_response(row) -> NotificationResponse:
    return NotificationResponse(**{key: row[key] for key in NotificationResponse.model_fields})


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    stmt = (
        insert(users)
        .values(email=email, hashed_password=hash_password(payload.password))
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already registered.") from exc
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()
    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid email or password.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="User not found.")
        display_currency = resolve_display_currency(conn, user_id)
    return UserSettingsResponse(id=row["id"], email=row["email"], display_currency=display_currency)


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    if payload.display_currency is None:
        raise HTTPException(status_code=400, detail="Display currency required.")
    try:
        normalized_currency = normalize_currency(payload.display_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        row = conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(display_currency=normalized_currency)
            .returning(users.c.id, users.c.email, users.c.display_currency)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserSettingsResponse(
        id=row["id"], email=row["email"], display_currency=row["display_currency"]
    )


@app.get("/currencies")
def list_currencies() -> list[dict]:
    return [
        {**currency, "rate": str(RATE_TABLE.get_rate(currency["value"]))}
        for currency in SUPPORTED_CURRENCIES
    ]


@app.get("/subscriptions", response_model=list[SubscriptionResponse])
def list_subscriptions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[SubscriptionResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = fetch_subscription_rows(conn, user_id)
    return [subscription_response(row) for row in rows]


@app.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(
    subscription_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SubscriptionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(subscriptions).where(
                subscriptions.c.id == subscription_id,
                subscriptions.c.user_id == user_id,
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return subscription_response(row)


@app.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
def create_subscription(
    payload: SubscriptionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SubscriptionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = SubscriptionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    now = datetime.now()
    next_billing = payload.next_billing or calculate_next_billing(
        payload.billing_day, payload.billing_cycle, now=now
    )
    with engine.begin() as conn:
        currency = payload.currency or resolve_display_currency(conn, user_id)
        row = conn.execute(
            insert(subscriptions)
            .values(
                user_id=user_id,
                name=payload.name,
                description=payload.description,
                price=payload.price,
                currency=currency,
                billing_cycle=payload.billing_cycle,
                billing_day=payload.billing_day,
                next_billing=next_billing,
                start_date=payload.start_date or now,
                category=payload.category,
                status=payload.status,
                color=payload.color,
                notes=payload.notes,
                logo=payload.logo,
                url=payload.url,
            )
            .returning(*subscriptions.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create subscription.")
    return subscription_response(row)


@app.put("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def update_subscription(
    subscription_id: int,
    payload: SubscriptionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SubscriptionResponse:
    user_id = get_user_id(x_user_id)
    try:
        values = payload.validated_values()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    ownership = (subscriptions.c.id == subscription_id, subscriptions.c.user_id == user_id)
    with engine.begin() as conn:
        if values:
            row = conn.execute(
                update(subscriptions)
                .where(*ownership)
                .values(**values)
                .returning(*subscriptions.c)
            ).mappings().first()
        else:
            row = conn.execute(select(subscriptions).where(*ownership)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return subscription_response(row)


@app.delete("/subscriptions/{subscription_id}")
def delete_subscription(
    subscription_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            subscriptions.delete().where(
                subscriptions.c.id == subscription_id,
                subscriptions.c.user_id == user_id,
            )
        )
    if not result.rowcount:
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return {"status": "deleted"}


@app.get("/dashboard/stats", response_model=DashboardStatsResponse)
def dashboard_stats(
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardStatsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        try:
            display_currency = resolve_display_currency(conn, user_id, currency)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        rows = fetch_subscription_rows(conn, user_id)

    records = [subscription_from_row(row) for row in rows]
    rows_by_id = {row["id"]: row for row in rows}

    summary = aggregate_spend(records, display_currency, rate_table=RATE_TABLE)
    return DashboardStatsResponse(
        total_active=summary.total_active,
        monthly_total=summary.monthly_total,
        annual_total=summary.annual_total,
        display_currency=summary.display_currency,
        upcoming_bills=[
            subscription_response(rows_by_id[sub.id]) for sub in upcoming_bills(records)
        ],
        by_category={
            category.value: CategoryTotalResponse(
                label=CATEGORY_LABELS[category],
                color=CATEGORY_CHART_COLORS[category],
                count=totals.count,
                total=totals.total,
            )
            for category, totals in summary.by_category.items()
        },
    )


@app.get("/dashboard/trends", response_model=TrendsResponse)
def dashboard_trends(
    currency: str | None = Query(None),
    period: str = Query("monthly"),
    count: int = Query(DEFAULT_PERIOD_COUNT, ge=1, le=60),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TrendsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        try:
            display_currency = resolve_display_currency(conn, user_id, currency)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        rows = fetch_subscription_rows(conn, user_id)

    records = [subscription_from_row(row) for row in rows]
    try:
        points = reconstruct_trends(
            records, display_currency, period=period, count=count, rate_table=RATE_TABLE
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TrendsResponse(
        period=period.strip().lower(),
        display_currency=display_currency,
        trends=[
            TrendPointResponse(
                label=point.label,
                full_label=point.full_label,
                total=point.total,
                count=point.count,
            )
            for point in points
        ],
    )


@app.get("/notifications", response_model=NotificationListResponse)
def list_notifications(
    unread_only: bool = Query(False),
    generate: bool = Query(True),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> NotificationListResponse:
    user_id = get_user_id(x_user_id)
    now = datetime.now()
    if generate:
        with engine.begin() as conn:
            display_currency = resolve_display_currency(conn, user_id)
        generate_all_notifications(
            engine, user_id, now=now, display_currency=display_currency, rate_table=RATE_TABLE
        )
    rows = get_user_notifications(engine, user_id, unread_only=unread_only, now=now)
    return NotificationListResponse(
        notifications=[notification_response(row) for row in rows],
        unread_count=get_unread_count(engine, user_id, now=now),
    )


@app.patch("/notifications")
def mark_notifications_read(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    updated = mark_all_as_read(engine, user_id)
    return {"status": "ok", "updated": updated}


@app.patch("/notifications/{notification_id}", response_model=NotificationResponse)
def mark_notification_read(
    notification_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> NotificationResponse:
    user_id = get_user_id(x_user_id)
    row = mark_as_read(engine, notification_id, user_id)
    if not row:
        raise HTTPException(status_code=404, detail="Notification not found.")
    return notification_response(row)
