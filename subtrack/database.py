from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("display_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("description", String(500)),
    Column("price", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("billing_cycle", String(20), nullable=False, server_default="MONTHLY"),
    Column("billing_day", Integer, nullable=False, server_default="1"),
    Column("next_billing", DateTime, nullable=False),
    Column("start_date", DateTime, nullable=False),
    Column("category", String(20), nullable=False, server_default="OTHER"),
    Column("status", String(20), nullable=False, server_default="ACTIVE"),
    Column("color", String(20)),
    Column("notes", String(1000)),
    Column("logo", String(500)),
    Column("url", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Index("ix_subscriptions_user_status", "user_id", "status"),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("subscription_id", Integer, ForeignKey("subscriptions.id", ondelete="CASCADE")),
    Column("type", String(30), nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", String(500), nullable=False),
    Column("priority", String(10), nullable=False, server_default="LOW"),
    Column("read", Boolean, nullable=False, server_default="0"),
    Column("action_url", String(255)),
    Column("meta", JSON),
    Column("expires_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "user_id",
        "subscription_id",
        "type",
        "expires_at",
        name="uq_notifications_cycle",
    ),
    Index("ix_notifications_user_read", "user_id", "read"),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if database_url.startswith("sqlite"):
        # SQLite only honours ON DELETE CASCADE with foreign keys switched on.
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
