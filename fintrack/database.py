from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
    true,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from fintrack.config import get_settings
from fintrack.currency_conversion import CachedRates, RateStoreError

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(255), nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

projects = Table(
    "projects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("description", String(1000)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

labels = Table(
    "labels",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("color", String(20), nullable=False, server_default="#6366f1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

# label_id and subscription_id are weak references: deleting either side
# leaves the transaction pointing at a missing row.
transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("project_id", Integer, ForeignKey("projects.id"), nullable=False, index=True),
    Column("type", String(20), nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", String(1000)),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default="ILS"),
    Column("date", DateTime, nullable=False, index=True),
    Column("local_date", Date),
    Column("label_id", Integer),
    Column("subscription_id", Integer, index=True),
    Column("receipts", JSON, nullable=False, default=list),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("project_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("description", String(1000)),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default="ILS"),
    Column("start_date", Date, nullable=False),
    Column("frequency_value", Integer, nullable=False, server_default="1"),
    Column("frequency_unit", String(10), nullable=False, server_default="months"),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("skipped_dates", JSON, nullable=False, default=list),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

user_settings = Table(
    "settings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("key", String(100), nullable=False),
    Column("value", JSON, nullable=False),
    UniqueConstraint("user_id", "key", name="uq_settings_user_key"),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("base_currency", String(3), primary_key=True),
    Column("rates", JSON, nullable=False),
    Column("fetched_at", DateTime, nullable=False),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **engine_kwargs)


@lru_cache
def get_engine() -> Engine:
    return build_engine(get_settings().database_url)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


class DatabaseRateStore:
    """Persistent tier of the exchange-rate cache, one row per base currency."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def load(self, base_currency: str) -> CachedRates | None:
        try:
            with self._engine.begin() as conn:
                row = conn.execute(
                    select(exchange_rates.c.rates, exchange_rates.c.fetched_at).where(
                        exchange_rates.c.base_currency == base_currency
                    )
                ).mappings().first()
        except SQLAlchemyError as exc:
            raise RateStoreError(str(exc)) from exc
        if not row:
            return None
        try:
            rates = {code: Decimal(str(value)) for code, value in row["rates"].items()}
        except (AttributeError, InvalidOperation) as exc:
            raise RateStoreError(f"Corrupt cached rates for {base_currency}") from exc
        fetched_at = row["fetched_at"]
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
        return CachedRates(rates=rates, fetched_at=fetched_at)

    def save(self, base_currency: str, entry: CachedRates) -> None:
        values = {
            "rates": {code: str(value) for code, value in entry.rates.items()},
            "fetched_at": as_naive_utc(entry.fetched_at),
        }
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(exchange_rates)
                    .where(exchange_rates.c.base_currency == base_currency)
                    .values(**values)
                )
                if result.rowcount == 0:
                    conn.execute(
                        insert(exchange_rates).values(base_currency=base_currency, **values)
                    )
        except SQLAlchemyError as exc:
            raise RateStoreError(str(exc)) from exc


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
