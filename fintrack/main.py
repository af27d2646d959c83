import base64
import binascii
import re
from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
import structlog

from fintrack.auth import (
    OwnerScope,
    create_access_token,
    current_owner,
    current_user_id,
    hash_password,
    verify_password,
)
from fintrack.config import Settings, get_settings
from fintrack.currency_conversion import (
    ExchangeRateProvider,
    convert_amount,
    normalize_currency,
    sum_converted_amounts,
    validate_currency,
)
from fintrack.database import (
    DatabaseRateStore,
    as_naive_utc,
    get_engine,
    init_db,
    labels,
    projects,
    subscriptions,
    transactions,
    user_settings,
    users,
)
from fintrack.errors import describe_validation_errors, register_error_handlers
from fintrack.logging_config import configure_logging
from fintrack.reconciliation import (
    LinkedTransaction,
    SubscriptionSchedule,
    draft_payment,
    find_missing_payments,
    validate_frequency_unit,
)

configure_logging(get_settings().log_level)
logger = structlog.get_logger(__name__)

app = FastAPI(title="fintrack")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

router = APIRouter(prefix="/api")

DEFAULT_LABEL_COLOR = "#6366f1"
DEFAULT_LABELS = [
    ("Food", "#f59e0b"),
    ("Transport", "#3b82f6"),
    ("Shopping", "#8b5cf6"),
    ("Salary", "#10b981"),
    ("Other", "#6b7280"),
]
DISPLAY_CURRENCY_KEY = "displayCurrency"
HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")
DATA_URL_PREFIX = re.compile(r"^data:[^;,]*;base64,")


@lru_cache
def get_rate_provider() -> ExchangeRateProvider:
    settings = get_settings()
    return ExchangeRateProvider(
        store=DatabaseRateStore(get_engine()),
        base_url=settings.rates_url,
        historical_url=settings.historical_rates_url,
    )


@app.on_event("startup")
def on_startup() -> None:
    init_db(get_engine())
    logger.info("startup", environment=get_settings().environment)


def _camel(value: str) -> str:
    head, *rest = value.split("_")
    return head + "".join(part.title() for part in rest)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=_camel, populate_by_name=True)


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Transaction type must be 'income' or 'expense'.")
        return normalized


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _error_message(exc: ValueError) -> str:
    if isinstance(exc, ValidationError):
        message, _ = describe_validation_errors(exc.errors())
        return message
    return str(exc)


class RegisterPayload(ApiModel):
    name: str
    email: str
    password: str

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.name = payload.name.strip()
        payload.email = payload.email.strip().lower()
        if not payload.name:
            raise ValueError("Name required.")
        if "@" not in payload.email:
            raise ValueError("A valid email is required.")
        if len(payload.password) < 6:
            raise ValueError("Password must be at least 6 characters.")
        return payload


class LoginPayload(ApiModel):
    email: str
    password: str


class UserResponse(ApiModel):
    id: int
    name: str
    email: str
    created_at: datetime | None = None


class AuthResponse(ApiModel):
    token: str
    user: UserResponse


class ProjectPayload(ApiModel):
    name: str
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ProjectPayload") -> "ProjectPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Project name required.")
        payload.description = _strip_or_none(payload.description)
        return payload


class ProjectResponse(ApiModel):
    id: int
    user_id: int
    name: str
    description: str | None = None
    created_at: datetime | None = None


class LabelPayload(ApiModel):
    name: str
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "LabelPayload") -> "LabelPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Label name required.")
        payload.color = (payload.color or DEFAULT_LABEL_COLOR).strip()
        if not HEX_COLOR.match(payload.color):
            raise ValueError("Label color must be a hex color like #6366f1.")
        return payload


class LabelResponse(ApiModel):
    id: int
    user_id: int
    name: str
    color: str
    created_at: datetime | None = None


class LabelSummary(ApiModel):
    id: int
    name: str
    color: str


class InitLabelsResponse(ApiModel):
    created: bool
    labels: list[LabelResponse]


class ReceiptPayload(ApiModel):
    name: str
    type: str
    size: int
    data: str

    @classmethod
    def validate_receipt(cls, receipt: "ReceiptPayload", max_bytes: int) -> "ReceiptPayload":
        receipt.name = receipt.name.strip()
        if not receipt.name:
            raise ValueError("Receipt name required.")
        if receipt.size < 0:
            raise ValueError("Receipt size must be zero or greater.")
        if receipt.size > max_bytes:
            raise ValueError(f"Receipt '{receipt.name}' exceeds {max_bytes} bytes.")
        encoded = DATA_URL_PREFIX.sub("", receipt.data, count=1)
        try:
            decoded = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Receipt '{receipt.name}' is not valid base64.") from exc
        if len(decoded) > max_bytes:
            raise ValueError(f"Receipt '{receipt.name}' exceeds {max_bytes} bytes.")
        return receipt


class TransactionPayload(ApiModel):
    project_id: int
    type: str
    name: str
    description: str | None = None
    amount: Decimal
    currency: str | None = None
    date: datetime
    local_date: date | None = None
    label_id: int | None = None
    subscription_id: int | None = None
    receipts: list[ReceiptPayload] = Field(default_factory=list)

    @classmethod
    def validate_payload(
        cls, payload: "TransactionPayload", max_receipt_bytes: int
    ) -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Transaction name required.")
        payload.description = _strip_or_none(payload.description)
        if payload.amount < 0:
            raise ValueError("Amount must be zero or greater.")
        payload.currency = validate_currency(payload.currency) if payload.currency else None
        if payload.local_date is None:
            payload.local_date = payload.date.date()
        payload.date = as_naive_utc(payload.date)
        payload.receipts = [
            ReceiptPayload.validate_receipt(receipt, max_receipt_bytes)
            for receipt in payload.receipts
        ]
        return payload


class TransactionUpdatePayload(ApiModel):
    project_id: int | None = None
    type: str | None = None
    name: str | None = None
    description: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    # Declared before `date`, whose default shadows the type name below it.
    local_date: date | None = None
    date: datetime | None = None
    label_id: int | None = None
    subscription_id: int | None = None
    receipts: list[ReceiptPayload] | None = None


class TransactionResponse(ApiModel):
    id: int
    user_id: int
    project_id: int
    type: str
    name: str
    description: str | None = None
    amount: Decimal
    currency: str
    date: datetime
    local_date: date | None = None
    label_id: int | None = None
    label: LabelSummary | None = None
    subscription_id: int | None = None
    receipts: list[ReceiptPayload] = Field(default_factory=list)
    created_at: datetime | None = None


class ProjectStatsResponse(ApiModel):
    income: Decimal
    expenses: Decimal
    total: Decimal
    transaction_count: int
    currency: str | None = None
    source_currencies: list[str] = Field(default_factory=list)


class SubscriptionPayload(ApiModel):
    project_id: int
    name: str
    description: str | None = None
    amount: Decimal
    currency: str | None = None
    start_date: date
    frequency_value: int
    frequency_unit: str
    is_active: bool = True

    @classmethod
    def validate_payload(cls, payload: "SubscriptionPayload") -> "SubscriptionPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Subscription name required.")
        payload.description = _strip_or_none(payload.description)
        if payload.amount < 0:
            raise ValueError("Amount must be zero or greater.")
        payload.currency = validate_currency(payload.currency) if payload.currency else None
        if payload.frequency_value < 1:
            raise ValueError("Frequency value must be at least 1.")
        payload.frequency_unit = validate_frequency_unit(payload.frequency_unit)
        return payload


class SubscriptionUpdatePayload(ApiModel):
    project_id: int | None = None
    name: str | None = None
    description: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    start_date: date | None = None
    frequency_value: int | None = None
    frequency_unit: str | None = None
    is_active: bool | None = None


class SkipPayload(ApiModel):
    date: date


class SubscriptionResponse(ApiModel):
    id: int
    user_id: int
    project_id: int
    name: str
    description: str | None = None
    amount: Decimal
    currency: str
    start_date: date
    frequency_value: int
    frequency_unit: str
    is_active: bool
    skipped_dates: list[date] = Field(default_factory=list)
    created_at: datetime | None = None


class PaymentDraftResponse(ApiModel):
    project_id: int
    subscription_id: int
    type: str
    name: str
    description: str
    amount: Decimal
    currency: str
    date: date


class MissingPaymentResponse(ApiModel):
    subscription_id: int
    subscription_name: str
    due_date: date
    amount: Decimal
    currency: str
    draft: PaymentDraftResponse


class SettingValuePayload(ApiModel):
    value: Any = None


class SettingResponse(ApiModel):
    key: str
    value: Any


class InitSettingsResponse(ApiModel):
    created: bool
    settings: dict[str, Any]


class RatesResponse(ApiModel):
    base: str
    as_of: date | None = Field(None, alias="date")
    rates: dict[str, Decimal]


class ConversionResponse(ApiModel):
    amount: Decimal
    source_currency: str
    target_currency: str
    converted_amount: Decimal
    as_of: date | None = Field(None, alias="date")


def _user_response(row) -> UserResponse:
    return UserResponse(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        created_at=row["created_at"],
    )


def _project_response(row) -> ProjectResponse:
    return ProjectResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        created_at=row["created_at"],
    )


def _label_response(row) -> LabelResponse:
    return LabelResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        color=row["color"],
        created_at=row["created_at"],
    )


def _transaction_query(owner: OwnerScope):
    join_stmt = transactions.outerjoin(
        labels,
        (labels.c.id == transactions.c.label_id) & (labels.c.user_id == transactions.c.user_id),
    )
    return owner.select(
        transactions,
        transactions,
        labels.c.name.label("label_name"),
        labels.c.color.label("label_color"),
    ).select_from(join_stmt)


def _transaction_response(row) -> TransactionResponse:
    label = None
    if row["label_id"] is not None and row["label_name"] is not None:
        label = LabelSummary(id=row["label_id"], name=row["label_name"], color=row["label_color"])
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        project_id=row["project_id"],
        type=row["type"],
        name=row["name"],
        description=row["description"],
        amount=row["amount"],
        currency=row["currency"],
        date=row["date"],
        local_date=row["local_date"],
        label_id=row["label_id"],
        label=label,
        subscription_id=row["subscription_id"],
        receipts=row["receipts"] or [],
        created_at=row["created_at"],
    )


def _fetch_transaction(conn, owner: OwnerScope, transaction_id: int):
    return conn.execute(
        _transaction_query(owner).where(transactions.c.id == transaction_id)
    ).mappings().first()


def _subscription_response(row) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=row["id"],
        user_id=row["user_id"],
        project_id=row["project_id"],
        name=row["name"],
        description=row["description"],
        amount=row["amount"],
        currency=row["currency"],
        start_date=row["start_date"],
        frequency_value=row["frequency_value"],
        frequency_unit=row["frequency_unit"],
        is_active=row["is_active"],
        skipped_dates=row["skipped_dates"] or [],
        created_at=row["created_at"],
    )


def _subscription_schedule(row) -> SubscriptionSchedule:
    return SubscriptionSchedule(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        amount=row["amount"],
        start_date=row["start_date"],
        frequency_value=row["frequency_value"],
        frequency_unit=row["frequency_unit"],
        currency=row["currency"],
        is_active=row["is_active"],
        skipped_dates=frozenset(date.fromisoformat(value) for value in row["skipped_dates"] or []),
    )


def _require_references(
    conn,
    owner: OwnerScope,
    project_id: int,
    label_id: int | None = None,
    subscription_id: int | None = None,
) -> None:
    if not owner.exists(conn, projects, project_id):
        raise HTTPException(status_code=404, detail="Project not found.")
    if label_id is not None and not owner.exists(conn, labels, label_id):
        raise HTTPException(status_code=404, detail="Label not found.")
    if subscription_id is not None and not owner.exists(conn, subscriptions, subscription_id):
        raise HTTPException(status_code=404, detail="Subscription not found.")


def _resolve_currency(value: str | None, fallback: str) -> str:
    return value or fallback


def _validate_setting_value(key: str, value: Any) -> Any:
    if value is None:
        raise ValueError("Setting value required.")
    if key == DISPLAY_CURRENCY_KEY:
        if not isinstance(value, str):
            raise ValueError("Display currency must be a currency code.")
        return validate_currency(value)
    return value


@router.get("/health")
def health() -> dict:
    return {"ok": True}


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    payload: RegisterPayload,
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> AuthResponse:
    try:
        payload = RegisterPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(users)
        .values(
            name=payload.name,
            email=payload.email,
            hashed_password=hash_password(payload.password),
        )
        .returning(users.c.id, users.c.name, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("user_registered", user_id=row["id"])
    return AuthResponse(token=create_access_token(row["id"], settings), user=_user_response(row))


@router.post("/auth/login", response_model=AuthResponse)
def login(
    payload: LoginPayload,
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> AuthResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        logger.info("login_failed", email=email)
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    logger.info("user_logged_in", user_id=row["id"])
    return AuthResponse(token=create_access_token(row["id"], settings), user=_user_response(row))


@router.get("/auth/me", response_model=UserResponse)
def me(
    user_id: int = Depends(current_user_id),
    engine: Engine = Depends(get_engine),
) -> UserResponse:
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return _user_response(row)


@router.get("/projects", response_model=list[ProjectResponse])
def list_projects(
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> list[ProjectResponse]:
    with engine.begin() as conn:
        rows = conn.execute(
            owner.select(projects).order_by(projects.c.created_at.desc(), projects.c.id.desc())
        ).mappings().all()
    return [_project_response(row) for row in rows]


@router.get("/projects/{project_id}", response_model=ProjectResponse)
def get_project(
    project_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> ProjectResponse:
    with engine.begin() as conn:
        row = owner.get(conn, projects, project_id)
    if not row:
        raise HTTPException(status_code=404, detail="Project not found.")
    return _project_response(row)


@router.post("/projects", response_model=ProjectResponse, status_code=201)
def create_project(
    payload: ProjectPayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> ProjectResponse:
    try:
        payload = ProjectPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = owner.insert(projects, name=payload.name, description=payload.description).returning(
        *projects.c
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create project.")
    return _project_response(row)


@router.put("/projects/{project_id}", response_model=ProjectResponse)
def update_project(
    project_id: int,
    payload: ProjectPayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> ProjectResponse:
    try:
        payload = ProjectPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        owner.update(projects, projects.c.id == project_id)
        .values(name=payload.name, description=payload.description)
        .returning(*projects.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Project not found.")
    return _project_response(row)


@router.delete("/projects/{project_id}")
def delete_project(
    project_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> dict:
    with engine.begin() as conn:
        if not owner.exists(conn, projects, project_id):
            raise HTTPException(status_code=404, detail="Project not found.")
        deleted_transactions = conn.execute(
            owner.delete(transactions, transactions.c.project_id == project_id)
        ).rowcount
        deleted_subscriptions = 0
        if settings.cascade_subscriptions:
            deleted_subscriptions = conn.execute(
                owner.delete(subscriptions, subscriptions.c.project_id == project_id)
            ).rowcount
        conn.execute(owner.delete(projects, projects.c.id == project_id))

    logger.info(
        "project_deleted",
        project_id=project_id,
        user_id=owner.user_id,
        deleted_transactions=deleted_transactions,
        deleted_subscriptions=deleted_subscriptions,
    )
    return {
        "status": "deleted",
        "deletedTransactions": deleted_transactions,
        "deletedSubscriptions": deleted_subscriptions,
    }


@router.get("/labels", response_model=list[LabelResponse])
def list_labels(
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> list[LabelResponse]:
    with engine.begin() as conn:
        rows = conn.execute(
            owner.select(labels).order_by(labels.c.created_at.desc(), labels.c.id.desc())
        ).mappings().all()
    return [_label_response(row) for row in rows]


@router.post("/labels/init", response_model=InitLabelsResponse)
def init_labels(
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> InitLabelsResponse:
    created = False
    with engine.begin() as conn:
        existing = conn.execute(owner.select(labels, labels.c.id).limit(1)).first()
        if not existing:
            conn.execute(
                insert(labels),
                [
                    {"user_id": owner.user_id, "name": name, "color": color}
                    for name, color in DEFAULT_LABELS
                ],
            )
            created = True
        rows = conn.execute(owner.select(labels).order_by(labels.c.id.asc())).mappings().all()
    return InitLabelsResponse(created=created, labels=[_label_response(row) for row in rows])


@router.get("/labels/{label_id}", response_model=LabelResponse)
def get_label(
    label_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> LabelResponse:
    with engine.begin() as conn:
        row = owner.get(conn, labels, label_id)
    if not row:
        raise HTTPException(status_code=404, detail="Label not found.")
    return _label_response(row)


@router.post("/labels", response_model=LabelResponse, status_code=201)
def create_label(
    payload: LabelPayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> LabelResponse:
    try:
        payload = LabelPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = owner.insert(labels, name=payload.name, color=payload.color).returning(*labels.c)
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create label.")
    return _label_response(row)


@router.put("/labels/{label_id}", response_model=LabelResponse)
def update_label(
    label_id: int,
    payload: LabelPayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> LabelResponse:
    try:
        payload = LabelPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        owner.update(labels, labels.c.id == label_id)
        .values(name=payload.name, color=payload.color)
        .returning(*labels.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Label not found.")
    return _label_response(row)


@router.delete("/labels/{label_id}")
def delete_label(
    label_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        result = conn.execute(owner.delete(labels, labels.c.id == label_id))
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Label not found.")
    return {"status": "deleted"}


@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> list[TransactionResponse]:
    with engine.begin() as conn:
        rows = conn.execute(
            _transaction_query(owner).order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [_transaction_response(row) for row in rows]


@router.get("/transactions/project/{project_id}", response_model=list[TransactionResponse])
def list_project_transactions(
    project_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> list[TransactionResponse]:
    with engine.begin() as conn:
        rows = conn.execute(
            _transaction_query(owner)
            .where(transactions.c.project_id == project_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [_transaction_response(row) for row in rows]


@router.get("/transactions/stats/{project_id}", response_model=ProjectStatsResponse)
def project_stats(
    project_id: int,
    currency: str | None = Query(None),
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
    rate_provider: ExchangeRateProvider = Depends(get_rate_provider),
) -> ProjectStatsResponse:
    target_currency = None
    if currency:
        try:
            target_currency = normalize_currency(currency)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    total_expr = func.coalesce(func.sum(transactions.c.amount), 0).label("total")
    stmt = (
        owner.select(
            transactions,
            transactions.c.type,
            transactions.c.currency,
            total_expr,
            func.count().label("count"),
        )
        .where(transactions.c.project_id == project_id)
        .group_by(transactions.c.type, transactions.c.currency)
    )
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()

    totals_by_type: dict[str, dict[str, Decimal]] = {"income": {}, "expense": {}}
    transaction_count = 0
    for row in rows:
        if row["type"] not in totals_by_type:
            continue
        total = row["total"] if isinstance(row["total"], Decimal) else Decimal(str(row["total"]))
        totals_by_type[row["type"]][row["currency"]] = total
        transaction_count += int(row["count"])

    source_currencies = sorted(set(totals_by_type["income"]) | set(totals_by_type["expense"]))
    if target_currency:
        income, _ = sum_converted_amounts(totals_by_type["income"], target_currency, rate_provider)
        expenses, _ = sum_converted_amounts(totals_by_type["expense"], target_currency, rate_provider)
    else:
        income = sum(totals_by_type["income"].values(), Decimal("0"))
        expenses = sum(totals_by_type["expense"].values(), Decimal("0"))

    return ProjectStatsResponse(
        income=income,
        expenses=expenses,
        total=income - expenses,
        transaction_count=transaction_count,
        currency=target_currency,
        source_currencies=source_currencies,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> TransactionResponse:
    with engine.begin() as conn:
        row = _fetch_transaction(conn, owner, transaction_id)
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return _transaction_response(row)


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> TransactionResponse:
    try:
        payload = TransactionPayload.validate_payload(payload, settings.max_receipt_bytes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        _require_references(
            conn, owner, payload.project_id, payload.label_id, payload.subscription_id
        )
        stmt = owner.insert(
            transactions,
            project_id=payload.project_id,
            type=payload.type,
            name=payload.name,
            description=payload.description,
            amount=payload.amount,
            currency=_resolve_currency(payload.currency, settings.default_currency),
            date=payload.date,
            local_date=payload.local_date,
            label_id=payload.label_id,
            subscription_id=payload.subscription_id,
            receipts=[receipt.model_dump() for receipt in payload.receipts],
        ).returning(transactions.c.id)
        transaction_id = conn.execute(stmt).scalar_one()
        row = _fetch_transaction(conn, owner, transaction_id)

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return _transaction_response(row)


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> TransactionResponse:
    with engine.begin() as conn:
        existing = owner.get(conn, transactions, transaction_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        merged = {
            field: existing[field]
            for field in TransactionPayload.model_fields
        }
        changes = payload.model_dump(exclude_unset=True)
        if "date" in changes and "local_date" not in changes:
            changes["local_date"] = None
        merged.update(changes)
        try:
            updated = TransactionPayload.validate_payload(
                TransactionPayload.model_validate(merged), settings.max_receipt_bytes
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=_error_message(exc)) from exc

        _require_references(
            conn, owner, updated.project_id, updated.label_id, updated.subscription_id
        )
        conn.execute(
            owner.update(transactions, transactions.c.id == transaction_id).values(
                project_id=updated.project_id,
                type=updated.type,
                name=updated.name,
                description=updated.description,
                amount=updated.amount,
                currency=_resolve_currency(updated.currency, existing["currency"]),
                date=updated.date,
                local_date=updated.local_date,
                label_id=updated.label_id,
                subscription_id=updated.subscription_id,
                receipts=[receipt.model_dump() for receipt in updated.receipts],
            )
        )
        row = _fetch_transaction(conn, owner, transaction_id)

    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return _transaction_response(row)


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        result = conn.execute(owner.delete(transactions, transactions.c.id == transaction_id))
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Transaction not found.")
    return {"status": "deleted"}


@router.get("/subscriptions/project/{project_id}", response_model=list[SubscriptionResponse])
def list_project_subscriptions(
    project_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> list[SubscriptionResponse]:
    with engine.begin() as conn:
        rows = conn.execute(
            owner.select(subscriptions)
            .where(subscriptions.c.project_id == project_id)
            .order_by(subscriptions.c.start_date.asc(), subscriptions.c.id.asc())
        ).mappings().all()
    return [_subscription_response(row) for row in rows]


@router.get(
    "/subscriptions/project/{project_id}/missing",
    response_model=list[MissingPaymentResponse],
)
def missing_subscription_payments(
    project_id: int,
    on: date | None = Query(None),
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> list[MissingPaymentResponse]:
    today = on or date.today()
    with engine.begin() as conn:
        subscription_rows = conn.execute(
            owner.select(subscriptions).where(subscriptions.c.project_id == project_id)
        ).mappings().all()
        subscription_ids = [row["id"] for row in subscription_rows]
        linked_rows = []
        if subscription_ids:
            linked_rows = conn.execute(
                owner.select(
                    transactions,
                    transactions.c.subscription_id,
                    transactions.c.date,
                    transactions.c.local_date,
                ).where(transactions.c.subscription_id.in_(subscription_ids))
            ).mappings().all()

    # Payments match on the calendar day the client recorded, not the UTC day.
    linked = [
        LinkedTransaction(
            subscription_id=row["subscription_id"],
            date=row["local_date"] or row["date"].date(),
        )
        for row in linked_rows
    ]
    try:
        missing = find_missing_payments(
            [_subscription_schedule(row) for row in subscription_rows], linked, today
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    responses: list[MissingPaymentResponse] = []
    for entry in missing:
        draft = draft_payment(entry)
        responses.append(
            MissingPaymentResponse(
                subscription_id=entry.subscription.id,
                subscription_name=entry.subscription.name,
                due_date=entry.due_date,
                amount=entry.subscription.amount,
                currency=entry.subscription.currency,
                draft=PaymentDraftResponse(
                    project_id=draft.project_id,
                    subscription_id=draft.subscription_id,
                    type=draft.type,
                    name=draft.name,
                    description=draft.description,
                    amount=draft.amount,
                    currency=draft.currency,
                    date=draft.date,
                ),
            )
        )
    return responses


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(
    subscription_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        row = owner.get(conn, subscriptions, subscription_id)
    if not row:
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return _subscription_response(row)


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
def create_subscription(
    payload: SubscriptionPayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> SubscriptionResponse:
    try:
        payload = SubscriptionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        _require_references(conn, owner, payload.project_id)
        stmt = owner.insert(
            subscriptions,
            project_id=payload.project_id,
            name=payload.name,
            description=payload.description,
            amount=payload.amount,
            currency=_resolve_currency(payload.currency, settings.default_currency),
            start_date=payload.start_date,
            frequency_value=payload.frequency_value,
            frequency_unit=payload.frequency_unit,
            is_active=payload.is_active,
            skipped_dates=[],
        ).returning(*subscriptions.c)
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create subscription.")
    return _subscription_response(row)


@router.put("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
def update_subscription(
    subscription_id: int,
    payload: SubscriptionUpdatePayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        existing = owner.get(conn, subscriptions, subscription_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Subscription not found.")
        merged = {
            field: existing[field]
            for field in SubscriptionPayload.model_fields
        }
        merged.update(payload.model_dump(exclude_unset=True))
        try:
            updated = SubscriptionPayload.validate_payload(
                SubscriptionPayload.model_validate(merged)
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=_error_message(exc)) from exc

        _require_references(conn, owner, updated.project_id)
        row = conn.execute(
            owner.update(subscriptions, subscriptions.c.id == subscription_id)
            .values(
                project_id=updated.project_id,
                name=updated.name,
                description=updated.description,
                amount=updated.amount,
                currency=_resolve_currency(updated.currency, existing["currency"]),
                start_date=updated.start_date,
                frequency_value=updated.frequency_value,
                frequency_unit=updated.frequency_unit,
                is_active=updated.is_active,
            )
            .returning(*subscriptions.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return _subscription_response(row)


@router.post("/subscriptions/{subscription_id}/skip", response_model=SubscriptionResponse)
def skip_subscription_payment(
    subscription_id: int,
    payload: SkipPayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        existing = owner.get(conn, subscriptions, subscription_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Subscription not found.")
        skipped = set(existing["skipped_dates"] or [])
        skipped.add(payload.date.isoformat())
        row = conn.execute(
            owner.update(subscriptions, subscriptions.c.id == subscription_id)
            .values(skipped_dates=sorted(skipped))
            .returning(*subscriptions.c)
        ).mappings().first()
    return _subscription_response(row)


@router.delete(
    "/subscriptions/{subscription_id}/skip/{skip_date}",
    response_model=SubscriptionResponse,
)
def unskip_subscription_payment(
    subscription_id: int,
    skip_date: date,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> SubscriptionResponse:
    with engine.begin() as conn:
        existing = owner.get(conn, subscriptions, subscription_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Subscription not found.")
        skipped = set(existing["skipped_dates"] or [])
        skipped.discard(skip_date.isoformat())
        row = conn.execute(
            owner.update(subscriptions, subscriptions.c.id == subscription_id)
            .values(skipped_dates=sorted(skipped))
            .returning(*subscriptions.c)
        ).mappings().first()
    return _subscription_response(row)


@router.delete("/subscriptions/{subscription_id}")
def delete_subscription(
    subscription_id: int,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        result = conn.execute(owner.delete(subscriptions, subscriptions.c.id == subscription_id))
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Subscription not found.")
    return {"status": "deleted"}


@router.get("/settings", response_model=dict[str, Any])
def list_settings(
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    with engine.begin() as conn:
        rows = conn.execute(
            owner.select(user_settings, user_settings.c.key, user_settings.c.value)
        ).mappings().all()
    return {row["key"]: row["value"] for row in rows}


@router.post("/settings/init", response_model=InitSettingsResponse)
def init_settings(
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> InitSettingsResponse:
    created = False
    with engine.begin() as conn:
        existing = conn.execute(owner.select(user_settings, user_settings.c.id).limit(1)).first()
        if not existing:
            conn.execute(
                owner.insert(
                    user_settings, key=DISPLAY_CURRENCY_KEY, value=settings.default_currency
                )
            )
            created = True
        rows = conn.execute(
            owner.select(user_settings, user_settings.c.key, user_settings.c.value)
        ).mappings().all()
    return InitSettingsResponse(
        created=created, settings={row["key"]: row["value"] for row in rows}
    )


@router.get("/settings/{key}", response_model=SettingResponse)
def get_setting(
    key: str,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> SettingResponse:
    with engine.begin() as conn:
        row = conn.execute(
            owner.select(user_settings).where(user_settings.c.key == key)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Setting not found.")
    return SettingResponse(key=row["key"], value=row["value"])


@router.put("/settings/{key}", response_model=SettingResponse)
def upsert_setting(
    key: str,
    payload: SettingValuePayload,
    owner: OwnerScope = Depends(current_owner),
    engine: Engine = Depends(get_engine),
) -> SettingResponse:
    try:
        value = _validate_setting_value(key, payload.value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    update_stmt = owner.update(user_settings, user_settings.c.key == key).values(value=value)
    try:
        with engine.begin() as conn:
            if conn.execute(update_stmt).rowcount == 0:
                conn.execute(owner.insert(user_settings, key=key, value=value))
    except IntegrityError:
        # Another request inserted the key first.
        logger.info("setting_insert_conflict", key=key, user_id=owner.user_id)
        with engine.begin() as conn:
            conn.execute(update_stmt)
    return SettingResponse(key=key, value=value)


@router.get(
    "/currency/rates/{base}",
    response_model=RatesResponse,
    dependencies=[Depends(current_owner)],
)
def exchange_rates(
    base: str,
    on: date | None = Query(None, alias="date"),
    rate_provider: ExchangeRateProvider = Depends(get_rate_provider),
) -> RatesResponse:
    try:
        normalized_base = normalize_currency(base)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    rates = rate_provider.get_rates(normalized_base, on=on)
    return RatesResponse(base=normalized_base, as_of=on, rates=dict(rates))


@router.get(
    "/currency/convert",
    response_model=ConversionResponse,
    dependencies=[Depends(current_owner)],
)
def convert_currency(
    amount: Decimal = Query(...),
    source_currency: str = Query(..., alias="from"),
    target_currency: str = Query(..., alias="to"),
    on: date | None = Query(None, alias="date"),
    rate_provider: ExchangeRateProvider = Depends(get_rate_provider),
) -> ConversionResponse:
    try:
        normalized_source = normalize_currency(source_currency)
        normalized_target = normalize_currency(target_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    converted = convert_amount(
        amount,
        normalized_source,
        normalized_target,
        rate_provider=rate_provider,
        date=on,
    )
    return ConversionResponse(
        amount=amount,
        source_currency=normalized_source,
        target_currency=normalized_target,
        converted_amount=converted,
        as_of=on,
    )


app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
