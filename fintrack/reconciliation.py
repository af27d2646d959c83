from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List

MATCH_WINDOW_DAYS = 7
DAYS_PER_WEEK = 7
SUPPORTED_UNITS = {"days", "weeks", "months", "years"}


@dataclass(frozen=True)
class SubscriptionSchedule:
    id: int
    project_id: int
    name: str
    amount: Decimal
    start_date: date
    frequency_value: int = 1
    frequency_unit: str = "months"
    currency: str = "ILS"
    is_active: bool = True
    skipped_dates: FrozenSet[date] = frozenset()


@dataclass(frozen=True)
class LinkedTransaction:
    subscription_id: int | None
    date: date


@dataclass(frozen=True)
class MissingPayment:
    subscription: SubscriptionSchedule
    due_date: date


@dataclass(frozen=True)
class PaymentDraft:
    project_id: int
    subscription_id: int
    type: str
    name: str
    description: str
    amount: Decimal
    currency: str
    date: date


def find_missing_payments(
    subscriptions: Iterable[SubscriptionSchedule],
    transactions: Iterable[LinkedTransaction],
    today: date,
) -> List[MissingPayment]:
    """Return this year's due occurrences that have no matching transaction.

    Occurrences from earlier years are walked but never reported. Results are
    ordered newest first.
    """
    paid_index = _index_linked_transactions(transactions)
    missing: List[MissingPayment] = []
    for subscription in subscriptions:
        missing.extend(
            _missing_for_subscription(
                subscription,
                paid_index.get(subscription.id, []),
                today,
            )
        )
    missing.sort(key=lambda entry: (entry.due_date, entry.subscription.id), reverse=True)
    return missing


def draft_payment(missing: MissingPayment) -> PaymentDraft:
    subscription = missing.subscription
    unit = validate_frequency_unit(subscription.frequency_unit)
    return PaymentDraft(
        project_id=subscription.project_id,
        subscription_id=subscription.id,
        type="expense",
        name=subscription.name,
        description=f"Payment for {describe_period(missing.due_date, unit)}",
        amount=subscription.amount,
        currency=subscription.currency,
        date=missing.due_date,
    )


def describe_period(due_date: date, unit: str) -> str:
    if unit == "months":
        return due_date.strftime("%m/%Y")
    if unit == "years":
        return str(due_date.year)
    return due_date.isoformat()


def occurrence_date(start_date: date, unit: str, steps: int) -> date:
    """Date of the occurrence ``steps`` units after ``start_date``.

    Month and year steps keep the start's day of month, clamped to month end.
    """
    if unit == "days":
        return start_date + timedelta(days=steps)
    if unit == "weeks":
        return start_date + timedelta(days=steps * DAYS_PER_WEEK)
    if unit == "months":
        return _add_months(start_date, steps, start_date.day)
    if unit == "years":
        return _add_months(start_date, steps * 12, start_date.day)
    raise ValueError(f"Unsupported frequency unit: {unit}")


def validate_frequency_unit(unit: str) -> str:
    normalized = unit.strip().lower()
    if normalized not in SUPPORTED_UNITS:
        raise ValueError("Frequency unit must be one of days, weeks, months, years.")
    return normalized


def _missing_for_subscription(
    subscription: SubscriptionSchedule,
    paid_dates: List[date],
    today: date,
) -> List[MissingPayment]:
    if not subscription.is_active or subscription.start_date > today:
        return []
    if subscription.frequency_value < 1:
        raise ValueError("frequency_value must be at least 1.")
    unit = validate_frequency_unit(subscription.frequency_unit)

    missing: List[MissingPayment] = []
    step = 0
    cursor = subscription.start_date
    while cursor <= today:
        if cursor.year == today.year:
            if (
                not _has_matching_payment(cursor, unit, paid_dates)
                and cursor not in subscription.skipped_dates
            ):
                missing.append(MissingPayment(subscription=subscription, due_date=cursor))
        step += subscription.frequency_value
        try:
            cursor = occurrence_date(subscription.start_date, unit, step)
        except (OverflowError, ValueError):
            # Next occurrence falls after date.max.
            break
    return missing


def _has_matching_payment(due_date: date, unit: str, paid_dates: Iterable[date]) -> bool:
    for paid in paid_dates:
        if unit == "months":
            if paid.year == due_date.year and paid.month == due_date.month:
                return True
        elif unit == "years":
            if paid.year == due_date.year:
                return True
        elif abs((paid - due_date).days) <= MATCH_WINDOW_DAYS:
            return True
    return False


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _index_linked_transactions(
    transactions: Iterable[LinkedTransaction],
) -> Dict[int, List[date]]:
    index: Dict[int, List[date]] = {}
    for txn in transactions:
        if txn.subscription_id is None:
            continue
        index.setdefault(txn.subscription_id, []).append(txn.date)
    return index
