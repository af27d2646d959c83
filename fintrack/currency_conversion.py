from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
import json
from typing import Any, Callable, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import structlog

logger = structlog.get_logger(__name__)

SUPPORTED_CURRENCIES = ("USD", "EUR", "ILS")
CACHE_TTL = timedelta(hours=24)

# Last-resort table, expressed as target currency per 1 USD.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "ILS": Decimal("3.65"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("149.50"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate source cannot return a usable table."""


class RateStoreError(RuntimeError):
    """Raised when the persistent rate cache cannot be read or written."""


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    fetched_at: datetime


class RateStore(Protocol):
    def load(self, base_currency: str) -> CachedRates | None: ...

    def save(self, base_currency: str, entry: CachedRates) -> None: ...


@dataclass
class MemoryRateStore:
    entries: dict[str, CachedRates] = field(default_factory=dict)

    def load(self, base_currency: str) -> CachedRates | None:
        return self.entries.get(base_currency)

    def save(self, base_currency: str, entry: CachedRates) -> None:
        self.entries[base_currency] = entry


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD and re-anchored at the
    requested base currency.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rates(self, base_currency: str, on: date | None = None) -> Mapping[str, Decimal]:
        return rebase_rates(self.rates, normalize_currency(base_currency))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def fetch_json(url: str, timeout: float = 8) -> Any:
    try:
        with urlopen(url, timeout=timeout) as response:
            return json.load(response)
    except (HTTPError, URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
        raise RateProviderUnavailable(f"Rate source unavailable: {url}") from exc


@dataclass
class ExchangeRateProvider:
    """Two-tier cached rate provider.

    Current rates are looked up in the persistent store (fresh for
    ``cache_ttl``), then in the per-day memory cache, then fetched. A failed
    fetch falls back to the persistent entry of any age, and finally to the
    hardcoded table. Dated lookups go to the historical source and fall back
    to the current chain. ``get_rates`` never raises.
    """

    store: RateStore = field(default_factory=MemoryRateStore)
    clock: Callable[[], datetime] = utc_now
    fetcher: Callable[[str], Any] = fetch_json
    base_url: str = "https://api.exchangerate-api.com/v4/latest"
    historical_url: str = "https://api.frankfurter.app"
    cache_ttl: timedelta = CACHE_TTL
    fallback_rates: Mapping[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_RATES))
    _memory: dict[tuple[str, str], Mapping[str, Decimal]] = field(default_factory=dict)
    _historical: dict[tuple[str, str], Mapping[str, Decimal]] = field(default_factory=dict)

    def get_rates(self, base_currency: str, on: date | None = None) -> Mapping[str, Decimal]:
        try:
            base = normalize_currency(base_currency)
        except ValueError:
            logger.warning("rates_invalid_base", base_currency=base_currency)
            return dict(self.fallback_rates)

        if on is not None and on < self.clock().date():
            historical = self._get_historical(base, on)
            if historical is not None:
                return historical
        return self._get_current(base)

    def _get_current(self, base: str) -> Mapping[str, Decimal]:
        now = self.clock()
        cached = self._load_persistent(base)
        if cached and now - cached.fetched_at < self.cache_ttl:
            return cached.rates

        memory_key = (base, now.date().isoformat())
        if memory_key in self._memory:
            return self._memory[memory_key]

        try:
            rates = self._fetch_rates(f"{self.base_url}/{base}", base)
        except RateProviderUnavailable as exc:
            if cached:
                logger.warning("rates_fetch_failed_using_stale_cache", base=base, error=str(exc))
                return cached.rates
            logger.warning("rates_fetch_failed_using_fallback", base=base, error=str(exc))
            return fallback_rates_for(base, self.fallback_rates)

        self._memory[memory_key] = rates
        self._save_persistent(base, CachedRates(rates=rates, fetched_at=now))
        return rates

    def _get_historical(self, base: str, on: date) -> Mapping[str, Decimal] | None:
        cache_key = (base, on.isoformat())
        if cache_key in self._historical:
            return self._historical[cache_key]
        try:
            rates = self._fetch_rates(f"{self.historical_url}/{on.isoformat()}?from={base}", base)
        except RateProviderUnavailable as exc:
            logger.info("historical_rates_unavailable", base=base, on=on.isoformat(), error=str(exc))
            return None
        self._historical[cache_key] = rates
        return rates

    def _fetch_rates(self, url: str, base: str) -> Mapping[str, Decimal]:
        payload = self.fetcher(url)
        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict) or not rates:
            raise RateProviderUnavailable("Rate response missing rates")
        try:
            parsed = {str(code).upper(): Decimal(str(value)) for code, value in rates.items()}
        except InvalidOperation as exc:
            raise RateProviderUnavailable("Rate response has non-numeric rates") from exc
        parsed[base] = Decimal("1")
        return parsed

    def _load_persistent(self, base: str) -> CachedRates | None:
        try:
            return self.store.load(base)
        except RateStoreError as exc:
            logger.warning("rates_cache_unreadable", base=base, error=str(exc))
            return None

    def _save_persistent(self, base: str, entry: CachedRates) -> None:
        try:
            self.store.save(base, entry)
        except RateStoreError as exc:
            logger.warning("rates_cache_write_failed", base=base, error=str(exc))


def rebase_rates(rates: Mapping[str, Decimal], base_currency: str) -> dict[str, Decimal]:
    try:
        anchor = rates[base_currency]
    except KeyError as exc:
        raise ValueError(f"Unsupported currency: {base_currency}") from exc
    return {code: value / anchor for code, value in rates.items()}


def fallback_rates_for(base_currency: str, rates: Mapping[str, Decimal] = DEFAULT_RATES) -> dict[str, Decimal]:
    if base_currency not in rates:
        return dict(rates)
    return rebase_rates(rates, base_currency)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: StaticRateProvider | ExchangeRateProvider | None = None,
    date: date | None = None,
) -> Decimal:
    """Convert a monetary amount for display.

    Missing rates and provider failures are absorbed: the unconverted amount
    is returned instead.
    """
    provider = rate_provider or StaticRateProvider()
    coerced_amount = _coerce_amount(amount)
    try:
        normalized_source = normalize_currency(source_currency)
        normalized_target = normalize_currency(target_currency)
    except ValueError:
        logger.warning(
            "conversion_invalid_currency",
            source_currency=source_currency,
            target_currency=target_currency,
        )
        return coerced_amount

    if normalized_source == normalized_target:
        return coerced_amount

    try:
        rates = provider.get_rates(normalized_source, on=date)
        rate = _coerce_amount(rates[normalized_target])
    except (KeyError, ValueError, RateProviderUnavailable):
        logger.warning(
            "conversion_rate_missing",
            source_currency=normalized_source,
            target_currency=normalized_target,
        )
        return coerced_amount
    return coerced_amount * rate


def sum_converted_amounts(
    amounts_by_currency: Mapping[str, Decimal],
    target_currency: str,
    rate_provider: StaticRateProvider | ExchangeRateProvider | None = None,
) -> tuple[Decimal, list[str]]:
    total = Decimal("0")
    currencies: set[str] = set()
    for currency, amount in amounts_by_currency.items():
        currencies.add(currency)
        total += convert_amount(amount, currency, target_currency, rate_provider=rate_provider)
    return total, sorted(currencies)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def validate_currency(value: str) -> str:
    normalized = normalize_currency(value)
    if normalized not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Currency must be one of {', '.join(SUPPORTED_CURRENCIES)}.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
