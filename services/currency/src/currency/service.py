"""Display-only currency conversion backed by a TTL rate cache.

Rates come from the exchangerate-api v6 endpoint. One snapshot per base
currency is kept in memory and mirrored, as a single map, to a key/value store
so it survives restarts. When the API is unreachable the service serves the
last snapshot it has for the requested base, however old, and otherwise a
built-in table of approximate rates.
"""

from __future__ import annotations

import json
import logging
import math
import os
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

import httpx
from common.errors import NetworkError, NotFoundError, ParseError, ServiceError
from common.utils import from_epoch_ms, now_utc, to_epoch_ms
from pydantic import BaseModel, ConfigDict, model_validator
from pydantic import ValidationError as PydanticValidationError

from currency.storage import KeyValueStore

DEFAULT_API_BASE_URL = "https://v6.exchangerate-api.com/v6"
CACHE_KEY = "exchange_rates_cache"
CACHE_TTL = timedelta(hours=1)
LOGGER = logging.getLogger("jobboard.currency")

# USD based, used only when no snapshot has ever been fetched.
FALLBACK_RATES: dict[str, float] = {
    "USD": 1.0,
    "EUR": 0.85,
    "GBP": 0.73,
    "JPY": 110.0,
    "CAD": 1.25,
    "AUD": 1.35,
    "CHF": 0.92,
    "CNY": 6.45,
    "MXN": 20.5,
    "BRL": 5.2,
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "C$",
    "AUD": "A$",
    "CHF": "CHF",
    "CNY": "¥",
    "MXN": "$",
    "BRL": "R$",
    "COP": "$",
    "ARS": "$",
    "CLP": "$",
    "PEN": "S/",
    "UYU": "$U",
}

SUPPORTED_CURRENCIES: list[tuple[str, str]] = [
    ("USD", "US Dollar"),
    ("EUR", "Euro"),
    ("GBP", "Pound Sterling"),
    ("JPY", "Japanese Yen"),
    ("CAD", "Canadian Dollar"),
    ("AUD", "Australian Dollar"),
    ("CHF", "Swiss Franc"),
    ("CNY", "Chinese Yuan"),
    ("MXN", "Mexican Peso"),
    ("BRL", "Brazilian Real"),
    ("COP", "Colombian Peso"),
    ("ARS", "Argentine Peso"),
    ("CLP", "Chilean Peso"),
    ("PEN", "Peruvian Sol"),
    ("UYU", "Uruguayan Peso"),
]


class RateUnavailableError(NotFoundError):
    def __init__(self, currency: str) -> None:
        super().__init__(f"Exchange rate unavailable for {currency}")
        self.currency = currency


def normalize_code(code: str) -> str:
    return code.strip().upper()


class ExchangeRateSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_currency: str
    rates: dict[str, float]
    fetched_at: datetime

    @model_validator(mode="after")
    def validate_base_rate(self) -> ExchangeRateSnapshot:
        base_rate = self.rates.get(self.base_currency)
        if base_rate is not None and not math.isclose(base_rate, 1.0):
            raise ValueError(
                f"Rate for base currency {self.base_currency} must be 1, got {base_rate}."
            )
        return self

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at

    def to_cache_entry(self) -> dict[str, object]:
        return {"rates": self.rates, "timestamp": to_epoch_ms(self.fetched_at)}

    @classmethod
    def from_cache_entry(cls, base_currency: str, entry: object) -> ExchangeRateSnapshot:
        if not isinstance(entry, dict):
            raise ValueError(f"Cached rates for {base_currency} must be a JSON object.")
        timestamp = entry.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            raise ValueError(f"Cached rates for {base_currency} are missing a numeric timestamp.")
        return cls(
            base_currency=base_currency,
            rates=entry.get("rates"),
            fetched_at=from_epoch_ms(timestamp),
        )


def dump_cache(snapshots: dict[str, ExchangeRateSnapshot]) -> str:
    """Serialize every base currency's snapshot under the single cache key."""
    return json.dumps({base: snapshot.to_cache_entry() for base, snapshot in snapshots.items()})


def load_cache(raw: str) -> dict[str, ExchangeRateSnapshot]:
    """Parse the cache value; entries that fail validation are dropped and logged."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Cached rates must be a JSON object keyed by base currency.")
    snapshots: dict[str, ExchangeRateSnapshot] = {}
    for base, entry in data.items():
        try:
            snapshots[base] = ExchangeRateSnapshot.from_cache_entry(base, entry)
        except ValueError as exc:
            LOGGER.warning(
                json.dumps({"event": "rate_cache_entry_dropped", "base": base, "error": str(exc)})
            )
    return snapshots


def fallback_rates(base_currency: str) -> dict[str, float]:
    base_rate = FALLBACK_RATES.get(base_currency)
    if base_rate is None:
        return dict(FALLBACK_RATES)
    return {code: rate / base_rate for code, rate in FALLBACK_RATES.items()}


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency, currency)


def format_amount(amount: float) -> str:
    """Integer amount grouped like es-ES: "1234", "12.345", "1.234.567"."""
    if not math.isfinite(amount):
        return str(amount)
    rounded = int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    digits = str(abs(rounded))
    if len(digits) >= 5:
        digits = f"{abs(rounded):,}".replace(",", ".")
    return f"-{digits}" if rounded < 0 else digits


class CurrencyService:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        ttl: timedelta = CACHE_TTL,
        clock: Callable[[], datetime] = now_utc,
        timeout: float = 15.0,
    ) -> None:
        self.store = store
        self.api_key = (api_key or os.getenv("EXCHANGE_API_KEY", "")).strip()
        self.base_url = (
            base_url or os.getenv("EXCHANGE_API_BASE_URL", DEFAULT_API_BASE_URL)
        ).rstrip("/")
        self.ttl = ttl
        self.clock = clock
        self.timeout = timeout
        self._snapshots = self._load_cached()

    @property
    def snapshots(self) -> dict[str, ExchangeRateSnapshot]:
        return dict(self._snapshots)

    def snapshot_for(self, base_currency: str) -> ExchangeRateSnapshot | None:
        return self._snapshots.get(normalize_code(base_currency))

    def _load_cached(self) -> dict[str, ExchangeRateSnapshot]:
        try:
            raw = self.store.get(CACHE_KEY)
            if raw is None:
                return {}
            return load_cache(raw)
        except (ServiceError, ValueError) as exc:
            LOGGER.warning(json.dumps({"event": "rate_cache_unreadable", "error": str(exc)}))
            return {}

    def _save_cached(self) -> None:
        try:
            self.store.set(CACHE_KEY, dump_cache(self._snapshots))
        except ServiceError as exc:
            LOGGER.warning(json.dumps({"event": "rate_cache_write_failed", "error": str(exc)}))

    def is_fresh(self, snapshot: ExchangeRateSnapshot) -> bool:
        return snapshot.age(self.clock()) < self.ttl

    async def fetch_snapshot(self, base_currency: str) -> ExchangeRateSnapshot:
        if not self.api_key:
            raise NetworkError("EXCHANGE_API_KEY is not configured")

        url = f"{self.base_url}/{self.api_key}/latest/{base_currency}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        except httpx.RequestError as exc:
            raise NetworkError(f"Exchange rate API is unavailable: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise NetworkError(
                "Exchange rate API request failed",
                status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError("Exchange rate API returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise ParseError("Exchange rate API returned an unexpected payload")
        if payload.get("result") != "success":
            error_type = payload.get("error-type", "unknown")
            raise NetworkError(f"Exchange rate API reported an error: {error_type}")

        try:
            return ExchangeRateSnapshot(
                base_currency=base_currency,
                rates=payload.get("conversion_rates"),
                fetched_at=self.clock(),
            )
        except PydanticValidationError as exc:
            raise ParseError(f"Exchange rate API returned invalid rates: {exc}") from exc

    async def get_rates(self, base_currency: str = "USD") -> dict[str, float]:
        base = normalize_code(base_currency)
        cached = self._snapshots.get(base)
        if cached is not None and self.is_fresh(cached):
            return dict(cached.rates)

        try:
            snapshot = await self.fetch_snapshot(base)
        except ServiceError as exc:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "rate_fetch_failed",
                        "base": base,
                        "status": exc.status,
                        "error": str(exc),
                    }
                )
            )
            if cached is not None:
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "rate_stale_fallback",
                            "base": base,
                            "age_seconds": round(cached.age(self.clock()).total_seconds()),
                        }
                    )
                )
                return dict(cached.rates)
            LOGGER.warning(json.dumps({"event": "rate_builtin_fallback", "base": base}))
            return fallback_rates(base)

        self._snapshots[base] = snapshot
        self._save_cached()
        LOGGER.info(
            json.dumps({"event": "rate_fetched", "base": base, "currencies": len(snapshot.rates)})
        )
        return dict(snapshot.rates)

    async def convert_currency(
        self,
        amount: float,
        from_currency: str,
        to_currency: str,
    ) -> float:
        source = normalize_code(from_currency)
        target = normalize_code(to_currency)
        if source == target:
            return amount

        rates = await self.get_rates(source)
        rate = rates.get(target)
        if not rate:
            raise RateUnavailableError(target)
        return amount * rate

    @staticmethod
    def get_currency_symbol(currency: str) -> str:
        return currency_symbol(currency)

    @staticmethod
    def format_currency(amount: float, currency: str) -> str:
        return f"{currency_symbol(currency)}{format_amount(amount)}"
