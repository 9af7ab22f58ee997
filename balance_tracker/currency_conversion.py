from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from http.client import HTTPException
import json
import logging
import time
from typing import Callable, Mapping, Protocol
from urllib.request import Request, urlopen
from zoneinfo import ZoneInfo

from balance_tracker.finance_items import REFERENCE_CURRENCY, coerce_amount

logger = logging.getLogger(__name__)

NBU_API_URL = "https://bank.gov.ua/NBUStatService/v1/statdirectory/exchange"
NBU_TIMEZONE = ZoneInfo("Europe/Kyiv")
USER_AGENT = "balance-tracker/1.0"

# Reference currency (USD) per one unit of the listed currency.
FALLBACK_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("1.18"),
    "UAH": Decimal("1") / Decimal("40"),
}


class ConversionUnavailable(RuntimeError):
    """Raised when the rate source cannot be reached or returned no data."""


class RateNotFound(ConversionUnavailable):
    """Raised when the rate source has no quote for a currency."""


class RateProvider(Protocol):
    async def get_rate(self, currency: str, date: date | None = None) -> Decimal: ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as USD per 1 unit of the currency.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or FALLBACK_RATES))

    async def get_rate(self, currency: str, date: date | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self.rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc


@dataclass(frozen=True)
class NbuQuote:
    cc: str
    rate: Decimal
    exchangedate: str

    def as_payload(self) -> dict:
        return {"cc": self.cc, "rate": float(self.rate), "exchangedate": self.exchangedate}


@dataclass(frozen=True)
class CachedQuote:
    quote: NbuQuote
    expires_at: float


def fetch_nbu_quote(
    valcode: str,
    on_date: date,
    base_url: str = NBU_API_URL,
    timeout: float = 8,
) -> NbuQuote:
    """Fetch one UAH-per-unit quote from the National Bank of Ukraine."""
    url = f"{base_url}?valcode={valcode}&date={on_date.strftime('%Y%m%d')}&json"
    request = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(request, timeout=timeout) as response:
            payload = json.load(response)
    # OSError covers URLError, timeouts and dropped connections; ValueError
    # covers malformed JSON and undecodable bodies.
    except (OSError, HTTPException, ValueError) as exc:
        raise ConversionUnavailable("NBU unavailable") from exc

    if not isinstance(payload, list) or not payload:
        raise RateNotFound("Currency not found or no data available")

    first = payload[0]
    try:
        quote = NbuQuote(
            cc=str(first["cc"]),
            rate=Decimal(str(first["rate"])),
            exchangedate=str(first["exchangedate"]),
        )
    except (KeyError, TypeError, ArithmeticError) as exc:
        raise ConversionUnavailable("NBU response missing rate") from exc
    if not quote.rate > 0:
        raise ConversionUnavailable(f"NBU returned a non-positive {valcode} rate")
    return quote


@dataclass
class NbuRateProvider:
    """Live rates from the NBU exchange directory.

    NBU quotes every currency in UAH, so a USD rate is derived through the
    USD/UAH cross rate. Quotes are cached per (currency, calendar day).
    """

    base_url: str = NBU_API_URL
    cache_ttl_seconds: int = 60 * 60
    timeout_seconds: float = 8
    fetcher: Callable[..., NbuQuote] | None = None
    _cache: dict[tuple[str, str], CachedQuote] = field(default_factory=dict)
    _locks: dict[tuple[str, str], asyncio.Lock] = field(default_factory=dict)
    _newest_day: str = ""

    def __post_init__(self) -> None:
        if self.fetcher is None:
            self.fetcher = fetch_nbu_quote

    async def get_rate(self, currency: str, date: date | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        if normalized == REFERENCE_CURRENCY:
            return Decimal("1")

        day = date or kyiv_today()
        if normalized == "UAH":
            usd_quote = await self.get_quote(REFERENCE_CURRENCY, day)
            return Decimal("1") / usd_quote.rate

        quote, usd_quote = await asyncio.gather(
            self.get_quote(normalized, day),
            self.get_quote(REFERENCE_CURRENCY, day),
        )
        return quote.rate / usd_quote.rate

    async def get_quote(self, valcode: str, day: date | None = None) -> NbuQuote:
        day = day or kyiv_today()
        cache_key = (valcode, day.isoformat())
        cached = self._cache.get(cache_key)
        if cached and cached.expires_at > time.monotonic():
            return cached.quote

        lock = self._locks.setdefault(cache_key, asyncio.Lock())
        async with lock:
            # Another task may have refreshed the entry while we waited.
            cached = self._cache.get(cache_key)
            if cached and cached.expires_at > time.monotonic():
                return cached.quote
            try:
                quote = await asyncio.to_thread(
                    self.fetcher,
                    valcode,
                    day,
                    base_url=self.base_url,
                    timeout=self.timeout_seconds,
                )
            except ConversionUnavailable:
                if cached is not None:
                    logger.warning("Reusing expired %s quote for %s", valcode, cache_key[1])
                    return cached.quote
                raise

            self._cache[cache_key] = CachedQuote(
                quote=quote,
                expires_at=time.monotonic() + self.cache_ttl_seconds,
            )
            if cache_key[1] > self._newest_day:
                self._evict_before(cache_key[1])
            return quote

    def _evict_before(self, day_key: str) -> None:
        self._newest_day = day_key
        for key in [key for key in self._cache if key[1] < day_key]:
            del self._cache[key]
        for key, lock in list(self._locks.items()):
            if key[1] < day_key and not lock.locked():
                del self._locks[key]


@dataclass(frozen=True)
class Conversion:
    original_amount: Decimal
    original_currency: str
    reference_amount: Decimal
    rate: Decimal
    error: str | None = None


@dataclass
class CurrencyConverter:
    """Converts amounts to USD, degrading to fixed rates instead of raising."""

    primary: RateProvider = field(default_factory=NbuRateProvider)
    fallback: StaticRateProvider = field(default_factory=StaticRateProvider)

    async def rate_to_reference(self, currency: str, as_of: date | None = None) -> Decimal:
        rate, _ = await self._resolve_rate(currency, as_of)
        return rate

    async def convert(
        self,
        amount: Decimal | int | float | str,
        currency: str,
        as_of: date | None = None,
    ) -> Conversion:
        coerced_amount = coerce_amount(amount)
        rate, error = await self._resolve_rate(currency, as_of)
        return Conversion(
            original_amount=coerced_amount,
            original_currency=currency,
            reference_amount=coerced_amount * rate,
            rate=rate,
            error=error,
        )

    async def to_reference(
        self,
        amount: Decimal | int | float | str,
        currency: str,
        as_of: date | None = None,
    ) -> Decimal:
        conversion = await self.convert(amount, currency, as_of=as_of)
        return conversion.reference_amount

    async def _resolve_rate(self, currency: str, as_of: date | None) -> tuple[Decimal, str | None]:
        if currency.strip().upper() == REFERENCE_CURRENCY:
            return Decimal("1"), None

        try:
            return await self.primary.get_rate(currency, date=as_of), None
        except (ConversionUnavailable, ValueError, ArithmeticError) as exc:
            error = str(exc) or "Failed to convert currency"
            logger.warning("Falling back to fixed %s rate: %s", currency, error)

        try:
            return await self.fallback.get_rate(currency, date=as_of), error
        except ValueError:
            return Decimal("1"), error


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def kyiv_today() -> date:
    return datetime.now(NBU_TIMEZONE).date()
