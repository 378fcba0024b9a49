"""Currency service: FX lookup, market factors and channel rounding."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_EVEN, Context, Decimal, localcontext
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ratewise.config import settings
from ratewise.data.currency import currency_decimals, is_known_currency, ppp_factor, tax_factor
from ratewise.models.exchange import ExchangeRate
from ratewise.services.cache_service import CacheService, TTLCache, cache_service, exchange_rate_cache
from ratewise.services.calendar import Clock, system_clock
from ratewise.services.exchange_rate_client import (
    ExchangeRateClient,
    ExchangeRateProviderError,
    exchange_rate_client,
)
from ratewise.services.results import ExchangeRateUnavailable, UnknownCurrency, ValidationFailed

logger = logging.getLogger(__name__)

# Internal precision: 28 significant digits, banker's rounding
DECIMAL_CONTEXT = Context(prec=28, rounding=ROUND_HALF_EVEN)

ROUNDING_RULES = ("up", "down", "nearest", "none")

_ROUNDING_MODES = {
    "up": ROUND_CEILING,
    "down": ROUND_FLOOR,
    "nearest": ROUND_HALF_EVEN,
}


class ConversionMethod(str, Enum):
    LIVE = "live"
    DAILY_CACHED = "daily_cached"
    FIXED = "fixed"


@dataclass(frozen=True)
class CurrencyConfig:
    """One entry of a channel's supported currencies."""

    code: str
    markup: Decimal = Decimal("0")  # percent
    rounding: str = "nearest"
    conversion_method: ConversionMethod = ConversionMethod.LIVE
    fixed_rate: Decimal | None = None
    channel_currency: str | None = None
    market: str | None = None
    precision: int | None = None

    @property
    def wire_code(self) -> str:
        return (self.channel_currency or self.code).upper()

    @property
    def decimals(self) -> int:
        return self.precision if self.precision is not None else currency_decimals(self.code)

    @classmethod
    def from_dict(cls, data: dict) -> "CurrencyConfig":
        fixed = data.get("fixed_rate")
        precision = data.get("precision")
        return cls(
            code=str(data["code"]).upper(),
            markup=Decimal(str(data.get("markup") or 0)),
            rounding=data.get("rounding") or "nearest",
            conversion_method=ConversionMethod(data.get("conversion_method") or "live"),
            fixed_rate=Decimal(str(fixed)) if fixed is not None else None,
            channel_currency=data.get("channel_currency"),
            market=data.get("market"),
            precision=int(precision) if precision is not None else None,
        )

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "markup": str(self.markup),
            "rounding": self.rounding,
            "conversion_method": self.conversion_method.value,
            "fixed_rate": str(self.fixed_rate) if self.fixed_rate is not None else None,
            "channel_currency": self.channel_currency,
            "market": self.market,
            "precision": self.precision,
        }


@dataclass(frozen=True)
class FxQuote:
    base: str
    quote: str
    rate: Decimal
    as_of: datetime
    method: ConversionMethod
    source: str
    stale: bool = False

    def to_dict(self) -> dict:
        return {
            "from": self.base,
            "to": self.quote,
            "rate": str(self.rate),
            "as_of": self.as_of.isoformat(),
            "method": self.method.value,
            "source": self.source,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class Conversion:
    amount: Decimal
    fx: FxQuote

    @property
    def stale(self) -> bool:
        return self.fx.stale


@dataclass(frozen=True)
class ChannelPrice:
    amount: Decimal
    currency: str  # stored unit
    wire_currency: str
    converted: Decimal
    fx: FxQuote
    steps: list[dict] = field(default_factory=list)


def validate_currency(code: str | None) -> str:
    """Normalise an ISO-4217 code, raising UnknownCurrency if it is not one we price in."""
    if not code or len(code) != 3 or not code.isalpha():
        raise UnknownCurrency(str(code))
    upper = code.upper()
    if not is_known_currency(upper):
        raise UnknownCurrency(code)
    return upper


def round_amount(amount: Decimal, rule: str, decimals: int = 2) -> Decimal:
    """Apply a channel rounding rule at the given number of decimals."""
    if rule == "none":
        return amount
    mode = _ROUNDING_MODES.get(rule)
    if mode is None:
        raise ValidationFailed(f"Unknown rounding rule: {rule!r}")
    exponent = Decimal(1).scaleb(-decimals)
    return amount.quantize(exponent, rounding=mode)


def quantize_for_wire(amount: Decimal, decimals: int) -> Decimal:
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_EVEN)


class CurrencyService:
    """Converts amounts between currencies and applies channel pricing adjustments."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        provider: ExchangeRateClient | None = None,
        cache: TTLCache | None = None,
        shared_cache: CacheService | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._provider = provider or exchange_rate_client
        self._cache = cache or exchange_rate_cache
        self._shared_cache = shared_cache or cache_service
        self._clock = clock or system_clock
        self._fixed_rates: dict[tuple[str, str], Decimal] = {}

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from ratewise.database import async_session_factory
            self._session_factory = async_session_factory
        return self._session_factory

    def register_fixed_rate(self, base: str, quote: str, rate: Decimal):
        self._fixed_rates[(validate_currency(base), validate_currency(quote))] = Decimal(rate)

    # ─── FX lookup ───

    async def get_rate(
        self,
        base: str,
        quote: str,
        method: ConversionMethod = ConversionMethod.LIVE,
        fixed_rate: Decimal | None = None,
        bypass_cache: bool = False,
    ) -> FxQuote:
        base = validate_currency(base)
        quote = validate_currency(quote)
        method = ConversionMethod(method)
        now = self._clock.now()

        if base == quote:
            return FxQuote(base, quote, Decimal(1), now, method, "identity")

        if method == ConversionMethod.FIXED:
            return self._fixed(base, quote, fixed_rate, now)

        cache_key = self._shared_cache.fx_key(base, quote, method.value)
        if not bypass_cache:
            cached = self._cache.get(cache_key, now=now)
            if cached is not None:
                return cached
            shared = await self._shared_cache.get_fx(base, quote, method.value)
            if shared:
                fx = FxQuote(
                    base, quote, Decimal(shared["rate"]), datetime.fromisoformat(shared["as_of"]),
                    method, shared.get("source", "shared_cache"),
                )
                self._cache.put(cache_key, fx, now=now)
                return fx

        if method == ConversionMethod.DAILY_CACHED:
            fx = await self._todays_rate(base, quote, now)
            if fx is not None:
                self._cache.put(cache_key, fx, now=now)
                return fx

        try:
            rates, as_of = await self._provider.latest(base)
            if quote not in rates:
                raise ExchangeRateProviderError(f"Provider has no {base}->{quote} rate")
            fx = FxQuote(base, quote, rates[quote], as_of, method, self._provider.source)
        except ExchangeRateProviderError as e:
            logger.warning(f"Exchange rate provider failed for {base}->{quote}: {e}")
            return await self._stale_fallback(base, quote, method, now)

        await self._record(fx)
        self._cache.put(cache_key, fx, now=now)
        await self._shared_cache.set_fx(base, quote, method.value, fx.to_dict())
        return fx

    def _fixed(self, base: str, quote: str, fixed_rate: Decimal | None, now: datetime) -> FxQuote:
        if fixed_rate is not None:
            return FxQuote(base, quote, Decimal(fixed_rate), now, ConversionMethod.FIXED, "fixed")
        if (base, quote) in self._fixed_rates:
            return FxQuote(base, quote, self._fixed_rates[(base, quote)], now, ConversionMethod.FIXED, "fixed")
        if (quote, base) in self._fixed_rates:
            # Reverse of a configured pair: keep the divisor so round trips are exact
            with localcontext(DECIMAL_CONTEXT):
                rate = Decimal(1) / self._fixed_rates[(quote, base)]
            return FxQuote(base, quote, rate, now, ConversionMethod.FIXED, "fixed_inverse")
        raise ValidationFailed(f"No fixed rate configured for {base}->{quote}")

    async def _todays_rate(self, base: str, quote: str, now: datetime) -> FxQuote | None:
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        row = await self._latest_row(base, quote, since=day_start)
        if row is None:
            return None
        return FxQuote(base, quote, Decimal(row.rate), row.as_of, ConversionMethod.DAILY_CACHED, row.source)

    async def _stale_fallback(self, base: str, quote: str, method: ConversionMethod, now: datetime) -> FxQuote:
        cutoff = now - timedelta(hours=settings.exchange_rate_stale_max_hours)
        row = await self._latest_row(base, quote, since=cutoff)
        if row is None:
            raise ExchangeRateUnavailable(
                f"No exchange rate available for {base}->{quote}", base=base, quote=quote
            )
        logger.info(f"Using stale {base}->{quote} rate from {row.as_of.isoformat()}")
        return FxQuote(base, quote, Decimal(row.rate), row.as_of, method, row.source, stale=True)

    async def _latest_row(self, base: str, quote: str, since: datetime) -> ExchangeRate | None:
        async with self._sessions()() as db:
            result = await db.execute(
                select(ExchangeRate)
                .where(
                    ExchangeRate.from_currency == base,
                    ExchangeRate.to_currency == quote,
                    ExchangeRate.as_of >= since,
                )
                .order_by(ExchangeRate.as_of.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _record(self, fx: FxQuote):
        async with self._sessions()() as db:
            async with db.begin():
                db.add(ExchangeRate(
                    from_currency=fx.base,
                    to_currency=fx.quote,
                    rate=fx.rate,
                    source=fx.source,
                    as_of=fx.as_of,
                ))

    # ─── Conversion + channel adjustment ───

    async def convert(
        self,
        amount: Decimal,
        base: str,
        quote: str,
        method: ConversionMethod = ConversionMethod.LIVE,
        fixed_rate: Decimal | None = None,
    ) -> Conversion:
        if amount < 0:
            raise ValidationFailed("Amount must not be negative", amount=str(amount))
        fx = await self.get_rate(base, quote, method, fixed_rate)
        with localcontext(DECIMAL_CONTEXT):
            if fx.source == "fixed_inverse":
                converted = Decimal(amount) / self._fixed_rates[(fx.quote, fx.base)]
            else:
                converted = Decimal(amount) * fx.rate
        return Conversion(amount=converted, fx=fx)

    def apply_channel_adjustment(self, amount: Decimal, config: CurrencyConfig) -> Decimal:
        """amount · (1 + markup) · ppp · tax, then the channel's rounding rule."""
        with localcontext(DECIMAL_CONTEXT):
            adjusted = (
                Decimal(amount)
                * (Decimal(1) + config.markup / Decimal(100))
                * ppp_factor(config.market)
                * tax_factor(config.market)
            )
        return round_amount(adjusted, config.rounding, config.decimals)

    async def price_for_channel(self, amount: Decimal, currency: str, config: CurrencyConfig) -> ChannelPrice:
        conversion = await self.convert(
            amount, currency, config.code, config.conversion_method, config.fixed_rate
        )
        final = self.apply_channel_adjustment(conversion.amount, config)
        return ChannelPrice(
            amount=final,
            currency=config.code,
            wire_currency=config.wire_code,
            converted=conversion.amount,
            fx=conversion.fx,
            steps=[
                {"step": "fx", "rate": str(conversion.fx.rate), "stale": conversion.fx.stale},
                {"step": "markup_pct", "value": str(config.markup)},
                {"step": "ppp", "value": str(ppp_factor(config.market))},
                {"step": "tax", "value": str(tax_factor(config.market))},
                {"step": "rounding", "rule": config.rounding, "decimals": config.decimals},
            ],
        )


currency_service = CurrencyService()
