from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from ratewise.models.exchange import ExchangeRate
from ratewise.services.cache_service import CacheService, TTLCache
from ratewise.services.currency_service import (
    ConversionMethod,
    CurrencyConfig,
    CurrencyService,
    round_amount,
    validate_currency,
)
from ratewise.services.exchange_rate_client import ExchangeRateClient
from ratewise.services.results import ExchangeRateUnavailable, UnknownCurrency, ValidationFailed

from conftest import NOW


def make_service(session_factory, clock, provider=None) -> CurrencyService:
    return CurrencyService(
        session_factory=session_factory,
        provider=provider or ExchangeRateClient(api_key=""),
        cache=TTLCache("test-fx", default_ttl=3600),
        shared_cache=CacheService(url=""),
        clock=clock,
    )


def provider_with(handler) -> ExchangeRateClient:
    return ExchangeRateClient(api_key="test-key", transport=httpx.MockTransport(handler))


# ─── Rounding + validation ───


def test_round_amount_rules():
    assert round_amount(Decimal("94.125"), "nearest") == Decimal("94.12")
    assert round_amount(Decimal("94.121"), "up") == Decimal("94.13")
    assert round_amount(Decimal("94.129"), "down") == Decimal("94.12")
    assert round_amount(Decimal("94.129"), "none") == Decimal("94.129")
    assert round_amount(Decimal("12345.6"), "nearest", decimals=0) == Decimal("12346")


def test_unknown_rounding_rule_is_rejected():
    with pytest.raises(ValidationFailed):
        round_amount(Decimal("1"), "bankers")


def test_validate_currency():
    assert validate_currency("eur") == "EUR"
    with pytest.raises(UnknownCurrency):
        validate_currency("ZZZ")


def test_currency_config_from_dict():
    config = CurrencyConfig.from_dict({"code": "jpy", "markup": "7.5", "conversion_method": "daily_cached"})
    assert config.code == "JPY"
    assert config.markup == Decimal("7.5")
    assert config.conversion_method == ConversionMethod.DAILY_CACHED
    assert config.decimals == 0
    assert config.wire_code == "JPY"


# ─── Conversion ───


@pytest.mark.asyncio
async def test_channel_price_with_markup_and_rounding(session_factory, clock):
    service = make_service(session_factory, clock)
    config = CurrencyConfig(
        code="EUR",
        markup=Decimal("5"),
        conversion_method=ConversionMethod.FIXED,
        fixed_rate=Decimal("0.90"),
    )

    price = await service.price_for_channel(Decimal("100"), "USD", config)

    assert price.amount == Decimal("94.50")
    assert price.currency == "EUR"
    assert price.fx.source == "fixed"


@pytest.mark.asyncio
async def test_market_factors_apply_after_markup(session_factory, clock):
    service = make_service(session_factory, clock)
    config = CurrencyConfig(code="USD", markup=Decimal("0"), market="EU")

    adjusted = service.apply_channel_adjustment(Decimal("100"), config)

    # 100 * 0.95 * 1.12
    assert adjusted == Decimal("106.40")


@pytest.mark.asyncio
async def test_fixed_rate_round_trip_is_exact(session_factory, clock):
    service = make_service(session_factory, clock)
    service.register_fixed_rate("USD", "EUR", Decimal("0.9"))

    there = await service.convert(Decimal("100"), "USD", "EUR", ConversionMethod.FIXED)
    back = await service.convert(there.amount, "EUR", "USD", ConversionMethod.FIXED)

    assert there.amount == Decimal("90")
    assert back.fx.source == "fixed_inverse"
    assert back.amount == Decimal("100")


@pytest.mark.asyncio
async def test_same_currency_is_identity(session_factory, clock):
    service = make_service(session_factory, clock)
    conversion = await service.convert(Decimal("123.45"), "USD", "USD")
    assert conversion.amount == Decimal("123.45")
    assert conversion.fx.source == "identity"


@pytest.mark.asyncio
async def test_missing_fixed_rate_is_a_validation_error(session_factory, clock):
    service = make_service(session_factory, clock)
    with pytest.raises(ValidationFailed):
        await service.get_rate("USD", "GBP", ConversionMethod.FIXED)


@pytest.mark.asyncio
async def test_live_rate_is_fetched_recorded_and_cached(session_factory, clock):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"result": "success", "conversion_rates": {"EUR": 0.92, "GBP": 0.79}})

    service = make_service(session_factory, clock, provider_with(handler))

    first = await service.get_rate("USD", "EUR")
    second = await service.get_rate("USD", "EUR")

    assert first.rate == Decimal("0.92")
    assert first.source == "exchangerate_api"
    assert second == first
    assert calls == ["/v6/test-key/latest/USD"]

    async with session_factory() as db:
        rows = (await db.execute(ExchangeRate.__table__.select())).all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_provider_failure_falls_back_to_stale_rate(session_factory, clock):
    async with session_factory() as db:
        db.add(ExchangeRate(
            from_currency="USD", to_currency="EUR", rate=Decimal("0.91"),
            source="exchangerate_api", as_of=NOW - timedelta(hours=10),
        ))
        await db.commit()

    service = make_service(session_factory, clock, provider_with(lambda request: httpx.Response(503)))

    fx = await service.get_rate("USD", "EUR")

    assert fx.stale is True
    assert fx.rate == Decimal("0.91")


@pytest.mark.asyncio
async def test_provider_failure_without_history_is_unavailable(session_factory, clock):
    service = make_service(session_factory, clock, provider_with(lambda request: httpx.Response(503)))
    with pytest.raises(ExchangeRateUnavailable):
        await service.get_rate("USD", "EUR")


@pytest.mark.asyncio
async def test_static_table_serves_rates_without_an_api_key(session_factory, clock):
    service = make_service(session_factory, clock)
    fx = await service.get_rate("EUR", "USD")
    assert fx.source == "static_table"
    assert fx.rate == Decimal("1.08")


@pytest.mark.asyncio
async def test_negative_amounts_are_rejected(session_factory, clock):
    service = make_service(session_factory, clock)
    with pytest.raises(ValidationFailed):
        await service.convert(Decimal("-1"), "USD", "USD")
