"""Exchange-rate provider client (ExchangeRate-API) with a static demo table."""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal

import httpx

from ratewise.config import settings
from ratewise.data.currency import EXCHANGE_RATES_TO_USD

logger = logging.getLogger(__name__)


class ExchangeRateProviderError(Exception):
    """The upstream provider could not supply a rate."""


class ExchangeRateClient:
    """Fetches the latest rate table for a base currency.

    Without an API key the client serves rates derived from the static USD
    table, the same way the other adapters fall back to mock data.
    """

    def __init__(self, api_key: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._api_key = settings.exchange_rate_api_key if api_key is None else api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._semaphore = asyncio.Semaphore(4)
        self._use_mock = not self._api_key

    @property
    def source(self) -> str:
        return "static_table" if self._use_mock else "exchangerate_api"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=settings.exchange_rate_base_url,
                timeout=10.0,
                transport=self._transport,
            )
        return self._client

    async def latest(self, base: str) -> tuple[dict[str, Decimal], datetime]:
        """Return ({quote_currency: rate}, as_of) for one unit of ``base``."""
        if self._use_mock:
            return self._static_rates(base), datetime.now(timezone.utc)

        async with self._semaphore:
            client = await self._get_client()
            for attempt in range(3):
                try:
                    resp = await client.get(f"/{self._api_key}/latest/{base}")
                    if resp.status_code == 429 and attempt < 2:
                        await asyncio.sleep(2 ** attempt)
                        continue
                    resp.raise_for_status()
                    data = resp.json()
                    if data.get("result") not in (None, "success"):
                        raise ExchangeRateProviderError(
                            f"Provider error for {base}: {data.get('error-type', 'unknown')}"
                        )
                    rates = data.get("conversion_rates") or data.get("rates") or {}
                    as_of = datetime.now(timezone.utc)
                    if data.get("time_last_update_unix"):
                        as_of = datetime.fromtimestamp(int(data["time_last_update_unix"]), tz=timezone.utc)
                    return {code: Decimal(str(value)) for code, value in rates.items()}, as_of
                except httpx.HTTPStatusError as e:
                    logger.error(f"Exchange rate fetch failed for {base}: {e.response.status_code}")
                    if attempt == 2:
                        raise ExchangeRateProviderError(str(e)) from e
                except httpx.RequestError as e:
                    logger.error(f"Exchange rate request error for {base}: {e}")
                    if attempt == 2:
                        raise ExchangeRateProviderError(str(e)) from e
                    await asyncio.sleep(2 ** attempt)
        raise ExchangeRateProviderError(f"Provider rate-limited for {base}")

    def _static_rates(self, base: str) -> dict[str, Decimal]:
        base_usd = EXCHANGE_RATES_TO_USD.get(base)
        if base_usd is None:
            raise ExchangeRateProviderError(f"No static rate for {base}")
        return {code: base_usd / usd for code, usd in EXCHANGE_RATES_TO_USD.items()}

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None


exchange_rate_client = ExchangeRateClient()
