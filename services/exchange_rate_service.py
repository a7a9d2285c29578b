"""
Exchange rate service for sizing transfers in USD and satoshis.

BTC/USD comes from the Coinbase public rates endpoint, local currency per USD
from the exchangerate-api public endpoint. Both are cached in-process for
RATE_CACHE_TTL_SECONDS.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Dict, Optional

import aiohttp

from caching.simple_cache import SimpleCache
from config import Config
from utils.exception_handler import RateUnavailableError

logger = logging.getLogger(__name__)

SATS_PER_BTC = Decimal("100000000")


@dataclass(frozen=True)
class ExchangeRate:
    """USD value of one unit of ``currency`` together with the BTC/USD price used"""
    currency: str
    usd_per_unit: Decimal
    btc_usd: Decimal

    def to_usd(self, amount: Decimal) -> Decimal:
        return Decimal(str(amount)) * self.usd_per_unit

    def to_sats(self, amount: Decimal) -> int:
        btc = self.to_usd(amount) / self.btc_usd
        return int((btc * SATS_PER_BTC).to_integral_value(rounding=ROUND_DOWN))


class ExchangeRateService:
    """Rate lookups with a short TTL cache"""

    def __init__(self, cache: Optional[SimpleCache] = None, timeout: float = None):
        self.cache = cache or SimpleCache(default_ttl=Config.RATE_CACHE_TTL_SECONDS)
        self.timeout = timeout or Config.RATE_LOOKUP_TIMEOUT_SECONDS

    async def _fetch_json(self, url: str) -> Dict[str, Any]:
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.warning(f"⚠️ RATE_SOURCE_HTTP_{response.status}: {url}")
                        raise RateUnavailableError(f"Rate source returned HTTP {response.status}")
                    data = await response.json()
        except asyncio.TimeoutError as e:
            logger.warning(f"⏰ RATE_SOURCE_TIMEOUT: {url} exceeded {self.timeout}s")
            raise RateUnavailableError("Rate source timed out") from e
        except aiohttp.ClientError as e:
            logger.warning(f"⚠️ RATE_SOURCE_ERROR: {url} - {e}")
            raise RateUnavailableError(f"Rate source unreachable: {e}") from e
        except ValueError as e:
            logger.warning(f"⚠️ RATE_SOURCE_BAD_BODY: {url} - {e}")
            raise RateUnavailableError("Rate source returned a body that is not JSON") from e

        if not isinstance(data, dict):
            logger.warning(f"⚠️ RATE_SOURCE_BAD_BODY: {url} - expected an object, got {type(data).__name__}")
            raise RateUnavailableError("Rate source returned an unexpected payload")
        return data

    async def get_btc_usd(self) -> Decimal:
        cached = self.cache.get("btc_usd")
        if cached is not None:
            return cached

        data = await self._fetch_json(Config.BTC_USD_RATE_URL)
        try:
            rate = Decimal(str(data["data"]["rates"]["USD"]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise RateUnavailableError("Malformed BTC/USD response") from e
        if rate <= 0:
            raise RateUnavailableError(f"Invalid BTC/USD rate {rate}")

        self.cache.set("btc_usd", rate)
        logger.info(f"💱 BTC_USD_RATE: {rate}")
        return rate

    async def get_units_per_usd(self, currency: str) -> Decimal:
        """How many units of ``currency`` one US dollar buys"""
        if currency == "USD":
            return Decimal("1")

        cache_key = f"forex:{currency}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        data = await self._fetch_json(Config.FOREX_RATE_URL)
        rates = data.get("rates")
        if not isinstance(rates, dict) or currency not in rates:
            raise RateUnavailableError(f"No USD rate published for {currency}")
        try:
            rate = Decimal(str(rates[currency]))
        except InvalidOperation as e:
            raise RateUnavailableError(f"Malformed USD/{currency} rate") from e
        if rate <= 0:
            raise RateUnavailableError(f"Invalid USD/{currency} rate {rate}")

        self.cache.set(cache_key, rate)
        return rate

    async def get_rate(self, currency: str) -> ExchangeRate:
        """
        Resolve the USD value of one unit of ``currency``.

        Raises:
            RateUnavailableError: Either source failed, timed out or has no quote
        """
        currency = currency.upper()
        btc_usd = await self.get_btc_usd()
        if currency == "BTC":
            return ExchangeRate(currency=currency, usd_per_unit=btc_usd, btc_usd=btc_usd)

        units_per_usd = await self.get_units_per_usd(currency)
        return ExchangeRate(currency=currency, usd_per_unit=Decimal("1") / units_per_usd, btc_usd=btc_usd)


_exchange_rate_service: Optional[ExchangeRateService] = None


def get_exchange_rate_service() -> ExchangeRateService:
    global _exchange_rate_service
    if _exchange_rate_service is None:
        _exchange_rate_service = ExchangeRateService()
    return _exchange_rate_service
