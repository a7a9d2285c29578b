"""Direct-settlement (on-chain) fee estimation from a public fee-rate feed"""

import asyncio
import logging
from typing import Optional

import aiohttp

from caching.simple_cache import SimpleCache
from config import Config

logger = logging.getLogger(__name__)


class NetworkFeeEstimator:
    """Estimated network fee in satoshis for a typical single-input transfer"""

    CACHE_TTL_SECONDS = 60

    def __init__(self, cache: Optional[SimpleCache] = None, timeout: float = None):
        self.cache = cache or SimpleCache(default_ttl=self.CACHE_TTL_SECONDS)
        self.timeout = timeout or Config.RATE_LOOKUP_TIMEOUT_SECONDS

    async def _fetch_fee_rates(self) -> dict:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(Config.FEE_ESTIMATE_URL) as response:
                response.raise_for_status()
                return await response.json()

    async def estimate_fee_sats(self, fast: bool = False) -> int:
        """
        Recommended sat/vB times TYPICAL_TX_VSIZE.

        ``fast`` selects the next-block rate, otherwise the half-hour rate.
        Falls back to DEFAULT_NETWORK_FEE_SATS when the feed is unavailable.
        """
        key = "fastestFee" if fast else "halfHourFee"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            rates = await self._fetch_fee_rates()
            sat_per_vbyte = int(rates[key])
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ FEE_ESTIMATE_UNAVAILABLE: using default {Config.DEFAULT_NETWORK_FEE_SATS} sats ({e})")
            return Config.DEFAULT_NETWORK_FEE_SATS

        fee_sats = sat_per_vbyte * Config.TYPICAL_TX_VSIZE
        self.cache.set(key, fee_sats)
        return fee_sats


_network_fee_estimator: Optional[NetworkFeeEstimator] = None


def get_network_fee_estimator() -> NetworkFeeEstimator:
    global _network_fee_estimator
    if _network_fee_estimator is None:
        _network_fee_estimator = NetworkFeeEstimator()
    return _network_fee_estimator
