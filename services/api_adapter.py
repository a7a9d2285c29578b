"""
HTTP API adapter base for external money-movement providers.

Provides a single aiohttp request path with a hard deadline and a uniform
mapping of transport failures onto LedgerError / LedgerTimeoutError.
Fund-moving calls are never retried here.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar

import aiohttp

from utils.exception_handler import LedgerError, LedgerTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded_call(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await an external call with a deadline, converting overruns into LedgerTimeoutError"""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"⏰ EXTERNAL_CALL_TIMEOUT: {operation} exceeded {timeout}s")
        raise LedgerTimeoutError(f"{operation} timed out after {timeout}s") from e


class HttpAPIAdapter:
    """Base class for JSON-over-HTTP provider clients"""

    def __init__(self, service_name: str, base_url: str, api_key: str = "", timeout: float = 30):
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

        if not self.api_key:
            logger.warning(f"{service_name.upper()}_API_KEY not configured - requests will be unauthenticated")

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Agent-Cash-Engine/1.0",
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Perform one HTTP request and return the decoded JSON body"""
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    params=params,
                    json=json,
                ) as response:
                    if response.status >= 400:
                        error_text = await response.text()
                        logger.error(f"❌ {self.service_name.upper()}_HTTP_ERROR: {method} {path} -> {response.status}")
                        raise LedgerError(f"{self.service_name} HTTP {response.status}: {error_text[:200]}")
                    data = await response.json(content_type=None)

        except asyncio.TimeoutError as e:
            raise LedgerTimeoutError(f"{self.service_name} {method} {path} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise LedgerError(f"{self.service_name} network error: {e}") from e
        except ValueError as e:
            logger.error(f"❌ {self.service_name.upper()}_BAD_BODY: {method} {path} - {e}")
            raise LedgerError(f"{self.service_name} returned a body that is not JSON") from e

        if not isinstance(data, dict):
            logger.error(f"❌ {self.service_name.upper()}_BAD_BODY: {method} {path} - got {type(data).__name__}")
            raise LedgerError(f"{self.service_name} returned an unexpected payload")
        return data
