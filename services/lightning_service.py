"""Instant (Lightning-style) payment channel client and fee formula"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from config import Config
from services.api_adapter import HttpAPIAdapter
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import LedgerError

logger = logging.getLogger(__name__)


class PaymentStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IN_FLIGHT = "in_flight"  # sent, outcome not yet known


@dataclass(frozen=True)
class Invoice:
    payment_request: str
    expires_at: datetime


@dataclass(frozen=True)
class PaymentResult:
    status: PaymentStatus
    fee_sats: int

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED


def calculate_instant_fee(amount_sats: int) -> int:
    """Fixed base fee plus 0.01% of the amount, rounded up to a whole satoshi"""
    percent_fee = math.ceil(amount_sats * Config.INSTANT_FEE_RATE)
    return Config.INSTANT_BASE_FEE_SATS + percent_fee


class InstantChannelClient(ABC):
    """Port to the instant settlement channel"""

    @abstractmethod
    async def create_invoice(self, amount_sats: int, description: str) -> Invoice:
        ...

    @abstractmethod
    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        ...

    @abstractmethod
    async def get_payment_status(self, payment_request: str) -> PaymentResult:
        """Look up the outcome of an earlier payment attempt for reconciliation"""


# Node status strings; anything unrecognised is treated as failed
_NODE_PAYMENT_STATUSES = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "paid": PaymentStatus.SUCCEEDED,
    "in_flight": PaymentStatus.IN_FLIGHT,
    "pending": PaymentStatus.IN_FLIGHT,
    "failed": PaymentStatus.FAILED,
    "expired": PaymentStatus.FAILED,
}


class HttpInstantChannelClient(HttpAPIAdapter, InstantChannelClient):
    """InstantChannelClient backed by a channel node's REST API"""

    def __init__(self, base_url: str = None, api_key: str = None, timeout: float = None):
        super().__init__(
            service_name="instant_channel",
            base_url=base_url or Config.INSTANT_CHANNEL_API_URL,
            api_key=api_key if api_key is not None else Config.INSTANT_CHANNEL_API_KEY,
            timeout=timeout or Config.INSTANT_CHANNEL_TIMEOUT_SECONDS,
        )

    async def create_invoice(self, amount_sats: int, description: str) -> Invoice:
        data = await self._request(
            "POST",
            "/invoices",
            json={
                "value": amount_sats,
                "memo": description,
                "expiry": Config.INSTANT_INVOICE_EXPIRY_SECONDS,
            },
        )
        payment_request = data.get("payment_request")
        if not payment_request:
            raise LedgerError("Instant channel returned no payment request")
        expires_at = get_naive_utc_now() + timedelta(seconds=Config.INSTANT_INVOICE_EXPIRY_SECONDS)
        return Invoice(payment_request=payment_request, expires_at=expires_at)

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        data = await self._request("POST", "/payments", json={"payment_request": payment_request})
        result = self._parse_payment(data)
        if result.status == PaymentStatus.FAILED:
            logger.warning(f"⚡ INSTANT_PAYMENT_FAILED: {data.get('failure_reason', 'unknown reason')}")
        return result

    async def get_payment_status(self, payment_request: str) -> PaymentResult:
        data = await self._request("GET", f"/payments/{payment_request}")
        return self._parse_payment(data)

    @staticmethod
    def _parse_payment(data: dict) -> PaymentResult:
        status = _NODE_PAYMENT_STATUSES.get(data.get("status"), PaymentStatus.FAILED)
        try:
            fee_sats = int(data.get("fee_sat") or 0)
        except (TypeError, ValueError) as e:
            raise LedgerError(f"Malformed payment fee {data.get('fee_sat')!r}") from e
        return PaymentResult(status=status, fee_sats=fee_sats)
