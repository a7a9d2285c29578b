"""Base-ledger custody client: address generation, balances, transfers, confirmations"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from config import Config
from services.api_adapter import HttpAPIAdapter
from utils.exception_handler import LedgerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressAllocation:
    address: str


@dataclass(frozen=True)
class LedgerReceipt:
    tx_ref: str


class LedgerClient(ABC):
    """Port to the base ledger. Amounts are integer satoshis."""

    @abstractmethod
    async def generate_address(self) -> AddressAllocation:
        ...

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        ...

    @abstractmethod
    async def send(self, from_address: str, to_address: str, amount: int) -> LedgerReceipt:
        ...

    @abstractmethod
    async def get_confirmations(self, tx_ref: str) -> int:
        ...


class HttpLedgerClient(HttpAPIAdapter, LedgerClient):
    """LedgerClient backed by a custody node's JSON API"""

    def __init__(self, base_url: str = None, api_key: str = None, timeout: float = None):
        super().__init__(
            service_name="ledger",
            base_url=base_url or Config.LEDGER_API_URL,
            api_key=api_key if api_key is not None else Config.LEDGER_API_KEY,
            timeout=timeout or Config.LEDGER_CALL_TIMEOUT_SECONDS,
        )

    async def generate_address(self) -> AddressAllocation:
        data = await self._request("POST", "/addresses")
        address = data.get("address")
        if not address:
            raise LedgerError("Ledger returned no address")
        logger.info(f"✅ LEDGER_ADDRESS_ALLOCATED: {address}")
        return AddressAllocation(address=address)

    async def get_balance(self, address: str) -> int:
        data = await self._request("GET", f"/addresses/{address}/balance")
        try:
            return int(data["balance"])
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"Malformed balance response for {address}") from e

    async def send(self, from_address: str, to_address: str, amount: int) -> LedgerReceipt:
        # Single attempt: a transfer is never re-submitted from here
        data = await self._request(
            "POST",
            "/transfers",
            json={"from": from_address, "to": to_address, "amount": amount},
        )
        tx_ref = data.get("txRef") or data.get("tx_ref")
        if not tx_ref:
            raise LedgerError("Ledger accepted transfer without a reference")
        logger.info(f"💸 LEDGER_SEND: {amount} sats {from_address} -> {to_address} ({tx_ref})")
        return LedgerReceipt(tx_ref=tx_ref)

    async def get_confirmations(self, tx_ref: str) -> int:
        data = await self._request("GET", f"/transfers/{tx_ref}")
        try:
            return int(data.get("confirmations") or 0)
        except (TypeError, ValueError) as e:
            raise LedgerError(f"Malformed confirmation count for {tx_ref}") from e
