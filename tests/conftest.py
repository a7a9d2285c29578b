"""
Shared fixtures for the exchange engine test suite.

Key components:
1. Per-test SQLite database (aiosqlite) with the full schema
2. In-memory doubles for the ledger, instant channel, notifications and party directory
3. A controllable clock so expiry and pricing buckets are deterministic
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from database import build_async_engine, build_session_factory, create_tables
from models import EscrowEvent
from services.escrow_coordinator import EscrowCoordinator
from services.escrow_record_store import SqlAlchemyEscrowRecordStore
from services.exchange_rate_service import ExchangeRate
from services.ledger_client import AddressAllocation, LedgerClient, LedgerReceipt
from services.lightning_service import InstantChannelClient, Invoice, PaymentResult, PaymentStatus
from services.notification_service import NotificationPort
from services.party_directory import AgentProfile, PartyDirectory, rank_agents

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Wednesday afternoon
NOW = datetime(2024, 3, 6, 14, 0, 0)


class FixedClock:
    """Callable clock that only moves when a test moves it"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLedgerClient(LedgerClient):
    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.confirmations: Dict[str, int] = {}
        self.sends: List[Tuple[str, str, int]] = []
        self.balance_checks = 0
        self.address_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.send_delay = 0.0
        self._counter = 0

    async def generate_address(self) -> AddressAllocation:
        if self.address_error:
            raise self.address_error
        self._counter += 1
        return AddressAllocation(address=f"bc1qescrow{self._counter:04d}")

    async def get_balance(self, address: str) -> int:
        self.balance_checks += 1
        return self.balances.get(address, 0)

    async def send(self, from_address: str, to_address: str, amount: int) -> LedgerReceipt:
        # Yield so concurrent callers interleave
        await asyncio.sleep(self.send_delay)
        if self.send_error:
            raise self.send_error
        self.sends.append((from_address, to_address, amount))
        return LedgerReceipt(tx_ref=f"tx{len(self.sends):04d}")

    async def get_confirmations(self, tx_ref: str) -> int:
        return self.confirmations.get(tx_ref, 0)


class FakeInstantChannel(InstantChannelClient):
    def __init__(self):
        self.invoices: List[Tuple[int, str]] = []
        self.payments: List[str] = []
        self.payment_status = PaymentStatus.SUCCEEDED
        self.invoice_error: Optional[Exception] = None
        self.pay_error: Optional[Exception] = None
        self.pay_delay = 0.0
        self.lookups: List[str] = []
        self.lookup_status = PaymentStatus.IN_FLIGHT
        self.lookup_error: Optional[Exception] = None

    async def create_invoice(self, amount_sats: int, description: str) -> Invoice:
        if self.invoice_error:
            raise self.invoice_error
        self.invoices.append((amount_sats, description))
        return Invoice(payment_request=f"lnbc{amount_sats}n1test", expires_at=NOW + timedelta(hours=1))

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        await asyncio.sleep(self.pay_delay)
        if self.pay_error:
            raise self.pay_error
        self.payments.append(payment_request)
        return PaymentResult(status=self.payment_status, fee_sats=3)

    async def get_payment_status(self, payment_request: str) -> PaymentResult:
        self.lookups.append(payment_request)
        if self.lookup_error:
            raise self.lookup_error
        return PaymentResult(status=self.lookup_status, fee_sats=3)


class RecordingNotifications(NotificationPort):
    def __init__(self):
        self.events: List[Tuple[str, EscrowEvent, Dict[str, Any]]] = []
        self.error: Optional[Exception] = None

    async def notify(self, party_id: str, event: EscrowEvent, payload: Dict[str, Any]) -> None:
        if self.error:
            raise self.error
        self.events.append((party_id, event, payload))

    def of_type(self, event: EscrowEvent) -> List[Tuple[str, EscrowEvent, Dict[str, Any]]]:
        return [entry for entry in self.events if entry[1] == event]


class InMemoryPartyDirectory(PartyDirectory):
    def __init__(self):
        self.agents: Dict[str, AgentProfile] = {}
        self.wallets: Dict[str, str] = {}
        self.outcomes: List[Tuple[str, bool]] = []

    def add_agent(self, agent_id: str, settlement_address: str = None, is_active: bool = True) -> AgentProfile:
        profile = AgentProfile(
            id=agent_id,
            settlement_address=settlement_address or f"bc1q{agent_id}settle",
            is_active=is_active,
        )
        self.agents[agent_id] = profile
        return profile

    async def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        return self.agents.get(agent_id)

    async def get_wallet_address(self, user_id: str) -> Optional[str]:
        return self.wallets.get(user_id)

    async def record_agent_outcome(self, agent_id: str, success: bool) -> None:
        self.outcomes.append((agent_id, success))

    async def list_active_agents(self) -> List[AgentProfile]:
        return rank_agents([agent for agent in self.agents.values() if agent.is_active])


class FakeRateService:
    def __init__(self, usd_per_unit: Decimal = Decimal("0.01"), btc_usd: Decimal = Decimal("50000")):
        self.usd_per_unit = usd_per_unit
        self.btc_usd = btc_usd
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def get_rate(self, currency: str) -> ExchangeRate:
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if currency == "BTC":
            return ExchangeRate(currency=currency, usd_per_unit=self.btc_usd, btc_usd=self.btc_usd)
        return ExchangeRate(currency=currency, usd_per_unit=self.usd_per_unit, btc_usd=self.btc_usd)


@dataclass
class FakeFeeEstimator:
    standard_fee: int = 1400
    fast_fee: int = 2800

    async def estimate_fee_sats(self, fast: bool = False) -> int:
        return self.fast_fee if fast else self.standard_fee


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_async_engine(f"sqlite:///{tmp_path / 'engine_test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def record_store(session_factory):
    return SqlAlchemyEscrowRecordStore(session_factory)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def instant_channel():
    return FakeInstantChannel()


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def directory():
    directory = InMemoryPartyDirectory()
    directory.add_agent("agent-1")
    directory.add_agent("agent-2")
    directory.wallets["user-1"] = "bc1quser1wallet"
    directory.wallets["user-2"] = "bc1quser2wallet"
    return directory


@pytest.fixture
def rate_service():
    return FakeRateService()


@pytest.fixture
def fee_estimator():
    return FakeFeeEstimator()


@pytest.fixture
def coordinator(record_store, ledger, notifications, directory, clock):
    return EscrowCoordinator(
        record_store=record_store,
        ledger_client=ledger,
        notifications=notifications,
        party_directory=directory,
        clock=clock,
    )


@pytest_asyncio.fixture
async def funded_escrow(coordinator, ledger):
    """A funded 50,000 sat escrow between user-1 and agent-1"""
    record = await coordinator.create_escrow("user-1", "agent-1", 50_000, Decimal("95500"), "UGX")
    ledger.balances[record.escrow_address] = 50_000
    assert await coordinator.check_funding(record.id) is True
    return await coordinator.get_escrow(record.id)

