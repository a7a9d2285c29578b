"""Agent and user address lookups used by escrow release, refunds and transfers"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import Agent, UserWallet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentProfile:
    id: str
    settlement_address: str
    is_active: bool
    fee_tier: Optional[Decimal] = None
    total_transactions: int = 0
    successful_transactions: int = 0
    name: Optional[str] = None
    location: Optional[str] = None

    @property
    def success_rate(self) -> float:
        if not self.total_transactions:
            return 0.0
        return self.successful_transactions / self.total_transactions

    def to_dict(self) -> Dict[str, Any]:
        # Settlement address stays internal
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "fee_tier": str(self.fee_tier) if self.fee_tier is not None else None,
            "total_transactions": self.total_transactions,
            "success_rate": round(self.success_rate, 4),
            "is_active": self.is_active,
        }

    @classmethod
    def from_model(cls, agent: Agent) -> "AgentProfile":
        return cls(
            id=agent.id,
            settlement_address=agent.settlement_address,
            is_active=agent.is_active,
            fee_tier=agent.fee_tier,
            total_transactions=agent.total_transactions,
            successful_transactions=agent.successful_transactions,
            name=agent.name,
            location=agent.location,
        )


def rank_agents(agents: List[AgentProfile]) -> List[AgentProfile]:
    """Best track record first; volume breaks ties"""
    return sorted(agents, key=lambda a: (-a.success_rate, -a.total_transactions, a.id))


class PartyDirectory(ABC):

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        ...

    @abstractmethod
    async def get_wallet_address(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def record_agent_outcome(self, agent_id: str, success: bool) -> None:
        """Update the agent's track record after an escrow reaches a final outcome"""

    @abstractmethod
    async def list_active_agents(self) -> List[AgentProfile]:
        """Active agents ranked by success rate, then transaction count"""


class SqlAlchemyPartyDirectory(PartyDirectory):

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        async with async_managed_session(self.session_factory) as session:
            agent = await session.get(Agent, agent_id)
            return AgentProfile.from_model(agent) if agent else None

    async def get_wallet_address(self, user_id: str) -> Optional[str]:
        async with async_managed_session(self.session_factory) as session:
            wallet = await session.get(UserWallet, user_id)
            return wallet.bitcoin_address if wallet else None

    async def record_agent_outcome(self, agent_id: str, success: bool) -> None:
        values = {"total_transactions": Agent.total_transactions + 1}
        if success:
            values["successful_transactions"] = Agent.successful_transactions + 1

        async with async_managed_session(self.session_factory) as session:
            await session.execute(update(Agent).where(Agent.id == agent_id).values(**values))
        logger.info(f"📊 AGENT_STATS: {agent_id} outcome recorded (success={success})")

    async def list_active_agents(self) -> List[AgentProfile]:
        stmt = select(Agent).where(Agent.is_active.is_(True))
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            return rank_agents([AgentProfile.from_model(agent) for agent in result.scalars().all()])


_party_directory: Optional[SqlAlchemyPartyDirectory] = None


def get_party_directory() -> SqlAlchemyPartyDirectory:
    global _party_directory
    if _party_directory is None:
        _party_directory = SqlAlchemyPartyDirectory()
    return _party_directory
