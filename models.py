"""
Agent Cash Exchange - Database Schema
=====================================

Focused schema for the money-movement engine:
- Escrow custody records between a requester and a cash agent
- Agent directory with settlement addresses and track record
- User wallet addresses used for refunds and direct transfers
- Notification outbox for fire-and-forget party messaging

All timestamps are stored as naive UTC datetimes (see utils.datetime_helpers).
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    Index, JSON, func, text
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class EscrowStatus(Enum):
    """Escrow custody lifecycle states"""
    PENDING = "pending"
    FUNDED = "funded"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


ACTIVE_ESCROW_STATUSES = (EscrowStatus.PENDING.value, EscrowStatus.FUNDED.value)
TERMINAL_ESCROW_STATUSES = (
    EscrowStatus.COMPLETED.value,
    EscrowStatus.DISPUTED.value,
    EscrowStatus.REFUNDED.value,
    EscrowStatus.EXPIRED.value,
)


class EscrowOperation(Enum):
    """Fund-movement operations that claim a funded escrow before touching the ledger"""
    RELEASE = "release"
    REFUND = "refund"


class EscrowEvent(Enum):
    """Events delivered to parties through the notification port"""
    ESCROW_CREATED = "escrow_created"
    ESCROW_FUNDED = "escrow_funded"
    ESCROW_COMPLETED = "escrow_completed"
    ESCROW_EXPIRED = "escrow_expired"
    ESCROW_REFUNDED = "escrow_refunded"
    ESCROW_DISPUTED = "escrow_disputed"


# ============================================================================
# ESCROW CUSTODY
# ============================================================================

class EscrowTransaction(Base):
    """Bitcoin held in escrow between a requester and an agent"""
    __tablename__ = 'escrow_transactions'

    id = Column(String(32), primary_key=True)

    # Participants
    requester_id = Column(String(64), nullable=False, index=True)
    agent_id = Column(String(64), nullable=False, index=True)

    # Committed funds - immutable after creation
    bitcoin_amount = Column(BigInteger, nullable=False)  # satoshis
    local_amount = Column(Numeric(38, 8), nullable=False)  # committed value minus fee
    currency = Column(String(10), nullable=False)

    # Custody
    escrow_address = Column(String(128), unique=True, nullable=False)
    exchange_code = Column(String(16), nullable=False, index=True)

    # Status and optimistic lock
    status = Column(String(20), default=EscrowStatus.PENDING.value, nullable=False)
    version = Column(Integer, nullable=False, default=1, server_default="1")

    # Fund-movement claim (set while a release/refund ledger call is in flight)
    processing_operation = Column(String(20), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    # Lifecycle timestamps
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    funded_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    # Settlement outcome
    settlement_reference = Column(String(128), nullable=True)
    refund_reference = Column(String(128), nullable=True)
    dispute_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_escrow_transactions_status_expires', 'status', 'expires_at'),
        # Exchange codes are unique among non-terminal records only
        Index(
            'uq_escrow_transactions_active_code',
            'exchange_code',
            unique=True,
            postgresql_where=text("status IN ('pending', 'funded')"),
            sqlite_where=text("status IN ('pending', 'funded')"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ESCROW_STATUSES

    def to_dict(self) -> dict:
        """Public view of the record (exchange code is only for the requester)"""
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "agent_id": self.agent_id,
            "bitcoin_amount": self.bitcoin_amount,
            "local_amount": str(self.local_amount),
            "currency": self.currency,
            "escrow_address": self.escrow_address,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "funded_at": self.funded_at.isoformat() if self.funded_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "settlement_reference": self.settlement_reference,
            "refund_reference": self.refund_reference,
        }

    def __repr__(self):
        return f"<EscrowTransaction(id={self.id}, status={self.status}, version={self.version})>"


# ============================================================================
# PARTIES
# ============================================================================

class Agent(Base):
    """Cash liquidity provider"""
    __tablename__ = 'agents'

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    location = Column(String(255), nullable=True)
    settlement_address = Column(String(128), nullable=False)
    fee_tier = Column(Numeric(10, 4), nullable=True)  # advertised fee percentage
    is_active = Column(Boolean, default=True, nullable=False)

    # Track record
    total_transactions = Column(Integer, default=0, nullable=False)
    successful_transactions = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Agent(id={self.id}, active={self.is_active})>"


class UserWallet(Base):
    """Bitcoin receiving address for a platform user"""
    __tablename__ = 'user_wallets'

    user_id = Column(String(64), primary_key=True)
    bitcoin_address = Column(String(128), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class OutboxEvent(Base):
    """Outbox pattern for reliable party notifications"""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(100), nullable=True)
    party_id = Column(String(64), nullable=False)
    event_data = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_outbox_events_processed', 'processed'),
        Index('ix_outbox_events_party_id', 'party_id'),
    )

    def __repr__(self):
        return f"<OutboxEvent(event_type={self.event_type}, party_id={self.party_id}, processed={self.processed})>"
