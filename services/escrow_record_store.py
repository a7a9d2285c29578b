"""
Escrow Record Store
Persistence port for escrow records with compare-and-swap writes.

A conditional save only succeeds when the stored row still has the status the
caller expects and the version the caller read; otherwise ConflictError is
raised and nothing is written. This is the only mutual exclusion the escrow
coordinator relies on, so it holds across processes and workers.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import ACTIVE_ESCROW_STATUSES, EscrowStatus, EscrowTransaction
from utils.exception_handler import ConflictError

logger = logging.getLogger(__name__)


class DuplicateRecordError(ConflictError):
    """Insert collided with a unique constraint (escrow address or active exchange code)"""
    pass


class RecordStore(ABC):

    @abstractmethod
    async def save(self, record: EscrowTransaction, expected_status: Optional[str] = None) -> EscrowTransaction:
        """Insert when expected_status is None, else compare-and-swap on (status, version)"""

    @abstractmethod
    async def find_by_id(self, escrow_id: str) -> Optional[EscrowTransaction]:
        ...

    @abstractmethod
    async def find_by_code(self, exchange_code: str) -> Optional[EscrowTransaction]:
        """Non-terminal holder of the code if any, else the most recent record that used it"""

    @abstractmethod
    async def find_expired(
        self, before: datetime, limit: int = 50, after: Optional[Tuple[datetime, str]] = None
    ) -> List[EscrowTransaction]:
        """Pending or funded records whose expires_at is earlier than ``before``

        Ordered by (expires_at, id). ``after`` is the key of the last record of the
        previous page, so callers can page past records that stay active.
        """

    @abstractmethod
    async def find_pending(self, limit: int = 50) -> List[EscrowTransaction]:
        """Pending records awaiting a funding check, oldest first"""

    @abstractmethod
    async def find_stale_claims(self, claimed_before: datetime, limit: int = 50) -> List[EscrowTransaction]:
        """Funded records holding a fund-movement claim taken before ``claimed_before``"""

    @abstractmethod
    async def list_by_requester(self, requester_id: str) -> List[EscrowTransaction]:
        ...

    @abstractmethod
    async def list_by_agent(self, agent_id: str) -> List[EscrowTransaction]:
        ...


class SqlAlchemyEscrowRecordStore(RecordStore):
    """RecordStore on SQLAlchemy async sessions (PostgreSQL in production, SQLite in tests)"""

    # Columns never written by a conditional update
    _IMMUTABLE_COLUMNS = {"id", "version"}

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    def _mutable_values(self, record: EscrowTransaction) -> dict:
        return {
            column.key: getattr(record, column.key)
            for column in EscrowTransaction.__table__.columns
            if column.key not in self._IMMUTABLE_COLUMNS
        }

    async def save(self, record: EscrowTransaction, expected_status: Optional[str] = None) -> EscrowTransaction:
        if expected_status is None:
            return await self._insert(record)

        read_version = record.version
        async with async_managed_session(self.session_factory) as session:
            stmt = (
                update(EscrowTransaction)
                .where(
                    EscrowTransaction.id == record.id,
                    EscrowTransaction.status == expected_status,
                    EscrowTransaction.version == read_version,
                )
                .values(**self._mutable_values(record), version=read_version + 1)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)

            if result.rowcount == 0:
                logger.warning(
                    f"🔒 CAS_CONFLICT: escrow {record.id} expected status={expected_status} "
                    f"version={read_version} - modified by another worker"
                )
                raise ConflictError(
                    f"Escrow {record.id} changed since it was read (expected {expected_status} v{read_version})"
                )

        record.version = read_version + 1
        logger.debug(f"✅ CAS_WRITE: escrow {record.id} {expected_status} -> {record.status} v{record.version}")
        return record

    async def _insert(self, record: EscrowTransaction) -> EscrowTransaction:
        if record.version is None:
            record.version = 1
        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(record)
        except IntegrityError as e:
            logger.warning(f"🔒 DUPLICATE_ESCROW_INSERT: {record.id} - {e.orig}")
            raise DuplicateRecordError(f"Escrow {record.id} collides with an existing record") from e
        return record

    async def find_by_id(self, escrow_id: str) -> Optional[EscrowTransaction]:
        async with async_managed_session(self.session_factory) as session:
            return await session.get(EscrowTransaction, escrow_id)

    async def find_by_code(self, exchange_code: str) -> Optional[EscrowTransaction]:
        active_first = case((EscrowTransaction.status.in_(ACTIVE_ESCROW_STATUSES), 0), else_=1)
        stmt = (
            select(EscrowTransaction)
            .where(EscrowTransaction.exchange_code == exchange_code)
            .order_by(active_first, EscrowTransaction.created_at.desc())
            .limit(1)
        )
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def find_expired(
        self, before: datetime, limit: int = 50, after: Optional[Tuple[datetime, str]] = None
    ) -> List[EscrowTransaction]:
        stmt = select(EscrowTransaction).where(
            EscrowTransaction.status.in_(ACTIVE_ESCROW_STATUSES),
            EscrowTransaction.expires_at < before,
        )
        if after is not None:
            # Keyset page: strictly past the last (expires_at, id) already seen
            after_expires_at, after_id = after
            stmt = stmt.where(
                or_(
                    EscrowTransaction.expires_at > after_expires_at,
                    and_(EscrowTransaction.expires_at == after_expires_at, EscrowTransaction.id > after_id),
                )
            )
        stmt = stmt.order_by(EscrowTransaction.expires_at, EscrowTransaction.id).limit(limit)
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_pending(self, limit: int = 50) -> List[EscrowTransaction]:
        stmt = (
            select(EscrowTransaction)
            .where(EscrowTransaction.status == EscrowStatus.PENDING.value)
            .order_by(EscrowTransaction.created_at)
            .limit(limit)
        )
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_stale_claims(self, claimed_before: datetime, limit: int = 50) -> List[EscrowTransaction]:
        stmt = (
            select(EscrowTransaction)
            .where(
                EscrowTransaction.status == EscrowStatus.FUNDED.value,
                EscrowTransaction.processing_operation.is_not(None),
                EscrowTransaction.claimed_at < claimed_before,
            )
            .order_by(EscrowTransaction.claimed_at)
            .limit(limit)
        )
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_by_requester(self, requester_id: str) -> List[EscrowTransaction]:
        stmt = (
            select(EscrowTransaction)
            .where(EscrowTransaction.requester_id == requester_id)
            .order_by(EscrowTransaction.created_at.desc())
        )
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_by_agent(self, agent_id: str) -> List[EscrowTransaction]:
        stmt = (
            select(EscrowTransaction)
            .where(EscrowTransaction.agent_id == agent_id)
            .order_by(EscrowTransaction.created_at.desc())
        )
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
