"""
Escrow Coordinator
Custody lifecycle for one cash/bitcoin exchange between a requester and an agent.

    create_escrow -> pending -> (balance observed) funded -> (agent presents code) completed
                     pending -> expired                   funded -> refunded | disputed

Every status change is a compare-and-swap on (status, version) through the
RecordStore. Release and refund first claim the funded record (a CAS write of
processing_operation/claimed_at) so that at most one worker ever moves the
escrowed funds. Any failure after a fund-movement attempt lands in disputed and
is never retried automatically.
"""

import asyncio
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import Config
from models import EscrowEvent, EscrowOperation, EscrowStatus, EscrowTransaction
from services.api_adapter import bounded_call
from services.dynamic_fee_service import ConversionRequest, DynamicFeeService, FeeBreakdown, LocationData
from services.escrow_record_store import DuplicateRecordError, RecordStore
from services.ledger_client import LedgerClient
from services.notification_service import NotificationPort
from services.party_directory import PartyDirectory
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_state_machine import EscrowStateValidator
from utils.exception_handler import (
    AllocationError,
    ConflictError,
    EscrowNotFoundError,
    ExpiredError,
    InvalidCodeError,
    LedgerError,
    NotFundedError,
    ReleaseNotRecordedError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome counts for one sweep pass"""
    examined: int = 0
    expired: int = 0
    refunded: int = 0
    disputed: int = 0
    skipped: int = 0
    errors: int = 0
    escrow_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examined": self.examined,
            "expired": self.expired,
            "refunded": self.refunded,
            "disputed": self.disputed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class EscrowCoordinator:
    """Escrow state machine driven by agents, requesters and the expiry sweep"""

    def __init__(
        self,
        record_store: RecordStore,
        ledger_client: LedgerClient,
        notifications: NotificationPort,
        party_directory: PartyDirectory,
        fee_service: Optional[DynamicFeeService] = None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self.record_store = record_store
        self.ledger_client = ledger_client
        self.notifications = notifications
        self.party_directory = party_directory
        self.fee_service = fee_service or DynamicFeeService()
        self.clock = clock

        prefix = re.escape(Config.EXCHANGE_CODE_PREFIX)
        self.code_pattern = re.compile(rf"^{prefix}-\d{{6}}$")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _new_escrow_id() -> str:
        return f"ESC{secrets.token_hex(8).upper()}"

    @staticmethod
    def _new_exchange_code() -> str:
        return f"{Config.EXCHANGE_CODE_PREFIX}-{secrets.randbelow(900000) + 100000}"

    async def _ledger(self, awaitable, operation: str):
        return await bounded_call(awaitable, Config.LEDGER_CALL_TIMEOUT_SECONDS, operation)

    async def _notify(self, party_id: str, event: EscrowEvent, payload: Dict[str, Any]) -> None:
        """Deliver a notification without ever failing the caller"""
        try:
            await asyncio.wait_for(
                self.notifications.notify(party_id, event, payload),
                timeout=Config.NOTIFICATION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning(f"⏰ NOTIFY_TIMEOUT: {event.value} -> {party_id}")
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: {event.value} -> {party_id}: {e}")

    @staticmethod
    def _event_payload(record: EscrowTransaction, **extra) -> Dict[str, Any]:
        payload = {
            "escrow_id": record.id,
            "status": record.status,
            "bitcoin_amount": record.bitcoin_amount,
            "local_amount": str(record.local_amount),
            "currency": record.currency,
        }
        payload.update(extra)
        return payload

    def _transition(self, record: EscrowTransaction, new_status: EscrowStatus, now: datetime) -> str:
        """Apply a validated status change in memory, returning the status the write must match"""
        expected = record.status
        EscrowStateValidator.validate_transition(record.id, expected, new_status.value)
        record.status = new_status.value
        record.updated_at = now
        return expected

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        requester_id: str,
        agent_id: str,
        bitcoin_amount: int,
        local_amount,
        currency: str,
    ) -> EscrowTransaction:
        """
        Open a pending escrow for a committed bitcoin amount.

        Raises:
            ValidationError: Bad amounts, unsupported currency, unknown or inactive agent
            AllocationError: Address generation failed or no free exchange code was found
        """
        if not requester_id or not agent_id:
            raise ValidationError("Requester and agent are required")
        if isinstance(bitcoin_amount, bool) or not isinstance(bitcoin_amount, int) or bitcoin_amount <= 0:
            raise ValidationError("Bitcoin amount must be a positive whole number of satoshis")
        try:
            local_amount = Decimal(str(local_amount))
        except InvalidOperation:
            raise ValidationError(f"Invalid local amount: {local_amount!r}")
        if not local_amount.is_finite() or local_amount < 0:
            raise ValidationError("Local amount cannot be negative")

        currency = (currency or "").upper()
        if currency not in Config.SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}")

        agent = await self.party_directory.get_agent(agent_id)
        if agent is None or not agent.is_active:
            raise ValidationError(f"Agent {agent_id} is not available")

        try:
            allocation = await self._ledger(self.ledger_client.generate_address(), "generate_address")
        except LedgerError as e:
            logger.error(f"❌ ESCROW_ADDRESS_ALLOCATION_FAILED: requester={requester_id} - {e}")
            raise AllocationError(f"Could not allocate escrow address: {e.message}") from e

        now = self.clock()

        for attempt in range(1, Config.EXCHANGE_CODE_MAX_ATTEMPTS + 1):
            code = self._new_exchange_code()
            holder = await self.record_store.find_by_code(code)
            if holder is not None and not holder.is_terminal:
                logger.debug(f"Exchange code collision on attempt {attempt}")
                continue

            record = EscrowTransaction(
                id=self._new_escrow_id(),
                requester_id=requester_id,
                agent_id=agent_id,
                bitcoin_amount=bitcoin_amount,
                local_amount=local_amount,
                currency=currency,
                escrow_address=allocation.address,
                exchange_code=code,
                status=EscrowStatus.PENDING.value,
                version=1,
                created_at=now,
                expires_at=now + timedelta(hours=Config.ESCROW_TIMEOUT_HOURS),
                updated_at=now,
            )
            try:
                await self.record_store.save(record)
            except DuplicateRecordError:
                # Lost the code to a concurrent insert between the check and the write
                continue

            logger.info(
                f"✅ ESCROW_CREATED: {record.id} requester={requester_id} agent={agent_id} "
                f"{bitcoin_amount} sats ({local_amount} {currency})"
            )
            await self._notify(
                agent_id,
                EscrowEvent.ESCROW_CREATED,
                self._event_payload(record, expires_at=record.expires_at.isoformat()),
            )
            return record

        logger.error(f"❌ EXCHANGE_CODE_EXHAUSTED: no free code after {Config.EXCHANGE_CODE_MAX_ATTEMPTS} attempts")
        raise AllocationError("Could not allocate a unique exchange code")

    async def create_escrow_for_conversion(
        self,
        requester_id: str,
        agent_id: str,
        request: ConversionRequest,
        provider_distance_km,
        provider_location: Optional[LocationData],
        bitcoin_amount: int,
        now: Optional[datetime] = None,
    ) -> Tuple[EscrowTransaction, FeeBreakdown]:
        """Price a conversion and open its escrow; the fee is taken from the gross requested amount"""
        pricing_time = now or request.timestamp or self.clock()
        breakdown = self.fee_service.compute_fee(request, provider_distance_km, provider_location, pricing_time)
        record = await self.create_escrow(
            requester_id=requester_id,
            agent_id=agent_id,
            bitcoin_amount=bitcoin_amount,
            local_amount=breakdown.net_amount,
            currency=request.currency,
        )
        return record, breakdown

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def check_funding(self, escrow_id: str) -> bool:
        """Promote pending -> funded once the escrow address holds the committed amount.

        Returns True when the record is funded after the call.
        """
        record = await self.get_escrow(escrow_id)
        if record.status == EscrowStatus.FUNDED.value:
            return True
        if record.status != EscrowStatus.PENDING.value:
            return False

        balance = await self._ledger(self.ledger_client.get_balance(record.escrow_address), "get_balance")
        if balance < record.bitcoin_amount:
            logger.debug(f"Escrow {escrow_id} balance {balance}/{record.bitcoin_amount} sats")
            return False

        now = self.clock()
        expected = self._transition(record, EscrowStatus.FUNDED, now)
        record.funded_at = now
        try:
            await self.record_store.save(record, expected_status=expected)
        except ConflictError:
            latest = await self.record_store.find_by_id(escrow_id)
            return latest is not None and latest.status == EscrowStatus.FUNDED.value

        logger.info(f"💰 ESCROW_FUNDED: {escrow_id} balance={balance} sats")
        payload = self._event_payload(record)
        await self._notify(record.agent_id, EscrowEvent.ESCROW_FUNDED, payload)
        await self._notify(record.requester_id, EscrowEvent.ESCROW_FUNDED, payload)
        return True

    async def check_pending_funding(self) -> int:
        """Run check_funding over a batch of pending escrows; returns how many became funded"""
        funded = 0
        for record in await self.record_store.find_pending(limit=Config.SWEEP_BATCH_SIZE):
            try:
                if await self.check_funding(record.id):
                    funded += 1
            except LedgerError as e:
                logger.warning(f"⚠️ FUNDING_CHECK_FAILED: {record.id} - {e}")
        return funded

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def verify_and_complete(self, agent_id: str, exchange_code: str) -> EscrowTransaction:
        """
        Release escrowed funds to the agent presenting the exchange code.

        Raises:
            InvalidCodeError: Malformed code or no escrow uses it
            UnauthorizedError: Code belongs to another agent
            NotFundedError: Escrow is not funded
            ExpiredError: Escrow passed expires_at
            ConflictError: Another worker is already moving this escrow's funds
            LedgerError: Transfer failed; ``error.escrow`` is the disputed record
            ReleaseNotRecordedError: Funds moved but the completion write lost a race
        """
        code = (exchange_code or "").strip().upper()
        if not self.code_pattern.match(code):
            raise InvalidCodeError("Invalid exchange code format")

        record = await self.record_store.find_by_code(code)
        if record is None:
            raise InvalidCodeError("Invalid exchange code")
        if record.agent_id != agent_id:
            logger.warning(f"🚫 UNAUTHORIZED_CODE_USE: agent {agent_id} presented code for escrow {record.id}")
            raise UnauthorizedError("Exchange code was issued for a different agent")
        if record.status != EscrowStatus.FUNDED.value:
            raise NotFundedError(f"Escrow {record.id} is {record.status}, not funded")

        now = self.clock()
        if now > record.expires_at:
            raise ExpiredError(f"Escrow {record.id} expired at {record.expires_at.isoformat()}")
        if record.processing_operation:
            raise ConflictError(f"Escrow {record.id} is already being processed ({record.processing_operation})")

        agent = await self.party_directory.get_agent(agent_id)
        if agent is None or not agent.settlement_address:
            raise ValidationError(f"Agent {agent_id} has no settlement address")

        await self._claim(record, EscrowOperation.RELEASE, now)

        try:
            receipt = await self._ledger(
                self.ledger_client.send(record.escrow_address, agent.settlement_address, record.bitcoin_amount),
                "release_send",
            )
        except LedgerError as e:
            logger.error(f"❌ RELEASE_FAILED: escrow {record.id} -> agent {agent_id}: {e}")
            e.escrow = await self._escalate_to_dispute(record, f"Release transfer failed: {e.message}")
            await self._record_agent_outcome(agent_id, success=False)
            raise
        except Exception as e:
            # Funds may have moved; the record must not stay claimed
            logger.error(f"❌ RELEASE_FAILED: escrow {record.id} -> agent {agent_id}: {e}", exc_info=True)
            disputed = await self._escalate_to_dispute(record, f"Release transfer failed unexpectedly: {e}")
            await self._record_agent_outcome(agent_id, success=False)
            raise LedgerError(f"Release transfer failed: {e}", escrow=disputed) from e

        now = self.clock()
        expected = self._transition(record, EscrowStatus.COMPLETED, now)
        record.completed_at = now
        record.settlement_reference = receipt.tx_ref
        record.processing_operation = None
        try:
            await self.record_store.save(record, expected_status=expected)
        except ConflictError as e:
            logger.critical(
                f"🚨 RELEASE_NOT_RECORDED: escrow {record.id} paid out ({receipt.tx_ref}) "
                f"but the record changed underneath the claim - manual review required"
            )
            latest = await self.record_store.find_by_id(record.id)
            raise ReleaseNotRecordedError(
                f"Escrow {record.id} released ({receipt.tx_ref}) but completion was not recorded",
                escrow=latest or record,
            ) from e

        logger.info(f"✅ ESCROW_COMPLETED: {record.id} released to {agent_id} tx={receipt.tx_ref}")

        await self._record_agent_outcome(agent_id, success=True)

        payload = self._event_payload(record, settlement_reference=receipt.tx_ref)
        await self._notify(record.agent_id, EscrowEvent.ESCROW_COMPLETED, payload)
        await self._notify(record.requester_id, EscrowEvent.ESCROW_COMPLETED, payload)
        return record

    async def _record_agent_outcome(self, agent_id: str, success: bool) -> None:
        try:
            await self.party_directory.record_agent_outcome(agent_id, success=success)
        except Exception as e:
            logger.error(f"Failed to update track record for agent {agent_id}: {e}")

    async def _claim(self, record: EscrowTransaction, operation: EscrowOperation, now: datetime) -> None:
        """Mark a funded record as owned by one fund movement; ConflictError if another worker won"""
        record.processing_operation = operation.value
        record.claimed_at = now
        record.updated_at = now
        await self.record_store.save(record, expected_status=EscrowStatus.FUNDED.value)
        logger.info(f"🔐 ESCROW_CLAIMED: {record.id} for {operation.value}")

    async def _escalate_to_dispute(self, record: EscrowTransaction, reason: str) -> EscrowTransaction:
        now = self.clock()
        expected = self._transition(record, EscrowStatus.DISPUTED, now)
        record.dispute_reason = reason
        record.processing_operation = None
        try:
            await self.record_store.save(record, expected_status=expected)
        except ConflictError:
            logger.critical(f"🚨 DISPUTE_NOT_RECORDED: escrow {record.id} - {reason}")
            latest = await self.record_store.find_by_id(record.id)
            return latest or record

        logger.warning(f"⚠️ ESCROW_DISPUTED: {record.id} - {reason}")
        payload = self._event_payload(record, reason=reason)
        await self._notify(record.agent_id, EscrowEvent.ESCROW_DISPUTED, payload)
        await self._notify(record.requester_id, EscrowEvent.ESCROW_DISPUTED, payload)
        return record

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def sweep_expired(self, now: Optional[datetime] = None) -> SweepResult:
        """Expire unfunded escrows, refund funded ones and dispute abandoned claims"""
        now = now or self.clock()
        result = SweepResult()

        expired = await self._collect_expired(now)
        stale = await self.record_store.find_stale_claims(
            now - timedelta(seconds=Config.STALE_CLAIM_SECONDS), limit=Config.SWEEP_BATCH_SIZE
        )
        candidates = {record.id: record for record in expired}
        for record in stale:
            candidates.setdefault(record.id, record)

        for record in candidates.values():
            result.examined += 1
            try:
                outcome = await self._sweep_one(record, now)
            except ConflictError as e:
                logger.info(f"⏭️ SWEEP_SKIPPED: {record.id} - {e}")
                result.skipped += 1
                continue
            except Exception as e:
                logger.error(f"❌ SWEEP_ERROR: {record.id} - {e}", exc_info=True)
                result.errors += 1
                continue

            if outcome is None:
                result.skipped += 1
                continue
            setattr(result, outcome, getattr(result, outcome) + 1)
            result.escrow_ids.append(record.id)

        if result.examined:
            logger.info(
                f"🧹 ESCROW_SWEEP: examined={result.examined} expired={result.expired} "
                f"refunded={result.refunded} disputed={result.disputed} skipped={result.skipped} errors={result.errors}"
            )
        return result

    async def _collect_expired(self, now: datetime) -> List[EscrowTransaction]:
        # Page by (expires_at, id) so records that stay active (live claims, earlier
        # errors) cannot hold later expiries out of every sweep
        records: List[EscrowTransaction] = []
        after = None
        for _ in range(Config.SWEEP_MAX_PAGES):
            page = await self.record_store.find_expired(now, limit=Config.SWEEP_BATCH_SIZE, after=after)
            records.extend(page)
            if len(page) < Config.SWEEP_BATCH_SIZE:
                break
            after = (page[-1].expires_at, page[-1].id)
        return records

    async def _sweep_one(self, record: EscrowTransaction, now: datetime) -> Optional[str]:
        if record.status == EscrowStatus.PENDING.value:
            if now <= record.expires_at:
                return None
            await self._expire(record, now)
            return "expired"

        if record.status != EscrowStatus.FUNDED.value:
            return None

        if record.processing_operation:
            cutoff = now - timedelta(seconds=Config.STALE_CLAIM_SECONDS)
            if record.claimed_at is None or record.claimed_at < cutoff:
                await self._escalate_to_dispute(
                    record, f"Abandoned {record.processing_operation} claimed at {record.claimed_at}"
                )
                return "disputed"
            # Fund movement in flight on another worker
            return None

        if now <= record.expires_at:
            return None
        return await self._refund(record, now)

    async def _expire(self, record: EscrowTransaction, now: datetime) -> None:
        expected = self._transition(record, EscrowStatus.EXPIRED, now)
        await self.record_store.save(record, expected_status=expected)
        logger.info(f"⌛ ESCROW_EXPIRED: {record.id} never funded")
        payload = self._event_payload(record)
        await self._notify(record.requester_id, EscrowEvent.ESCROW_EXPIRED, payload)
        await self._notify(record.agent_id, EscrowEvent.ESCROW_EXPIRED, payload)

    async def _refund(self, record: EscrowTransaction, now: datetime) -> str:
        refund_address = await self.party_directory.get_wallet_address(record.requester_id)
        if not refund_address:
            await self._escalate_to_dispute(record, f"No refund address for requester {record.requester_id}")
            return "disputed"

        await self._claim(record, EscrowOperation.REFUND, now)

        try:
            receipt = await self._ledger(
                self.ledger_client.send(record.escrow_address, refund_address, record.bitcoin_amount),
                "refund_send",
            )
        except LedgerError as e:
            logger.error(f"❌ REFUND_FAILED: escrow {record.id} -> {record.requester_id}: {e}")
            await self._escalate_to_dispute(record, f"Refund transfer failed: {e.message}")
            return "disputed"
        except Exception as e:
            logger.error(f"❌ REFUND_FAILED: escrow {record.id} -> {record.requester_id}: {e}", exc_info=True)
            await self._escalate_to_dispute(record, f"Refund transfer failed unexpectedly: {e}")
            return "disputed"

        done = self.clock()
        expected = self._transition(record, EscrowStatus.REFUNDED, done)
        record.refund_reference = receipt.tx_ref
        record.processing_operation = None
        try:
            await self.record_store.save(record, expected_status=expected)
        except ConflictError:
            logger.critical(
                f"🚨 REFUND_NOT_RECORDED: escrow {record.id} refunded ({receipt.tx_ref}) "
                f"but the record changed underneath the claim - manual review required"
            )
            raise

        logger.info(f"↩️ ESCROW_REFUNDED: {record.id} to {record.requester_id} tx={receipt.tx_ref}")
        payload = self._event_payload(record, refund_reference=receipt.tx_ref)
        await self._notify(record.requester_id, EscrowEvent.ESCROW_REFUNDED, payload)
        await self._notify(record.agent_id, EscrowEvent.ESCROW_REFUNDED, payload)
        return "refunded"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: str) -> EscrowTransaction:
        record = await self.record_store.find_by_id(escrow_id)
        if record is None:
            raise EscrowNotFoundError(f"Escrow {escrow_id} not found")
        return record

    async def list_requester_escrows(self, requester_id: str) -> List[EscrowTransaction]:
        return await self.record_store.list_by_requester(requester_id)

    async def list_agent_escrows(self, agent_id: str) -> List[EscrowTransaction]:
        return await self.record_store.list_by_agent(agent_id)


_escrow_coordinator: Optional[EscrowCoordinator] = None


def get_escrow_coordinator() -> EscrowCoordinator:
    """Process-wide coordinator wired to the database and HTTP ledger"""
    global _escrow_coordinator
    if _escrow_coordinator is None:
        from services.escrow_record_store import SqlAlchemyEscrowRecordStore
        from services.ledger_client import HttpLedgerClient
        from services.notification_service import LoggingNotificationService, OutboxNotificationService
        from services.party_directory import get_party_directory

        _escrow_coordinator = EscrowCoordinator(
            record_store=SqlAlchemyEscrowRecordStore(),
            ledger_client=HttpLedgerClient(),
            notifications=(
                LoggingNotificationService() if Config.NOTIFICATION_BACKEND == "log" else OutboxNotificationService()
            ),
            party_directory=get_party_directory(),
        )
    return _escrow_coordinator
