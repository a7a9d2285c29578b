"""
Bitcoin Routing Service
Chooses between the instant channel and direct (on-chain) settlement for a
peer-to-peer transfer and executes the transfer on the chosen channel.

Routing is an ordered rule table over the USD value of the transfer. There is
no cross-channel fallback: a failed instant payment is reported as failed, never
resent on the direct channel.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import Config
from services.api_adapter import bounded_call
from services.exchange_rate_service import SATS_PER_BTC, ExchangeRate, ExchangeRateService
from services.ledger_client import LedgerClient
from services.lightning_service import InstantChannelClient, PaymentResult, PaymentStatus, calculate_instant_fee
from services.network_fee_estimator import NetworkFeeEstimator
from services.party_directory import PartyDirectory
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    LedgerError,
    LedgerTimeoutError,
    RateUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class RoutingMethod(Enum):
    INSTANT = "instant"
    DIRECT = "direct"


class RoutingUrgency(Enum):
    INSTANT = "instant"
    STANDARD = "standard"
    ECONOMY = "economy"


class TransferStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RoutingRule:
    """Applies to transfers worth less than ``below_usd`` (None matches everything)"""
    below_usd: Optional[Decimal]
    method: RoutingMethod
    reason: str
    estimated_time: str
    urgent_time: Optional[str] = None


ROUTING_RULES: Tuple[RoutingRule, ...] = (
    RoutingRule(
        below_usd=Config.INSTANT_CHANNEL_MIN_USD,
        method=RoutingMethod.DIRECT,
        reason="Amount too small for instant channel (dust limit)",
        estimated_time="10-60 minutes",
    ),
    RoutingRule(
        below_usd=Config.INSTANT_CHANNEL_MAX_USD,
        method=RoutingMethod.INSTANT,
        reason=f"Optimal for instant channel (<${Config.INSTANT_CHANNEL_MAX_USD})",
        estimated_time="< 1 second",
    ),
    RoutingRule(
        below_usd=None,
        method=RoutingMethod.DIRECT,
        reason=f"Large amount (>=${Config.INSTANT_CHANNEL_MAX_USD}) - direct settlement for security",
        estimated_time="30-60 minutes",
        urgent_time="10 minutes",
    ),
)

RATE_UNAVAILABLE_REASON = "Exchange rate unavailable - defaulting to direct settlement"


@dataclass(frozen=True)
class RoutingDecision:
    method: RoutingMethod
    reason: str
    estimated_fee_sats: int
    estimated_time: str
    fee_percentage: Optional[Decimal]
    usd_equivalent: Optional[Decimal]
    amount_sats: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "reason": self.reason,
            "estimated_fee_sats": self.estimated_fee_sats,
            "estimated_time": self.estimated_time,
            "fee_percentage": str(self.fee_percentage) if self.fee_percentage is not None else None,
            "usd_equivalent": str(self.usd_equivalent) if self.usd_equivalent is not None else None,
            "amount_sats": self.amount_sats,
        }


@dataclass(frozen=True)
class ChannelOption:
    method: RoutingMethod
    estimated_fee_sats: Optional[int]
    estimated_time: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "estimated_fee_sats": self.estimated_fee_sats,
            "estimated_time": self.estimated_time,
            "description": self.description,
        }


@dataclass(frozen=True)
class RoutingRecommendation:
    recommended: RoutingDecision
    options: Tuple[ChannelOption, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommended": self.recommended.to_dict(),
            "options": [option.to_dict() for option in self.options],
        }


@dataclass
class BitcoinTransfer:
    """Ephemeral record of one executed transfer"""
    id: str
    from_user_id: str
    to_user_id: str
    amount: Decimal
    currency: str
    amount_sats: int
    method: RoutingMethod
    status: TransferStatus
    created_at: datetime
    fee_sats: int = 0
    tx_reference: Optional[str] = None
    payment_request: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "amount_sats": self.amount_sats,
            "method": self.method.value,
            "status": self.status.value,
            "fee_sats": self.fee_sats,
            "tx_reference": self.tx_reference,
            "payment_request": self.payment_request,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class BitcoinRoutingService:
    """Instant vs. direct settlement decisions and execution"""

    def __init__(
        self,
        rate_service: ExchangeRateService,
        fee_estimator: NetworkFeeEstimator,
        ledger_client: LedgerClient,
        instant_client: InstantChannelClient,
        party_directory: PartyDirectory,
        rules: Tuple[RoutingRule, ...] = ROUTING_RULES,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self.rate_service = rate_service
        self.fee_estimator = fee_estimator
        self.ledger_client = ledger_client
        self.instant_client = instant_client
        self.party_directory = party_directory
        self.rules = rules
        self.clock = clock

    @staticmethod
    def _validate(amount, currency: str, urgency) -> Tuple[Decimal, str, Optional[RoutingUrgency]]:
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {amount!r}")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        currency = (currency or "").upper()
        if currency not in Config.SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}")

        if urgency is not None and not isinstance(urgency, RoutingUrgency):
            try:
                urgency = RoutingUrgency(urgency)
            except ValueError:
                raise ValidationError(f"Unsupported urgency: {urgency!r}")
        return amount, currency, urgency

    async def _lookup_rate(self, currency: str) -> Optional[ExchangeRate]:
        try:
            return await asyncio.wait_for(
                self.rate_service.get_rate(currency), timeout=Config.RATE_LOOKUP_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning(f"⏰ RATE_LOOKUP_TIMEOUT: {currency} after {Config.RATE_LOOKUP_TIMEOUT_SECONDS}s")
        except RateUnavailableError as e:
            logger.warning(f"⚠️ RATE_UNAVAILABLE: {currency} - {e}")
        except Exception as e:
            logger.error(f"❌ RATE_LOOKUP_ERROR: {currency} - {e}", exc_info=True)
        return None

    @staticmethod
    def _amount_sats(amount: Decimal, currency: str, rate: Optional[ExchangeRate]) -> Optional[int]:
        if currency == "BTC":
            return int((amount * SATS_PER_BTC).to_integral_value(rounding=ROUND_HALF_UP))
        if rate is None:
            return None
        return rate.to_sats(amount)

    @staticmethod
    def _fee_percentage(fee_sats: int, amount_sats: Optional[int]) -> Optional[Decimal]:
        if not amount_sats:
            return None
        return (Decimal(fee_sats) / Decimal(amount_sats) * 100).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

    def _match_rule(self, usd: Decimal) -> RoutingRule:
        for rule in self.rules:
            if rule.below_usd is None or usd < rule.below_usd:
                return rule
        raise ValidationError(f"No routing rule matches ${usd}")

    async def decide_routing(self, amount, currency: str, urgency=None) -> RoutingDecision:
        """
        Pick the settlement channel for a transfer.

        Falls back to direct settlement whenever the USD value cannot be
        determined.
        """
        amount, currency, urgency = self._validate(amount, currency, urgency)
        fast = urgency == RoutingUrgency.INSTANT

        rate = await self._lookup_rate(currency)
        amount_sats = self._amount_sats(amount, currency, rate)

        if rate is None:
            fee_sats = await self.fee_estimator.estimate_fee_sats(fast=fast)
            return RoutingDecision(
                method=RoutingMethod.DIRECT,
                reason=RATE_UNAVAILABLE_REASON,
                estimated_fee_sats=fee_sats,
                estimated_time="10 minutes" if fast else "30-60 minutes",
                fee_percentage=self._fee_percentage(fee_sats, amount_sats),
                usd_equivalent=None,
                amount_sats=amount_sats,
            )

        usd = rate.to_usd(amount)
        rule = self._match_rule(usd)

        if rule.method == RoutingMethod.INSTANT:
            fee_sats = calculate_instant_fee(amount_sats)
        else:
            fee_sats = await self.fee_estimator.estimate_fee_sats(fast=fast)

        estimated_time = rule.urgent_time if (fast and rule.urgent_time) else rule.estimated_time
        decision = RoutingDecision(
            method=rule.method,
            reason=rule.reason,
            estimated_fee_sats=fee_sats,
            estimated_time=estimated_time,
            fee_percentage=self._fee_percentage(fee_sats, amount_sats),
            usd_equivalent=usd.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
            amount_sats=amount_sats,
        )
        logger.debug(f"Routing {amount} {currency} (${decision.usd_equivalent}) -> {rule.method.value}")
        return decision

    async def execute_transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        amount,
        currency: str,
        urgency=None,
    ) -> BitcoinTransfer:
        """
        Route and execute one transfer.

        Raises:
            ValidationError: Bad input or a party without a wallet address
            RateUnavailableError: The amount cannot be converted to satoshis
        """
        if not from_user_id or not to_user_id:
            raise ValidationError("Sender and recipient are required")
        if from_user_id == to_user_id:
            raise ValidationError("Cannot transfer to yourself")

        decision = await self.decide_routing(amount, currency, urgency)
        if not decision.amount_sats:
            raise RateUnavailableError(f"Cannot size a {currency} transfer without an exchange rate")

        transfer = BitcoinTransfer(
            id=f"TRF{secrets.token_hex(8).upper()}",
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=Decimal(str(amount)),
            currency=currency.upper(),
            amount_sats=decision.amount_sats,
            method=decision.method,
            status=TransferStatus.PENDING,
            created_at=self.clock(),
        )

        if decision.method == RoutingMethod.INSTANT:
            await self._execute_instant(transfer)
        else:
            await self._execute_direct(transfer, decision)

        logger.info(
            f"🔀 TRANSFER_{transfer.status.value.upper()}: {transfer.id} {transfer.amount_sats} sats "
            f"{from_user_id} -> {to_user_id} via {transfer.method.value}"
        )
        return transfer

    async def _execute_instant(self, transfer: BitcoinTransfer) -> None:
        timeout = Config.INSTANT_CHANNEL_TIMEOUT_SECONDS
        try:
            invoice = await bounded_call(
                self.instant_client.create_invoice(transfer.amount_sats, f"Transfer {transfer.id}"),
                timeout,
                "create_invoice",
            )
        except LedgerError as e:
            # Nothing was paid yet
            transfer.status = TransferStatus.FAILED
            transfer.failure_reason = f"Invoice creation failed: {e.message}"
            return

        transfer.payment_request = invoice.payment_request
        try:
            result = await bounded_call(self.instant_client.pay_invoice(invoice.payment_request), timeout, "pay_invoice")
        except LedgerTimeoutError as e:
            transfer.failure_reason = f"Payment outcome unknown: {e.message}"
            logger.warning(f"⏰ INSTANT_PAYMENT_UNKNOWN: {transfer.id} left pending for reconciliation")
            return
        except LedgerError as e:
            transfer.status = TransferStatus.FAILED
            transfer.failure_reason = f"Instant payment failed: {e.message}"
            return

        self._apply_payment_result(transfer, result)

    def _apply_payment_result(self, transfer: BitcoinTransfer, result: PaymentResult) -> None:
        if result.status == PaymentStatus.SUCCEEDED:
            transfer.status = TransferStatus.COMPLETED
            transfer.fee_sats = result.fee_sats
            transfer.failure_reason = None
            transfer.completed_at = self.clock()
        elif result.status == PaymentStatus.FAILED:
            transfer.status = TransferStatus.FAILED
            transfer.failure_reason = "Instant payment was rejected by the channel"
        else:
            transfer.failure_reason = "Instant payment still in flight"

    async def _execute_direct(self, transfer: BitcoinTransfer, decision: RoutingDecision) -> None:
        from_address = await self.party_directory.get_wallet_address(transfer.from_user_id)
        to_address = await self.party_directory.get_wallet_address(transfer.to_user_id)
        if not from_address or not to_address:
            raise ValidationError("Both parties need a bitcoin wallet address for direct settlement")

        try:
            receipt = await bounded_call(
                self.ledger_client.send(from_address, to_address, transfer.amount_sats),
                Config.LEDGER_CALL_TIMEOUT_SECONDS,
                "direct_send",
            )
        except LedgerTimeoutError as e:
            transfer.failure_reason = f"Send outcome unknown: {e.message}"
            logger.warning(f"⏰ DIRECT_SEND_UNKNOWN: {transfer.id} left pending for reconciliation")
            return
        except LedgerError as e:
            transfer.status = TransferStatus.FAILED
            transfer.failure_reason = f"Direct send failed: {e.message}"
            return

        transfer.status = TransferStatus.PROCESSING
        transfer.tx_reference = receipt.tx_ref
        transfer.fee_sats = decision.estimated_fee_sats

    async def refresh_transfer_status(self, transfer: BitcoinTransfer) -> BitcoinTransfer:
        """
        Reconcile a transfer whose outcome was not final when it was executed.

        Pending instant transfers are resolved from the channel's payment status;
        processing direct transfers complete once they have enough confirmations.
        """
        if (
            transfer.method == RoutingMethod.INSTANT
            and transfer.status == TransferStatus.PENDING
            and transfer.payment_request
        ):
            return await self._reconcile_instant(transfer)

        if (
            transfer.method != RoutingMethod.DIRECT
            or transfer.status != TransferStatus.PROCESSING
            or not transfer.tx_reference
        ):
            return transfer

        confirmations = await bounded_call(
            self.ledger_client.get_confirmations(transfer.tx_reference),
            Config.LEDGER_CALL_TIMEOUT_SECONDS,
            "get_confirmations",
        )
        if confirmations >= Config.REQUIRED_CONFIRMATIONS:
            transfer.status = TransferStatus.COMPLETED
            transfer.completed_at = self.clock()
            logger.info(f"✅ TRANSFER_CONFIRMED: {transfer.id} ({confirmations} confirmations)")
        return transfer

    async def _reconcile_instant(self, transfer: BitcoinTransfer) -> BitcoinTransfer:
        try:
            result = await bounded_call(
                self.instant_client.get_payment_status(transfer.payment_request),
                Config.INSTANT_CHANNEL_TIMEOUT_SECONDS,
                "get_payment_status",
            )
        except LedgerError as e:
            logger.warning(f"⚠️ INSTANT_STATUS_UNKNOWN: {transfer.id} still pending - {e.message}")
            return transfer

        self._apply_payment_result(transfer, result)
        if transfer.status != TransferStatus.PENDING:
            logger.info(f"⚡ TRANSFER_RECONCILED: {transfer.id} -> {transfer.status.value}")
        return transfer

    async def get_recommendation(self, amount, currency: str) -> RoutingRecommendation:
        """Routing decision alongside both channel options for comparison"""
        decision = await self.decide_routing(amount, currency)
        instant_fee = calculate_instant_fee(decision.amount_sats) if decision.amount_sats else None
        direct_fee = await self.fee_estimator.estimate_fee_sats()

        options: List[ChannelOption] = [
            ChannelOption(
                method=RoutingMethod.INSTANT,
                estimated_fee_sats=instant_fee,
                estimated_time="< 1 second",
                description="Instant transfer with minimal fees",
            ),
            ChannelOption(
                method=RoutingMethod.DIRECT,
                estimated_fee_sats=direct_fee,
                estimated_time="30-60 minutes",
                description="Direct settlement, best for larger amounts",
            ),
        ]
        return RoutingRecommendation(recommended=decision, options=tuple(options))


_bitcoin_routing_service: Optional[BitcoinRoutingService] = None


def get_bitcoin_routing_service() -> BitcoinRoutingService:
    global _bitcoin_routing_service
    if _bitcoin_routing_service is None:
        from services.exchange_rate_service import get_exchange_rate_service
        from services.ledger_client import HttpLedgerClient
        from services.lightning_service import HttpInstantChannelClient
        from services.network_fee_estimator import get_network_fee_estimator
        from services.party_directory import get_party_directory

        _bitcoin_routing_service = BitcoinRoutingService(
            rate_service=get_exchange_rate_service(),
            fee_estimator=get_network_fee_estimator(),
            ledger_client=HttpLedgerClient(),
            instant_client=HttpInstantChannelClient(),
            party_directory=get_party_directory(),
        )
    return _bitcoin_routing_service
