"""
Dynamic Fee Service - multi-factor pricing for agent cash/bitcoin conversions

Prices one conversion by agent distance, location accessibility, urgency,
time of day and local demand. Every stage is a percentage of the original
request amount; the sum is clamped to [2%, 12%] and split 70/30 between the
agent and the platform.

The service is pure: no I/O, no clock reads (``now`` is always passed in) and
no mutation of its inputs, so it is safe to call concurrently without locks.
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from utils.datetime_helpers import DayType, TimeBucket, TimeOfDay
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)


class Accessibility(Enum):
    URBAN = "urban"
    SUBURBAN = "suburban"
    RURAL = "rural"
    REMOTE = "remote"


class Urgency(Enum):
    STANDARD = "standard"    # no time commitment
    EXPRESS = "express"      # within 2 hours
    EMERGENCY = "emergency"  # within 30 minutes


class ConversionDirection(Enum):
    CASH_IN = "cash_in"
    CASH_OUT = "cash_out"
    BITCOIN_BUY = "bitcoin_buy"
    BITCOIN_SELL = "bitcoin_sell"


class ServiceType(Enum):
    CASH_IN = "cash_in"
    CASH_OUT = "cash_out"
    BITCOIN_EXCHANGE = "bitcoin_exchange"


@dataclass(frozen=True)
class LocationData:
    latitude: float
    longitude: float
    accessibility: Accessibility


@dataclass(frozen=True)
class AgentLocation:
    agent_id: str
    latitude: float
    longitude: float
    accessibility: Accessibility
    operating_radius_km: float
    service_types: FrozenSet[ServiceType] = frozenset()


@dataclass(frozen=True)
class ConversionRequest:
    """Transient pricing request - never persisted"""
    amount: Decimal
    currency: str
    direction: ConversionDirection
    location: LocationData
    urgency: Urgency
    timestamp: Optional[object] = None


@dataclass(frozen=True)
class FeeComponent:
    description: str
    percentage: Decimal
    amount: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "description": self.description,
            "percentage": str(self.percentage),
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    currency: str
    components: Tuple[FeeComponent, ...]
    total_fee_percentage: Decimal
    total_fee_amount: Decimal
    agent_share: Decimal
    platform_share: Decimal

    @property
    def net_amount(self) -> Decimal:
        """Requested amount minus the total fee"""
        return self.amount - self.total_fee_amount

    def to_dict(self) -> Dict[str, object]:
        return {
            "amount": str(self.amount),
            "currency": self.currency,
            "breakdown": [component.to_dict() for component in self.components],
            "total_fee_percentage": str(self.total_fee_percentage),
            "total_fee_amount": str(self.total_fee_amount),
            "agent_share": str(self.agent_share),
            "platform_share": str(self.platform_share),
        }

    def format_breakdown(self) -> str:
        """Human readable breakdown for SMS and receipts"""
        lines = ["Fee Breakdown:"]
        for component in self.components:
            lines.append(
                f"• {component.description}: {component.percentage * 100:.2f}% ({component.amount:.0f})"
            )
        lines.append("")
        lines.append(f"Total Fee: {self.total_fee_percentage * 100:.2f}% ({self.total_fee_amount:.0f})")
        lines.append(f"Agent Commission: {self.agent_share:.0f}")
        lines.append(f"Platform Fee: {self.platform_share:.0f}")
        return "\n".join(lines)


@dataclass(frozen=True)
class FeeEstimate:
    min_fee: Decimal
    max_fee: Decimal
    factors: List[str] = field(default_factory=list)


class DynamicFeeService:
    """Conversion fee calculator"""

    BASE_FEE = Decimal("0.015")
    MIN_TOTAL_FEE = Decimal("0.02")
    MAX_TOTAL_FEE = Decimal("0.12")

    AGENT_SHARE = Decimal("0.7")

    # Smallest first - first matching tier wins
    DISTANCE_TIERS: Tuple[Tuple[str, Optional[Decimal], Decimal], ...] = (
        ("local", Decimal("5"), Decimal("0.005")),
        ("nearby", Decimal("20"), Decimal("0.01")),
        ("regional", Decimal("50"), Decimal("0.02")),
        ("distant", Decimal("100"), Decimal("0.035")),
        ("remote", None, Decimal("0.05")),
    )

    ACCESSIBILITY_MULTIPLIERS: Dict[Accessibility, Decimal] = {
        Accessibility.URBAN: Decimal("1.0"),
        Accessibility.SUBURBAN: Decimal("1.2"),
        Accessibility.RURAL: Decimal("1.5"),
        Accessibility.REMOTE: Decimal("2.0"),
    }

    URGENCY_MULTIPLIERS: Dict[Urgency, Decimal] = {
        Urgency.STANDARD: Decimal("1.0"),
        Urgency.EXPRESS: Decimal("1.3"),
        Urgency.EMERGENCY: Decimal("1.8"),
    }

    TIME_MULTIPLIERS: Dict[TimeOfDay, Decimal] = {
        TimeOfDay.MORNING: Decimal("1.0"),
        TimeOfDay.AFTERNOON: Decimal("1.0"),
        TimeOfDay.EVENING: Decimal("1.1"),
        TimeOfDay.NIGHT: Decimal("1.4"),
    }

    DAY_MULTIPLIERS: Dict[DayType, Decimal] = {
        DayType.WEEKDAY: Decimal("1.0"),
        DayType.WEEKEND: Decimal("1.15"),
    }

    # Fewer agents in remote areas, more competition in cities
    DEMAND_ADJUSTMENTS: Dict[Accessibility, Decimal] = {
        Accessibility.URBAN: Decimal("-0.005"),
        Accessibility.SUBURBAN: Decimal("0"),
        Accessibility.RURAL: Decimal("0"),
        Accessibility.REMOTE: Decimal("0.01"),
    }

    EARTH_RADIUS_KM = 6371.0

    @staticmethod
    def _coerce_enum(enum_cls, value, field_name: str):
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(value)
        except ValueError:
            raise ValidationError(f"Unsupported {field_name}: {value!r}")

    @staticmethod
    def _to_decimal(value, field_name: str) -> Decimal:
        try:
            result = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"Invalid {field_name}: {value!r}")
        if not result.is_finite():
            raise ValidationError(f"Invalid {field_name}: {value!r}")
        return result

    @classmethod
    def distance_tier(cls, distance_km: Decimal) -> Tuple[str, Decimal]:
        for tier, max_km, fee in cls.DISTANCE_TIERS:
            if max_km is None or distance_km <= max_km:
                return tier, fee
        raise ValidationError(f"No distance tier for {distance_km}km")

    @classmethod
    def compute_fee(
        cls,
        request: ConversionRequest,
        provider_distance_km,
        provider_location: Optional[LocationData],
        now,
    ) -> FeeBreakdown:
        """
        Compute the fee breakdown for one conversion.

        Args:
            request: Conversion being priced
            provider_distance_km: Distance between requester and agent
            provider_location: Agent location (accepted for audit, does not change the price)
            now: Wall-clock time in the requester's timezone; selects the time bucket

        Raises:
            ValidationError: Non-positive amount, negative distance or an unknown enum value
        """
        amount = cls._to_decimal(request.amount, "amount")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        distance = cls._to_decimal(provider_distance_km, "distance")
        if distance < 0:
            raise ValidationError("Distance cannot be negative")

        accessibility = cls._coerce_enum(Accessibility, request.location.accessibility, "accessibility")
        urgency = cls._coerce_enum(Urgency, request.urgency, "urgency")
        bucket = TimeBucket.from_datetime(now)

        components: List[FeeComponent] = []

        def add(description: str, percentage: Decimal) -> None:
            components.append(FeeComponent(description, percentage, amount * percentage))

        # 1. Base platform fee
        base_fee = cls.BASE_FEE
        add("Platform base fee", base_fee)

        # 2. Distance tier
        tier, distance_fee = cls.distance_tier(distance)
        add(f"Distance fee ({tier}: {distance:.1f}km)", distance_fee)

        # 3. Accessibility surcharge scales the distance fee only
        accessibility_fee = distance_fee * (cls.ACCESSIBILITY_MULTIPLIERS[accessibility] - 1)
        if accessibility_fee > 0:
            add(f"{accessibility.value} area fee", accessibility_fee)

        # 4. Urgency surcharge on base + distance
        urgency_fee = (base_fee + distance_fee) * (cls.URGENCY_MULTIPLIERS[urgency] - 1)
        if urgency_fee > 0:
            add(f"{urgency.value} service fee", urgency_fee)

        # 5. Time of day / weekend surcharge on base + distance
        combined_time_multiplier = cls.TIME_MULTIPLIERS[bucket.time_of_day] * cls.DAY_MULTIPLIERS[bucket.day_type]
        time_fee = (base_fee + distance_fee) * (combined_time_multiplier - 1)
        if time_fee > 0:
            if bucket.day_type == DayType.WEEKEND:
                add(f"{bucket.time_of_day.value} weekend service", time_fee)
            else:
                add(f"{bucket.time_of_day.value} service", time_fee)

        # 6. Demand adjustment
        demand_fee = cls.DEMAND_ADJUSTMENTS[accessibility]
        if demand_fee != 0:
            add("High demand adjustment" if demand_fee > 0 else "Low demand discount", demand_fee)

        raw_total = base_fee + distance_fee + accessibility_fee + urgency_fee + time_fee + demand_fee
        total_fee_percentage = max(cls.MIN_TOTAL_FEE, min(cls.MAX_TOTAL_FEE, raw_total))
        total_fee_amount = amount * total_fee_percentage
        agent_share = total_fee_amount * cls.AGENT_SHARE
        platform_share = total_fee_amount - agent_share

        if raw_total != total_fee_percentage:
            logger.debug(f"Fee total {raw_total} clamped to {total_fee_percentage}")

        return FeeBreakdown(
            amount=amount,
            currency=request.currency,
            components=tuple(components),
            total_fee_percentage=total_fee_percentage,
            total_fee_amount=total_fee_amount,
            agent_share=agent_share,
            platform_share=platform_share,
        )

    @classmethod
    def calculate_distance(cls, lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        """Great-circle distance in kilometres (haversine)"""
        d_lat = math.radians(lat2 - lat1)
        d_lon = math.radians(lon2 - lon1)
        a = (
            math.sin(d_lat / 2) ** 2
            + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
        )
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
        return cls.EARTH_RADIUS_KM * c

    @classmethod
    def find_best_agent(
        cls,
        customer_location: LocationData,
        agents: Iterable[AgentLocation],
        service_type: ServiceType,
    ) -> Optional[Tuple[AgentLocation, float]]:
        """Nearest agent offering ``service_type`` whose operating radius covers the customer"""
        best: Optional[Tuple[AgentLocation, float]] = None
        for agent in agents:
            if service_type not in agent.service_types:
                continue
            distance = cls.calculate_distance(
                customer_location.latitude, customer_location.longitude, agent.latitude, agent.longitude
            )
            if distance <= agent.operating_radius_km and (best is None or distance < best[1]):
                best = (agent, distance)
        return best

    @classmethod
    def get_fee_estimate(
        cls,
        amount,
        currency: str,
        customer_location: LocationData,
        direction: ConversionDirection,
        now,
        urgency: Urgency = Urgency.STANDARD,
    ) -> FeeEstimate:
        """Fee range between a nearby (5km) and a distant (50km) agent, shown before matching"""
        request = ConversionRequest(
            amount=cls._to_decimal(amount, "amount"),
            currency=currency,
            direction=direction,
            location=customer_location,
            urgency=urgency,
            timestamp=now,
        )
        nearby = cls.compute_fee(request, Decimal("5"), customer_location, now)
        distant = cls.compute_fee(request, Decimal("50"), customer_location, now)

        bucket = TimeBucket.from_datetime(now)
        weekend = " weekend" if bucket.day_type == DayType.WEEKEND else ""
        urgency_value = cls._coerce_enum(Urgency, urgency, "urgency").value
        factors = [
            f"Base fee: {cls.BASE_FEE * 100:.1f}%",
            "Distance: 0.5-5% depending on agent location",
            f"Location: {cls._coerce_enum(Accessibility, customer_location.accessibility, 'accessibility').value} area",
            f"Service: {urgency_value}",
            f"Time: {bucket.time_of_day.value}{weekend}",
        ]
        return FeeEstimate(min_fee=nearby.total_fee_amount, max_fee=distant.total_fee_amount, factors=factors)
