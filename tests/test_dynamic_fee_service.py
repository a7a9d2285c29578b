"""
Dynamic fee calculation tests
Covers the pricing stages, clamping, revenue split and the agent lookup helpers
"""

from datetime import datetime
from decimal import Decimal

import pytest

from services.dynamic_fee_service import (
    Accessibility,
    AgentLocation,
    ConversionDirection,
    ConversionRequest,
    DynamicFeeService,
    LocationData,
    ServiceType,
    Urgency,
)
from utils.datetime_helpers import DayType, TimeOfDay
from utils.exception_handler import ValidationError

WEEKDAY_AFTERNOON = datetime(2024, 3, 6, 14, 0)   # Wednesday
WEEKDAY_MORNING = datetime(2024, 3, 6, 9, 0)
WEEKDAY_EVENING = datetime(2024, 3, 6, 19, 30)
SATURDAY_AFTERNOON = datetime(2024, 3, 9, 15, 0)
SUNDAY_NIGHT = datetime(2024, 3, 10, 23, 0)

KAMPALA = (0.3476, 32.5825)
ENTEBBE = (0.0512, 32.4637)


def make_request(amount="100000", accessibility=Accessibility.RURAL, urgency=Urgency.STANDARD, currency="UGX"):
    return ConversionRequest(
        amount=Decimal(amount),
        currency=currency,
        direction=ConversionDirection.CASH_OUT,
        location=LocationData(latitude=KAMPALA[0], longitude=KAMPALA[1], accessibility=accessibility),
        urgency=urgency,
    )


class TestComputeFee:

    def test_rural_regional_weekday_afternoon(self):
        breakdown = DynamicFeeService.compute_fee(make_request(), 25, None, WEEKDAY_AFTERNOON)

        assert breakdown.total_fee_percentage == Decimal("0.045")
        assert breakdown.total_fee_amount == Decimal("4500")
        assert breakdown.agent_share == Decimal("3150")
        assert breakdown.platform_share == Decimal("1350")
        assert [c.description for c in breakdown.components] == [
            "Platform base fee",
            "Distance fee (regional: 25.0km)",
            "rural area fee",
        ]
        assert [c.amount for c in breakdown.components] == [Decimal("1500"), Decimal("2000"), Decimal("1000")]

    @pytest.mark.parametrize("distance,tier,fee", [
        (0, "local", Decimal("0.005")),
        (5, "local", Decimal("0.005")),
        ("5.01", "nearby", Decimal("0.01")),
        (20, "nearby", Decimal("0.01")),
        (50, "regional", Decimal("0.02")),
        (100, "distant", Decimal("0.035")),
        ("100.1", "remote", Decimal("0.05")),
    ])
    def test_distance_tier_boundaries(self, distance, tier, fee):
        assert DynamicFeeService.distance_tier(Decimal(str(distance))) == (tier, fee)

    def test_urgency_surcharge_applies_to_base_and_distance(self):
        request = make_request(accessibility=Accessibility.SUBURBAN, urgency=Urgency.EXPRESS)
        breakdown = DynamicFeeService.compute_fee(request, 10, None, WEEKDAY_AFTERNOON)

        urgency = next(c for c in breakdown.components if c.description == "express service fee")
        # (1.5% + 1%) x 0.3
        assert urgency.percentage == Decimal("0.0075")

    def test_evening_surcharge(self):
        request = make_request(accessibility=Accessibility.URBAN)
        breakdown = DynamicFeeService.compute_fee(request, 3, None, WEEKDAY_EVENING)

        time_fee = next(c for c in breakdown.components if c.description == "evening service")
        # (1.5% + 0.5%) x 0.1
        assert time_fee.percentage == Decimal("0.002")

    def test_weekend_surcharge_description(self):
        request = make_request(accessibility=Accessibility.SUBURBAN)
        breakdown = DynamicFeeService.compute_fee(request, 10, None, SATURDAY_AFTERNOON)

        time_fee = next(c for c in breakdown.components if "weekend" in c.description)
        assert time_fee.description == "afternoon weekend service"
        assert time_fee.percentage == Decimal("0.025") * Decimal("0.15")

    def test_urban_demand_discount_and_minimum_clamp(self):
        request = make_request(accessibility=Accessibility.URBAN)
        breakdown = DynamicFeeService.compute_fee(request, 2, None, WEEKDAY_MORNING)

        assert breakdown.components[-1].description == "Low demand discount"
        assert breakdown.components[-1].percentage == Decimal("-0.005")
        # 1.5% + 0.5% - 0.5% = 1.5%, raised to the 2% floor
        assert breakdown.total_fee_percentage == Decimal("0.02")

    def test_maximum_clamp(self):
        request = make_request(accessibility=Accessibility.REMOTE, urgency=Urgency.EMERGENCY)
        breakdown = DynamicFeeService.compute_fee(request, 150, None, SUNDAY_NIGHT)

        assert breakdown.components[-1].description == "High demand adjustment"
        assert breakdown.total_fee_percentage == Decimal("0.12")
        assert breakdown.total_fee_amount == Decimal("12000")

    @pytest.mark.parametrize("accessibility", list(Accessibility))
    @pytest.mark.parametrize("urgency", list(Urgency))
    @pytest.mark.parametrize("moment", [WEEKDAY_MORNING, WEEKDAY_EVENING, SUNDAY_NIGHT])
    def test_totals_bounded_and_split_exactly(self, accessibility, urgency, moment):
        request = make_request(amount="73519.37", accessibility=accessibility, urgency=urgency)
        for distance in (1, 30, 250):
            breakdown = DynamicFeeService.compute_fee(request, distance, None, moment)
            assert Decimal("0.02") <= breakdown.total_fee_percentage <= Decimal("0.12")
            assert breakdown.total_fee_amount == request.amount * breakdown.total_fee_percentage
            assert breakdown.agent_share + breakdown.platform_share == breakdown.total_fee_amount

    def test_deterministic_for_same_inputs(self):
        first = DynamicFeeService.compute_fee(make_request(), 42, None, WEEKDAY_EVENING)
        second = DynamicFeeService.compute_fee(make_request(), 42, None, WEEKDAY_EVENING.replace(minute=5))
        assert first == second

    def test_provider_location_does_not_change_price(self):
        provider = LocationData(ENTEBBE[0], ENTEBBE[1], Accessibility.URBAN)
        with_location = DynamicFeeService.compute_fee(make_request(), 25, provider, WEEKDAY_AFTERNOON)
        without = DynamicFeeService.compute_fee(make_request(), 25, None, WEEKDAY_AFTERNOON)
        assert with_location == without

    def test_accessibility_given_as_string(self):
        request = ConversionRequest(
            amount=Decimal("100000"),
            currency="UGX",
            direction=ConversionDirection.CASH_IN,
            location=LocationData(KAMPALA[0], KAMPALA[1], "rural"),
            urgency="standard",
        )
        breakdown = DynamicFeeService.compute_fee(request, 25, None, WEEKDAY_AFTERNOON)
        assert breakdown.total_fee_percentage == Decimal("0.045")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_rejects_non_positive_amount(self, amount):
        with pytest.raises(ValidationError):
            DynamicFeeService.compute_fee(make_request(amount=amount), 10, None, WEEKDAY_AFTERNOON)

    def test_rejects_negative_distance(self):
        with pytest.raises(ValidationError):
            DynamicFeeService.compute_fee(make_request(), -1, None, WEEKDAY_AFTERNOON)

    def test_rejects_unknown_accessibility(self):
        request = make_request(accessibility="mountain")
        with pytest.raises(ValidationError):
            DynamicFeeService.compute_fee(request, 10, None, WEEKDAY_AFTERNOON)

    def test_rejects_unknown_urgency(self):
        request = make_request(urgency="yesterday")
        with pytest.raises(ValidationError):
            DynamicFeeService.compute_fee(request, 10, None, WEEKDAY_AFTERNOON)

    def test_every_enum_member_is_priced(self):
        assert set(DynamicFeeService.ACCESSIBILITY_MULTIPLIERS) == set(Accessibility)
        assert set(DynamicFeeService.DEMAND_ADJUSTMENTS) == set(Accessibility)
        assert set(DynamicFeeService.URGENCY_MULTIPLIERS) == set(Urgency)
        assert set(DynamicFeeService.TIME_MULTIPLIERS) == set(TimeOfDay)
        assert set(DynamicFeeService.DAY_MULTIPLIERS) == set(DayType)


class TestBreakdownRendering:

    def test_format_breakdown(self):
        breakdown = DynamicFeeService.compute_fee(make_request(), 25, None, WEEKDAY_AFTERNOON)
        text = breakdown.format_breakdown()

        assert text.startswith("Fee Breakdown:")
        assert "• Distance fee (regional: 25.0km): 2.00% (2000)" in text
        assert "Total Fee: 4.50% (4500)" in text
        assert "Agent Commission: 3150" in text
        assert "Platform Fee: 1350" in text

    def test_to_dict(self):
        breakdown = DynamicFeeService.compute_fee(make_request(), 25, None, WEEKDAY_AFTERNOON)
        data = breakdown.to_dict()

        assert data["currency"] == "UGX"
        assert len(data["breakdown"]) == 3
        assert Decimal(data["agent_share"]) == Decimal("3150")
        assert breakdown.net_amount == Decimal("95500")


class TestAgentLookup:

    def test_calculate_distance(self):
        distance = DynamicFeeService.calculate_distance(*KAMPALA, *ENTEBBE)
        assert 30 < distance < 40
        assert DynamicFeeService.calculate_distance(*KAMPALA, *KAMPALA) == 0

    def test_find_best_agent_prefers_nearest_in_range(self):
        customer = LocationData(KAMPALA[0], KAMPALA[1], Accessibility.URBAN)
        near = AgentLocation("near", 0.35, 32.59, Accessibility.URBAN, 10, frozenset({ServiceType.CASH_OUT}))
        nearer_wrong_service = AgentLocation(
            "wrong", KAMPALA[0], KAMPALA[1], Accessibility.URBAN, 10, frozenset({ServiceType.CASH_IN})
        )
        far = AgentLocation("far", *ENTEBBE, Accessibility.SUBURBAN, 100, frozenset({ServiceType.CASH_OUT}))

        agent, distance = DynamicFeeService.find_best_agent(
            customer, [far, nearer_wrong_service, near], ServiceType.CASH_OUT
        )
        assert agent.agent_id == "near"
        assert distance < 10

    def test_find_best_agent_respects_operating_radius(self):
        customer = LocationData(KAMPALA[0], KAMPALA[1], Accessibility.URBAN)
        short_range = AgentLocation("entebbe", *ENTEBBE, Accessibility.SUBURBAN, 5, frozenset(ServiceType))

        assert DynamicFeeService.find_best_agent(customer, [short_range], ServiceType.CASH_IN) is None

    def test_fee_estimate_range(self):
        location = LocationData(KAMPALA[0], KAMPALA[1], Accessibility.RURAL)
        estimate = DynamicFeeService.get_fee_estimate(
            Decimal("100000"), "UGX", location, ConversionDirection.CASH_IN, WEEKDAY_AFTERNOON
        )

        # 5km: 1.5% + 0.5% + 0.25%; 50km: 1.5% + 2% + 1%
        assert estimate.min_fee == Decimal("2250")
        assert estimate.max_fee == Decimal("4500")
        assert "Location: rural area" in estimate.factors
        assert "Time: afternoon" in estimate.factors
