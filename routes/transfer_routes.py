"""
Transfer and pricing routes
Routing decisions, transfer execution and conversion fee quotes
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from routes.error_mapping import to_http_exception
from services.bitcoin_routing_service import BitcoinRoutingService, TransferStatus, get_bitcoin_routing_service
from services.dynamic_fee_service import (
    Accessibility,
    ConversionDirection,
    ConversionRequest,
    DynamicFeeService,
    LocationData,
    Urgency,
)
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import EscrowError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transfers"])


class RoutingBody(BaseModel):
    amount: str
    currency: str
    urgency: Optional[str] = None


class TransferBody(RoutingBody):
    from_user_id: str
    to_user_id: str


class FeeQuoteBody(BaseModel):
    amount: str
    currency: str
    direction: str
    urgency: str = "standard"
    latitude: float
    longitude: float
    accessibility: str
    provider_distance_km: Optional[float] = None
    local_time: Optional[datetime] = None


def get_fee_service() -> DynamicFeeService:
    return DynamicFeeService()


@router.post("/transfers/routing")
async def decide_routing(body: RoutingBody, routing: BitcoinRoutingService = Depends(get_bitcoin_routing_service)):
    try:
        decision = await routing.decide_routing(body.amount, body.currency, body.urgency)
    except EscrowError as e:
        raise to_http_exception(e)
    return decision.to_dict()


@router.get("/transfers/recommendation")
async def get_recommendation(
    amount: str, currency: str, routing: BitcoinRoutingService = Depends(get_bitcoin_routing_service)
):
    try:
        recommendation = await routing.get_recommendation(amount, currency)
    except EscrowError as e:
        raise to_http_exception(e)
    return recommendation.to_dict()


@router.post("/transfers")
async def execute_transfer(body: TransferBody, routing: BitcoinRoutingService = Depends(get_bitcoin_routing_service)):
    try:
        transfer = await routing.execute_transfer(
            body.from_user_id, body.to_user_id, body.amount, body.currency, body.urgency
        )
    except EscrowError as e:
        raise to_http_exception(e)

    status_code = 201 if transfer.status in (TransferStatus.COMPLETED, TransferStatus.PROCESSING) else 202
    if transfer.status == TransferStatus.FAILED:
        status_code = 502
    return JSONResponse(status_code=status_code, content=transfer.to_dict())


@router.post("/fees/quote")
async def quote_fee(body: FeeQuoteBody, fee_service: DynamicFeeService = Depends(get_fee_service)):
    """Exact breakdown when the agent distance is known, otherwise a nearby/distant range"""
    try:
        location = LocationData(body.latitude, body.longitude, Accessibility(body.accessibility))
        direction = ConversionDirection(body.direction)
        urgency = Urgency(body.urgency)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"detail": {"error": "ValidationError", "message": str(e)}})

    now = body.local_time or get_naive_utc_now()
    try:
        if body.provider_distance_km is None:
            estimate = fee_service.get_fee_estimate(body.amount, body.currency, location, direction, now, urgency)
            return {
                "min_fee": str(estimate.min_fee),
                "max_fee": str(estimate.max_fee),
                "factors": estimate.factors,
            }

        request = ConversionRequest(
            amount=body.amount,
            currency=body.currency.upper(),
            direction=direction,
            location=location,
            urgency=urgency,
            timestamp=now,
        )
        breakdown = fee_service.compute_fee(request, body.provider_distance_km, None, now)
    except EscrowError as e:
        raise to_http_exception(e)
    return {**breakdown.to_dict(), "summary": breakdown.format_breakdown()}
