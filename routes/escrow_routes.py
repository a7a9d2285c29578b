"""
Escrow Routes
FastAPI routes for opening, funding, releasing and listing escrows
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from routes.error_mapping import to_http_exception
from services.dynamic_fee_service import (
    Accessibility,
    ConversionDirection,
    ConversionRequest,
    LocationData,
    Urgency,
)
from services.escrow_coordinator import EscrowCoordinator, get_escrow_coordinator
from utils.exception_handler import EscrowError, LedgerError, ReleaseNotRecordedError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/escrows", tags=["escrows"])


class CreateEscrowBody(BaseModel):
    requester_id: str
    agent_id: str
    bitcoin_amount: int
    local_amount: str
    currency: str


class LocationBody(BaseModel):
    latitude: float
    longitude: float
    accessibility: str


class ConversionEscrowBody(BaseModel):
    requester_id: str
    agent_id: str
    bitcoin_amount: int
    amount: str
    currency: str
    direction: str
    urgency: str = "standard"
    location: LocationBody
    provider_distance_km: float
    provider_location: Optional[LocationBody] = None
    local_time: Optional[datetime] = None


class VerifyCodeBody(BaseModel):
    agent_id: str
    exchange_code: str


def _location(body: LocationBody) -> LocationData:
    return LocationData(latitude=body.latitude, longitude=body.longitude, accessibility=Accessibility(body.accessibility))


def _created_view(record) -> dict:
    """Creation response for the requester - the only place the exchange code is returned"""
    view = record.to_dict()
    view["exchange_code"] = record.exchange_code
    return view


@router.post("", status_code=201)
async def create_escrow(body: CreateEscrowBody, coordinator: EscrowCoordinator = Depends(get_escrow_coordinator)):
    try:
        record = await coordinator.create_escrow(
            requester_id=body.requester_id,
            agent_id=body.agent_id,
            bitcoin_amount=body.bitcoin_amount,
            local_amount=body.local_amount,
            currency=body.currency,
        )
    except EscrowError as e:
        raise to_http_exception(e)
    return _created_view(record)


@router.post("/conversions", status_code=201)
async def create_conversion_escrow(
    body: ConversionEscrowBody, coordinator: EscrowCoordinator = Depends(get_escrow_coordinator)
):
    """Price a cash/bitcoin conversion and open its escrow in one step"""
    try:
        request = ConversionRequest(
            amount=body.amount,
            currency=body.currency.upper(),
            direction=ConversionDirection(body.direction),
            location=_location(body.location),
            urgency=Urgency(body.urgency),
            timestamp=body.local_time,
        )
        provider_location = _location(body.provider_location) if body.provider_location else None
    except ValueError as e:
        return JSONResponse(status_code=400, content={"detail": {"error": "ValidationError", "message": str(e)}})

    try:
        record, breakdown = await coordinator.create_escrow_for_conversion(
            requester_id=body.requester_id,
            agent_id=body.agent_id,
            request=request,
            provider_distance_km=body.provider_distance_km,
            provider_location=provider_location,
            bitcoin_amount=body.bitcoin_amount,
        )
    except EscrowError as e:
        raise to_http_exception(e)
    return {"escrow": _created_view(record), "fee_breakdown": breakdown.to_dict()}


@router.post("/verify")
async def verify_exchange_code(body: VerifyCodeBody, coordinator: EscrowCoordinator = Depends(get_escrow_coordinator)):
    """Agent presents the requester's exchange code to release the escrowed bitcoin"""
    try:
        record = await coordinator.verify_and_complete(body.agent_id, body.exchange_code)
    except (LedgerError, ReleaseNotRecordedError) as e:
        escrow_id = e.escrow.id if e.escrow is not None else None
        logger.warning(f"⚠️ RELEASE_PENDING_REVIEW: escrow {escrow_id} - {e.message}")
        return JSONResponse(status_code=202, content={"status": "pending_manual_review", "escrow_id": escrow_id})
    except EscrowError as e:
        raise to_http_exception(e)
    return record.to_dict()


@router.get("/requesters/{requester_id}")
async def list_requester_escrows(requester_id: str, coordinator: EscrowCoordinator = Depends(get_escrow_coordinator)):
    records = await coordinator.list_requester_escrows(requester_id)
    return {"escrows": [record.to_dict() for record in records]}


@router.get("/agents/{agent_id}")
async def list_agent_escrows(agent_id: str, coordinator: EscrowCoordinator = Depends(get_escrow_coordinator)):
    records = await coordinator.list_agent_escrows(agent_id)
    return {"escrows": [record.to_dict() for record in records]}


@router.get("/{escrow_id}")
async def get_escrow(escrow_id: str, coordinator: EscrowCoordinator = Depends(get_escrow_coordinator)):
    try:
        record = await coordinator.get_escrow(escrow_id)
    except EscrowError as e:
        raise to_http_exception(e)
    return record.to_dict()


@router.post("/{escrow_id}/funding-check")
async def check_funding(escrow_id: str, coordinator: EscrowCoordinator = Depends(get_escrow_coordinator)):
    try:
        funded = await coordinator.check_funding(escrow_id)
    except EscrowError as e:
        raise to_http_exception(e)
    return {"escrow_id": escrow_id, "funded": funded}
