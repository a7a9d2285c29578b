"""Agent discovery for requesters choosing who to exchange with"""

import logging

from fastapi import APIRouter, Depends

from services.party_directory import PartyDirectory, get_party_directory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["agents"])


@router.get("")
async def list_available_agents(directory: PartyDirectory = Depends(get_party_directory)):
    agents = await directory.list_active_agents()
    return {"agents": [agent.to_dict() for agent in agents]}
