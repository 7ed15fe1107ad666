# =============================================================================
# Agents API — Profiles, Knowledge Stats and Purge
# =============================================================================
#
# ENDPOINTS:
#   PUT    /agents/{agent_id}/profile    — create or replace the persona
#   GET    /agents/{agent_id}/profile    — read the persona (404 if none)
#   GET    /agents/{agent_id}/stats      — chunk counts and latest version
#   DELETE /agents/{agent_id}/knowledge  — remove every chunk of the agent
# =============================================================================

import logging

from fastapi import APIRouter, Depends, HTTPException

from agentkb.api.deps import get_profile_repository, get_store
from agentkb.models.requests import AgentProfileRequest
from agentkb.models.responses import AgentProfileResponse, AgentStatsResponse, PurgeResponse
from agentkb.services.knowledge_store import KnowledgeStore
from agentkb.services.profiles import ProfileRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["Agents"])


@router.put("/{agent_id}/profile", response_model=AgentProfileResponse)
async def put_profile(
    agent_id: str,
    profile: AgentProfileRequest,
    profiles: ProfileRepository = Depends(get_profile_repository),
) -> AgentProfileResponse:
    saved = await profiles.upsert(agent_id, profile.model_dump())
    return AgentProfileResponse(**saved)


@router.get("/{agent_id}/profile", response_model=AgentProfileResponse)
async def get_profile(
    agent_id: str,
    profiles: ProfileRepository = Depends(get_profile_repository),
) -> AgentProfileResponse:
    profile = await profiles.get(agent_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"No profile for agent '{agent_id}'")
    return AgentProfileResponse(**profile)


@router.get("/{agent_id}/stats", response_model=AgentStatsResponse)
async def get_stats(
    agent_id: str,
    store: KnowledgeStore = Depends(get_store),
) -> AgentStatsResponse:
    return AgentStatsResponse(**await store.stats(agent_id))


@router.delete("/{agent_id}/knowledge", response_model=PurgeResponse)
async def purge_knowledge(
    agent_id: str,
    store: KnowledgeStore = Depends(get_store),
) -> PurgeResponse:
    """Agent-level purge. Profiles and job history are kept."""
    deleted = await store.delete_agent(agent_id)
    logger.info("Purged %d chunks for agent=%s", deleted, agent_id)
    return PurgeResponse(agent_id=agent_id, deleted=deleted)
