# =============================================================================
# Ask API — Retrieval-Augmented Question Answering
# =============================================================================
#
# ENDPOINTS:
#   POST /ask         — answer a question from one agent's knowledge
#   GET  /ask/config  — current process-wide retrieval tuning
#   POST /ask/config  — adjust retrieval tuning at runtime (not persisted)
#
# Scoring outcomes never produce a 5xx: an unknown agent or a retrieval miss
# is a 404 with the regular answer shape (confidence 0, fallback_used true),
# and provider exhaustion degrades to a fallback reply. Only knowledge store
# failures surface as 502.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from agentkb.api.deps import get_config, get_profile_repository, get_provider, get_store
from agentkb.models.requests import AskRequest, RetrievalConfigUpdate
from agentkb.models.responses import AskResponse, RetrievalConfigResponse
from agentkb.services.answering import answer_question
from agentkb.services.knowledge_store import KnowledgeStore
from agentkb.services.profiles import ProfileRepository
from agentkb.services.provider import ProviderClient
from agentkb.services.retrieval import RetrievalConfig

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Question Answering"])

CONFIG_DESCRIPTION = {
    "vector_k": "Number of top vector search results to retrieve",
    "keyword_k": "Number of top keyword search results to retrieve",
    "similarity_threshold": "Minimum cosine similarity threshold",
    "confidence_threshold": "Minimum confidence score for including chunks",
    "max_context_length": "Maximum context length in characters",
    "max_chunks": "Maximum number of chunks to include in context",
}


# ---------------------------------------------------------------------------
# POST /ask — Answer a question
# ---------------------------------------------------------------------------


@router.post(
    "/ask",
    response_model=AskResponse,
    summary="Ask an agent a question",
    responses={404: {"model": AskResponse, "description": "Unknown agent or no relevant knowledge"}},
)
async def ask_endpoint(
    request: AskRequest,
    store: KnowledgeStore = Depends(get_store),
    provider: ProviderClient = Depends(get_provider),
    profiles: ProfileRepository = Depends(get_profile_repository),
    config: RetrievalConfig = Depends(get_config),
):
    """
    Hybrid retrieval over the agent's chunks, then generation.

    Error handling:
    - Unknown agent / nothing relevant → 404 with the answer shape
    - Knowledge store failure → 502 Bad Gateway
    """
    logger.info(
        "Ask request: agent=%s, question='%s'", request.agent_id, request.question[:80],
    )
    try:
        status_code, body = await answer_question(
            request.agent_id, request.question, store, provider, profiles, config,
        )
    except Exception as exc:
        logger.exception("Ask failed for agent=%s: %s", request.agent_id, exc)
        raise HTTPException(
            status_code=502,
            detail=f"Knowledge store error: {exc}",
        ) from exc

    if status_code != 200:
        return JSONResponse(status_code=status_code, content=body)
    return body


# ---------------------------------------------------------------------------
# GET/POST /ask/config — Runtime retrieval tuning
# ---------------------------------------------------------------------------


@router.get(
    "/ask/config",
    response_model=RetrievalConfigResponse,
    summary="Show the current retrieval configuration",
)
async def get_retrieval_config_endpoint(
    config: RetrievalConfig = Depends(get_config),
) -> RetrievalConfigResponse:
    return RetrievalConfigResponse(
        retrieval_config=config.as_dict(),
        description=CONFIG_DESCRIPTION,
    )


@router.post(
    "/ask/config",
    response_model=RetrievalConfigResponse,
    summary="Adjust the retrieval configuration (process-wide, not persisted)",
)
async def update_retrieval_config_endpoint(
    update: RetrievalConfigUpdate,
    config: RetrievalConfig = Depends(get_config),
) -> RetrievalConfigResponse:
    ignored = config.update(**update.model_dump(exclude_none=True))
    logger.info("Retrieval config now %s", config.as_dict())
    return RetrievalConfigResponse(
        retrieval_config=config.as_dict(),
        ignored=ignored,
        description=CONFIG_DESCRIPTION,
    )
