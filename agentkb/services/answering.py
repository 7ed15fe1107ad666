# =============================================================================
# Answer Assembly — Retrieval Result + Agent Profile → Reply Payload
# =============================================================================
#
# Turns a question into the full /ask response:
#   1. Unknown agent (no stored chunks)  → 404 payload, confidence 0
#   2. Retrieval miss                    → 404 "no information" payload
#   3. Otherwise build the prompt from the agent profile and the context,
#      generate, and report confidence / fallback / feedback hints
#
# Scoring outcomes never raise; only store failures propagate to the route.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
import secrets
import string
import time

from agentkb.services.knowledge_store import KnowledgeStore
from agentkb.services.profiles import ProfileRepository
from agentkb.services.provider import FALLBACK_REPLY, ProviderClient
from agentkb.services.retrieval import RetrievalConfig, RetrievalResult, retrieve

logger = logging.getLogger(__name__)

NO_INFORMATION_REPLY = "I don't have information about that in my training data."
FALLBACK_MARKERS = (
    "I don't have information about that in my training data",
    "I apologize, but I'm currently experiencing technical difficulties",
)
LOW_CONFIDENCE_FEEDBACK = "Was this answer helpful? Reply with feedback to help us improve."
DEFAULT_FEEDBACK = "How was this answer? (optional feedback)"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_question_id() -> str:
    """q_<epoch ms>_<9 random base-36 characters>."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"q_{int(time.time() * 1000)}_{suffix}"


def estimate_tokens(*texts: str) -> int:
    """Rough token count: four characters per token, per text."""
    return sum(math.ceil(len(t) / 4) for t in texts)


def is_fallback_reply(reply: str) -> bool:
    return any(marker in reply for marker in FALLBACK_MARKERS)


def build_prompt(profile: dict | None, context: str, question: str) -> str:
    """Generation prompt shaped by the agent's profile, when it has one."""
    profile = profile or {}
    name = profile.get("name") or "an expert assistant"
    role = profile.get("role") or "an AI assistant"
    strict = bool(profile.get("do_not_answer_from_general_knowledge"))

    lines = [f"You are {name} with the role of {role}.", ""]
    if profile:
        lines += [
            "Agent Information:",
            f"- Name: {profile.get('name') or 'Unknown'}",
            f"- Role: {profile.get('role') or 'AI Assistant'}",
            f"- Tone: {profile.get('tone') or 'professional'}",
            f"- Use only trained knowledge: {'Yes' if strict else 'No'}",
            "",
        ]
    if strict:
        lines.append(
            "IMPORTANT: Use ONLY the context below to answer the question. "
            "Do NOT use any general knowledge outside of the provided context. "
            "However, be helpful and conversational in your response."
        )
    else:
        lines.append(
            "Use the context below to answer the question. "
            "You may supplement with general knowledge if needed."
        )
    if profile.get("tone"):
        lines += ["", f"Respond in a {profile['tone']} tone."]

    lines += [
        "",
        "Instructions:",
        "- Respond like a helpful customer service chatbot",
        "- Be friendly, conversational, and direct",
        "- Keep responses short and concise (1-2 sentences max)",
        "- Use the information available in the context to provide helpful answers",
        "- If you don't have specific information, say so politely",
        "",
        "Context:",
        context,
        "",
        f"Question: {question}",
        "",
        "Answer:",
    ]
    return "\n".join(lines)


def _meta(
    config: RetrievalConfig,
    started: float,
    model: str,
    strategy: str,
    tokens_used: int,
    result: RetrievalResult | None = None,
    error: str | None = None,
) -> dict:
    meta = {
        "tokens_used": tokens_used,
        "retrieval_time_ms": int((time.perf_counter() - started) * 1000),
        "model": model,
        "retrieval_strategy": strategy,
        "chunks_used": result.unique_texts if result else 0,
        "chunks_searched": result.candidates_count if result else 0,
        "chunks_filtered": (
            result.candidates_count - len(result.ranked) if result else 0
        ),
        "context_length": len(result.context) if result else 0,
        "sources_count": len(result.sources) if result else 0,
        "average_similarity": round(result.average_similarity, 3) if result else 0,
        "retrieval_config": config.as_dict(),
        "sources": result.sources if result else [],
    }
    if error:
        meta["error"] = error
    return meta


async def answer_question(
    agent_id: str,
    question: str,
    store: KnowledgeStore,
    provider: ProviderClient,
    profiles: ProfileRepository,
    config: RetrievalConfig,
) -> tuple[int, dict]:
    """
    Answer one question for one agent.

    Returns:
        (HTTP status, response body). 404 bodies keep the normal shape with
        confidence 0 and fallback_used true.
    """
    started = time.perf_counter()
    model = provider.generation_model

    if not await store.agent_exists(agent_id):
        logger.info("Ask for unknown agent=%s", agent_id)
        return 404, {
            "agent_id": agent_id,
            "query": question,
            "reply": (
                f"Agent '{agent_id}' does not exist. "
                "Please check the agent ID or train this agent first."
            ),
            "confidence": 0,
            "fallback_used": True,
            "meta": _meta(
                config, started, model, "none",
                estimate_tokens(question) + 50, error="Agent not found",
            ),
        }

    result = await retrieve(agent_id, question, store, provider, config)
    if not result.found:
        return 404, {
            "agent_id": agent_id,
            "query": question,
            "reply": NO_INFORMATION_REPLY,
            "confidence": 0,
            "fallback_used": True,
            "meta": {
                **_meta(
                    config, started, model, "hybrid",
                    estimate_tokens(question) + 50, result=result,
                    error="No relevant information found for this agent",
                ),
                "chunks_filtered": result.candidates_count,
            },
        }

    try:
        profile = await profiles.get(agent_id)
    except Exception as exc:
        logger.warning(
            "Profile lookup failed for agent=%s, answering without it: %s",
            agent_id, exc,
        )
        profile = None
    prompt = build_prompt(profile, result.context, question)
    try:
        reply = await asyncio.to_thread(provider.generate, prompt)
    except Exception as exc:
        logger.error("Generation failed, using fallback reply: %s", exc)
        reply = FALLBACK_REPLY

    confidence = round(result.average_confidence, 3)
    fallback_used = is_fallback_reply(reply)
    logger.info(
        "Answered agent=%s: confidence=%.3f, chunks=%d, fallback=%s",
        agent_id, confidence, result.unique_texts, fallback_used,
    )

    return 200, {
        "agent_id": agent_id,
        "query": question,
        "reply": reply,
        "confidence": confidence,
        "fallback_used": fallback_used,
        "question_id": new_question_id(),
        "agent_metadata": (
            {
                "name": profile.get("name"),
                "role": profile.get("role"),
                "tone": profile.get("tone"),
                "do_not_answer_from_general_knowledge": profile.get(
                    "do_not_answer_from_general_knowledge", False,
                ),
            }
            if profile else None
        ),
        "feedback_prompt": LOW_CONFIDENCE_FEEDBACK if confidence < 0.6 else DEFAULT_FEEDBACK,
        "retraining_suggested": confidence < 0.5 or fallback_used,
        "meta": _meta(
            config, started, model, "hybrid",
            estimate_tokens(result.context, question, reply),
            result=result,
        ),
    }
