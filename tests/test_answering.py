# =============================================================================
# Unit Tests — Answer Assembly
# =============================================================================

from __future__ import annotations

import asyncio
import re

from agentkb.services.answering import (
    DEFAULT_FEEDBACK,
    LOW_CONFIDENCE_FEEDBACK,
    NO_INFORMATION_REPLY,
    answer_question,
    build_prompt,
    estimate_tokens,
    is_fallback_reply,
    new_question_id,
)
from agentkb.services.knowledge_store import NewChunk
from agentkb.services.provider import FALLBACK_REPLY
from agentkb.services.versioning import content_hash


def _run(coro):
    return asyncio.run(coro)


def _seed(store, text, embedding, agent_id="agent-1"):
    store.rows.append(NewChunk(
        agent_id=agent_id,
        text=text,
        embedding=embedding,
        source="website",
        content_hash=content_hash(text),
        content_version=1,
        chunk_index=0,
        source_url="https://shop.test/faq",
    ))


class TestHelpers:
    def test_question_id_format(self):
        assert re.fullmatch(r"q_\d{13}_[a-z0-9]{9}", new_question_id())

    def test_estimate_tokens_rounds_up_per_text(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde", "a") == 3

    def test_fallback_detection(self):
        assert is_fallback_reply(FALLBACK_REPLY)
        assert is_fallback_reply(NO_INFORMATION_REPLY)
        assert not is_fallback_reply("We open at 9am.")


class TestBuildPrompt:
    def test_generic_persona_without_profile(self):
        prompt = build_prompt(None, "CONTEXT", "QUESTION")
        assert prompt.startswith("You are an expert assistant with the role of an AI assistant.")
        assert "Agent Information:" not in prompt
        assert "You may supplement with general knowledge" in prompt
        assert "Context:\nCONTEXT" in prompt
        assert prompt.rstrip().endswith("Answer:")

    def test_strict_profile_forbids_general_knowledge(self):
        profile = {
            "name": "Ava",
            "role": "support agent",
            "tone": "friendly",
            "do_not_answer_from_general_knowledge": True,
        }
        prompt = build_prompt(profile, "ctx", "q")
        assert "You are Ava with the role of support agent." in prompt
        assert "- Use only trained knowledge: Yes" in prompt
        assert "Use ONLY the context below" in prompt
        assert "Respond in a friendly tone." in prompt


class TestAnswerQuestion:
    def test_unknown_agent_is_404_with_answer_shape(self, store, provider, profiles, config):
        status, body = _run(answer_question("ghost", "Hi?", store, provider, profiles, config))

        assert status == 404
        assert body["confidence"] == 0
        assert body["fallback_used"] is True
        assert "does not exist" in body["reply"]
        assert body["meta"]["error"] == "Agent not found"
        assert provider.prompts == []

    def test_retrieval_miss_is_404_no_information(self, store, provider, profiles, config):
        provider.vectors["What is the price?"] = [1.0, 0.0]
        _seed(store, "Completely unrelated.", [0.0, 1.0])

        status, body = _run(
            answer_question("agent-1", "What is the price?", store, provider, profiles, config),
        )

        assert status == 404
        assert body["reply"] == NO_INFORMATION_REPLY
        assert body["meta"]["chunks_filtered"] == body["meta"]["chunks_searched"]
        assert provider.prompts == []

    def test_successful_answer(self, store, provider, profiles, config):
        provider.vectors["When do you open?"] = [1.0, 0.0]
        _seed(store, "We open at 9am.", [1.0, 0.0])
        profiles.profiles["agent-1"] = {
            "agent_id": "agent-1", "name": "Ava", "role": "support",
            "tone": None, "do_not_answer_from_general_knowledge": False,
        }

        status, body = _run(
            answer_question("agent-1", "When do you open?", store, provider, profiles, config),
        )

        assert status == 200
        assert body["reply"] == "Generated answer."
        assert body["fallback_used"] is False
        assert 0 < body["confidence"] <= 1
        assert body["feedback_prompt"] == DEFAULT_FEEDBACK
        assert body["retraining_suggested"] is False
        assert body["agent_metadata"]["name"] == "Ava"
        assert body["meta"]["model"] == "fake-model"
        assert body["meta"]["retrieval_strategy"] == "hybrid"
        assert body["meta"]["sources"][0]["source_url"] == "https://shop.test/faq"
        assert "We open at 9am." in provider.prompts[0]

    def test_provider_fallback_reply_is_flagged(self, store, provider, profiles, config):
        provider.reply = FALLBACK_REPLY
        provider.vectors["opening"] = [1.0, 0.0]
        # similarity 0.35 + full keyword boost 0.2 → confidence 0.55
        _seed(store, "Opening at 9am.", [0.35, 0.93675])

        status, body = _run(
            answer_question("agent-1", "opening", store, provider, profiles, config),
        )

        assert status == 200
        assert body["fallback_used"] is True
        assert body["retraining_suggested"] is True
        assert body["feedback_prompt"] == LOW_CONFIDENCE_FEEDBACK
        assert body["agent_metadata"] is None

    def test_profile_lookup_failure_answers_without_profile(self, store, provider, config):
        class UnreachableProfiles:
            async def get(self, agent_id):
                raise RuntimeError("profiles table unreachable")

        provider.vectors["When do you open?"] = [1.0, 0.0]
        _seed(store, "We open at 9am.", [1.0, 0.0])

        status, body = _run(
            answer_question(
                "agent-1", "When do you open?", store, provider, UnreachableProfiles(), config,
            ),
        )

        assert status == 200
        assert body["reply"] == "Generated answer."
        assert body["agent_metadata"] is None
        assert "We open at 9am." in provider.prompts[0]
