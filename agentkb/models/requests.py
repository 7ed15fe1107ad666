# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# POST /train is multipart (files + form fields), so it is validated in the
# route with the same rules as TrainingRequest. The JSON bodies below cover
# /ask, /ask/config and agent profiles.
# =============================================================================

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool

# Mistyped config values reach RetrievalConfig.update(), which ignores them.
_Loose = StrictBool | int | float | str | None


class AskRequest(BaseModel):
    """
    Request body for POST /ask.

    Example:
        {
            "agent_id": "support-bot",
            "question": "What are your opening hours?"
        }
    """

    agent_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Agent whose knowledge base should answer",
        examples=["support-bot"],
    )
    question: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Natural-language question",
        examples=["What are your opening hours?"],
    )

    model_config = ConfigDict(str_strip_whitespace=True)


class RetrievalConfigUpdate(BaseModel):
    """
    Request body for POST /ask/config.

    Every field is optional. Values are range-checked by RetrievalConfig;
    out-of-range values are ignored and reported back, never rejected.
    camelCase keys (vectorK, maxChunks, ...) are accepted too.
    """

    vector_k: _Loose = Field(
        default=None, description="1-50",
        validation_alias=AliasChoices("vector_k", "vectorK"),
    )
    keyword_k: _Loose = Field(
        default=None, description="1-20",
        validation_alias=AliasChoices("keyword_k", "keywordK"),
    )
    similarity_threshold: _Loose = Field(
        default=None, description="0-1",
        validation_alias=AliasChoices("similarity_threshold", "similarityThreshold"),
    )
    confidence_threshold: _Loose = Field(
        default=None, description="0-1",
        validation_alias=AliasChoices("confidence_threshold", "confidenceThreshold"),
    )
    max_context_length: _Loose = Field(
        default=None, description="> 0",
        validation_alias=AliasChoices("max_context_length", "maxContextLength"),
    )
    max_chunks: _Loose = Field(
        default=None, description="1-20",
        validation_alias=AliasChoices("max_chunks", "maxChunks"),
    )


class AgentProfileRequest(BaseModel):
    """Request body for PUT /agents/{agent_id}/profile."""

    name: str | None = Field(default=None, max_length=200)
    role: str | None = Field(default=None, max_length=500)
    tone: str | None = Field(default=None, max_length=100, examples=["friendly"])
    do_not_answer_from_general_knowledge: bool = Field(
        default=False,
        description="Answer strictly from trained content",
    )
