# =============================================================================
# Retrieval Engine — Hybrid Vector + Keyword Search With Confidence Scoring
# =============================================================================
#
# RETRIEVAL FLOW:
#   question ──embed──▶ vector top-K ──┐
#       │                              ├─▶ union ─▶ score ─▶ filter ─▶ rank
#       └──keywords──▶ keyword top-K ──┘                                  │
#                                                   context ◀─ dedup ◀─ top N
#
# SCORING (per candidate):
#   similarity = cosine(question, chunk)   (0 for missing/mismatched vectors)
#   confidence = min(1, similarity + matched_keywords / total_keywords * 0.2)
#   keep when similarity ≥ similarity_threshold
#         and confidence ≥ confidence_threshold
#
# The two lookups run concurrently (asyncio.gather). Embedding runs in a
# worker thread because the provider client is synchronous.
#
# Tuning lives in a process-wide RetrievalConfig seeded from settings and
# adjustable at runtime through POST /ask/config (not persisted).
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
import re
import threading
from dataclasses import asdict, dataclass, field

from agentkb.config import settings
from agentkb.services.knowledge_store import KnowledgeStore, StoredChunk
from agentkb.services.provider import ProviderClient

logger = logging.getLogger(__name__)

KEYWORD_BOOST = 0.2
MAX_KEYWORDS = 5

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "may",
    "might", "can", "what", "when", "where", "why", "how", "who", "which",
    "that", "this", "these", "those",
})

_NON_WORD = re.compile(r"[^\w\s]")


# ---------------------------------------------------------------------------
# Runtime Configuration
# ---------------------------------------------------------------------------


@dataclass
class RetrievalConfig:
    """Process-wide retrieval tuning."""

    vector_k: int = 20
    keyword_k: int = 8
    similarity_threshold: float = 0.3
    confidence_threshold: float = 0.2
    max_chunks: int = 10
    max_context_length: int = 50000

    # field → (validator, human-readable rule)
    _RULES = {
        "vector_k": (lambda v: _is_int(v) and 1 <= v <= 50, "integer 1-50"),
        "keyword_k": (lambda v: _is_int(v) and 1 <= v <= 20, "integer 1-20"),
        "similarity_threshold": (lambda v: _is_number(v) and 0 <= v <= 1, "number 0-1"),
        "confidence_threshold": (lambda v: _is_number(v) and 0 <= v <= 1, "number 0-1"),
        "max_context_length": (lambda v: _is_int(v) and v > 0, "integer > 0"),
        "max_chunks": (lambda v: _is_int(v) and 1 <= v <= 20, "integer 1-20"),
    }

    @classmethod
    def from_settings(cls) -> RetrievalConfig:
        return cls(
            vector_k=settings.retrieval_vector_k,
            keyword_k=settings.retrieval_keyword_k,
            similarity_threshold=settings.retrieval_similarity_threshold,
            confidence_threshold=settings.retrieval_confidence_threshold,
            max_chunks=settings.retrieval_max_chunks,
            max_context_length=settings.retrieval_max_context_length,
        )

    def update(self, **changes) -> dict[str, str]:
        """
        Apply valid changes, ignore invalid ones.

        Returns:
            {field: rule} for every change that was ignored.
        """
        ignored: dict[str, str] = {}
        for name, value in changes.items():
            if value is None:
                continue
            rule = self._RULES.get(name)
            if rule is None:
                ignored[name] = "unknown setting"
                continue
            check, description = rule
            if check(value):
                setattr(self, name, value)
            else:
                ignored[name] = description
        if ignored:
            logger.warning("Ignored retrieval config changes: %s", ignored)
        return ignored

    def as_dict(self) -> dict:
        return asdict(self)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


_config: RetrievalConfig | None = None
_config_lock = threading.Lock()


def get_retrieval_config() -> RetrievalConfig:
    """The process-wide config, created from settings on first use."""
    global _config
    with _config_lock:
        if _config is None:
            _config = RetrievalConfig.from_settings()
        return _config


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ScoredChunk:
    chunk: StoredChunk
    similarity: float
    confidence: float


@dataclass
class RetrievalResult:
    """What the ask route needs to build a reply."""

    context: str = ""
    sources: list[dict] = field(default_factory=list)
    ranked: list[ScoredChunk] = field(default_factory=list)
    candidates_count: int = 0
    unique_texts: int = 0

    @property
    def found(self) -> bool:
        return bool(self.context)

    @property
    def average_similarity(self) -> float:
        if not self.ranked:
            return 0.0
        return sum(s.similarity for s in self.ranked) / len(self.ranked)

    @property
    def average_confidence(self) -> float:
        if not self.ranked:
            return 0.0
        return sum(s.confidence for s in self.ranked) / len(self.ranked)


# ---------------------------------------------------------------------------
# Pure Scoring Helpers
# ---------------------------------------------------------------------------


def extract_keywords(question: str) -> list[str]:
    """Up to five lower-cased, punctuation-free, non-stopword terms longer than two characters."""
    words = _NON_WORD.sub(" ", question.lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOPWORDS][:MAX_KEYWORDS]


def cosine_similarity(a, b) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when either vector is missing or malformed, the lengths
    differ, or either norm is zero.
    """
    if a is None or b is None:
        return 0.0
    try:
        a = [float(x) for x in a]
        b = [float(x) for x in b]
    except (TypeError, ValueError):
        return 0.0
    if not a or len(a) != len(b):
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def keyword_boost(text: str, keywords: list[str]) -> float:
    if not keywords:
        return 0.0
    lowered = text.lower()
    matched = sum(1 for kw in keywords if kw in lowered)
    return matched / len(keywords) * KEYWORD_BOOST


def score_candidates(
    question_embedding: list[float],
    candidates: list[StoredChunk],
    keywords: list[str],
) -> list[ScoredChunk]:
    """Similarity and confidence (clamped to [0, 1]) for every candidate."""
    scored: list[ScoredChunk] = []
    for chunk in candidates:
        similarity = cosine_similarity(question_embedding, chunk.embedding)
        confidence = similarity + keyword_boost(chunk.text, keywords)
        scored.append(ScoredChunk(
            chunk=chunk,
            similarity=similarity,
            confidence=min(1.0, max(0.0, confidence)),
        ))
    return scored


def rank(scored: list[ScoredChunk], config: RetrievalConfig) -> list[ScoredChunk]:
    """Threshold filter, confidence-descending sort, top max_chunks."""
    kept = [
        s for s in scored
        if s.similarity >= config.similarity_threshold
        and s.confidence >= config.confidence_threshold
    ]
    kept.sort(key=lambda s: s.confidence, reverse=True)
    return kept[:config.max_chunks]


def assemble_context(ranked: list[ScoredChunk], max_length: int) -> tuple[str, int]:
    """Join distinct texts (first occurrence wins), truncated to max_length."""
    texts: list[str] = []
    for scored in ranked:
        if scored.chunk.text not in texts:
            texts.append(scored.chunk.text)
    return "\n\n".join(texts)[:max_length], len(texts)


def collect_sources(ranked: list[ScoredChunk]) -> list[dict]:
    """One entry per distinct (source, source_url), best-ranked first."""
    sources: list[dict] = []
    seen: set[tuple[str, str | None]] = set()
    for scored in ranked:
        key = (scored.chunk.source, scored.chunk.source_url)
        if key in seen:
            continue
        seen.add(key)
        sources.append({
            "source": scored.chunk.source,
            "source_url": scored.chunk.source_url,
            "chunk_index": scored.chunk.chunk_index,
            "confidence": round(scored.confidence, 3),
            "similarity": round(scored.similarity, 3),
        })
    return sources


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def retrieve(
    agent_id: str,
    question: str,
    store: KnowledgeStore,
    provider: ProviderClient,
    config: RetrievalConfig | None = None,
) -> RetrievalResult:
    """
    Hybrid retrieval for one question.

    A miss is a normal, empty RetrievalResult. Only store failures propagate.
    """
    config = config or get_retrieval_config()

    try:
        question_embedding = await asyncio.to_thread(provider.embed, question)
    except Exception as exc:
        logger.warning("Question embedding failed, using zero vector: %s", exc)
        question_embedding = provider.zero_vector()

    keywords = extract_keywords(question)
    vector_hits, keyword_hits = await asyncio.gather(
        store.vector_search(agent_id, question_embedding, config.vector_k),
        store.keyword_search(agent_id, keywords, config.keyword_k),
    )
    candidates = list(vector_hits) + list(keyword_hits)
    logger.info(
        "Retrieval for agent=%s: %d vector + %d keyword candidates (keywords=%s)",
        agent_id, len(vector_hits), len(keyword_hits), keywords,
    )

    ranked = rank(score_candidates(question_embedding, candidates, keywords), config)
    if not ranked:
        logger.info(
            "No candidates passed thresholds (similarity ≥ %.2f, confidence ≥ %.2f)",
            config.similarity_threshold, config.confidence_threshold,
        )
        return RetrievalResult(candidates_count=len(candidates))

    context, unique_texts = assemble_context(ranked, config.max_context_length)
    return RetrievalResult(
        context=context,
        sources=collect_sources(ranked),
        ranked=ranked,
        candidates_count=len(candidates),
        unique_texts=unique_texts,
    )
