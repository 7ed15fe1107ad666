# =============================================================================
# Knowledge Store — Pluggable Backend Protocol
# =============================================================================
#
# Holds every agent's chunks with their embeddings and provenance, and
# answers the four questions the rest of the service asks:
#   - versioning:  find_duplicate(), max_version()          (sync, Celery)
#   - ingestion:   add_chunks()                              (sync, Celery)
#   - retrieval:   agent_exists(), vector_search(),
#                  keyword_search()                          (async, FastAPI)
#   - admin:       delete_agent(), stats()                   (async, FastAPI)
#
# ARCHITECTURE:
#   KnowledgeStore (Protocol)
#   ├── PgKnowledgeStore     — PostgreSQL + pgvector
#   │   ├── sync methods     — get_sync_session() (psycopg2)
#   │   └── async methods    — async_session_factory (asyncpg)
#   └── ChromaKnowledgeStore — ChromaDB (in-process or client/server)
#       ├── sync methods     — direct client calls
#       └── async methods    — asyncio.to_thread() wrappers
#
# Both backends enforce "one chunk per (agent_id, content_hash, source_url)":
# pgvector through a unique index with ON CONFLICT DO NOTHING, Chroma through
# deterministic ids. add_chunks() returns how many rows were actually new, so
# a lost race between two jobs shows up as a skip rather than an overwrite.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

import chromadb
from sqlalchemy import func, or_, select
from sqlalchemy import delete as sql_delete
from sqlalchemy.dialects.postgresql import insert as pg_insert

from agentkb.config import settings
from agentkb.db.engine import async_session_factory, get_sync_session
from agentkb.db.models import KnowledgeChunk, KnowledgeSource

logger = logging.getLogger(__name__)

_CHUNK_METADATA_KEYS = (
    "total_chunks",
    "chunk_size",
    "start_position",
    "end_position",
    "section",
    "file_name",
    "page_number",
)

_PG_INSERT_BATCH = 500


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class NewChunk:
    """A fully prepared chunk waiting to be persisted."""

    agent_id: str
    text: str
    embedding: list[float]
    source: str
    content_hash: str
    content_version: int
    chunk_index: int
    chunk_metadata: dict = field(default_factory=dict)
    source_url: str | None = None
    source_metadata: dict | None = None


@dataclass
class StoredChunk:
    """A chunk as read back for retrieval, embedding included."""

    text: str
    embedding: list[float] | None
    source: str
    source_url: str | None
    chunk_index: int
    content_version: int = 1
    chunk_metadata: dict = field(default_factory=dict)
    chunk_id: str = ""


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class KnowledgeStore(Protocol):
    """Interface shared by the pgvector and Chroma backends."""

    def find_duplicate(
        self, agent_id: str, content_hash: str, source_url: str | None = None,
    ) -> int | None:
        """Version of a stored chunk with this fingerprint, or None."""
        ...

    def max_version(self, agent_id: str, source_url: str | None = None) -> int:
        """Highest content_version in scope, 0 if none."""
        ...

    def add_chunks(self, chunks: list[NewChunk]) -> int:
        """Persist chunks, ignoring (agent, hash, url) conflicts. Returns rows inserted."""
        ...

    async def agent_exists(self, agent_id: str) -> bool:
        ...

    async def vector_search(
        self, agent_id: str, embedding: list[float], k: int,
    ) -> list[StoredChunk]:
        """Top-k chunks of the agent by cosine distance to `embedding`."""
        ...

    async def keyword_search(
        self, agent_id: str, keywords: list[str], k: int,
    ) -> list[StoredChunk]:
        """Up to k chunks of the agent whose text matches any keyword (case-insensitive)."""
        ...

    async def delete_agent(self, agent_id: str) -> int:
        """Remove every chunk of the agent. Returns the number removed."""
        ...

    async def stats(self, agent_id: str) -> dict:
        """Chunk count, per-source counts and latest version for the agent."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgKnowledgeStore:
    """pgvector-backed store. Sync engine for Celery, async engine for FastAPI."""

    def find_duplicate(
        self, agent_id: str, content_hash: str, source_url: str | None = None,
    ) -> int | None:
        stmt = select(KnowledgeChunk.content_version).where(
            KnowledgeChunk.agent_id == agent_id,
            KnowledgeChunk.content_hash == content_hash,
        )
        if source_url:
            stmt = stmt.where(KnowledgeChunk.source_url == source_url)
        with get_sync_session() as session:
            return session.execute(stmt.limit(1)).scalar_one_or_none()

    def max_version(self, agent_id: str, source_url: str | None = None) -> int:
        stmt = select(func.max(KnowledgeChunk.content_version)).where(
            KnowledgeChunk.agent_id == agent_id,
        )
        if source_url:
            stmt = stmt.where(KnowledgeChunk.source_url == source_url)
        with get_sync_session() as session:
            return session.execute(stmt).scalar() or 0

    def add_chunks(self, chunks: list[NewChunk]) -> int:
        if not chunks:
            return 0

        rows = [
            {
                "agent_id": c.agent_id,
                "text": c.text,
                "embedding": c.embedding,
                "source": KnowledgeSource(c.source),
                "source_url": c.source_url or "",
                "source_metadata": c.source_metadata or {},
                "chunk_index": c.chunk_index,
                "chunk_metadata": c.chunk_metadata,
                "content_hash": c.content_hash,
                "content_version": c.content_version,
            }
            for c in chunks
        ]
        inserted = 0
        with get_sync_session() as session:
            # Batches keep each statement under PostgreSQL's bind-parameter limit
            for start in range(0, len(rows), _PG_INSERT_BATCH):
                stmt = (
                    pg_insert(KnowledgeChunk)
                    .values(rows[start:start + _PG_INSERT_BATCH])
                    .on_conflict_do_nothing(
                        index_elements=["agent_id", "content_hash", "source_url"],
                    )
                    .returning(KnowledgeChunk.id)
                )
                inserted += len(session.execute(stmt).all())

        if inserted < len(chunks):
            logger.warning(
                "Ignored %d conflicting chunks for agent=%s",
                len(chunks) - inserted, chunks[0].agent_id,
            )
        logger.info(
            "Stored %d chunks for agent=%s in pgvector",
            inserted, chunks[0].agent_id,
        )
        return inserted

    async def agent_exists(self, agent_id: str) -> bool:
        async with async_session_factory() as session:
            result = await session.execute(
                select(KnowledgeChunk.id)
                .where(KnowledgeChunk.agent_id == agent_id)
                .limit(1)
            )
            return result.first() is not None

    async def vector_search(
        self, agent_id: str, embedding: list[float], k: int,
    ) -> list[StoredChunk]:
        async with async_session_factory() as session:
            result = await session.execute(
                select(KnowledgeChunk)
                .where(KnowledgeChunk.agent_id == agent_id)
                .order_by(KnowledgeChunk.embedding.cosine_distance(embedding))
                .limit(k)
            )
            rows = result.scalars().all()

        logger.debug("Vector search returned %d rows (agent=%s, k=%d)", len(rows), agent_id, k)
        return [_stored_from_row(row) for row in rows]

    async def keyword_search(
        self, agent_id: str, keywords: list[str], k: int,
    ) -> list[StoredChunk]:
        if not keywords:
            return []
        # `~*` is PostgreSQL's case-insensitive regex match
        conditions = [
            KnowledgeChunk.text.regexp_match(re.escape(kw), flags="i")
            for kw in keywords
        ]
        async with async_session_factory() as session:
            result = await session.execute(
                select(KnowledgeChunk)
                .where(KnowledgeChunk.agent_id == agent_id, or_(*conditions))
                .limit(k)
            )
            rows = result.scalars().all()

        logger.debug("Keyword search returned %d rows (agent=%s, k=%d)", len(rows), agent_id, k)
        return [_stored_from_row(row) for row in rows]

    async def delete_agent(self, agent_id: str) -> int:
        async with async_session_factory() as session:
            result = await session.execute(
                sql_delete(KnowledgeChunk).where(KnowledgeChunk.agent_id == agent_id)
            )
            await session.commit()
        logger.info("Deleted %d chunks for agent=%s", result.rowcount, agent_id)
        return result.rowcount or 0

    async def stats(self, agent_id: str) -> dict:
        async with async_session_factory() as session:
            per_source = await session.execute(
                select(KnowledgeChunk.source, func.count())
                .where(KnowledgeChunk.agent_id == agent_id)
                .group_by(KnowledgeChunk.source)
            )
            latest = await session.execute(
                select(func.max(KnowledgeChunk.content_version))
                .where(KnowledgeChunk.agent_id == agent_id)
            )
            by_source = {
                _source_value(source): count for source, count in per_source.all()
            }
            latest_version = latest.scalar() or 0

        return {
            "agent_id": agent_id,
            "total_chunks": sum(by_source.values()),
            "by_source": by_source,
            "latest_version": latest_version,
        }


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaKnowledgeStore:
    """
    ChromaDB-backed store: one collection for every agent.

    Agent scoping uses the metadata `where` clause. Chunk ids are derived
    from (agent_id, content_hash, source_url) so the dedup key is also the
    primary key.
    """

    def __init__(
        self,
        client: chromadb.api.ClientAPI | None = None,
        collection_name: str | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        self._collection = self._client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )

    # -- sync (Celery) ------------------------------------------------------

    def find_duplicate(
        self, agent_id: str, content_hash: str, source_url: str | None = None,
    ) -> int | None:
        clauses = {"agent_id": agent_id, "content_hash": content_hash}
        if source_url:
            clauses["source_url"] = source_url
        found = self._collection.get(where=_where(clauses), limit=1, include=["metadatas"])
        metadatas = found.get("metadatas") or []
        if not metadatas:
            return None
        return int(metadatas[0].get("content_version", 1))

    def max_version(self, agent_id: str, source_url: str | None = None) -> int:
        clauses = {"agent_id": agent_id}
        if source_url:
            clauses["source_url"] = source_url
        found = self._collection.get(where=_where(clauses), include=["metadatas"])
        versions = [
            int(m.get("content_version", 0)) for m in (found.get("metadatas") or [])
        ]
        return max(versions, default=0)

    def add_chunks(self, chunks: list[NewChunk]) -> int:
        if not chunks:
            return 0

        by_id: dict[str, NewChunk] = {}
        for chunk in chunks:
            by_id.setdefault(
                _chroma_id(chunk.agent_id, chunk.content_hash, chunk.source_url or ""),
                chunk,
            )

        existing = set(self._collection.get(ids=list(by_id), include=[])["ids"])
        fresh = {cid: c for cid, c in by_id.items() if cid not in existing}
        if not fresh:
            logger.warning(
                "All %d chunks already stored for agent=%s", len(chunks), chunks[0].agent_id,
            )
            return 0

        self._collection.add(
            ids=list(fresh),
            documents=[c.text for c in fresh.values()],
            embeddings=[c.embedding for c in fresh.values()],
            metadatas=[_chroma_metadata(c) for c in fresh.values()],
        )
        logger.info(
            "Stored %d chunks for agent=%s in ChromaDB", len(fresh), chunks[0].agent_id,
        )
        return len(fresh)

    # -- async (FastAPI) ----------------------------------------------------

    async def agent_exists(self, agent_id: str) -> bool:
        def _exists() -> bool:
            found = self._collection.get(where={"agent_id": agent_id}, limit=1, include=[])
            return bool(found["ids"])

        return await asyncio.to_thread(_exists)

    async def vector_search(
        self, agent_id: str, embedding: list[float], k: int,
    ) -> list[StoredChunk]:
        def _search() -> list[StoredChunk]:
            if self._collection.count() == 0:
                return []
            results = self._collection.query(
                query_embeddings=[embedding],
                n_results=k,
                where={"agent_id": agent_id},
                include=["documents", "metadatas", "embeddings"],
            )
            ids = results["ids"][0] if results.get("ids") else []
            documents = _first_row(results.get("documents"))
            metadatas = _first_row(results.get("metadatas"))
            embeddings = _first_row(results.get("embeddings"))
            return [
                _stored_from_chroma(
                    cid,
                    documents[i] if documents is not None else "",
                    metadatas[i] if metadatas is not None else {},
                    embeddings[i] if embeddings is not None else None,
                )
                for i, cid in enumerate(ids)
            ]

        return await asyncio.to_thread(_search)

    async def keyword_search(
        self, agent_id: str, keywords: list[str], k: int,
    ) -> list[StoredChunk]:
        if not keywords:
            return []
        pattern = re.compile("|".join(re.escape(kw) for kw in keywords), re.IGNORECASE)

        def _search() -> list[StoredChunk]:
            found = self._collection.get(
                where={"agent_id": agent_id},
                include=["documents", "metadatas", "embeddings"],
            )
            documents = found.get("documents")
            metadatas = found.get("metadatas")
            embeddings = found.get("embeddings")
            matches: list[StoredChunk] = []
            for i, cid in enumerate(found["ids"]):
                text = documents[i] if documents is not None else ""
                if not pattern.search(text or ""):
                    continue
                matches.append(_stored_from_chroma(
                    cid,
                    text,
                    metadatas[i] if metadatas is not None else {},
                    embeddings[i] if embeddings is not None else None,
                ))
                if len(matches) >= k:
                    break
            return matches

        return await asyncio.to_thread(_search)

    async def delete_agent(self, agent_id: str) -> int:
        def _delete() -> int:
            ids = self._collection.get(where={"agent_id": agent_id}, include=[])["ids"]
            if ids:
                self._collection.delete(ids=ids)
            return len(ids)

        deleted = await asyncio.to_thread(_delete)
        logger.info("Deleted %d chunks for agent=%s", deleted, agent_id)
        return deleted

    async def stats(self, agent_id: str) -> dict:
        def _stats() -> dict:
            found = self._collection.get(where={"agent_id": agent_id}, include=["metadatas"])
            by_source: dict[str, int] = {}
            latest = 0
            for meta in found.get("metadatas") or []:
                source = str(meta.get("source", ""))
                by_source[source] = by_source.get(source, 0) + 1
                latest = max(latest, int(meta.get("content_version", 0)))
            return {
                "agent_id": agent_id,
                "total_chunks": sum(by_source.values()),
                "by_source": by_source,
                "latest_version": latest,
            }

        return await asyncio.to_thread(_stats)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: PgKnowledgeStore | ChromaKnowledgeStore | None = None


def get_knowledge_store(
    override_type: str | None = None,
) -> PgKnowledgeStore | ChromaKnowledgeStore:
    """
    Return the configured knowledge store backend.

    - "pgvector" → PgKnowledgeStore (default)
    - "chroma"   → ChromaKnowledgeStore

    The configured backend is cached per process; an override builds a
    fresh instance.
    """
    global _store
    store_type = override_type or settings.knowledge_store_type

    if override_type is None and _store is not None:
        return _store

    if store_type == "chroma":
        logger.info("Using ChromaDB knowledge store")
        store = ChromaKnowledgeStore()
    else:
        logger.info("Using pgvector knowledge store")
        store = PgKnowledgeStore()

    if override_type is None:
        _store = store
    return store


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _source_value(source) -> str:
    return source.value if isinstance(source, KnowledgeSource) else str(source)


def _as_floats(vector) -> list[float] | None:
    """Normalise pgvector / numpy / list embeddings to list[float]."""
    if vector is None:
        return None
    try:
        return [float(x) for x in vector]
    except (TypeError, ValueError):
        return None


def _stored_from_row(row: KnowledgeChunk) -> StoredChunk:
    return StoredChunk(
        text=row.text,
        embedding=_as_floats(row.embedding),
        source=_source_value(row.source),
        source_url=row.source_url or None,
        chunk_index=row.chunk_index,
        content_version=row.content_version,
        chunk_metadata=dict(row.chunk_metadata or {}),
        chunk_id=str(row.id),
    )


def _where(clauses: dict) -> dict:
    """Chroma needs $and for more than one equality clause."""
    if len(clauses) == 1:
        return dict(clauses)
    return {"$and": [{key: value} for key, value in clauses.items()]}


def _chroma_id(agent_id: str, content_hash: str, source_url: str) -> str:
    url_digest = hashlib.sha256(source_url.encode("utf-8")).hexdigest()[:16]
    return f"{agent_id}:{content_hash}:{url_digest}"


def _first_row(value):
    """First query row of a Chroma result field, or None when absent."""
    if value is None or len(value) == 0:
        return None
    return value[0]


def _chroma_metadata(chunk: NewChunk) -> dict:
    metadata = {
        key: chunk.chunk_metadata.get(key)
        for key in _CHUNK_METADATA_KEYS
        if key in chunk.chunk_metadata
    }
    metadata.update({
        "agent_id": chunk.agent_id,
        "source": chunk.source,
        "source_url": chunk.source_url or "",
        "source_metadata": json.dumps(chunk.source_metadata or {}),
        "chunk_index": chunk.chunk_index,
        "content_hash": chunk.content_hash,
        "content_version": chunk.content_version,
    })
    return _sanitise_chroma_metadata(metadata)


def _stored_from_chroma(chunk_id: str, text: str, metadata: dict, embedding) -> StoredChunk:
    metadata = metadata or {}
    return StoredChunk(
        text=text or "",
        embedding=_as_floats(embedding),
        source=str(metadata.get("source", "")),
        source_url=metadata.get("source_url") or None,
        chunk_index=int(metadata.get("chunk_index", 0)),
        content_version=int(metadata.get("content_version", 1)),
        chunk_metadata={
            key: metadata[key] for key in _CHUNK_METADATA_KEYS if key in metadata
        },
        chunk_id=chunk_id,
    )


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Coerce metadata values to the scalar types ChromaDB accepts.

    None → "", list → comma-separated string, anything else non-scalar → str.
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
