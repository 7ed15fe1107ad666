# =============================================================================
# Unit Tests — Knowledge Store (ChromaDB backend)
# =============================================================================
#
# Exercises ChromaKnowledgeStore in ChromaDB's in-process mode (no external
# services needed). pgvector is covered by the same protocol but requires a
# running PostgreSQL instance, so it is not tested here.
# =============================================================================

import asyncio
import itertools

from agentkb.services.knowledge_store import ChromaKnowledgeStore, NewChunk, StoredChunk
from agentkb.services.versioning import content_hash

_collection_ids = itertools.count()


def _run(coro):
    return asyncio.run(coro)


def _make_store() -> ChromaKnowledgeStore:
    """Fresh store with a unique collection per test to avoid cross-talk."""
    return ChromaKnowledgeStore(collection_name=f"test_knowledge_{next(_collection_ids)}")


def _chunk(text, embedding, agent_id="agent-1", version=1, index=0, url=None, source="document"):
    return NewChunk(
        agent_id=agent_id,
        text=text,
        embedding=embedding,
        source=source,
        content_hash=content_hash(text),
        content_version=version,
        chunk_index=index,
        chunk_metadata={"section": f"paragraph_{index + 1}", "total_chunks": 2},
        source_url=url,
        source_metadata={"lang": "en"},
    )


class TestChromaKnowledgeStore:
    def test_add_chunks_reports_new_rows_only(self):
        store = _make_store()
        first = [_chunk("Alpha", [1.0, 0.0, 0.0]), _chunk("Beta", [0.0, 1.0, 0.0], index=1)]
        assert store.add_chunks(first) == 2
        # Same agent, hash and URL again: ignored
        assert store.add_chunks([_chunk("Alpha", [1.0, 0.0, 0.0], version=2)]) == 0
        # Same text under another URL is a different chunk
        assert store.add_chunks([_chunk("Alpha", [1.0, 0.0, 0.0], url="https://a.test")]) == 1

    def test_find_duplicate_and_max_version(self):
        store = _make_store()
        store.add_chunks([
            _chunk("Alpha", [1.0, 0.0, 0.0], version=1),
            _chunk("Gamma", [0.0, 0.0, 1.0], version=3, url="https://g.test"),
        ])

        assert store.find_duplicate("agent-1", content_hash("Alpha")) == 1
        assert store.find_duplicate("agent-1", content_hash("Missing")) is None
        assert store.find_duplicate("agent-2", content_hash("Alpha")) is None
        assert store.find_duplicate(
            "agent-1", content_hash("Gamma"), "https://g.test",
        ) == 3
        assert store.max_version("agent-1") == 3
        assert store.max_version("agent-1", "https://other.test") == 0
        assert store.max_version("nobody") == 0

    def test_vector_search_is_scoped_and_ordered(self):
        store = _make_store()
        store.add_chunks([
            _chunk("Revenue grew", [1.0, 0.0, 0.0]),
            _chunk("Costs fell", [0.0, 1.0, 0.0], index=1),
            _chunk("Other agent", [1.0, 0.0, 0.0], agent_id="agent-2"),
        ])

        results = _run(store.vector_search("agent-1", [1.0, 0.1, 0.0], k=5))

        assert [r.text for r in results] == ["Revenue grew", "Costs fell"]
        assert all(isinstance(r, StoredChunk) for r in results)
        assert results[0].embedding == [1.0, 0.0, 0.0]
        assert results[0].chunk_metadata["section"] == "paragraph_1"
        assert results[1].chunk_index == 1

    def test_keyword_search_is_case_insensitive_or(self):
        store = _make_store()
        store.add_chunks([
            _chunk("Opening HOURS are 9-5", [1.0, 0.0, 0.0]),
            _chunk("Refunds take a week", [0.0, 1.0, 0.0], index=1),
            _chunk("Nothing relevant", [0.0, 0.0, 1.0], index=2),
        ])

        results = _run(store.keyword_search("agent-1", ["hours", "refunds"], k=8))
        assert sorted(r.text for r in results) == ["Opening HOURS are 9-5", "Refunds take a week"]
        assert _run(store.keyword_search("agent-1", [], k=8)) == []

    def test_keyword_search_escapes_regex_characters(self):
        store = _make_store()
        store.add_chunks([_chunk("Price is $10 (approx)", [1.0, 0.0, 0.0])])
        assert len(_run(store.keyword_search("agent-1", ["(approx"], k=8))) == 1

    def test_agent_exists_stats_and_delete(self):
        store = _make_store()
        store.add_chunks([
            _chunk("One", [1.0, 0.0, 0.0], version=1),
            _chunk("Two", [0.0, 1.0, 0.0], version=2, source="website", url="https://t.test"),
        ])

        assert _run(store.agent_exists("agent-1"))
        assert not _run(store.agent_exists("agent-2"))

        stats = _run(store.stats("agent-1"))
        assert stats == {
            "agent_id": "agent-1",
            "total_chunks": 2,
            "by_source": {"document": 1, "website": 1},
            "latest_version": 2,
        }

        assert _run(store.delete_agent("agent-1")) == 2
        assert not _run(store.agent_exists("agent-1"))
        assert _run(store.stats("agent-1"))["total_chunks"] == 0
