# =============================================================================
# Content Versioner — Fingerprints, Duplicate Detection, Version Numbers
# =============================================================================
#
# Every chunk is fingerprinted with SHA-256 of its trimmed text. Before a
# chunk is embedded the ingestion engine asks:
#   1. Is there already a chunk for this agent with the same fingerprint
#      (and the same source URL, when one was given)?  → skip it
#   2. Otherwise, what is the next content version for this agent
#      (scoped to the source URL, when one was given)? → max + 1, default 1
#
# Versions are monotonic per scope; a duplicate always reports the version
# it was stored with, so resolve_version() is idempotent for duplicates.
# =============================================================================

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


class VersionLookup(Protocol):
    """The two store queries versioning needs. Sync (Celery side)."""

    def find_duplicate(
        self, agent_id: str, content_hash: str, source_url: str | None = None,
    ) -> int | None:
        """Version of an existing chunk with this fingerprint, or None."""
        ...

    def max_version(self, agent_id: str, source_url: str | None = None) -> int:
        """Highest stored version in scope, 0 when nothing is stored."""
        ...


@dataclass(frozen=True)
class ContentCheck:
    """Outcome of fingerprinting one chunk against the store."""

    content_hash: str
    version: int
    is_duplicate: bool


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the trimmed text. Case and inner spacing count."""
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()


def resolve_version(
    store: VersionLookup,
    agent_id: str,
    content_hash: str,
    source_url: str | None = None,
) -> int:
    """
    Return the version this content has, or would get if stored now.

    An existing chunk with the same fingerprint returns its own version (the
    caller must then skip it). Otherwise the result is one more than the
    highest version in scope.
    """
    existing = store.find_duplicate(agent_id, content_hash, source_url)
    if existing is not None:
        return existing
    return store.max_version(agent_id, source_url) + 1


def check_content(
    store: VersionLookup,
    agent_id: str,
    text: str,
    source_url: str | None = None,
) -> ContentCheck:
    """Fingerprint `text` and resolve its duplicate status and version."""
    digest = content_hash(text)
    existing = store.find_duplicate(agent_id, digest, source_url)
    if existing is not None:
        logger.debug(
            "Duplicate content for agent=%s (hash=%s, version=%d)",
            agent_id, digest[:12], existing,
        )
        return ContentCheck(content_hash=digest, version=existing, is_duplicate=True)

    version = store.max_version(agent_id, source_url) + 1
    return ContentCheck(content_hash=digest, version=version, is_duplicate=False)
