# =============================================================================
# Text Chunker — Paragraph / Sentence Packing With Overlap
# =============================================================================
#
# Splits acquired text into overlapping, position-tracked chunks that are
# small enough to embed and large enough to carry context.
#
# ALGORITHM:
# 1. Split on blank-line paragraph boundaries (\n\s*\n)
# 2. A paragraph that fits in max_length (after trimming) is one chunk
# 3. Longer paragraphs are split into sentences (after . ? or !) and packed
#    greedily while the space-joined length stays within max_length
# 4. After each packed chunk the cursor backs up by whole sentences until at
#    least `overlap` characters of trailing context open the next chunk
# 5. A single sentence longer than max_length is emitted alone, untruncated
#
# Offsets (start_position / end_position) always refer to the original input
# string, so a chunk can be located in the source even after whitespace
# normalisation.
#
# This is a pure function: no I/O, no shared state. Character-based sizing
# keeps it independent of any tokenizer.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 1000
DEFAULT_OVERLAP = 200

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.?!])\s+")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class TextChunk:
    """
    A single chunk ready for fingerprinting and embedding.

    `total_chunks` is back-filled once the whole input has been chunked.
    """

    text: str
    chunk_index: int  # 0-indexed, dense within one chunk_text() call
    chunk_size: int  # len(text)
    start_position: int  # offset of the first character in the input
    end_position: int  # offset one past the last character in the input
    section: str  # "paragraph_N" or "sentence_N" (N is 1-indexed)
    total_chunks: int = 0

    @property
    def metadata(self) -> dict:
        """Chunk metadata in the shape stored alongside the embedding."""
        return {
            "total_chunks": self.total_chunks,
            "chunk_size": self.chunk_size,
            "start_position": self.start_position,
            "end_position": self.end_position,
            "section": self.section,
        }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_text(
    text: str,
    max_length: int = DEFAULT_MAX_LENGTH,
    overlap: int = DEFAULT_OVERLAP,
) -> list[TextChunk]:
    """
    Split text into overlapping chunks.

    Args:
        text: The text to split. Empty or whitespace-only input yields [].
        max_length: Upper bound on chunk length in characters. Only a single
            sentence longer than this may exceed it.
        overlap: Minimum characters of trailing context repeated at the start
            of the next chunk within an oversized paragraph.

    Returns:
        Chunks in input order with `total_chunks` set on every chunk.

    Non-positive max_length or negative overlap fall back to 1000 / 200.
    """
    if not isinstance(text, str) or not text.strip():
        return []

    if not isinstance(max_length, int) or max_length <= 0:
        logger.warning(
            "Invalid max_length=%r, using default %d", max_length, DEFAULT_MAX_LENGTH,
        )
        max_length = DEFAULT_MAX_LENGTH
    if not isinstance(overlap, int) or overlap < 0:
        logger.warning(
            "Invalid overlap=%r, using default %d", overlap, DEFAULT_OVERLAP,
        )
        overlap = DEFAULT_OVERLAP

    chunks: list[TextChunk] = []

    for paragraph, paragraph_start in _split_with_offsets(text, _PARAGRAPH_BREAK):
        try:
            _chunk_paragraph(
                paragraph, paragraph_start, max_length, overlap, chunks,
            )
        except Exception:
            # Offsets are absolute, so skipping one paragraph leaves the
            # others consistent.
            logger.exception(
                "Failed to chunk paragraph at offset %d, skipping",
                paragraph_start,
            )

    total = len(chunks)
    for chunk in chunks:
        chunk.total_chunks = total

    logger.debug(
        "Chunked %d characters into %d chunks (max_length=%d, overlap=%d)",
        len(text), total, max_length, overlap,
    )
    return chunks


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _split_with_offsets(text: str, pattern: re.Pattern) -> list[tuple[str, int]]:
    """Split `text` on `pattern`, keeping each piece's offset into `text`."""
    pieces: list[tuple[str, int]] = []
    cursor = 0
    for match in pattern.finditer(text):
        pieces.append((text[cursor:match.start()], cursor))
        cursor = match.end()
    pieces.append((text[cursor:], cursor))
    return pieces


def _trimmed(piece: str, offset: int) -> tuple[str, int]:
    """Strip a piece and shift its offset past any leading whitespace."""
    stripped = piece.strip()
    if not stripped:
        return "", offset
    return stripped, offset + (len(piece) - len(piece.lstrip()))


def _append(
    chunks: list[TextChunk],
    text: str,
    start: int,
    end: int,
    kind: str,
) -> None:
    index = len(chunks)
    chunks.append(TextChunk(
        text=text,
        chunk_index=index,
        chunk_size=len(text),
        start_position=start,
        end_position=end,
        section=f"{kind}_{index + 1}",
    ))


def _chunk_paragraph(
    paragraph: str,
    paragraph_start: int,
    max_length: int,
    overlap: int,
    chunks: list[TextChunk],
) -> None:
    body, body_start = _trimmed(paragraph, paragraph_start)
    if not body:
        return

    if len(body) <= max_length:
        _append(chunks, body, body_start, body_start + len(body), "paragraph")
        return

    sentences: list[tuple[str, int]] = []
    for raw, offset in _split_with_offsets(paragraph, _SENTENCE_BREAK):
        sentence, start = _trimmed(raw, paragraph_start + offset)
        if sentence:
            sentences.append((sentence, start))

    i = 0
    while i < len(sentences):
        packed: list[str] = []
        j = i
        while j < len(sentences):
            candidate = " ".join(packed + [sentences[j][0]])
            if len(candidate) > max_length:
                break
            packed.append(sentences[j][0])
            j += 1

        if j == i:
            sentence, start = sentences[i]
            _append(chunks, sentence, start, start + len(sentence), "sentence")
            i += 1
            continue

        last_text, last_start = sentences[j - 1]
        _append(
            chunks,
            " ".join(packed),
            sentences[i][1],
            last_start + len(last_text),
            "paragraph",
        )

        if j >= len(sentences):
            break

        # Back up by whole sentences to carry `overlap` characters forward
        next_start = j
        carried = 0
        while next_start - 1 > i and carried < overlap:
            next_start -= 1
            carried += len(sentences[next_start][0]) + 1
        i = max(i + 1, next_start)
