# =============================================================================
# Document Parser — Docling For Rich Formats, Direct Decode For Plain Ones
# =============================================================================
#
# Turns one uploaded document into plain text for the chunker.
#
#   pdf / docx / pptx / html / xlsx → Docling DocumentConverter
#   txt / md                        → UTF-8 decode
#   csv                             → one JSON object per row
#   json                            → pretty-printed JSON
#
# Docling output is rebuilt item by item (headings, paragraphs, list items,
# tables as markdown) with blank lines between items, so the chunker's
# paragraph split lines up with the document's own structure.
# =============================================================================

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

logger = logging.getLogger(__name__)

DOCLING_TYPES = {"pdf", "docx", "pptx", "html", "htm", "xlsx"}
PLAIN_TYPES = {"txt", "md", "markdown", "text"}
SUPPORTED_TYPES = DOCLING_TYPES | PLAIN_TYPES | {"csv", "json"}

_TEXT_LABELS = (
    DocItemLabel.TEXT,
    DocItemLabel.PARAGRAPH,
    DocItemLabel.LIST_ITEM,
    DocItemLabel.CAPTION,
    DocItemLabel.FOOTNOTE,
    DocItemLabel.CODE,
)
_HEADING_LABELS = (DocItemLabel.SECTION_HEADER, DocItemLabel.TITLE)


class UnsupportedFileTypeError(ValueError):
    """Raised for a file type the parser has no reader for."""


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialization loads layout/table models (a few seconds on first use), so
# one converter is reused for the life of the worker process.
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info(
            "Initializing Docling DocumentConverter "
            "(first use, may take a few seconds)..."
        )
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(
                    pipeline_options=pipeline_options,
                ),
            }
        )
        logger.info("Docling DocumentConverter initialized")
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalise_file_type(file_type: str | None, filename: str = "") -> str:
    """Lower-cased type without a leading dot; falls back to the extension."""
    candidate = (file_type or "").strip().lower().lstrip(".")
    if "/" in candidate:
        # MIME types such as "application/pdf" or "text/plain"
        candidate = candidate.rsplit("/", 1)[-1]
        candidate = {"plain": "txt", "markdown": "md"}.get(candidate, candidate)
    if not candidate:
        candidate = Path(filename).suffix.lower().lstrip(".") or "txt"
    return candidate


def parse_file(file_path: str, file_type: str) -> str:
    """
    Extract plain text from one document.

    Args:
        file_path: Path to the uploaded file on disk.
        file_type: Declared type ("pdf", "docx", "txt", ...).

    Returns:
        The document text, paragraphs separated by blank lines.

    Raises:
        FileNotFoundError: If the file does not exist.
        UnsupportedFileTypeError: If no reader handles `file_type`.
        RuntimeError: If Docling fails to convert the document.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    kind = normalise_file_type(file_type, path.name)
    logger.info("Parsing %s as %s", path.name, kind)

    if kind in PLAIN_TYPES:
        return path.read_text(encoding="utf-8", errors="replace")
    if kind == "csv":
        return _parse_csv(path)
    if kind == "json":
        return _parse_json(path)
    if kind in DOCLING_TYPES:
        return _parse_with_docling(path)

    raise UnsupportedFileTypeError(f"Unsupported file type: {kind}")


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _parse_csv(path: Path) -> str:
    with path.open(newline="", encoding="utf-8", errors="replace") as handle:
        rows = [json.dumps(row, ensure_ascii=False) for row in csv.DictReader(handle)]
    return "\n".join(rows)


def _parse_json(path: Path) -> str:
    data = json.loads(path.read_text(encoding="utf-8"))
    return json.dumps(data, indent=2, ensure_ascii=False)


def _parse_with_docling(path: Path) -> str:
    converter = _get_converter()
    try:
        result = converter.convert(str(path))
    except Exception as exc:
        raise RuntimeError(
            f"Docling failed to parse '{path.name}': {exc}"
        ) from exc

    blocks: list[str] = []
    tables = 0
    for item, _level in result.document.iterate_items():
        label = getattr(item, "label", None)
        if label == DocItemLabel.TABLE:
            table_md = _table_to_markdown(item)
            if table_md:
                blocks.append(table_md)
                tables += 1
        elif label in _HEADING_LABELS or label in _TEXT_LABELS:
            text = getattr(item, "text", "").strip()
            if text:
                blocks.append(text)

    logger.info(
        "Parsed '%s': %d blocks (%d tables)", path.name, len(blocks), tables,
    )
    return "\n\n".join(blocks)


def _table_to_markdown(table_item: object) -> str:
    """
    Convert a Docling TableItem to a markdown-formatted string.

    Uses export_to_dataframe() → pandas to_markdown(), falling back to the
    item's plain text.
    """
    try:
        if hasattr(table_item, "export_to_dataframe"):
            df = table_item.export_to_dataframe()
            return df.to_markdown(index=False)
    except Exception as exc:
        logger.warning("Table export to DataFrame failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""
