# =============================================================================
# Source Acquisition — Turning A Training Request Into Text
# =============================================================================
#
# One entry point, SourceAcquirer.acquire(request) → AcquiredText, that
# dispatches on the request's source:
#
#   website  → scraper.scrape_site(source_url)
#   youtube  → transcriber.transcribe_youtube(source_url)
#   audio    → transcriber.transcribe_file(...) per uploaded file
#   video    → transcriber.transcribe_file(...) per uploaded file
#   document → parser.parse_file(...) per uploaded file, else raw text
#
# Multi-file audio/video batches collect one ItemSucceeded / ItemFailed per
# file: the batch fails only when every file failed, and partial failures
# travel with the text as warnings. A document that fails to parse fails the
# whole request, since the caller asked for that file's content specifically.
#
# Every failure surfaces as AcquisitionError, whose to_dict() is stored
# verbatim as the job's `error`.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field

from agentkb.services.parser import normalise_file_type, parse_file
from agentkb.services.scraper import scrape_site

logger = logging.getLogger(__name__)

SOURCES = ("audio", "video", "document", "website", "youtube")
DEFAULT_SOURCE = "document"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TrainingValidationError(ValueError):
    """A training request that can be rejected before any work is queued."""

    def __init__(self, message: str, field: str) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        return {"error": self.message, "field": self.field}


class AcquisitionError(RuntimeError):
    """Terminal failure while fetching, parsing or transcribing a source."""

    def __init__(
        self,
        message: str,
        source: str,
        url: str | None = None,
        file: str | None = None,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.url = url
        self.file = file
        self.details = details

    def to_dict(self) -> dict:
        error: dict = {"error": self.message, "source": self.source}
        if self.url:
            error["url"] = self.url
        if self.file:
            error["file"] = self.file
        if self.details:
            error["details"] = self.details
        return error


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class UploadedFile:
    """An uploaded file already written to disk by the API."""

    path: str
    filename: str
    content_type: str | None = None


@dataclass
class TrainingRequest:
    """Everything a training job needs, JSON-serialisable for Celery."""

    agent_id: str
    source: str = DEFAULT_SOURCE
    text: str | None = None
    files: list[UploadedFile] = field(default_factory=list)
    file_type: str | None = None
    source_url: str | None = None
    source_metadata: dict | None = None

    @property
    def file_names(self) -> list[str]:
        return [f.filename for f in self.files]

    def to_payload(self) -> dict:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict) -> TrainingRequest:
        data = dict(payload)
        data["files"] = [UploadedFile(**f) for f in data.get("files") or []]
        return cls(**data)


@dataclass
class AcquiredText:
    """Text ready for chunking, plus provenance for the job result."""

    text: str
    file_names: list[str] = field(default_factory=list)
    used_files: bool = False
    warnings: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class ItemSucceeded:
    name: str
    text: str


@dataclass(frozen=True)
class ItemFailed:
    name: str
    error: str

    def to_dict(self) -> dict:
        return {"file": self.name, "error": self.error}


ItemOutcome = ItemSucceeded | ItemFailed


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_training_request(request: TrainingRequest) -> None:
    """
    Reject malformed requests synchronously.

    Rules:
        - agent_id is required
        - source must be one of SOURCES
        - audio / video need at least one file and a file_type
        - website / youtube need a source_url
        - document needs text or files; files need a file_type

    Raises:
        TrainingValidationError: With the offending field name.
    """
    if not request.agent_id or not request.agent_id.strip():
        raise TrainingValidationError(
            "agent_id is required and must be a string", "agent_id",
        )
    if request.source not in SOURCES:
        raise TrainingValidationError(
            "source must be one of: " + ", ".join(SOURCES), "source",
        )

    if request.source in ("audio", "video"):
        if not request.files:
            raise TrainingValidationError(
                "For audio or video training, files[] must be provided", "files[]",
            )
        if not request.file_type:
            raise TrainingValidationError(
                "file_type is required when uploading files", "file_type",
            )
        return

    if request.source in ("website", "youtube"):
        if not request.source_url or not request.source_url.strip():
            raise TrainingValidationError(
                "source_url is required for website or youtube training", "source_url",
            )
        return

    if not request.files and not (request.text and request.text.strip()):
        raise TrainingValidationError(
            "Either text or files[] must be provided", "text|files[]",
        )
    if request.files and not request.file_type:
        raise TrainingValidationError(
            "file_type is required when uploading files", "file_type",
        )


# ---------------------------------------------------------------------------
# Acquirer
# ---------------------------------------------------------------------------


class SourceAcquirer:
    """
    Dispatches a request to the right collaborator.

    Collaborators are injectable; the transcriber is built lazily because it
    needs provider credentials that plain text/document jobs never use.
    """

    def __init__(
        self,
        parser: Callable[[str, str], str] = parse_file,
        scraper: Callable[[str], str] = scrape_site,
        transcriber=None,
        transcriber_factory: Callable[[], object] | None = None,
    ) -> None:
        self._parse = parser
        self._scrape = scraper
        self._transcriber = transcriber
        self._transcriber_factory = transcriber_factory

    @property
    def transcriber(self):
        if self._transcriber is None:
            if self._transcriber_factory is not None:
                self._transcriber = self._transcriber_factory()
            else:
                from agentkb.services.provider import get_provider_client
                from agentkb.services.transcriber import GeminiTranscriber

                self._transcriber = GeminiTranscriber(get_provider_client().pool)
        return self._transcriber

    def acquire(self, request: TrainingRequest) -> AcquiredText:
        """
        Produce the text to train on.

        Raises:
            AcquisitionError: On any terminal acquisition failure, including
                an empty result.
        """
        source = request.source or DEFAULT_SOURCE

        if source == "website":
            acquired = self._acquire_website(request.source_url)
        elif source == "youtube":
            acquired = self._acquire_youtube(request.source_url)
        elif source in ("audio", "video"):
            acquired = self._acquire_media(request, source)
        elif request.files:
            acquired = self._acquire_documents(request)
        else:
            acquired = AcquiredText(text=request.text or "")

        if not acquired.text or not acquired.text.strip():
            raise AcquisitionError(
                "No valid training text found in input or files.", source=source,
            )
        return acquired

    # -- per-source ---------------------------------------------------------

    def _acquire_website(self, url: str) -> AcquiredText:
        try:
            text = self._scrape(url)
        except Exception as exc:
            logger.warning("Website acquisition failed for %s: %s", url, exc)
            raise AcquisitionError(str(exc), source="website", url=url) from exc
        logger.info("Scraped website %s: %d characters", url, len(text))
        return AcquiredText(text=text)

    def _acquire_youtube(self, url: str) -> AcquiredText:
        try:
            text = self.transcriber.transcribe_youtube(url)
        except Exception as exc:
            logger.warning("YouTube acquisition failed for %s: %s", url, exc)
            raise AcquisitionError(str(exc), source="youtube", url=url) from exc
        return AcquiredText(text=text)

    def _acquire_media(self, request: TrainingRequest, kind: str) -> AcquiredText:
        outcomes: list[ItemOutcome] = []
        for upload in request.files:
            try:
                text = self.transcriber.transcribe_file(
                    upload.path, upload.filename, upload.content_type, kind,
                )
                outcomes.append(ItemSucceeded(upload.filename, text))
            except Exception as exc:
                logger.warning("Failed to transcribe %s: %s", upload.filename, exc)
                outcomes.append(ItemFailed(upload.filename, str(exc)))

        failures = [o.to_dict() for o in outcomes if isinstance(o, ItemFailed)]
        texts = [o.text for o in outcomes if isinstance(o, ItemSucceeded)]

        if not texts:
            message = (
                "Failed to transcribe all audio files" if kind == "audio"
                else "Failed to process all video files"
            )
            raise AcquisitionError(message, source=kind, details=failures)

        warnings = []
        if failures:
            warnings.append({
                "warning": (
                    "Some audio files failed to transcribe" if kind == "audio"
                    else "Some video files failed to process"
                ),
                "details": failures,
            })
        return AcquiredText(
            text="\n\n".join(texts),
            file_names=request.file_names,
            used_files=True,
            warnings=warnings,
        )

    def _acquire_documents(self, request: TrainingRequest) -> AcquiredText:
        declared = [t.strip() for t in (request.file_type or "").split(",") if t.strip()]
        texts: list[str] = []
        for i, upload in enumerate(request.files):
            declared_type = declared[i] if i < len(declared) else (
                declared[0] if len(declared) == 1 else ""
            )
            file_type = normalise_file_type(declared_type, upload.filename)
            try:
                texts.append(self._parse(upload.path, file_type))
            except Exception as exc:
                logger.warning("Failed to parse %s: %s", upload.filename, exc)
                raise AcquisitionError(
                    str(exc), source="document", file=upload.filename,
                ) from exc

        return AcquiredText(
            text="\n\n".join(texts),
            file_names=request.file_names,
            used_files=True,
        )
