# =============================================================================
# Transcriber — Audio, Video and YouTube Through Gemini (google-genai)
# =============================================================================
#
# Audio and video uploads go through the Gemini Files API and are then
# transcribed with generate_content(). YouTube URLs are passed to Gemini
# directly as file_data, no download needed.
#
# Shares the provider's CredentialPool: a quota error rotates the key the
# same way embeddings and generation do.
# =============================================================================

from __future__ import annotations

import logging
import mimetypes
import re
import threading
import time
from collections.abc import Callable
from urllib.parse import parse_qs, urlparse

from google import genai
from google.genai import types

from agentkb.config import settings
from agentkb.services.provider import ROTATE, TRANSIENT, CredentialPool, classify_error

logger = logging.getLogger(__name__)

AUDIO_PROMPT = (
    "Transcribe this audio verbatim. Return only the spoken text, "
    "without timestamps or speaker labels."
)
VIDEO_PROMPT = (
    "Transcribe everything said in this video, then add a short description "
    "of any important on-screen text or visuals. Return plain text only."
)
YOUTUBE_PROMPT = (
    "Transcribe the spoken content of this video. If a transcript is not "
    "possible, summarize the video in 3-5 sentences for training an AI "
    "assistant, focusing on the main topics and facts."
)

_ANNOTATION = re.compile(r"\[.*?\]")
_YOUTUBE_ID = re.compile(r"^[A-Za-z0-9_-]{6,}$")


class TranscriptionError(RuntimeError):
    """Raised when a file or video could not be transcribed."""


def clean_transcript(text: str) -> str:
    """Drop bracketed annotations such as [Music] and decode &#39;."""
    return _ANNOTATION.sub("", text).replace("&#39;", "'").strip()


def extract_video_id(url: str) -> str:
    """
    Video id from a youtube.com/watch, youtube.com/shorts|embed or youtu.be URL.

    Raises:
        ValueError: If the URL carries no recognisable video id.
    """
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    video_id: str | None = None
    if host.endswith("youtube.com"):
        video_id = parse_qs(parsed.query).get("v", [None])[0]
        if not video_id:
            parts = [p for p in parsed.path.split("/") if p]
            if len(parts) >= 2 and parts[0] in ("shorts", "embed", "live"):
                video_id = parts[1]
    elif host == "youtu.be":
        video_id = parsed.path.lstrip("/").split("/")[0] or None

    if not video_id or not _YOUTUBE_ID.match(video_id):
        raise ValueError(f"Invalid YouTube URL, no video id found: {url}")
    return video_id


class GeminiTranscriber:
    """Transcription over the shared credential pool."""

    def __init__(
        self,
        pool: CredentialPool,
        model: str | None = None,
        max_attempts: int | None = None,
        client_factory: Callable[[str], genai.Client] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.pool = pool
        self.model = model or settings.transcription_model
        self.max_attempts = max_attempts or settings.provider_max_attempts
        self._client_factory = client_factory or (lambda key: genai.Client(api_key=key))
        self._sleep = sleep
        self._clients: dict[str, genai.Client] = {}
        self._lock = threading.Lock()

    def transcribe_file(self, path: str, filename: str, content_type: str | None, kind: str) -> str:
        """Upload one audio/video file and return its cleaned transcript."""
        mime_type = content_type or mimetypes.guess_type(filename)[0] or (
            "audio/mpeg" if kind == "audio" else "video/mp4"
        )
        prompt = AUDIO_PROMPT if kind == "audio" else VIDEO_PROMPT

        def _call(client: genai.Client) -> str:
            uploaded = client.files.upload(
                file=path,
                config=types.UploadFileConfig(mime_type=mime_type, display_name=filename),
            )
            uploaded = self._wait_until_active(client, uploaded)
            try:
                response = client.models.generate_content(
                    model=self.model, contents=[uploaded, prompt],
                )
            finally:
                try:
                    client.files.delete(name=uploaded.name)
                except Exception as exc:
                    logger.warning("Failed to delete uploaded file %s: %s", uploaded.name, exc)
            return response.text or ""

        text = clean_transcript(self._with_rotation(f"transcribe {filename}", _call))
        if not text:
            raise TranscriptionError(f"Empty transcript for {filename}")
        logger.info("Transcribed %s (%s): %d characters", filename, kind, len(text))
        return text

    def transcribe_youtube(self, url: str) -> str:
        """Transcript (or summary) of a YouTube video."""
        video_id = extract_video_id(url)
        canonical = f"https://www.youtube.com/watch?v={video_id}"

        def _call(client: genai.Client) -> str:
            response = client.models.generate_content(
                model=self.model,
                contents=types.Content(parts=[
                    types.Part(file_data=types.FileData(file_uri=canonical)),
                    types.Part(text=YOUTUBE_PROMPT),
                ]),
            )
            return response.text or ""

        text = clean_transcript(self._with_rotation(f"youtube {video_id}", _call))
        if not text:
            raise TranscriptionError(f"Transcript is unavailable or empty for video {video_id}")
        logger.info("Transcribed YouTube video %s: %d characters", video_id, len(text))
        return text

    # -- internals ----------------------------------------------------------

    def _client_for(self, key: str) -> genai.Client:
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = self._client_factory(key)
                self._clients[key] = client
            return client

    def _wait_until_active(self, client: genai.Client, uploaded, timeout: float = 300.0):
        deadline = time.monotonic() + timeout
        while getattr(getattr(uploaded, "state", None), "name", "ACTIVE") == "PROCESSING":
            if time.monotonic() > deadline:
                raise TranscriptionError(f"Upload {uploaded.name} still processing after {timeout:.0f}s")
            self._sleep(2.0)
            uploaded = client.files.get(name=uploaded.name)
        if getattr(getattr(uploaded, "state", None), "name", "ACTIVE") == "FAILED":
            raise TranscriptionError(f"Upload {uploaded.name} failed processing")
        return uploaded

    def _with_rotation(self, operation: str, call: Callable[[genai.Client], str]) -> str:
        delay = settings.provider_backoff_base
        for attempt in range(1, self.max_attempts + 1):
            index, key = self.pool.current()
            try:
                return call(self._client_for(key))
            except TranscriptionError:
                raise
            except Exception as exc:
                kind = classify_error(exc)
                if kind not in (ROTATE, TRANSIENT) or attempt == self.max_attempts:
                    raise TranscriptionError(f"{operation} failed: {exc}") from exc
                logger.warning(
                    "%s attempt %d/%d failed (%s): %s",
                    operation, attempt, self.max_attempts, kind, exc,
                )
                if kind == ROTATE:
                    self.pool.rotate(index)
                    self._sleep(settings.provider_rotate_delay)
                else:
                    self._sleep(delay)
                    delay *= 2
        raise TranscriptionError(f"{operation} failed")
