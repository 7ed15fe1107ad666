# =============================================================================
# Unit Tests — Gemini Transcriber
# =============================================================================
#
# The google-genai client is replaced through `client_factory`; uploads,
# generation and deletes are recorded on a fake, so no API key is needed.
# =============================================================================

from __future__ import annotations

from types import SimpleNamespace

import pytest

from agentkb.services.provider import CredentialPool
from agentkb.services.transcriber import GeminiTranscriber, TranscriptionError


class RateLimited(Exception):
    status_code = 429


class FakeGenaiClient:
    def __init__(self, key: str, replies: dict[str, list], log: list) -> None:
        self.key = key
        self._replies = replies
        self._log = log
        self.files = SimpleNamespace(
            upload=self._upload, get=self._get, delete=self._delete,
        )
        self.models = SimpleNamespace(generate_content=self._generate)
        self._polls = 0

    def _upload(self, file, config):
        self._log.append(("upload", self.key, file, config.mime_type))
        return SimpleNamespace(name="files/abc", state=SimpleNamespace(name="PROCESSING"))

    def _get(self, name):
        self._polls += 1
        return SimpleNamespace(name=name, state=SimpleNamespace(name="ACTIVE"))

    def _delete(self, name):
        self._log.append(("delete", self.key, name))

    def _generate(self, model, contents):
        self._log.append(("generate", self.key))
        reply = self._replies[self.key].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(text=reply)


def _transcriber(keys, replies):
    log: list = []
    sleeps: list[float] = []
    transcriber = GeminiTranscriber(
        CredentialPool(keys),
        model="gemini-test",
        max_attempts=3,
        client_factory=lambda key: FakeGenaiClient(key, replies, log),
        sleep=sleeps.append,
    )
    return transcriber, log, sleeps


class TestGeminiTranscriber:
    def test_file_is_uploaded_transcribed_and_deleted(self):
        transcriber, log, _ = _transcriber(["k0"], {"k0": ["[Music] Hello there."]})

        text = transcriber.transcribe_file("/tmp/a.mp3", "a.mp3", None, "audio")

        assert text == "Hello there."
        assert log[0] == ("upload", "k0", "/tmp/a.mp3", "audio/mpeg")
        assert ("generate", "k0") in log
        assert log[-1] == ("delete", "k0", "files/abc")

    def test_youtube_rate_limit_rotates_credentials(self):
        transcriber, log, sleeps = _transcriber(
            ["k0", "k1"], {"k0": [RateLimited("quota")], "k1": ["Talk about rockets."]},
        )

        text = transcriber.transcribe_youtube("https://youtu.be/dQw4w9WgXcQ")

        assert text == "Talk about rockets."
        assert log == [("generate", "k0"), ("generate", "k1")]
        assert transcriber.pool.status()["cursor"] == 1
        assert len(sleeps) == 1

    def test_non_retryable_error_raises_transcription_error(self):
        transcriber, _, _ = _transcriber(["k0"], {"k0": [ValueError("unsupported media")]})
        with pytest.raises(TranscriptionError, match="unsupported media"):
            transcriber.transcribe_youtube("https://youtu.be/dQw4w9WgXcQ")

    def test_empty_transcript_raises(self):
        transcriber, _, _ = _transcriber(["k0"], {"k0": ["[Music]"]})
        with pytest.raises(TranscriptionError, match="empty"):
            transcriber.transcribe_youtube("https://youtu.be/dQw4w9WgXcQ")

    def test_invalid_youtube_url_raises_before_any_call(self):
        transcriber, log, _ = _transcriber(["k0"], {"k0": []})
        with pytest.raises(ValueError):
            transcriber.transcribe_youtube("https://example.com/video")
        assert log == []
