# =============================================================================
# Provider Client — Embeddings & Generation With Credential Rotation
# =============================================================================
#
# Wraps an OpenAI-compatible endpoint (Gemini's by default) behind two calls:
#   embed(text)      → list[float]   (fixed dimension)
#   generate(prompt) → str
#
# RETRY POLICY (per call, up to provider_max_attempts attempts):
# ┌────────────────────────────┬──────────────────────────────────────────┐
# │ Error class                │ Action                                   │
# ├────────────────────────────┼──────────────────────────────────────────┤
# │ rotate (429 / quota)       │ advance the credential cursor, wait,     │
# │                            │ retry with the next credential           │
# │ transient (5xx / network)  │ wait (doubling), retry same credential   │
# │ fatal (anything else)      │ raise immediately                        │
# └────────────────────────────┴──────────────────────────────────────────┘
#
# Exhaustion never raises: embed() returns a zero vector and generate()
# returns FALLBACK_REPLY, so callers can always make progress.
#
# The credential pool is an owned, thread-safe object injected into the
# client. Celery threads and FastAPI's thread pool share one pool per
# process; rotation is a compare-and-advance so two threads failing on the
# same credential move the cursor once.
# =============================================================================

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Sequence

from openai import APIConnectionError, APITimeoutError, OpenAI

from agentkb.config import settings

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "I apologize, but I'm currently experiencing technical difficulties. "
    "Please try again later or contact support if the issue persists."
)

ROTATE = "rotate"
TRANSIENT = "transient"
FATAL = "fatal"

_ROTATE_STATUS = {429}
_TRANSIENT_STATUS = {500, 502, 503, 504}
_ROTATE_MARKERS = ("too many requests", "quota", "resource_exhausted", "rate limit")
_TRANSIENT_MARKERS = (
    "service unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
    "timed out",
    "timeout",
    "connection",
)
_ROTATE_CODE_RE = re.compile(r"\b429\b")
_TRANSIENT_CODE_RE = re.compile(r"\b50[0234]\b")


class NoCredentialsError(RuntimeError):
    """Raised when a pool is built without any credential."""


# ---------------------------------------------------------------------------
# Credential Pool
# ---------------------------------------------------------------------------


class CredentialPool:
    """
    Ordered, immutable list of API keys with a shared cursor.

    The only mutation is a cursor advance. Keys are never removed, so a
    key that was rate-limited becomes usable again once the cursor wraps.
    """

    def __init__(self, credentials: Sequence[str]) -> None:
        keys = tuple(k for k in credentials if k)
        if not keys:
            raise NoCredentialsError(
                "No provider credentials configured. "
                "Set PROVIDER_API_KEYS or PROVIDER_API_KEY in .env"
            )
        self._keys = keys
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def current(self) -> tuple[int, str]:
        """Return (index, key) of the credential in use."""
        with self._lock:
            return self._cursor, self._keys[self._cursor]

    def rotate(self, failed_index: int) -> int:
        """
        Advance past `failed_index` if it is still current.

        Returns the cursor after the call. A caller holding a stale index
        (another thread already rotated) leaves the cursor where it is.
        """
        with self._lock:
            if self._cursor == failed_index:
                self._cursor = (self._cursor + 1) % len(self._keys)
                logger.warning(
                    "Rotated provider credential %d → %d (pool size %d)",
                    failed_index, self._cursor, len(self._keys),
                )
            return self._cursor

    def status(self) -> dict:
        with self._lock:
            return {"size": len(self._keys), "cursor": self._cursor}


# ---------------------------------------------------------------------------
# Error Classification
# ---------------------------------------------------------------------------


def classify_error(exc: BaseException) -> str:
    """
    Map a provider exception to ROTATE, TRANSIENT or FATAL.

    HTTP status (openai.APIStatusError.status_code, or any exception with a
    `status_code` / `code` attribute) wins, and any status outside 429/5xx
    is FATAL whatever the message says. Without a status the message is
    matched against known quota and availability phrases.
    """
    status = getattr(exc, "status_code", None)
    if not isinstance(status, int):
        status = getattr(exc, "code", None)
    if isinstance(status, int) and not isinstance(status, bool):
        if status in _ROTATE_STATUS:
            return ROTATE
        if status in _TRANSIENT_STATUS:
            return TRANSIENT
        return FATAL

    if isinstance(exc, (APIConnectionError, APITimeoutError, ConnectionError, TimeoutError)):
        return TRANSIENT

    message = str(exc).lower()
    if _ROTATE_CODE_RE.search(message) or any(m in message for m in _ROTATE_MARKERS):
        return ROTATE
    if _TRANSIENT_CODE_RE.search(message):
        return TRANSIENT
    if any(m in message for m in _TRANSIENT_MARKERS):
        return TRANSIENT
    return FATAL


# ---------------------------------------------------------------------------
# Provider Client
# ---------------------------------------------------------------------------


class ProviderClient:
    """
    Embedding + generation client over a rotating credential pool.

    One `openai.OpenAI` client is cached per credential; the SDK's own
    retries are disabled so this class owns the retry policy.
    """

    def __init__(
        self,
        pool: CredentialPool,
        base_url: str | None = None,
        embedding_model: str | None = None,
        generation_model: str | None = None,
        dimensions: int | None = None,
        max_attempts: int | None = None,
        rotate_delay: float | None = None,
        backoff_base: float | None = None,
        client_factory: Callable[[str], OpenAI] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.pool = pool
        self.base_url = base_url if base_url is not None else settings.provider_base_url
        self.embedding_model = embedding_model or settings.embedding_model
        self.generation_model = generation_model or settings.generation_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self.max_attempts = max_attempts or settings.provider_max_attempts
        self.rotate_delay = (
            rotate_delay if rotate_delay is not None else settings.provider_rotate_delay
        )
        self.backoff_base = (
            backoff_base if backoff_base is not None else settings.provider_backoff_base
        )
        self._client_factory = client_factory or self._build_client
        self._sleep = sleep
        self._clients: dict[str, OpenAI] = {}
        self._clients_lock = threading.Lock()

    # -- public API ---------------------------------------------------------

    def embed(self, text: str) -> list[float]:
        """
        Embed one text. Returns a zero vector when every attempt failed.

        Raises:
            Exception: Non-retryable provider errors (bad request, auth).
        """

        def _call(client: OpenAI) -> list[float]:
            response = client.embeddings.create(
                model=self.embedding_model,
                input=text,
            )
            if not response.data:
                logger.warning("Provider returned no embedding data")
                return self.zero_vector()
            return list(response.data[0].embedding)

        result = self._with_retries("embed", _call)
        if result is None:
            logger.error(
                "Embedding failed after %d attempts, using zero vector",
                self.max_attempts,
            )
            return self.zero_vector()
        return result

    def generate(
        self,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """
        Generate a reply. Returns FALLBACK_REPLY when every attempt failed.

        Raises:
            Exception: Non-retryable provider errors (bad request, auth).
        """

        def _call(client: OpenAI) -> str:
            response = client.chat.completions.create(
                model=self.generation_model,
                messages=[{"role": "user", "content": prompt}],
                temperature=(
                    temperature if temperature is not None
                    else settings.generation_temperature
                ),
                max_tokens=max_tokens or settings.generation_max_tokens,
            )
            return response.choices[0].message.content or ""

        result = self._with_retries("generate", _call)
        if result is None:
            logger.error(
                "Generation failed after %d attempts, using fallback reply",
                self.max_attempts,
            )
            return FALLBACK_REPLY
        return result

    def zero_vector(self) -> list[float]:
        return [0.0] * self.dimensions

    # -- internals ----------------------------------------------------------

    def _build_client(self, api_key: str) -> OpenAI:
        kwargs: dict = {"api_key": api_key, "max_retries": 0}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return OpenAI(**kwargs)

    def _client_for(self, api_key: str) -> OpenAI:
        with self._clients_lock:
            client = self._clients.get(api_key)
            if client is None:
                client = self._client_factory(api_key)
                self._clients[api_key] = client
            return client

    def _with_retries(self, operation: str, call: Callable[[OpenAI], object]):
        """Run `call` under the retry policy. Returns None on exhaustion."""
        backoff = self.backoff_base
        for attempt in range(1, self.max_attempts + 1):
            index, key = self.pool.current()
            try:
                return call(self._client_for(key))
            except Exception as exc:
                kind = classify_error(exc)
                if kind == FATAL:
                    logger.error(
                        "Provider %s failed with non-retryable error: %s",
                        operation, exc,
                    )
                    raise

                logger.warning(
                    "Provider %s attempt %d/%d failed (%s, credential %d): %s",
                    operation, attempt, self.max_attempts, kind, index, exc,
                )
                if attempt == self.max_attempts:
                    break
                if kind == ROTATE:
                    self.pool.rotate(index)
                    self._sleep(self.rotate_delay)
                else:
                    self._sleep(backoff)
                    backoff *= 2
        return None


# ---------------------------------------------------------------------------
# Factory — Lazy Singleton
# ---------------------------------------------------------------------------

_provider: ProviderClient | None = None
_provider_lock = threading.Lock()


def get_provider_client() -> ProviderClient:
    """
    Return the process-wide provider client, built from settings.

    Raises:
        NoCredentialsError: If no API key is configured.
    """
    global _provider
    with _provider_lock:
        if _provider is None:
            pool = CredentialPool(settings.api_key_pool)
            _provider = ProviderClient(pool)
            logger.info(
                "Initialized provider client (embedding=%s, generation=%s, "
                "credentials=%d, base_url=%s)",
                _provider.embedding_model,
                _provider.generation_model,
                len(pool),
                _provider.base_url or "https://api.openai.com/v1",
            )
        return _provider
