"""
LLM collaborator: OpenAI-compatible chat completions with a response cache.

Both the blocking and the streaming call are bounded by a hard timeout.
On timeout the partial text is discarded (never cached) and
``LLMTimeoutError`` is raised to the caller. Completed responses are
cached by a hash of the normalised outgoing messages; a cache hit on the
streaming path replays the stored text as one chunk (short texts) or two
halves.
"""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError

from refap.config import settings

logger = logging.getLogger(__name__)

REPLAY_SINGLE_CHUNK_MAX = 400


class LLMUnavailableError(Exception):
    """Raised when no model is configured or the provider call failed."""


class LLMTimeoutError(LLMUnavailableError):
    """Raised when the model did not finish within the hard timeout."""


def cache_key(messages: Sequence[dict[str, Any]]) -> str:
    """Stable hash of the normalised messages (case and whitespace folded)."""
    raw = json.dumps(list(messages), ensure_ascii=False, sort_keys=True)
    normalised = " ".join(raw.strip().lower().split())
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


def replay_chunks(text: str) -> list[str]:
    """Deterministic chunking of a cached text for streaming replay."""
    if len(text) <= REPLAY_SINGLE_CHUNK_MAX:
        return [text]
    mid = len(text) // 2
    return [text[:mid], text[mid:]]


@dataclass(frozen=True)
class _CacheEntry:
    value: str
    expires_at: float


class ResponseCache:
    """In-memory TTL cache. Entries are written once and never partially updated.

    Expired entries are purged on every write, and the oldest entries are
    evicted once ``max_entries`` is reached, so unique per-turn prompts
    cannot grow the map without bound.
    """

    def __init__(
        self,
        ttl_ms: Optional[int] = None,
        clock=time.monotonic,
        max_entries: Optional[int] = None,
    ) -> None:
        self.ttl_ms = settings.model.cache_ttl_ms if ttl_ms is None else ttl_ms
        self.max_entries = settings.model.cache_max_entries if max_entries is None else max_entries
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: str) -> None:
        if self.ttl_ms <= 0 or not value.strip():
            return
        now = self._clock()
        self._purge_expired(now)
        if key in self._entries:
            return
        # Insertion order is age order: entries are never rewritten.
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = _CacheEntry(value=value, expires_at=now + self.ttl_ms / 1000)

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Response cache purged %d expired entries", len(expired))

    def __len__(self) -> int:
        return len(self._entries)


class LLMClient:
    """Thin async wrapper around the chat completions API."""

    def __init__(
        self,
        client: Optional[Any] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_ms: Optional[int] = None,
        cache: Optional[ResponseCache] = None,
    ) -> None:
        cfg = settings.model
        if client is None and cfg.api_key:
            client = AsyncOpenAI(api_key=cfg.api_key, base_url=cfg.base_url)
        self._client = client
        self.model = model or cfg.llm_model
        self.temperature = cfg.llm_temperature if temperature is None else temperature
        self.timeout_s = (cfg.stream_timeout_ms if timeout_ms is None else timeout_ms) / 1000
        self.cache = cache if cache is not None else ResponseCache()
        self.cache_hits = 0

    @property
    def configured(self) -> bool:
        return self._client is not None

    def _require_client(self) -> Any:
        if self._client is None:
            raise LLMUnavailableError("OPENAI_API_KEY manquant")
        return self._client

    async def complete(self, messages: Sequence[dict[str, Any]]) -> str:
        """Blocking completion; returns the assembled text."""
        key = cache_key(messages)
        cached = self.cache.get(key)
        if cached is not None:
            self.cache_hits += 1
            return cached

        client = self._require_client()
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    temperature=self.temperature,
                    max_tokens=settings.model.max_reply_tokens,
                    messages=list(messages),
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise LLMTimeoutError(f"Model call exceeded {self.timeout_s:.1f}s") from exc
        except OpenAIError as exc:
            raise LLMUnavailableError(str(exc)) from exc

        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            raise LLMUnavailableError("Empty model response")
        self.cache.set(key, text)
        return text

    async def stream(self, messages: Sequence[dict[str, Any]]) -> AsyncIterator[str]:
        """Yield text deltas. The full text is cached only when the stream completes."""
        key = cache_key(messages)
        cached = self.cache.get(key)
        if cached is not None:
            self.cache_hits += 1
            for chunk in replay_chunks(cached):
                yield chunk
            return

        client = self._require_client()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_s
        parts: list[str] = []
        try:
            stream = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    temperature=self.temperature,
                    max_tokens=settings.model.max_reply_tokens,
                    messages=list(messages),
                    stream=True,
                ),
                timeout=self.timeout_s,
            )
            iterator = stream.__aiter__()
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                delta = chunk.choices[0].delta.content if chunk.choices else None
                if delta:
                    parts.append(delta)
                    yield delta
        except asyncio.TimeoutError as exc:
            logger.warning("Model stream timed out after %.1fs, discarding partial text",
                           self.timeout_s)
            raise LLMTimeoutError(f"Model stream exceeded {self.timeout_s:.1f}s") from exc
        except OpenAIError as exc:
            raise LLMUnavailableError(str(exc)) from exc

        self.cache.set(key, "".join(parts))
