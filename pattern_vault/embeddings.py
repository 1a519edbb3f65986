"""
Embedding providers and the bounded recency cache in front of them.

A provider turns text into a fixed-size float vector.  Providers raise
:class:`EmbeddingError` when the backend is unreachable or answers with an
empty vector; the cache passes that straight through and never retries.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from typing import Optional, Protocol

import requests

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CACHE_SIZE = 100
OPENAI_EMBED_MODEL = "text-embedding-3-small"


class EmbeddingError(Exception):
    """Raised when the embedding backend cannot produce a vector."""


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> list[float]:
        ...


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class OllamaEmbeddingProvider:
    """Embeddings from a local Ollama server (``/api/embed``)."""

    def __init__(self, base_url: str, model: str, timeout: float = 30.0) -> None:
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def embed(self, text: str) -> list[float]:
        url = f"{self._api_root}/api/embed"
        payload = {"model": self.model, "input": text}
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise EmbeddingError(f"Ollama embedding failed: {exc}") from exc
        embeddings = data.get("embeddings") or [[]]
        vector = embeddings[0]
        if not vector:
            raise EmbeddingError("Ollama returned an empty embedding")
        return [float(v) for v in vector]


def _get_openai_client(api_key: str = "", base_url: Optional[str] = None):
    """Return an openai.OpenAI client, raising ImportError if not installed."""
    try:
        import openai  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "openai package is required for OpenAI embeddings. "
            "Install it with: pip install 'pattern_vault[semantic]'"
        ) from exc
    api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
    if not api_key:
        raise EnvironmentError(
            "OPENAI_API_KEY environment variable is not set."
        )
    return openai.OpenAI(api_key=api_key, base_url=base_url)


class OpenAIEmbeddingProvider:
    """Embeddings from the OpenAI Embeddings API."""

    def __init__(self, model: str = OPENAI_EMBED_MODEL, api_key: str = "",
                 base_url: Optional[str] = None, client=None) -> None:
        self.model = model
        self._client = client or _get_openai_client(api_key, base_url)

    def embed(self, text: str) -> list[float]:
        try:
            response = self._client.embeddings.create(model=self.model, input=[text])
        except Exception as exc:
            raise EmbeddingError(f"OpenAI embedding failed: {exc}") from exc
        if not response.data:
            raise EmbeddingError("OpenAI returned no embedding")
        return list(response.data[0].embedding)


def create_embedding_provider(cfg) -> EmbeddingProvider:
    """Build the provider selected by ``cfg.EMBEDDING_PROVIDER``."""
    if cfg.EMBEDDING_PROVIDER == "openai":
        model = cfg.EMBEDDING_MODEL
        if model == "nomic-embed-text":
            model = OPENAI_EMBED_MODEL
        return OpenAIEmbeddingProvider(model=model, api_key=cfg.OPENAI_API_KEY,
                                       base_url=cfg.OPENAI_BASE_URL)
    return OllamaEmbeddingProvider(cfg.LLM_ENDPOINT, cfg.EMBEDDING_MODEL)


# ---------------------------------------------------------------------------
# EmbeddingCache
# ---------------------------------------------------------------------------

class EmbeddingCache:
    """Least-recently-used cache of ``text -> vector``.

    Usage::

        cache = EmbeddingCache(provider, capacity=100)
        vec = cache.embed("python: def login(...)")

    A hit moves the entry to the most-recent end.  A miss calls the
    provider outside the lock, then inserts and evicts the oldest entry
    when over capacity.
    """

    def __init__(self, provider: EmbeddingProvider,
                 capacity: int = DEFAULT_CACHE_SIZE) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._provider = provider
        self._capacity = capacity
        self._entries: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def embed(self, text: str) -> list[float]:
        with self._lock:
            vector = self._entries.get(text)
            if vector is not None:
                self._entries.move_to_end(text)
                self.hits += 1
                return vector
            self.misses += 1

        vector = self._provider.embed(text)

        with self._lock:
            self._entries[text] = vector
            self._entries.move_to_end(text)
            while len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("[EmbeddingCache] Evicted entry (%d chars)", len(evicted))
        return vector

    def __contains__(self, text: str) -> bool:
        with self._lock:
            return text in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def capacity(self) -> int:
        return self._capacity

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
