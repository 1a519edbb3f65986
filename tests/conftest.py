"""
Shared fixtures: a deterministic embedding provider, a temp-file vector
store and an engine wired to both.  Nothing here touches the network.
"""

from __future__ import annotations

import hashlib

import numpy as np
import pytest

DIM = 64


def _vec(*head: float) -> list[float]:
    """A DIM-sized vector starting with *head*, zero-padded."""
    v = [0.0] * DIM
    v[:len(head)] = head
    return v


class FakeEmbeddingProvider:
    """Maps text to vectors without a model.

    The first rule whose marker occurs in the text decides the vector;
    other texts get a pseudo-random vector seeded by their hash, so equal
    texts embed equally and unrelated texts land far apart.
    """

    def __init__(self, rules=None):
        self.rules = list(rules or [])
        self.calls: list[str] = []
        self.fail = False

    def embed(self, text: str) -> list[float]:
        from pattern_vault.embeddings import EmbeddingError

        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("provider down")
        for marker, vector in self.rules:
            if marker in text:
                return list(vector)
        seed = int(hashlib.md5(text.encode("utf-8")).hexdigest()[:8], 16)
        return np.random.default_rng(seed).standard_normal(DIM).tolist()


@pytest.fixture
def vec():
    return _vec


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def store(tmp_path):
    from pattern_vault.storage import SQLiteVectorStore

    s = SQLiteVectorStore(str(tmp_path / "vault.db"))
    yield s
    s.close()


@pytest.fixture
def config(tmp_path):
    from pattern_vault.config import Config

    return Config({"data_dir": str(tmp_path)})


@pytest.fixture
def make_engine(config, store, provider):
    """Factory: ``make_engine(llm=None)`` returns a loaded PatternEngine."""
    from pattern_vault.assistant import PatternAssistant
    from pattern_vault.embeddings import EmbeddingCache
    from pattern_vault.engine import PatternEngine

    def _make(llm=None):
        engine = PatternEngine(
            config, store, EmbeddingCache(provider, capacity=100),
            PatternAssistant(llm),
        )
        engine.init()
        return engine

    return _make
