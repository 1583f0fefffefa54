"""
Shared pytest fixtures for notelink tests.

Provides fake providers so no embedding model is loaded and no API is called.
"""

import hashlib

import pytest

from notelink.errors import TransientError
from notelink.providers.base import EmbeddingProvider, RelevanceProvider


class FakeEmbedder(EmbeddingProvider):
    """
    Deterministic embedding provider.

    Texts listed in `vectors` get that vector; anything else gets a vector
    derived from its hash. Texts in `fail_on` raise TransientError, and
    `on_call` runs after each successful embedding.
    """

    model_name = "fake-model"

    def __init__(self):
        self.vectors: dict[str, list[float]] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self.on_call = None

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if text in self.fail_on:
            raise TransientError("Server error: 503", status=503)
        if self.on_call:
            self.on_call()
        if text in self.vectors:
            return list(self.vectors[text])
        h = hashlib.md5(text.encode()).hexdigest()
        return [int(h[i:i + 2], 16) / 255.0 for i in range(0, 16, 2)]


class FakeRelevanceProvider(RelevanceProvider):
    """
    Scores pairs from a lookup keyed by the two ids, in either order.

    Unknown pairs score `default`. Set `fail` to make every call raise
    TransientError, or `on_call` to run a hook before each call.
    """

    def __init__(self):
        self.scores: dict[frozenset, float] = {}
        self.default = 0.0
        self.tags: list[str] = ["alpha", "beta", "gamma"]
        self.fail = False
        self.on_call = None
        self.score_calls: list[list] = []
        self.tag_calls: list[list] = []

    def set_score(self, id_a: str, id_b: str, score: float) -> None:
        self.scores[frozenset((id_a, id_b))] = score

    def score_pairs(self, pairs):
        self.score_calls.append(list(pairs))
        if self.on_call:
            self.on_call()
        if self.fail:
            raise TransientError("Rate limit exceeded", status=429)
        return {p.pair_id: self.scores.get(frozenset((p.id_1, p.id_2)), self.default) for p in pairs}

    def generate_tags(self, notes, min_tags=3, max_tags=5):
        self.tag_calls.append(list(notes))
        if self.fail:
            raise TransientError("Rate limit exceeded", status=429)
        return {n.note_id: list(self.tags[:max_tags]) for n in notes}


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def fake_llm():
    return FakeRelevanceProvider()
