"""Deterministic EmbeddingProvider for mock mode and tests."""

from __future__ import annotations

import hashlib
import random

from owlmend.retrieval.embedder import EmbeddingProvider


class HashEmbedder(EmbeddingProvider):
    """Same text -> same vector; components in [-1, 1). Carries no semantic similarity."""

    def __init__(self, dimensions: int = 256, seed: int = 42) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._dimensions = dimensions
        self._seed = seed

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _vector_for(self, text: str) -> list[float]:
        digest = hashlib.sha256(f"{self._seed}:{text}".encode("utf-8")).hexdigest()
        rng = random.Random(int(digest[:16], 16))
        return [rng.uniform(-1.0, 1.0) for _ in range(self._dimensions)]

    async def embed(self, text: str) -> list[float]:
        return self._vector_for(text)
