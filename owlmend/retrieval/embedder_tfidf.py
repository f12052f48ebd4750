"""TF-IDF style hashing embedder; offline default and fallback when the model embedder fails."""

from __future__ import annotations

import re
from typing import Any

from sklearn.feature_extraction.text import HashingVectorizer  # type: ignore[import-untyped]

from owlmend.retrieval.embedder import EmbeddingProvider

_IDENTIFIER_SPLIT = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|[_.\-/]+")


def _expand_identifiers(text: str) -> str:
    """'amount_cents userId' -> 'amount_cents amount cents userId user Id' so field names match words."""
    parts = [text]
    for token in text.split():
        pieces = [p for p in _IDENTIFIER_SPLIT.split(token) if p]
        if len(pieces) > 1:
            parts.extend(pieces)
    return " ".join(parts)


class TFIDFEmbedder(EmbeddingProvider):
    """Fixed-length L2-normalized vectors from scikit-learn's HashingVectorizer (stateless)."""

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._dimensions = dimensions
        self._vectorizer: Any = HashingVectorizer(
            n_features=dimensions,
            alternate_sign=False,
            norm="l2",
            lowercase=True,
        )

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        matrix = self._vectorizer.transform([_expand_identifiers(t) for t in texts])
        return [[float(v) for v in row.tolist()] for row in matrix.toarray()]

    @property
    def dimensions(self) -> int:
        return self._dimensions
