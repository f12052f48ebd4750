"""LiteLLM-backed EmbeddingProvider with LRU cache and retries."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict
from typing import Any

from owlmend.retrieval.embedder import EmbeddingProvider

logger = logging.getLogger(__name__)

_BATCH_SIZE = 100
_MAX_RETRIES = 3
_BACKOFF_BASE = 0.5


def _cache_key(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class LiteLLMEmbedder(EmbeddingProvider):
    """Embedding via litellm.aembedding; results cached by text hash."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 256,
        cache_size: int = 1000,
    ) -> None:
        """Create embedder.

        Args:
            model: LiteLLM embedding model id.
            dimensions: Output vector dimension; forwarded to models that accept it.
            cache_size: Max entries in the LRU cache (0 disables caching).
        """
        self._model = model
        self._dimensions = dimensions
        self._cache_size = cache_size
        self._cache: OrderedDict[str, list[float]] = OrderedDict()

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def _call_aembedding(self, input_texts: list[str]) -> list[list[float]]:
        import litellm

        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                kwargs: dict[str, Any] = {"model": self._model, "input": input_texts}
                if self._dimensions and "embedding-3" in self._model:
                    kwargs["dimensions"] = self._dimensions
                response = await litellm.aembedding(**kwargs)
                data = response.get("data", []) if isinstance(response, dict) else getattr(response, "data", []) or []
                out: list[list[float]] = []
                for i, item in enumerate(data):
                    emb = item.get("embedding") if isinstance(item, dict) else getattr(item, "embedding", None)
                    if emb is None:
                        raise ValueError(f"Missing embedding at index {i}")
                    vector = [float(v) for v in emb]
                    if len(vector) != self._dimensions:
                        raise ValueError(
                            f"Embedding dimensions mismatch at index {i}: expected {self._dimensions}, got {len(vector)}"
                        )
                    out.append(vector)
                if len(out) != len(input_texts):
                    raise ValueError(f"Embedding count mismatch: expected {len(input_texts)}, got {len(out)}")
                return out
            except Exception as e:
                if attempt == _MAX_RETRIES:
                    logger.exception("LiteLLM embedding failed after %s attempts", _MAX_RETRIES)
                    raise
                delay = _BACKOFF_BASE * (2.0 ** (attempt - 1))
                logger.warning("LiteLLM embedding attempt %s failed, retry in %.1fs: %s", attempt, delay, e)
                await asyncio.sleep(delay)
        return []

    def _remember(self, key: str, vector: list[float]) -> None:
        if self._cache_size <= 0:
            return
        if key in self._cache:
            self._cache.move_to_end(key)
            return
        while len(self._cache) >= self._cache_size:
            self._cache.popitem(last=False)
        self._cache[key] = vector[:]

    async def embed(self, text: str) -> list[float]:
        key = _cache_key(text)
        if self._cache_size > 0 and key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key][:]
        vector = (await self._call_aembedding([text]))[0]
        self._remember(key, vector)
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        result: list[list[float] | None] = [None] * len(texts)
        misses: list[int] = []
        for i, t in enumerate(texts):
            key = _cache_key(t)
            if self._cache_size > 0 and key in self._cache:
                self._cache.move_to_end(key)
                result[i] = self._cache[key][:]
            else:
                misses.append(i)
        for start in range(0, len(misses), _BATCH_SIZE):
            chunk = misses[start : start + _BATCH_SIZE]
            vectors = await self._call_aembedding([texts[i] for i in chunk])
            for idx, vec in zip(chunk, vectors, strict=True):
                result[idx] = vec
                self._remember(_cache_key(texts[idx]), vec)
        return [r for r in result if r is not None]
