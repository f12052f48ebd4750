"""Retrieval engine and embedding providers."""

from __future__ import annotations

from typing import Any

from owlmend.retrieval.embedder import EmbeddingProvider
from owlmend.retrieval.embedder_hash import HashEmbedder
from owlmend.retrieval.embedder_litellm import LiteLLMEmbedder
from owlmend.retrieval.embedder_tfidf import TFIDFEmbedder
from owlmend.retrieval.engine import RetrievalEngine, RetrievalHit, format_hit


def create_embedder(config: Any) -> EmbeddingProvider:
    """Build the provider named by ``retrieval.embedder``."""
    if config.embedder == "litellm":
        return LiteLLMEmbedder(
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            cache_size=config.embedding_cache_size,
        )
    if config.embedder == "tfidf":
        return TFIDFEmbedder(dimensions=config.embedding_dimensions)
    if config.embedder == "hash":
        return HashEmbedder(dimensions=config.embedding_dimensions)
    raise ValueError(f"Unsupported embedder: {config.embedder}")


__all__ = [
    "EmbeddingProvider",
    "HashEmbedder",
    "LiteLLMEmbedder",
    "RetrievalEngine",
    "RetrievalHit",
    "TFIDFEmbedder",
    "create_embedder",
    "format_hit",
]
