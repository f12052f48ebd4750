"""Retrieval engine: embed a query, search the knowledge store, rank with tie-breaks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timezone
from typing import Any

from owlmend.errors import RetrievalUnavailableError
from owlmend.knowledge.models import EntryKind, KnowledgeEntry, KnowledgeFilters
from owlmend.knowledge.store import KnowledgeStore
from owlmend.retrieval.embedder import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalHit:
    entry: KnowledgeEntry
    similarity: float

    @property
    def text(self) -> str:
        return self.entry.text

    @property
    def kind(self) -> EntryKind:
        return self.entry.kind

    def rank_key(self) -> tuple[float, float, float]:
        created = self.entry.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (self.similarity, created.timestamp(), self.entry.success_rate)


class RetrievalEngine:
    """Read-only semantic lookup over the knowledge store."""

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: EmbeddingProvider,
        *,
        default_top_k: int = 5,
        max_top_k: int = 20,
        timeout_seconds: float = 2.0,
        enable_tfidf_fallback: bool = True,
    ) -> None:
        if default_top_k <= 0 or max_top_k <= 0:
            raise ValueError("top_k limits must be > 0")
        self._store = store
        self._embedder = embedder
        self.default_top_k = default_top_k
        self.max_top_k = max_top_k
        self.timeout_seconds = timeout_seconds
        self._enable_tfidf_fallback = enable_tfidf_fallback
        self._fallback_embedder: EmbeddingProvider | None = None

    @property
    def embedder(self) -> EmbeddingProvider:
        return self._embedder

    def _get_fallback_embedder(self) -> EmbeddingProvider:
        if self._fallback_embedder is None:
            from owlmend.retrieval.embedder_tfidf import TFIDFEmbedder

            self._fallback_embedder = TFIDFEmbedder(dimensions=self._embedder.dimensions)
        return self._fallback_embedder

    async def embed(self, text: str) -> list[float]:
        """Embed with the configured provider, falling back to TF-IDF hashing."""
        try:
            return await asyncio.wait_for(self._embedder.embed(text), timeout=self.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._enable_tfidf_fallback:
                raise RetrievalUnavailableError(f"embedding failed: {exc}") from exc
            logger.warning("embedding failed (%s); using TF-IDF fallback", type(exc).__name__)
            return await self._get_fallback_embedder().embed(text)

    def _resolve_top_k(self, top_k: int | None) -> int:
        if top_k is None:
            return min(self.default_top_k, self.max_top_k)
        if top_k <= 0:
            raise ValueError("top_k must be > 0")
        return min(top_k, self.max_top_k)

    async def retrieve(
        self,
        query_text: str,
        tool_scope: str | None = None,
        top_k: int | None = None,
        kinds: list[EntryKind] | None = None,
    ) -> list[RetrievalHit]:
        """Return up to ``top_k`` hits, best first.

        Ordering is cosine similarity, then recency, then historical success
        rate. Raises RetrievalUnavailableError when the store fails or times out.
        """
        k = self._resolve_top_k(top_k)
        normalized = query_text.strip()
        if not normalized:
            raise ValueError("query_text must not be empty")
        embedding = await self.embed(normalized)
        filters = KnowledgeFilters(tool_scope=tool_scope, kinds=kinds)
        try:
            pairs = await asyncio.wait_for(self._store.query(embedding, filters, k), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise RetrievalUnavailableError(f"knowledge store query timed out after {self.timeout_seconds}s") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise RetrievalUnavailableError(f"knowledge store query failed: {exc}") from exc
        hits = [RetrievalHit(entry=entry, similarity=float(sim)) for entry, sim in pairs]
        hits.sort(key=RetrievalHit.rank_key, reverse=True)
        return hits[:k]

    async def guidance(
        self,
        concept_query: str,
        tool_scope: str | None = None,
        top_k: int | None = None,
    ) -> list[str]:
        """Human-readable snippets for prompting; empty when retrieval is unavailable."""
        try:
            hits = await self.retrieve(concept_query, tool_scope=tool_scope, top_k=top_k)
        except RetrievalUnavailableError as exc:
            logger.warning("guidance unavailable: %s", exc)
            return []
        return [format_hit(hit) for hit in hits]

    async def build_entry(
        self,
        kind: EntryKind,
        text: str,
        *,
        tool_id: str | None = None,
        ref_id: str | None = None,
        success_rate: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry:
        """Embed ``text`` into a KnowledgeEntry; persisting it is the caller's job."""
        return KnowledgeEntry(
            kind=kind,
            tool_id=tool_id,
            text=text,
            embedding=await self.embed(text),
            ref_id=ref_id,
            success_rate=success_rate,
            metadata=dict(metadata or {}),
        )


def format_hit(hit: RetrievalHit) -> str:
    scope = hit.entry.tool_id or "global"
    return (
        f"[{hit.kind.value}:{scope}] {hit.text} "
        f"(similarity {hit.similarity:.2f}, success {hit.entry.success_rate:.0%})"
    )
