"""Shared fixtures for OwlMend unit tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from owlmend.config import ConfigManager, OwlMendConfig
from owlmend.knowledge import InMemoryKnowledgeStore, RecipeStatus, TransformRecipe, TransformRule
from owlmend.retrieval import RetrievalEngine, TFIDFEmbedder

PAYMENTS_TOOL = "payments.create"
PAYMENTS_SCHEMA = {"user_id": "string", "amount_cents": {"type": "integer", "unit": "cents"}}


@pytest.fixture(autouse=True)
def _reset_config_manager(monkeypatch: pytest.MonkeyPatch):
    for name in ("OWLMEND_CONFIG", "OWLMEND_DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    ConfigManager._reset_for_tests()
    yield
    ConfigManager._reset_for_tests()


@pytest.fixture
def store() -> InMemoryKnowledgeStore:
    return InMemoryKnowledgeStore()


@pytest.fixture
def retrieval(store: InMemoryKnowledgeStore) -> RetrievalEngine:
    return RetrievalEngine(store, TFIDFEmbedder(dimensions=256))


@pytest.fixture
def config(tmp_path: Path) -> OwlMendConfig:
    return OwlMendConfig.model_validate(
        {
            "feedback": {"fallback_log_path": str(tmp_path / "fallback.jsonl"), "backoff_base_seconds": 0.0},
            "repair": {"hybrid_mode": "never"},
        }
    )


def _trusted_recipe(
    source: str, target: str, op: str = "identity", tool_id: str | None = PAYMENTS_TOOL, **params
) -> TransformRecipe:
    return TransformRecipe(
        source_concept=source,
        target_concept=target,
        source_field=source,
        target_field=target,
        tool_id=tool_id,
        rule=TransformRule(op=op, params=params),
        success_count=10,
        status=RecipeStatus.TRUSTED,
    )


@pytest.fixture
def make_recipe():
    """Factory for trusted recipes; keyword arguments become rule params."""
    return _trusted_recipe
