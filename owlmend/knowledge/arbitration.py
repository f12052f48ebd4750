"""Recipe arbitration: which recipe wins when several match, and trust status."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any

from owlmend.knowledge.models import RecipeStatus, TransformRecipe

ARBITRATION_CRITERIA = ("success_rate", "success_count", "recency")


@dataclass
class ArbitrationPolicy:
    """Ordered ranking criteria plus promotion/demotion thresholds."""

    criteria: Sequence[str] = field(default_factory=lambda: ("success_rate", "recency"))
    trust_threshold: float = 0.8
    flag_threshold: float = 0.5
    min_trials: int = 3

    def __post_init__(self) -> None:
        unknown = [c for c in self.criteria if c not in ARBITRATION_CRITERIA]
        if unknown:
            raise ValueError(f"unknown arbitration criteria: {unknown}")
        if not 0.0 <= self.flag_threshold <= self.trust_threshold <= 1.0:
            raise ValueError("require 0 <= flag_threshold <= trust_threshold <= 1")
        if self.min_trials < 1:
            raise ValueError("min_trials must be >= 1")

    @classmethod
    def from_config(cls, config: Any) -> ArbitrationPolicy:
        return cls(
            criteria=tuple(config.criteria),
            trust_threshold=config.trust_threshold,
            flag_threshold=config.flag_threshold,
            min_trials=config.min_trials,
        )

    def _key(self, recipe: TransformRecipe, tool_id: str | None) -> tuple:
        parts: list[float] = [1.0 if tool_id is not None and recipe.tool_id == tool_id else 0.0]
        for criterion in self.criteria:
            if criterion == "success_rate":
                parts.append(recipe.success_rate)
            elif criterion == "success_count":
                parts.append(float(recipe.success_count))
            else:
                updated = recipe.updated_at
                if updated.tzinfo is None:
                    updated = updated.replace(tzinfo=timezone.utc)
                parts.append(updated.timestamp())
        # Stable final tie-break so selection never depends on insertion order.
        return (*parts, str(recipe.id))

    def rank(self, recipes: Iterable[TransformRecipe], tool_id: str | None = None) -> list[TransformRecipe]:
        """Best first; a recipe scoped to ``tool_id`` beats a global one."""
        return sorted(recipes, key=lambda r: self._key(r, tool_id), reverse=True)

    def select(
        self,
        recipes: Iterable[TransformRecipe],
        tool_id: str | None = None,
        *,
        trusted_only: bool = False,
    ) -> TransformRecipe | None:
        eligible = [
            r
            for r in recipes
            if r.status != RecipeStatus.FLAGGED and (not trusted_only or r.status == RecipeStatus.TRUSTED)
        ]
        ranked = self.rank(eligible, tool_id)
        return ranked[0] if ranked else None

    def evaluate_status(self, recipe: TransformRecipe) -> RecipeStatus:
        """Status after an outcome; unchanged until ``min_trials`` outcomes exist."""
        if recipe.trials < self.min_trials:
            return recipe.status
        rate = recipe.success_rate
        if rate >= self.trust_threshold:
            return RecipeStatus.TRUSTED
        if rate < self.flag_threshold:
            return RecipeStatus.FLAGGED
        return RecipeStatus.CANDIDATE
