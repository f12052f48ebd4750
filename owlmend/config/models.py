"""Configuration models for OwlMend."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STRATEGY_NAMES = (
    "direct_substitution",
    "retrieved_recipe",
    "inline_model_fix",
    "sandboxed_transformation",
)

DEFAULT_ALLOWED_MODULES = [
    "calendar",
    "datetime",
    "decimal",
    "fractions",
    "json",
    "math",
    "re",
    "statistics",
    "string",
    "unicodedata",
]


class KnowledgeConfig(BaseModel):
    """Knowledge store backend and learning constants."""

    backend: Literal["inmemory", "postgres"] = Field(default="inmemory")
    database_url: str | None = Field(default=None, description="Falls back to OWLMEND_DATABASE_URL.")
    tenant_id: str = Field(default="default", min_length=1)
    max_enum_values: int = Field(default=32, ge=1)
    confidence_half_life_hours: float = Field(default=168.0, gt=0)
    declaration_weight: int = Field(default=10, ge=1)
    store_timeout_seconds: float = Field(default=2.0, gt=0)


class RetrievalConfig(BaseModel):
    """Retrieval engine and embedding provider configuration."""

    embedder: Literal["litellm", "tfidf", "hash"] = Field(default="tfidf")
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_dimensions: int = Field(default=256, ge=1)
    embedding_cache_size: int = Field(default=1000, ge=0)
    enable_tfidf_fallback: bool = Field(default=True)
    default_top_k: int = Field(default=5, ge=1)
    max_top_k: int = Field(default=20, ge=1)
    timeout_seconds: float = Field(default=2.0, gt=0)


class DetectionConfig(BaseModel):
    """Mismatch detector thresholds."""

    unknown_field_severity: Literal["blocking", "advisory"] = Field(default="blocking")
    required_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    enum_min_observations: int = Field(default=20, ge=1)
    range_slack_factor: float = Field(default=0.1, ge=0.0)
    range_min_observations: int = Field(default=10, ge=1)
    unit_z_threshold: float = Field(default=3.0, gt=0)
    unit_min_orders: float = Field(default=1.0, ge=0.0)
    unit_min_observations: int = Field(default=20, ge=2)
    tolerant_coercion: bool = Field(default=True)
    max_depth: int = Field(default=8, ge=1)


class ArbitrationConfig(BaseModel):
    """Recipe selection order and trust thresholds."""

    criteria: list[Literal["success_rate", "success_count", "recency"]] = Field(
        default_factory=lambda: ["success_rate", "recency"]
    )
    trust_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    flag_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    min_trials: int = Field(default=3, ge=1)


class RepairConfig(BaseModel):
    """Repair orchestrator configuration."""

    strategies: list[str] = Field(default_factory=lambda: list(STRATEGY_NAMES))
    hybrid_mode: Literal["auto", "always", "never"] = Field(default="auto")
    model_timeout_seconds: float = Field(default=10.0, gt=0)
    retrieval_top_k: int = Field(default=5, ge=1)
    arbitration: ArbitrationConfig = Field(default_factory=ArbitrationConfig)

    @field_validator("strategies")
    @classmethod
    def _known_strategies(cls, value: list[str]) -> list[str]:
        unknown = [name for name in value if name not in STRATEGY_NAMES]
        if unknown:
            raise ValueError(f"unknown repair strategies: {unknown}")
        if len(set(value)) != len(value):
            raise ValueError("repair strategies must not repeat")
        return value


class SandboxConfig(BaseModel):
    """Default sandbox budget and concurrency."""

    cpu_seconds: float = Field(default=2.0, gt=0)
    memory_mb: int = Field(default=256, ge=64)
    wall_clock_seconds: float = Field(default=5.0, gt=0)
    output_bytes: int = Field(default=65536, ge=1)
    max_concurrent: int = Field(default=4, ge=1)
    allowed_modules: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MODULES))


class FeedbackConfig(BaseModel):
    """Feedback writer queue, retry and learning thresholds."""

    queue_size: int = Field(default=1000, ge=1)
    max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: float = Field(default=0.1, ge=0.0)
    fallback_log_path: str = Field(default=".owlmend/feedback_fallback.jsonl")
    mismatch_threshold: int = Field(default=3, ge=1)
    flush_timeout_seconds: float = Field(default=5.0, gt=0)
    index_traces: bool = Field(default=True)


class LLMIntegrationConfig(BaseModel):
    """LLM integration defaults."""

    model: str = Field(default="gpt-4o-mini")
    fallback_models: list[str] = Field(default_factory=list)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    mock_mode: bool = Field(default=False)
    max_concurrent: int = Field(default=4, ge=1)
    min_interval_seconds: float = Field(default=0.0, ge=0.0)


class IntegrationsConfig(BaseModel):
    """External integrations configuration."""

    llm: LLMIntegrationConfig = Field(default_factory=LLMIntegrationConfig)


class OwlMendConfig(BaseSettings):
    """Root configuration model for OwlMend."""

    knowledge: KnowledgeConfig = Field(default_factory=KnowledgeConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    repair: RepairConfig = Field(default_factory=RepairConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    integrations: IntegrationsConfig = Field(default_factory=IntegrationsConfig)

    model_config = SettingsConfigDict(
        env_prefix="OWLMEND_",
        env_nested_delimiter="__",
        extra="ignore",
    )
