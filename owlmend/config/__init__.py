"""Unified configuration system for OwlMend."""

from owlmend.config.listeners import (
    register_feedback_reload_listener,
    register_repair_reload_listener,
    register_retrieval_reload_listener,
)
from owlmend.config.loader import ConfigLoadError, YAMLConfigLoader
from owlmend.config.manager import ConfigManager, ReloadResult, build_config
from owlmend.config.models import (
    ArbitrationConfig,
    DetectionConfig,
    FeedbackConfig,
    IntegrationsConfig,
    KnowledgeConfig,
    LLMIntegrationConfig,
    OwlMendConfig,
    RepairConfig,
    RetrievalConfig,
    SandboxConfig,
)

__all__ = [
    "ArbitrationConfig",
    "ConfigLoadError",
    "ConfigManager",
    "DetectionConfig",
    "FeedbackConfig",
    "IntegrationsConfig",
    "KnowledgeConfig",
    "LLMIntegrationConfig",
    "OwlMendConfig",
    "ReloadResult",
    "RepairConfig",
    "RetrievalConfig",
    "SandboxConfig",
    "YAMLConfigLoader",
    "build_config",
    "register_feedback_reload_listener",
    "register_repair_reload_listener",
    "register_retrieval_reload_listener",
]
