"""Configuration change listener helpers for runtime components."""

from __future__ import annotations

from typing import Any

from owlmend.config.manager import ConfigManager


def register_repair_reload_listener(app: Any, manager: ConfigManager | None = None) -> None:
    """Register listener to rebuild the detector and strategy plan of an OwlMend app."""
    cfg_manager = manager or ConfigManager.instance()

    def _on_change(old_cfg, new_cfg) -> None:  # type: ignore[no-untyped-def]
        if old_cfg.detection == new_cfg.detection and old_cfg.repair == new_cfg.repair:
            return
        if hasattr(app, "apply_repair_config") and callable(app.apply_repair_config):
            app.apply_repair_config(new_cfg)

    cfg_manager.on_change(_on_change)


def register_retrieval_reload_listener(engine: Any, manager: ConfigManager | None = None) -> None:
    """Register listener to hot-update retrieval limits and timeout."""
    cfg_manager = manager or ConfigManager.instance()

    def _on_change(_old_cfg, new_cfg) -> None:  # type: ignore[no-untyped-def]
        retrieval = new_cfg.retrieval
        engine.default_top_k = retrieval.default_top_k
        engine.max_top_k = retrieval.max_top_k
        engine.timeout_seconds = retrieval.timeout_seconds

    cfg_manager.on_change(_on_change)


def register_feedback_reload_listener(writer: Any, manager: ConfigManager | None = None) -> None:
    """Register listener to hot-update feedback retry and learning thresholds."""
    cfg_manager = manager or ConfigManager.instance()

    def _on_change(_old_cfg, new_cfg) -> None:  # type: ignore[no-untyped-def]
        feedback = new_cfg.feedback
        writer.mismatch_threshold = feedback.mismatch_threshold
        writer.max_retries = feedback.max_retries
        writer.backoff_base_seconds = feedback.backoff_base_seconds

    cfg_manager.on_change(_on_change)
