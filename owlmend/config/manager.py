"""Configuration manager: defaults + YAML + environment + runtime overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, ClassVar

import yaml  # type: ignore[import-untyped]

from owlmend.config.loader import YAMLConfigLoader
from owlmend.config.models import OwlMendConfig

ConfigListener = Callable[[OwlMendConfig, OwlMendConfig], None]

ENV_PREFIX = "OWLMEND_"
# Variables under the prefix that are not config paths.
_RESERVED_ENV = {"OWLMEND_CONFIG", "OWLMEND_DATABASE_URL"}

# Storage backend, sandbox limits and embedding dimensions need a restart.
HOT_RELOADABLE = (
    "detection.",
    "repair.",
    "retrieval.default_top_k",
    "retrieval.max_top_k",
    "retrieval.timeout_seconds",
    "feedback.mismatch_threshold",
    "feedback.max_retries",
    "feedback.backoff_base_seconds",
)


def _flatten(tree: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """{"repair": {"hybrid_mode": "auto"}} -> {"repair.hybrid_mode": "auto"}."""
    flat: dict[str, Any] = {}
    for key, value in tree.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            flat.update(_flatten(value, path + "."))
        else:
            flat[path] = value
    return flat


def _nest(flat: dict[str, Any]) -> dict[str, Any]:
    tree: dict[str, Any] = {}
    for path, value in flat.items():
        *parents, leaf = path.split(".")
        cursor = tree
        for part in parents:
            if not isinstance(cursor.get(part), dict):
                cursor[part] = {}
            cursor = cursor[part]
        cursor[leaf] = value
    return tree


def _env_value(raw: str) -> Any:
    # YAML scalars: "true" -> True, "1.5" -> 1.5, '["a"]' -> ["a"].
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """OWLMEND_REPAIR__HYBRID_MODE=never -> {"repair": {"hybrid_mode": "never"}}."""
    flat: dict[str, Any] = {}
    for key, raw in os.environ.items():
        if not key.startswith(prefix) or key in _RESERVED_ENV:
            continue
        parts = [p.strip().lower() for p in key[len(prefix) :].split("__") if p.strip()]
        if len(parts) >= 2:
            flat[".".join(parts)] = _env_value(raw)
    return _nest(flat)


def build_config(config_path: str | None = None, overrides: dict[str, Any] | None = None) -> OwlMendConfig:
    """Validate defaults + YAML + env + overrides without touching the singleton."""
    flat = _flatten(YAMLConfigLoader.load_dict(config_path))
    flat.update(_flatten(env_overrides()))
    flat.update(_flatten(overrides or {}))
    return OwlMendConfig.model_validate(_nest(flat))


@dataclass(frozen=True)
class ReloadResult:
    """Dotted paths that changed on reload, split by whether they took effect."""

    applied: dict[str, Any] = field(default_factory=dict)
    skipped: dict[str, Any] = field(default_factory=dict)


class ConfigManager:
    """Process-wide holder of the active OwlMendConfig, with hot reload."""

    _instance: ClassVar[ConfigManager | None] = None
    _class_lock: ClassVar[Lock] = Lock()

    def __init__(self) -> None:
        self._lock = Lock()
        self._config = OwlMendConfig()
        self._listeners: list[ConfigListener] = []
        self._config_path: str | None = None
        self._overrides: dict[str, Any] = {}

    @classmethod
    def instance(cls) -> ConfigManager:
        with cls._class_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    @classmethod
    def _reset_for_tests(cls) -> None:
        with cls._class_lock:
            cls._instance = None

    @classmethod
    def load(cls, config_path: str | None = None, overrides: dict[str, Any] | None = None) -> ConfigManager:
        manager = cls.instance()
        config = build_config(config_path, overrides)
        with manager._lock:
            manager._config_path = config_path
            manager._overrides = dict(overrides or {})
        manager._swap(config)
        return manager

    def get(self) -> OwlMendConfig:
        with self._lock:
            return self._config

    def on_change(self, callback: ConfigListener) -> None:
        with self._lock:
            self._listeners.append(callback)

    def reload(self, config_path: str | None = None) -> ReloadResult:
        """Re-read the sources; only hot-reloadable paths are applied, the rest wait for a restart."""
        with self._lock:
            if config_path is not None:
                self._config_path = config_path
            path, overrides, current = self._config_path, dict(self._overrides), self._config
        before = _flatten(current.model_dump(mode="python"))
        after = _flatten(build_config(path, overrides).model_dump(mode="python"))

        result = ReloadResult()
        for key in sorted(before.keys() | after.keys()):
            if before.get(key) == after.get(key):
                continue
            target = result.applied if key.startswith(HOT_RELOADABLE) else result.skipped
            target[key] = after.get(key)
        if result.applied:
            self._swap(OwlMendConfig.model_validate(_nest({**before, **result.applied})))
        return result

    def _swap(self, config: OwlMendConfig) -> None:
        with self._lock:
            old, self._config = self._config, config
            listeners = list(self._listeners)
        for callback in listeners:
            callback(old, config)
