"""Configuration loader for the rules core.

Provides centralized access to remote endpoints, local replica location,
validation limits and cache timings.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

logger = structlog.get_logger(__name__)

CONFIG_FILE = Path(__file__).parent / "store_config.yaml"


class ConfigLoader:
    """Process-wide view of store_config.yaml, parsed on first use."""

    _instance: Optional[ConfigLoader] = None
    _config: Optional[dict[str, Any]] = None

    def __new__(cls) -> ConfigLoader:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self._config = self._read(CONFIG_FILE)

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        if not path.exists():
            logger.warning("store_config_missing", path=str(path))
            return {}
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.debug("store_config_loaded", path=str(path), sections=sorted(data))
        return data

    def get(self, key: str, default: Any = None) -> Any:
        """Value at a dotted path such as ``"api.category_paths"`` or ``"metrics.ttl_seconds"``.

        Any missing segment, or a null value, yields default.
        """
        node: Any = self._config or {}
        for part in key.split("."):
            if not isinstance(node, dict) or node.get(part) is None:
                return default
            node = node[part]
        return node

    def get_section(self, section: str) -> dict[str, Any]:
        """Top-level block (api, rules, query, metrics ...) or an empty dict."""
        value = self.get(section, default={})
        return dict(value) if isinstance(value, dict) else {}


# Singleton instance
_config = ConfigLoader()


def get_config() -> ConfigLoader:
    """Get the global config instance."""
    return _config


def get_api_base_url() -> str:
    """Remote backend base URL; RULES_API_URL wins over the YAML value."""
    return os.getenv("RULES_API_URL") or _config.get("api.base_url", "http://localhost:8000")


def get_api_timeout() -> float:
    env = os.getenv("RULES_API_TIMEOUT_SECONDS")
    if env:
        return float(env)
    return float(_config.get("api.timeout_seconds", 30))


def get_category_paths() -> dict[str, str]:
    """Path segment per rule category type value."""
    return _config.get(
        "api.category_paths",
        default={
            "delta": "/delta-rules",
            "reconciliation": "/rules",
            "transformation": "/rules/transformation",
        },
    )


def get_local_store_dir() -> Path:
    return Path(os.getenv("RULES_LOCAL_STORE_DIR") or _config.get("local_store.directory", ".rules_replica"))


def get_max_recent_rules() -> int:
    return int(_config.get("rules.max_recent", 10))


def get_default_list_limit() -> int:
    return int(_config.get("rules.default_list_limit", 50))


def get_validation_limits() -> dict[str, int]:
    """Metadata bounds used by RuleMetadata validation."""
    limits = {
        "name_min_length": 3,
        "name_max_length": 100,
        "description_max_length": 500,
        "max_tags": 10,
    }
    limits.update(_config.get("rules.validation", default={}))
    return limits


def get_query_config() -> dict[str, Any]:
    """Get query engine configuration section."""
    return _config.get_section("query")


def get_metrics_config() -> dict[str, Any]:
    """Get metrics cache timings.

    Returns:
        Dictionary with ttl_seconds, throttle_seconds, refresh_interval_seconds,
        default_user_id and recent_process_limit.
    """
    section = {
        "ttl_seconds": 60,
        "throttle_seconds": 5,
        "refresh_interval_seconds": 120,
        "default_user_id": "default_user",
        "recent_process_limit": 20,
    }
    section.update(_config.get_section("metrics"))
    return section


def get_analytics_paths() -> tuple[str, str]:
    """(summary_path, processes_path) for the analytics endpoints."""
    return (
        _config.get("api.analytics_summary_path", "/analytics/summary"),
        _config.get("api.analytics_processes_path", "/analytics/processes"),
    )
