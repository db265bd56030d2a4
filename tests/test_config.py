"""Tests for configuration loading and environment overrides."""
from __future__ import annotations

from pathlib import Path

from config.loader import (
    get_api_base_url,
    get_api_timeout,
    get_category_paths,
    get_config,
    get_local_store_dir,
    get_metrics_config,
    get_validation_limits,
)


class TestConfigLoader:
    def test_dot_notation_lookup(self):
        config = get_config()
        assert config.get("metrics.ttl_seconds") == 60
        assert config.get("nonexistent.key", default=100) == 100

    def test_sections(self):
        config = get_config()
        assert config.get_section("metrics")["ttl_seconds"] == 60
        assert config.get_section("missing") == {}
        assert config.get_section("metrics.ttl_seconds") == {}
        assert config.get("metrics.ttl_seconds.unit", default=1) == 1

    def test_singleton(self):
        assert get_config() is get_config()

    def test_category_paths(self):
        assert get_category_paths() == {
            "delta": "/delta-rules",
            "reconciliation": "/rules",
            "transformation": "/rules/transformation",
        }

    def test_validation_limits(self):
        limits = get_validation_limits()
        assert limits["name_min_length"] == 3
        assert limits["max_tags"] == 10

    def test_metrics_defaults(self):
        cfg = get_metrics_config()
        assert (cfg["ttl_seconds"], cfg["throttle_seconds"], cfg["refresh_interval_seconds"]) == (60, 5, 120)


class TestEnvironmentOverrides:
    def test_api_url_from_env(self, monkeypatch):
        monkeypatch.setenv("RULES_API_URL", "http://rules.internal:9000")
        assert get_api_base_url() == "http://rules.internal:9000"

    def test_api_url_default(self, monkeypatch):
        monkeypatch.delenv("RULES_API_URL", raising=False)
        assert get_api_base_url() == "http://localhost:8000"

    def test_timeout_from_env(self, monkeypatch):
        monkeypatch.setenv("RULES_API_TIMEOUT_SECONDS", "2.5")
        assert get_api_timeout() == 2.5

    def test_local_store_dir_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RULES_LOCAL_STORE_DIR", str(tmp_path))
        assert get_local_store_dir() == Path(tmp_path)
