"""Tests for configuration management."""

import pytest

from geofence.config import AppConfig, ConfigError, load_config, resolve_source_kind


class TestLoadConfig:
    def test_load_valid_config(self, test_config_dir):
        config = load_config(str(test_config_dir))
        assert config.cache.refresh_interval_minutes == 15
        assert config.cache.fallback_timeout_seconds == 0.5
        assert config.dedup.window_seconds == 300
        assert config.dedup.sweep_interval == 10
        assert config.api.port == 9090
        assert config.database.violation_retention_days == 7
        assert config.platform == "mock"

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "nonexistent"))

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("cache: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(tmp_path))

    def test_section_must_be_mapping(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("dedup: 300\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(tmp_path))

    def test_non_positive_window_rejected(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("dedup:\n  window_seconds: 0\n")
        with pytest.raises(ConfigError, match="window_seconds"):
            load_config(str(tmp_path))

    def test_unknown_keys_ignored(self, tmp_path):
        (tmp_path / "settings.yaml").write_text(
            "cache:\n  refresh_interval_minutes: 5\n  bogus: 1\n"
        )
        config = load_config(str(tmp_path))
        assert config.cache.refresh_interval_minutes == 5

    def test_empty_file_gives_defaults(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("")
        assert load_config(str(tmp_path)) == AppConfig()

    def test_defaults(self):
        config = AppConfig()
        assert config.cache.refresh_interval_minutes == 30.0
        assert config.cache.initial_delay_minutes == 30.0
        assert config.cache.fallback_timeout_seconds == 2.0
        assert config.validation.max_age_seconds == 60.0
        assert config.validation.max_future_skew_seconds == 60.0
        assert config.validation.max_accuracy_m == 50.0
        assert config.dedup.window_seconds == 300.0

    def test_frozen(self):
        config = AppConfig()
        with pytest.raises(AttributeError):
            config.platform = "test"


class TestResolveSourceKind:
    def test_mock_platform_overrides(self, test_config_dir):
        config = load_config(str(test_config_dir))
        assert config.source.kind == "sqlite"
        assert resolve_source_kind(config) == "mock"

    def test_configured_kind(self):
        assert resolve_source_kind(AppConfig()) == "sqlite"
