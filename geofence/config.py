"""Configuration management for geofence-engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclass(frozen=True)
class CacheConfig:
    refresh_interval_minutes: float = 30.0
    initial_delay_minutes: float = 30.0
    fallback_timeout_seconds: float = 2.0
    backing_cache_enabled: bool = True


@dataclass(frozen=True)
class ValidationConfig:
    max_age_seconds: float = 60.0
    max_future_skew_seconds: float = 60.0
    max_accuracy_m: float = 50.0


@dataclass(frozen=True)
class DedupConfig:
    window_seconds: float = 300.0
    max_entries: int = 100_000
    sweep_interval: int = 1000


@dataclass(frozen=True)
class SourceConfig:
    kind: str = "sqlite"  # "sqlite" | "http" | "mock"
    base_url: str = "http://localhost:8081/api"
    timeout_seconds: float = 5.0
    seed_sample_zone: bool = True


@dataclass(frozen=True)
class DatabaseConfig:
    path: str = "data/geofence.db"
    violation_retention_days: int = 30


@dataclass(frozen=True)
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    warning_distance_m: float = 50.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json_format: bool = False
    log_dir: str = "data/logs"


@dataclass(frozen=True)
class AppConfig:
    cache: CacheConfig = field(default_factory=CacheConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    platform: str = "auto"


def _build_sub_config(cls: type, data: dict[str, Any]) -> Any:
    """Build a frozen dataclass from a dict, ignoring unknown keys."""
    if not data:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Section for {cls.__name__} must be a mapping, got {type(data).__name__}")
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return cls(**filtered)


def load_config(config_dir: str = "config") -> AppConfig:
    """Load configuration from YAML files.

    Args:
        config_dir: Path to the config directory containing settings.yaml.

    Returns:
        Frozen AppConfig instance.

    Raises:
        ConfigError: If settings.yaml is missing or invalid.
    """
    config_path = Path(config_dir) / "settings.yaml"
    if not config_path.exists():
        raise ConfigError(f"Settings file not found: {config_path}")

    with open(config_path, "r") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {config_path} must be a mapping")

    config = AppConfig(
        cache=_build_sub_config(CacheConfig, raw.get("cache", {})),
        validation=_build_sub_config(ValidationConfig, raw.get("validation", {})),
        dedup=_build_sub_config(DedupConfig, raw.get("dedup", {})),
        source=_build_sub_config(SourceConfig, raw.get("source", {})),
        database=_build_sub_config(DatabaseConfig, raw.get("database", {})),
        api=_build_sub_config(ApiConfig, raw.get("api", {})),
        logging=_build_sub_config(LoggingConfig, raw.get("logging", {})),
        platform=raw.get("platform", "auto"),
    )

    if config.dedup.window_seconds <= 0:
        raise ConfigError("dedup.window_seconds must be positive")
    if config.cache.refresh_interval_minutes <= 0:
        raise ConfigError("cache.refresh_interval_minutes must be positive")

    logger.info("Configuration loaded from %s", config_path)
    return config


def resolve_source_kind(config: AppConfig) -> str:
    """Resolve the zone source kind, honouring the 'mock' platform override."""
    if config.platform == "mock":
        return "mock"
    return config.source.kind
