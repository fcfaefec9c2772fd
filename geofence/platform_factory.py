"""Factory functions for creating the engine's components from config."""

from __future__ import annotations

import logging
from typing import Optional

from geofence.config import AppConfig, resolve_source_kind
from geofence.models import make_zone
from geofence.utils.clock import ClockBase, SystemClock
from geofence.utils.database import Database
from geofence.violation.dedup import ViolationDeduplicator
from geofence.violation.engine import DetectionEngine
from geofence.violation.log import ViolationLog
from geofence.zones.backend import SnapshotBackendBase, SqliteSnapshotBackend
from geofence.zones.cache import ZoneSnapshotStore
from geofence.zones.source import (
    SAMPLE_ZONE_NAME,
    SAMPLE_ZONE_RING,
    HttpZoneSource,
    MockZoneSource,
    SqliteZoneSource,
    ZoneSourceBase,
    seed_sample_zone,
)

logger = logging.getLogger(__name__)


def create_database(config: AppConfig) -> Database:
    return Database(config.database.path)


def create_zone_source(config: AppConfig, db: Optional[Database] = None) -> ZoneSourceBase:
    """Create the zone source selected by `source.kind` (or the mock platform)."""
    kind = resolve_source_kind(config)

    if kind == "mock":
        logger.info("Using mock zone source")
        zones = []
        if config.source.seed_sample_zone:
            zones.append(make_zone(1, SAMPLE_ZONE_NAME, SAMPLE_ZONE_RING, severity="HIGH"))
        return MockZoneSource(zones)

    if kind == "http":
        logger.info("Using HTTP zone source at %s", config.source.base_url)
        return HttpZoneSource(
            base_url=config.source.base_url,
            timeout=config.source.timeout_seconds,
        )

    if kind != "sqlite":
        logger.warning("Unknown zone source kind %r, using sqlite", kind)
    if db is None:
        db = create_database(config)
    source = SqliteZoneSource(db)
    logger.info("Using SQLite zone source (%s)", config.database.path)
    if config.source.seed_sample_zone:
        seed_sample_zone(source)
    return source


def create_snapshot_backend(
    config: AppConfig, db: Optional[Database],
) -> Optional[SnapshotBackendBase]:
    if not config.cache.backing_cache_enabled or db is None:
        logger.info("Snapshot backing cache disabled")
        return None
    return SqliteSnapshotBackend(db)


def create_snapshot_store(
    config: AppConfig,
    source: ZoneSourceBase,
    backend: Optional[SnapshotBackendBase] = None,
    clock: Optional[ClockBase] = None,
) -> ZoneSnapshotStore:
    return ZoneSnapshotStore(
        source,
        backend=backend,
        clock=clock,
        refresh_interval_seconds=config.cache.refresh_interval_minutes * 60,
        initial_delay_seconds=config.cache.initial_delay_minutes * 60,
    )


def create_deduplicator(config: AppConfig) -> ViolationDeduplicator:
    return ViolationDeduplicator(
        window_seconds=config.dedup.window_seconds,
        max_entries=config.dedup.max_entries,
        sweep_interval=config.dedup.sweep_interval,
    )


def create_engine(
    config: AppConfig,
    store: ZoneSnapshotStore,
    source: ZoneSourceBase,
    clock: Optional[ClockBase] = None,
) -> DetectionEngine:
    return DetectionEngine(
        store=store,
        source=source,
        dedup=create_deduplicator(config),
        clock=clock or SystemClock(),
        max_age_seconds=config.validation.max_age_seconds,
        max_future_skew_seconds=config.validation.max_future_skew_seconds,
        max_accuracy_m=config.validation.max_accuracy_m,
        fallback_timeout_seconds=config.cache.fallback_timeout_seconds,
    )


def create_violation_log(db: Database) -> ViolationLog:
    return ViolationLog(db)
