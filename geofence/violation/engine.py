"""Violation detection: validate a fix, find containing zones, deduplicate."""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from geofence.models import (
    CacheStats,
    GpsFix,
    ViolationRecord,
    Zone,
    ZoneGeometryError,
    ZoneId,
    validate_zone,
)
from geofence.utils.clock import ClockBase, SystemClock
from geofence.violation.dedup import ViolationDeduplicator
from geofence.violation.validation import ValidationError, validate_fix
from geofence.zones.cache import ZoneSnapshotStore
from geofence.zones.source import ZoneSourceBase, ZoneSourceError

logger = logging.getLogger(__name__)


class DetectionError(Exception):
    """Raised when containment could not be determined (source down or slow)."""


class DetectionStatus(Enum):
    CHECKED = "checked"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class DetectionResult:
    """Outcome of one check.

    CHECKED with no violations means the vehicle is outside every zone or
    every hit was a duplicate. REJECTED means the fix was invalid. FAILED
    means the engine could not tell, which is distinct from "no violation".
    """
    status: DetectionStatus
    violations: list[ViolationRecord] = field(default_factory=list)
    error: Optional[str] = None
    reason: Optional[str] = None
    source: Optional[str] = None  # "snapshot" | "fallback"

    @property
    def ok(self) -> bool:
        return self.status is DetectionStatus.CHECKED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "violations": [v.to_dict() for v in self.violations],
            "error": self.error,
            "reason": self.reason,
            "source": self.source,
        }


class DetectionEngine:
    """Checks GPS fixes against the active zone set.

    The published snapshot answers first. When the snapshot is empty or
    unusable the zone source is queried directly under a timeout and a
    background refresh is requested. Every candidate violation goes
    through the deduplicator, so the same (vehicle, zone) pair produces at
    most one record per window.
    """

    def __init__(
        self,
        store: ZoneSnapshotStore,
        source: ZoneSourceBase,
        dedup: ViolationDeduplicator,
        clock: Optional[ClockBase] = None,
        max_age_seconds: float = 60.0,
        max_future_skew_seconds: float = 60.0,
        max_accuracy_m: float = 50.0,
        fallback_timeout_seconds: float = 2.0,
    ):
        self._store = store
        self._source = source
        self._dedup = dedup
        self._clock = clock or SystemClock()
        self._max_age = max_age_seconds
        self._max_future_skew = max_future_skew_seconds
        self._max_accuracy = max_accuracy_m
        self._fallback_timeout = fallback_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="zone-fallback")

    @property
    def store(self) -> ZoneSnapshotStore:
        return self._store

    @property
    def dedup(self) -> ViolationDeduplicator:
        return self._dedup

    def check_violation(self, fix: GpsFix) -> DetectionResult:
        """Evaluate one fix. Never raises for invalid input or source outages."""
        start = time.monotonic()
        try:
            validate_fix(
                fix,
                now=self._clock.now(),
                max_age_seconds=self._max_age,
                max_future_skew_seconds=self._max_future_skew,
                max_accuracy_m=self._max_accuracy,
            )
        except ValidationError as e:
            logger.warning("Rejected fix: %s", e)
            return DetectionResult(DetectionStatus.REJECTED, error=str(e), reason=e.reason)

        zones = self._lookup_snapshot(fix)
        source = "snapshot"
        if zones is None:
            source = "fallback"
            try:
                zones = self._lookup_fallback(fix)
            except DetectionError as e:
                logger.error("Violation check failed for %s: %s", fix.to_log_string(), e)
                return DetectionResult(DetectionStatus.FAILED, error=str(e), source=source)

        violations = self._emit(fix, zones, source)
        logger.debug(
            "Checked %s via %s: %d zones, %d violations in %.1fms",
            fix.to_log_string(), source, len(zones), len(violations),
            (time.monotonic() - start) * 1000,
        )
        return DetectionResult(DetectionStatus.CHECKED, violations=violations, source=source)

    def check_violation_or_raise(self, fix: GpsFix) -> list[ViolationRecord]:
        """Like check_violation() but surfaces failures as exceptions.

        Raises:
            ValidationError: if the fix is invalid.
            DetectionError: if containment could not be determined.
        """
        result = self.check_violation(fix)
        if result.status is DetectionStatus.REJECTED:
            raise ValidationError(result.reason or "invalid", result.error or "Invalid fix")
        if result.status is DetectionStatus.FAILED:
            raise DetectionError(result.error or "Zone lookup failed")
        return result.violations

    def _lookup_snapshot(self, fix: GpsFix) -> Optional[list[Zone]]:
        snapshot = self._store.current_snapshot()
        if snapshot.is_empty:
            return None
        try:
            return snapshot.zones_containing(fix.latitude, fix.longitude)
        except Exception as e:
            logger.warning("Snapshot lookup failed, falling back to source: %s", e)
            return None

    def _lookup_fallback(self, fix: GpsFix) -> list[Zone]:
        self._store.request_refresh()
        logger.info("Zone snapshot empty, querying source for %s", fix.to_log_string())
        zones = self._query_source(
            self._source.find_zones_containing, fix.longitude, fix.latitude,
        )
        return _valid_zones(zones)

    def _query_source(self, query, *args) -> list[Zone]:
        future = self._executor.submit(query, *args)
        try:
            return future.result(timeout=self._fallback_timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise DetectionError(
                f"Zone source did not answer within {self._fallback_timeout:.1f}s"
            ) from e
        except ZoneSourceError as e:
            raise DetectionError(f"Zone source unavailable: {e}") from e
        except Exception as e:
            raise DetectionError(f"Zone source query failed: {e}") from e

    def _emit(self, fix: GpsFix, zones: list[Zone], source: str) -> list[ViolationRecord]:
        violations = []
        for zone in zones:
            if not self._dedup.try_record(fix.vehicle_id, zone.zone_id, fix.timestamp):
                continue
            record = ViolationRecord.from_fix(fix, zone, self._clock.now(), source)
            violations.append(record)
            logger.info(
                "VIOLATION DETECTED: vehicle %s entered %s (%s)",
                fix.vehicle_id, zone.to_log_string(), record.violation_id,
            )
        return violations

    # --- Cache administration ---

    def cache_stats(self) -> CacheStats:
        return self._store.stats()

    def force_refresh(self) -> int:
        """Rebuild the snapshot now. Raises ZoneSourceError on failure."""
        logger.info("Manual zone cache refresh requested")
        return self._store.refresh_all()

    def invalidate_zone(self, zone_id: ZoneId) -> bool:
        return self._store.invalidate_zone(zone_id)

    def refresh_zone(self, zone_id: ZoneId) -> bool:
        return self._store.refresh_zone(zone_id)

    def active_zones(self) -> list[Zone]:
        return list(self._store.current_snapshot())

    def zones_nearby(self, latitude: float, longitude: float, meters: float) -> list[Zone]:
        """Active zones within `meters` of a point, nearest first.

        Used for proximity warnings before a vehicle enters a zone. Answers
        from the snapshot when one is published, otherwise from the source.

        Raises:
            ValueError: if the point or distance is invalid.
            DetectionError: if the source had to be asked and could not answer.
        """
        if not _finite(latitude) or not -90.0 <= latitude <= 90.0:
            raise ValueError(f"Latitude out of range: {latitude}")
        if not _finite(longitude) or not -180.0 <= longitude <= 180.0:
            raise ValueError(f"Longitude out of range: {longitude}")
        if not _finite(meters) or meters < 0:
            raise ValueError(f"Distance must be a non-negative number of meters: {meters}")

        snapshot = self._store.current_snapshot()
        if not snapshot.is_empty:
            return snapshot.zones_within_distance(latitude, longitude, meters)
        self._store.request_refresh()
        zones = self._query_source(
            self._source.find_zones_within_distance, longitude, latitude, meters,
        )
        return _valid_zones(zones)

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def _finite(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _valid_zones(zones: list[Zone]) -> list[Zone]:
    """Drop zones that fail geometry validation, as snapshot population does."""
    valid = []
    for zone in zones:
        try:
            valid.append(validate_zone(zone))
        except ZoneGeometryError as e:
            logger.error("Ignoring invalid zone %s from source: %s", zone.zone_id, e)
    return valid
