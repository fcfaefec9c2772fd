"""Violation history backed by the `zone_violations` table."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from geofence.models import ViolationRecord, to_utc
from geofence.utils.database import Database

logger = logging.getLogger(__name__)


class ViolationLog:
    """Append-only store for emitted violations.

    Violation ids are deterministic, so appending the same record twice
    (for example after a client retry) is a no-op.
    """

    def __init__(self, db: Database):
        self._db = db

    def append(self, record: ViolationRecord) -> bool:
        """Store a record. Returns False if it was already logged."""
        stored = self._db.insert_violation(
            violation_id=record.violation_id,
            vehicle_id=record.vehicle_id,
            zone_id=str(record.zone_id),
            zone_name=record.zone_name,
            latitude=record.latitude,
            longitude=record.longitude,
            timestamp=record.timestamp.isoformat(),
            severity=record.severity.value,
            source=record.source,
        )
        if not stored:
            logger.debug("Violation %s already logged", record.violation_id)
        return stored

    def append_all(self, records: Iterable[ViolationRecord]) -> int:
        return sum(1 for r in records if self.append(r))

    def for_vehicle(self, vehicle_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent violations for a vehicle, newest first."""
        return [_public(row) for row in self._db.get_violations_by_vehicle(vehicle_id, limit)]

    def between(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        rows = self._db.get_violations_between(
            to_utc(start).isoformat(), to_utc(end).isoformat(),
        )
        return [_public(row) for row in rows]

    def prune(self, now: datetime, retention_days: int) -> int:
        """Delete violations older than the retention period."""
        cutoff = to_utc(now) - timedelta(days=retention_days)
        deleted = self._db.delete_old_violations(cutoff.isoformat())
        if deleted:
            logger.info("Pruned %d violations older than %s", deleted, cutoff.isoformat())
        return deleted


def _public(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "violation_id": row["violation_id"],
        "vehicle_id": row["vehicle_id"],
        "zone_id": row["zone_id"],
        "zone_name": row["zone_name"],
        "severity": row["severity"],
        "latitude": row["latitude"],
        "longitude": row["longitude"],
        "timestamp": row["timestamp"],
        "source": row["source"],
        "logged_at": row["created_at"],
    }
