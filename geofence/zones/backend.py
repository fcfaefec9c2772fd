"""Persistent backing cache for zone snapshots.

The published snapshot is written through to a shared store so that a
restarted process, or another process on the same host, can serve from
the last known zone set while the zone source is unreachable.

Polygons are stored as WKT. On read-back every zone is re-validated
(closed ring, at least 4 points, coordinate ranges, no self-intersection);
entries that fail are dropped and logged rather than trusted.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from abc import ABC, abstractmethod

from geofence.models import (
    Zone,
    ZoneGeometryError,
    ZoneId,
    boundary_from_wkt,
    make_zone,
    validate_zone,
)
from geofence.utils.database import Database
from geofence.zones.snapshot import ZoneSnapshot

logger = logging.getLogger(__name__)


class SnapshotBackendBase(ABC):
    """Abstract base class for snapshot persistence."""

    @abstractmethod
    def save(self, snapshot: ZoneSnapshot) -> None:
        """Replace the stored zone set with the snapshot's zones."""

    @abstractmethod
    def load(self) -> list[Zone]:
        """Return the stored, validated zones. Empty if nothing is stored."""

    @abstractmethod
    def remove(self, zone_id: ZoneId) -> None:
        """Drop a single zone from the stored set."""


class SqliteSnapshotBackend(SnapshotBackendBase):
    """Stores the snapshot in the `snapshot_cache` table."""

    def __init__(self, db: Database):
        self._db = db

    def save(self, snapshot: ZoneSnapshot) -> None:
        rows = [
            {
                "zone_id": zone.zone_id,
                "name": zone.name,
                "description": zone.description,
                "active": zone.active,
                "severity": zone.severity.value,
                "geometry_wkt": zone.to_wkt(),
                "metadata_json": json.dumps(zone.metadata) if zone.metadata else None,
            }
            for zone in snapshot
        ]
        self._db.replace_snapshot_cache(snapshot.version, rows)
        logger.debug("Persisted snapshot v%d (%d zones)", snapshot.version, len(rows))

    def load(self) -> list[Zone]:
        zones = []
        for row in self._db.get_snapshot_cache():
            try:
                zone = make_zone(
                    zone_id=row["zone_id"],
                    name=row["name"],
                    boundary=boundary_from_wkt(row["geometry_wkt"]),
                    active=bool(row["active"]),
                    severity=row["severity"],
                    description=row["description"],
                    metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
                )
                # String ids that look numeric ("12") must come back as strings
                zone = dataclasses.replace(zone, zone_id=_stored_zone_id(row))
                zones.append(validate_zone(zone))
            except (ZoneGeometryError, ValueError) as e:
                logger.error("Dropping invalid cached zone %s: %s", row["zone_id"], e)
        return zones

    def remove(self, zone_id: ZoneId) -> None:
        self._db.delete_snapshot_cache_entry(str(zone_id))


def _stored_zone_id(row: dict) -> ZoneId:
    if row["zone_id_kind"] == "int":
        return int(row["zone_id"])
    return row["zone_id"]
