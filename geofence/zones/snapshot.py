"""Immutable, versioned snapshot of the active zone set."""

from __future__ import annotations

from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

import numpy as np

from geofence.geometry.polygon import contains, distance_to_polygon_m, search_box
from geofence.models import Zone, ZoneId


class ZoneSnapshot:
    """Read-only view of all active zones at one point in time.

    A snapshot is built in full before it is published and is never
    modified afterwards, so a reader holding a reference always sees one
    consistent zone set. Inactive zones are dropped at construction.

    Zone bounding boxes are kept in a numpy array (min_lon, min_lat,
    max_lon, max_lat per row) so a lookup only runs the exact polygon
    test on zones whose box contains the point.
    """

    __slots__ = ("_zones", "_order", "_bounds", "_version", "_created_at")

    def __init__(
        self,
        zones: Iterable[Zone],
        version: int,
        created_at: Optional[datetime] = None,
    ):
        by_id: dict[ZoneId, Zone] = {}
        for zone in zones:
            if zone.active:
                by_id[zone.zone_id] = zone
        order = tuple(by_id.values())
        if order:
            bounds = np.array([z.bounds for z in order], dtype=np.float64)
        else:
            bounds = np.empty((0, 4), dtype=np.float64)
        bounds.flags.writeable = False

        self._zones: Mapping[ZoneId, Zone] = MappingProxyType(by_id)
        self._order = order
        self._bounds = bounds
        self._version = version
        self._created_at = created_at or datetime.now(timezone.utc)

    @classmethod
    def empty(cls, version: int = 0, created_at: Optional[datetime] = None) -> ZoneSnapshot:
        return cls((), version=version, created_at=created_at)

    @property
    def version(self) -> int:
        return self._version

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def count(self) -> int:
        return len(self._order)

    @property
    def is_empty(self) -> bool:
        return not self._order

    @property
    def zones(self) -> Mapping[ZoneId, Zone]:
        return self._zones

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self):
        return iter(self._order)

    def __contains__(self, zone_id: object) -> bool:
        return zone_id in self._zones

    def get(self, zone_id: ZoneId) -> Optional[Zone]:
        return self._zones.get(zone_id)

    def zone_ids(self) -> frozenset:
        return frozenset(self._zones.keys())

    def zones_containing(self, latitude: float, longitude: float) -> list[Zone]:
        """All zones whose polygon contains the point, in snapshot order."""
        if not self._order:
            return []
        b = self._bounds
        mask = (
            (b[:, 0] <= longitude) & (b[:, 2] >= longitude)
            & (b[:, 1] <= latitude) & (b[:, 3] >= latitude)
        )
        hits = []
        for idx in np.flatnonzero(mask):
            zone = self._order[idx]
            if contains(zone.boundary, longitude, latitude):
                hits.append(zone)
        return hits

    def zones_within_distance(
        self, latitude: float, longitude: float, meters: float,
    ) -> list[Zone]:
        """Zones within `meters` of the point (containing zones included), nearest first."""
        if not self._order:
            return []
        min_lon, min_lat, max_lon, max_lat = search_box(longitude, latitude, meters)
        b = self._bounds
        mask = (
            (b[:, 0] <= max_lon) & (b[:, 2] >= min_lon)
            & (b[:, 1] <= max_lat) & (b[:, 3] >= min_lat)
        )
        near = []
        for idx in np.flatnonzero(mask):
            zone = self._order[idx]
            distance = distance_to_polygon_m(zone.boundary, longitude, latitude)
            if distance <= meters:
                near.append((distance, int(idx), zone))
        near.sort(key=lambda item: (item[0], item[1]))
        return [zone for _, _, zone in near]

    def with_zone(
        self, zone: Zone, version: int, created_at: Optional[datetime] = None,
    ) -> ZoneSnapshot:
        """New snapshot with one zone added or replaced (removed if inactive)."""
        zones = [z for z in self._order if z.zone_id != zone.zone_id]
        if zone.active:
            zones.append(zone)
        return ZoneSnapshot(zones, version=version, created_at=created_at)

    def without_zone(
        self, zone_id: ZoneId, version: int, created_at: Optional[datetime] = None,
    ) -> ZoneSnapshot:
        """New snapshot with one zone removed."""
        return ZoneSnapshot(
            (z for z in self._order if z.zone_id != zone_id),
            version=version,
            created_at=created_at,
        )

    def __repr__(self) -> str:
        return f"ZoneSnapshot(version={self._version}, count={self.count})"
