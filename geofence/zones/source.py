"""Zone source abstraction with mock, SQLite and HTTP implementations.

The zone source is the authoritative catalog of restricted zones. Zones
are created, edited and deactivated elsewhere; this engine only reads.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import httpx

from geofence.geometry.polygon import contains, distance_to_polygon_m, search_box
from geofence.models import (
    Zone,
    ZoneGeometryError,
    ZoneId,
    boundary_from_wkt,
    make_zone,
    normalize_zone_id,
    zone_from_dict,
)
from geofence.utils.database import Database

logger = logging.getLogger(__name__)

# Sample no-parking zone in downtown San Francisco, (lon, lat) ring.
SAMPLE_ZONE_NAME = "Downtown SF Test Zone"
SAMPLE_ZONE_RING = (
    (-122.4194, 37.7749),
    (-122.4194, 37.7849),
    (-122.4094, 37.7849),
    (-122.4094, 37.7749),
    (-122.4194, 37.7749),
)


class ZoneSourceError(Exception):
    """Raised when the zone source cannot be reached or answers garbage."""


def nearest_first(zones: Iterable[Zone], lon: float, lat: float, meters: float) -> list[Zone]:
    """Keep zones within `meters` of the point and order them by distance."""
    near = []
    for zone in zones:
        distance = distance_to_polygon_m(zone.boundary, lon, lat)
        if distance <= meters:
            near.append((distance, zone))
    near.sort(key=lambda item: item[0])
    return [zone for _, zone in near]


class ZoneSourceBase(ABC):
    """Abstract base class for the authoritative zone catalog."""

    @abstractmethod
    def list_active_zones(self) -> list[Zone]:
        """Return every active zone."""

    @abstractmethod
    def find_zones_containing(self, lon: float, lat: float) -> list[Zone]:
        """Return active zones whose polygon contains the point."""

    @abstractmethod
    def find_zones_within_distance(self, lon: float, lat: float, meters: float) -> list[Zone]:
        """Return active zones within `meters` of the point, nearest first."""

    @abstractmethod
    def count_active_zones(self) -> int:
        """Number of active zones in the catalog."""

    @abstractmethod
    def get_zone(self, zone_id: ZoneId) -> Optional[Zone]:
        """Fetch one zone (active or not). None if it does not exist."""

    def close(self) -> None:
        """Release any held resources."""


class MockZoneSource(ZoneSourceBase):
    """In-memory zone catalog for testing and --mock mode.

    Can simulate an outage (set_available) and a slow store (latency_seconds).
    """

    def __init__(self, zones: Optional[Iterable[Zone]] = None, latency_seconds: float = 0.0):
        self._zones: dict[ZoneId, Zone] = {}
        for zone in zones or []:
            self._zones[zone.zone_id] = zone
        self._latency = latency_seconds
        self._available = True
        self._lock = threading.Lock()
        self.list_calls = 0
        self.find_calls = 0

    def _check(self) -> None:
        if self._latency > 0:
            time.sleep(self._latency)
        if not self._available:
            raise ZoneSourceError("Mock zone source unavailable")

    def list_active_zones(self) -> list[Zone]:
        with self._lock:
            self.list_calls += 1
        self._check()
        with self._lock:
            return [z for z in self._zones.values() if z.active]

    def find_zones_containing(self, lon: float, lat: float) -> list[Zone]:
        with self._lock:
            self.find_calls += 1
        self._check()
        with self._lock:
            zones = [z for z in self._zones.values() if z.active]
        return [z for z in zones if contains(z.boundary, lon, lat)]

    def find_zones_within_distance(self, lon: float, lat: float, meters: float) -> list[Zone]:
        with self._lock:
            self.find_calls += 1
        self._check()
        with self._lock:
            zones = [z for z in self._zones.values() if z.active]
        return nearest_first(zones, lon, lat, meters)

    def count_active_zones(self) -> int:
        self._check()
        with self._lock:
            return sum(1 for z in self._zones.values() if z.active)

    def get_zone(self, zone_id: ZoneId) -> Optional[Zone]:
        self._check()
        with self._lock:
            return self._zones.get(zone_id)

    def put_zone(self, zone: Zone) -> None:
        with self._lock:
            self._zones[zone.zone_id] = zone

    def remove_zone(self, zone_id: ZoneId) -> None:
        with self._lock:
            self._zones.pop(zone_id, None)

    def set_available(self, available: bool) -> None:
        self._available = available


def zone_from_row(row: dict[str, Any]) -> Zone:
    """Convert a `zones` table row into a Zone."""
    metadata = json.loads(row["metadata_json"]) if row.get("metadata_json") else {}
    return make_zone(
        zone_id=row["id"],
        name=row["name"],
        boundary=boundary_from_wkt(row["geometry_wkt"]),
        active=bool(row["active"]),
        severity=row.get("severity"),
        description=row.get("description"),
        metadata=metadata,
    )


class SqliteZoneSource(ZoneSourceBase):
    """Zone catalog stored in the local SQLite database.

    Point queries pre-filter on the indexed bounding-box columns, then run
    the exact polygon test on the survivors.
    """

    def __init__(self, db: Database):
        self._db = db

    def _rows_to_zones(self, rows: list[dict[str, Any]]) -> list[Zone]:
        zones = []
        for row in rows:
            try:
                zones.append(zone_from_row(row))
            except (ZoneGeometryError, ValueError) as e:
                logger.error("Skipping unreadable zone row %s: %s", row.get("id"), e)
        return zones

    def list_active_zones(self) -> list[Zone]:
        try:
            rows = self._db.get_active_zones()
        except Exception as e:
            raise ZoneSourceError(f"Failed to list zones: {e}") from e
        return self._rows_to_zones(rows)

    def find_zones_containing(self, lon: float, lat: float) -> list[Zone]:
        try:
            rows = self._db.get_active_zones_covering_bbox(lon, lat)
        except Exception as e:
            raise ZoneSourceError(f"Failed to query zones at ({lon}, {lat}): {e}") from e
        return [z for z in self._rows_to_zones(rows) if contains(z.boundary, lon, lat)]

    def find_zones_within_distance(self, lon: float, lat: float, meters: float) -> list[Zone]:
        try:
            rows = self._db.get_active_zones_in_box(*search_box(lon, lat, meters))
        except Exception as e:
            raise ZoneSourceError(f"Failed to query zones near ({lon}, {lat}): {e}") from e
        return nearest_first(self._rows_to_zones(rows), lon, lat, meters)

    def count_active_zones(self) -> int:
        try:
            return self._db.count_active_zones()
        except Exception as e:
            raise ZoneSourceError(f"Failed to count zones: {e}") from e

    def get_zone(self, zone_id: ZoneId) -> Optional[Zone]:
        try:
            row = self._db.get_zone(int(zone_id))
        except (TypeError, ValueError):
            return None
        except Exception as e:
            raise ZoneSourceError(f"Failed to fetch zone {zone_id}: {e}") from e
        if row is None:
            return None
        zones = self._rows_to_zones([row])
        return zones[0] if zones else None

    def add_zone(self, zone: Zone) -> int:
        """Store a zone and return its new id. Ignores zone.zone_id."""
        return self._db.insert_zone(
            name=zone.name,
            geometry_wkt=zone.to_wkt(),
            bounds=zone.bounds,
            severity=zone.severity.value,
            active=zone.active,
            description=zone.description,
            metadata=zone.metadata,
        )


def seed_sample_zone(source: SqliteZoneSource) -> Optional[int]:
    """Insert the downtown SF sample zone into an empty catalog."""
    if source.count_active_zones() > 0:
        return None
    zone_id = source.add_zone(make_zone(
        zone_id=0,
        name=SAMPLE_ZONE_NAME,
        boundary=SAMPLE_ZONE_RING,
        severity="HIGH",
        description="Sample no-parking zone for testing geo-fence detection",
    ))
    logger.info("Seeded sample zone %d (%s)", zone_id, SAMPLE_ZONE_NAME)
    return zone_id


class HttpZoneSource(ZoneSourceBase):
    """Reads zones from a zone catalog REST service.

    Expected endpoints, relative to base_url:
        GET /zones?active=true               -> [zone, ...]
        GET /zones/containing?lon=..&lat=..  -> [zone, ...]
        GET /zones/nearby?lon=..&lat=..&meters=.. -> [zone, ...]
        GET /zones/count?active=true         -> {"count": n}
        GET /zones/{id}                      -> zone, 404 if unknown

    Zones use the Zone.to_dict() shape; a WKT "geometry" field is accepted
    in place of "boundary".
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise ZoneSourceError(f"Zone catalog timeout on {path}") from e
        except httpx.HTTPStatusError as e:
            raise ZoneSourceError(
                f"Zone catalog HTTP {e.response.status_code} on {path}"
            ) from e
        except httpx.HTTPError as e:
            raise ZoneSourceError(f"Zone catalog error on {path}: {e}") from e
        except ValueError as e:
            raise ZoneSourceError(f"Zone catalog returned invalid JSON on {path}") from e

    def _parse_zones(self, payload: Any) -> list[Zone]:
        if not isinstance(payload, list):
            raise ZoneSourceError(f"Expected a list of zones, got {type(payload).__name__}")
        zones = []
        for item in payload:
            try:
                zones.append(zone_from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.error("Skipping malformed zone from catalog: %s", e)
        return zones

    def list_active_zones(self) -> list[Zone]:
        zones = self._parse_zones(self._get("/zones", {"active": "true"}))
        return [z for z in zones if z.active]

    def find_zones_containing(self, lon: float, lat: float) -> list[Zone]:
        zones = self._parse_zones(self._get("/zones/containing", {"lon": lon, "lat": lat}))
        return [z for z in zones if z.active]

    def find_zones_within_distance(self, lon: float, lat: float, meters: float) -> list[Zone]:
        payload = self._get("/zones/nearby", {"lon": lon, "lat": lat, "meters": meters})
        zones = [z for z in self._parse_zones(payload) if z.active]
        return nearest_first(zones, lon, lat, meters)

    def count_active_zones(self) -> int:
        payload = self._get("/zones/count", {"active": "true"})
        try:
            return int(payload["count"])
        except (KeyError, TypeError, ValueError) as e:
            raise ZoneSourceError("Zone catalog returned a malformed count") from e

    def get_zone(self, zone_id: ZoneId) -> Optional[Zone]:
        try:
            response = self._client.get(f"/zones/{normalize_zone_id(zone_id)}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return zone_from_dict(response.json())
        except httpx.HTTPError as e:
            raise ZoneSourceError(f"Failed to fetch zone {zone_id}: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ZoneSourceError(f"Malformed zone {zone_id} from catalog: {e}") from e

    def close(self) -> None:
        self._client.close()
