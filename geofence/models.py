"""Core data models shared across all modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from shapely import wkt as shapely_wkt
from shapely.geometry import LinearRing, Polygon

from geofence.geometry.polygon import bounding_box, contains, is_degenerate

ZoneId = Union[int, str]

# Accuracy readings above this are clamped; receivers report junk beyond it.
MAX_REPORTED_ACCURACY_M = 100.0


class ZoneGeometryError(ValueError):
    """Raised when a zone boundary violates the polygon invariants."""


class Severity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @classmethod
    def parse(cls, value: Union[str, Severity, None]) -> Severity:
        """Case-insensitive parse; a missing severity means MEDIUM."""
        if isinstance(value, Severity):
            return value
        if value is None or value == "":
            return cls.MEDIUM
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown severity: {value!r}") from None


def normalize_zone_id(value: Any) -> ZoneId:
    """Zone ids arrive as ints from SQL and as strings from URLs; unify them.

    Only canonical integer text ("42", "-3") becomes an int. Anything else,
    including zero-padded ids like "007", stays a string.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid zone id: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        raise ValueError("Zone id cannot be empty")
    if text.lstrip("-").isdigit() and str(int(text)) == text:
        return int(text)
    return text


def to_utc(ts: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class Zone:
    """A named restricted polygon. Boundary is a closed ring of (lon, lat)."""
    zone_id: ZoneId
    name: str
    boundary: tuple[tuple[float, float], ...]
    active: bool = True
    severity: Severity = Severity.MEDIUM
    description: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return bounding_box(self.boundary)

    def contains(self, latitude: float, longitude: float) -> bool:
        return contains(self.boundary, longitude, latitude)

    def to_wkt(self) -> str:
        return Polygon(self.boundary).wkt

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.zone_id,
            "name": self.name,
            "description": self.description,
            "active": self.active,
            "severity": self.severity.value,
            "boundary": [list(p) for p in self.boundary],
            "metadata": dict(self.metadata),
        }

    def to_log_string(self) -> str:
        return f"Zone[id={self.zone_id}, name={self.name}, severity={self.severity.value}]"


def make_zone(
    zone_id: Any,
    name: str,
    boundary: Any,
    active: bool = True,
    severity: Union[str, Severity, None] = None,
    description: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Zone:
    """Build a Zone from loosely-typed input (lists, string severities)."""
    ring = tuple((float(p[0]), float(p[1])) for p in boundary)
    return Zone(
        zone_id=normalize_zone_id(zone_id),
        name=str(name),
        boundary=ring,
        active=bool(active),
        severity=Severity.parse(severity),
        description=description,
        metadata=dict(metadata or {}),
    )


def zone_from_dict(data: dict[str, Any]) -> Zone:
    """Inverse of Zone.to_dict(); also accepts a WKT 'geometry' field."""
    if "boundary" in data and data["boundary"] is not None:
        boundary = data["boundary"]
    elif data.get("geometry"):
        boundary = boundary_from_wkt(data["geometry"])
    else:
        raise ZoneGeometryError(f"Zone {data.get('id')!r} has no boundary")
    return make_zone(
        zone_id=data["id"],
        name=data.get("name", ""),
        boundary=boundary,
        active=data.get("active", True),
        severity=data.get("severity"),
        description=data.get("description"),
        metadata=data.get("metadata") or {},
    )


def boundary_from_wkt(text: str) -> tuple[tuple[float, float], ...]:
    """Parse a WKT POLYGON into its exterior ring. Interior rings are ignored."""
    try:
        geom = shapely_wkt.loads(text)
    except Exception as e:
        raise ZoneGeometryError(f"Unparseable WKT: {e}") from e
    if geom.geom_type != "Polygon":
        raise ZoneGeometryError(f"Expected POLYGON, got {geom.geom_type}")
    return tuple((float(c[0]), float(c[1])) for c in geom.exterior.coords)


def validate_zone(zone: Zone) -> Zone:
    """Check the boundary invariants. Returns the zone unchanged if valid.

    Raises:
        ZoneGeometryError: on open rings, too few points, out-of-range
            coordinates, zero area or self-intersection.
    """
    ring = zone.boundary
    if len(ring) < 4:
        raise ZoneGeometryError(
            f"Zone {zone.zone_id} ring has {len(ring)} points, at least 4 required"
        )
    if ring[0] != ring[-1]:
        raise ZoneGeometryError(f"Zone {zone.zone_id} ring is not closed")
    for lon, lat in ring:
        if not (-180.0 <= lon <= 180.0) or not (-90.0 <= lat <= 90.0):
            raise ZoneGeometryError(
                f"Zone {zone.zone_id} coordinate out of range: ({lon}, {lat})"
            )
    if is_degenerate(ring):
        raise ZoneGeometryError(f"Zone {zone.zone_id} is degenerate (zero area)")
    if not LinearRing(ring).is_simple:
        raise ZoneGeometryError(f"Zone {zone.zone_id} ring self-intersects")
    return zone


@dataclass
class GpsFix:
    """A single position report from a vehicle."""
    vehicle_id: str
    latitude: Optional[float]
    longitude: Optional[float]
    timestamp: datetime
    accuracy_m: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None

    def __post_init__(self):
        self.timestamp = to_utc(self.timestamp)
        if self.heading is not None and self.heading > 360:
            self.heading = self.heading % 360
        if self.accuracy_m is not None and self.accuracy_m > MAX_REPORTED_ACCURACY_M:
            self.accuracy_m = MAX_REPORTED_ACCURACY_M

    @classmethod
    def from_message(
        cls,
        vehicle_id: str,
        lat: float,
        lon: float,
        timestamp_millis: int,
    ) -> GpsFix:
        """Build a fix from a stream message carrying epoch milliseconds."""
        ts = datetime.fromtimestamp(timestamp_millis / 1000.0, tz=timezone.utc)
        return cls(vehicle_id=vehicle_id, latitude=lat, longitude=lon, timestamp=ts)

    def to_log_string(self) -> str:
        lat = f"{self.latitude:.6f}" if isinstance(self.latitude, (int, float)) else repr(self.latitude)
        lon = f"{self.longitude:.6f}" if isinstance(self.longitude, (int, float)) else repr(self.longitude)
        return (
            f"GpsFix[vehicle={self.vehicle_id}, lat={lat}, lon={lon}, "
            f"time={self.timestamp.isoformat()}]"
        )


def epoch_millis(ts: datetime) -> int:
    return int(round(to_utc(ts).timestamp() * 1000))


@dataclass(frozen=True)
class ViolationRecord:
    """A detected zone violation, handed to the caller for persistence."""
    violation_id: str
    vehicle_id: str
    zone_id: ZoneId
    zone_name: str
    severity: Severity
    latitude: float
    longitude: float
    timestamp: datetime
    detected_at: datetime
    source: str = "snapshot"  # "snapshot" | "fallback"

    @classmethod
    def from_fix(
        cls,
        fix: GpsFix,
        zone: Zone,
        detected_at: datetime,
        source: str = "snapshot",
    ) -> ViolationRecord:
        return cls(
            violation_id=make_violation_id(fix.vehicle_id, fix.timestamp, zone.zone_id),
            vehicle_id=fix.vehicle_id,
            zone_id=zone.zone_id,
            zone_name=zone.name,
            severity=zone.severity,
            latitude=fix.latitude,
            longitude=fix.longitude,
            timestamp=fix.timestamp,
            detected_at=to_utc(detected_at),
            source=source,
        )

    @property
    def is_critical(self) -> bool:
        return self.severity is Severity.HIGH

    def to_dict(self) -> dict[str, Any]:
        return {
            "violation_id": self.violation_id,
            "vehicle_id": self.vehicle_id,
            "zone_id": self.zone_id,
            "zone_name": self.zone_name,
            "severity": self.severity.value,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.timestamp.isoformat(),
            "detected_at": self.detected_at.isoformat(),
            "source": self.source,
        }

    def to_log_string(self) -> str:
        return (
            f"Violation[id={self.violation_id}, vehicle={self.vehicle_id}, "
            f"zone={self.zone_name}, severity={self.severity.value}]"
        )


def make_violation_id(vehicle_id: str, timestamp: datetime, zone_id: ZoneId) -> str:
    """Deterministic id: vehicle, event time in epoch millis, zone."""
    return f"{vehicle_id}_{epoch_millis(timestamp)}_{zone_id}"


@dataclass(frozen=True)
class CacheStats:
    cached_count: int
    source_count: int
    version: int = 0
    last_refresh_at: Optional[datetime] = None
    last_refresh_error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.cached_count > 0 and self.cached_count == self.source_count

    @property
    def hit_rate(self) -> float:
        if self.source_count <= 0:
            return 0.0
        return self.cached_count / self.source_count * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "cached_count": self.cached_count,
            "source_count": self.source_count,
            "healthy": self.healthy,
            "hit_rate": f"{self.hit_rate:.1f}%",
            "version": self.version,
            "last_refresh_at": (
                self.last_refresh_at.isoformat() if self.last_refresh_at else None
            ),
            "last_refresh_error": self.last_refresh_error,
        }
