"""SQLite database layer with WAL mode for crash-safe writes."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS zones (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    geometry_wkt TEXT NOT NULL,
    min_lon REAL NOT NULL,
    min_lat REAL NOT NULL,
    max_lon REAL NOT NULL,
    max_lat REAL NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    severity TEXT CHECK (severity IN ('LOW', 'MEDIUM', 'HIGH') OR severity IS NULL),
    metadata_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS zone_violations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    violation_id TEXT NOT NULL UNIQUE,
    vehicle_id TEXT NOT NULL,
    zone_id TEXT NOT NULL,
    zone_name TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    timestamp TEXT NOT NULL,
    severity TEXT,
    source TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshot_cache (
    zone_id TEXT PRIMARY KEY,
    zone_id_kind TEXT NOT NULL DEFAULT 'int',
    name TEXT NOT NULL,
    description TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    severity TEXT,
    geometry_wkt TEXT NOT NULL,
    metadata_json TEXT,
    version INTEGER NOT NULL,
    cached_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_zones_active ON zones(active);
CREATE INDEX IF NOT EXISTS idx_zones_bbox ON zones(min_lon, max_lon, min_lat, max_lat);
CREATE INDEX IF NOT EXISTS idx_zone_violations_vehicle ON zone_violations(vehicle_id);
CREATE INDEX IF NOT EXISTS idx_zone_violations_zone ON zone_violations(zone_id);
CREATE INDEX IF NOT EXISTS idx_zone_violations_timestamp ON zone_violations(timestamp);
"""


class Database:
    """Thread-safe SQLite database with WAL mode."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _init_db(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()
        logger.info("Database initialized at %s (WAL mode)", self._db_path)

    @contextmanager
    def transaction(self):
        """Context manager for thread-safe transactions."""
        with self._lock:
            cursor = self._conn.cursor()
            try:
                yield cursor
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _query(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            cur = self._conn.execute(sql, params)
            return [dict(row) for row in cur.fetchall()]

    # --- Zones ---

    def insert_zone(
        self,
        name: str,
        geometry_wkt: str,
        bounds: tuple[float, float, float, float],
        severity: Optional[str] = None,
        active: bool = True,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        now = self._now_iso()
        min_lon, min_lat, max_lon, max_lat = bounds
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO zones
                (name, description, geometry_wkt, min_lon, min_lat, max_lon, max_lat,
                 active, severity, metadata_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (name, description, geometry_wkt, min_lon, min_lat, max_lon, max_lat,
                 1 if active else 0, severity,
                 json.dumps(metadata) if metadata else None, now, now),
            )
            return cur.lastrowid

    def update_zone(
        self,
        zone_id: int,
        geometry_wkt: Optional[str] = None,
        bounds: Optional[tuple[float, float, float, float]] = None,
        name: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> None:
        sets = ["updated_at = ?"]
        params: list[Any] = [self._now_iso()]
        if geometry_wkt is not None and bounds is not None:
            sets.append("geometry_wkt = ?, min_lon = ?, min_lat = ?, max_lon = ?, max_lat = ?")
            params.extend([geometry_wkt, *bounds])
        if name is not None:
            sets.append("name = ?")
            params.append(name)
        if severity is not None:
            sets.append("severity = ?")
            params.append(severity)
        params.append(zone_id)
        with self.transaction() as cur:
            cur.execute(f"UPDATE zones SET {', '.join(sets)} WHERE id = ?", tuple(params))

    def set_zone_active(self, zone_id: int, active: bool) -> None:
        with self.transaction() as cur:
            cur.execute(
                "UPDATE zones SET active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, self._now_iso(), zone_id),
            )

    def get_zone(self, zone_id: int) -> Optional[dict[str, Any]]:
        rows = self._query("SELECT * FROM zones WHERE id = ?", (zone_id,))
        return rows[0] if rows else None

    def get_active_zones(self) -> list[dict[str, Any]]:
        return self._query("SELECT * FROM zones WHERE active = 1 ORDER BY id ASC")

    def get_active_zones_covering_bbox(self, lon: float, lat: float) -> list[dict[str, Any]]:
        """Active zones whose bounding box contains the point."""
        return self._query(
            """SELECT * FROM zones
            WHERE active = 1
              AND min_lon <= ? AND max_lon >= ?
              AND min_lat <= ? AND max_lat >= ?
            ORDER BY id ASC""",
            (lon, lon, lat, lat),
        )

    def get_active_zones_in_box(
        self, min_lon: float, min_lat: float, max_lon: float, max_lat: float,
    ) -> list[dict[str, Any]]:
        """Active zones whose bounding box overlaps the given box."""
        return self._query(
            """SELECT * FROM zones
            WHERE active = 1
              AND min_lon <= ? AND max_lon >= ?
              AND min_lat <= ? AND max_lat >= ?
            ORDER BY id ASC""",
            (max_lon, min_lon, max_lat, min_lat),
        )

    def count_active_zones(self) -> int:
        with self._lock:
            cur = self._conn.execute("SELECT COUNT(*) FROM zones WHERE active = 1")
            return int(cur.fetchone()[0])

    # --- Violations ---

    def insert_violation(
        self,
        violation_id: str,
        vehicle_id: str,
        zone_id: str,
        zone_name: str,
        latitude: float,
        longitude: float,
        timestamp: str,
        severity: Optional[str] = None,
        source: Optional[str] = None,
    ) -> bool:
        """Insert a violation. Returns False if the id was already stored."""
        with self.transaction() as cur:
            cur.execute(
                """INSERT OR IGNORE INTO zone_violations
                (violation_id, vehicle_id, zone_id, zone_name, latitude, longitude,
                 timestamp, severity, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (violation_id, vehicle_id, zone_id, zone_name, latitude, longitude,
                 timestamp, severity, source, self._now_iso()),
            )
            return cur.rowcount > 0

    def get_violation(self, violation_id: str) -> Optional[dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM zone_violations WHERE violation_id = ?", (violation_id,)
        )
        return rows[0] if rows else None

    def get_violations_by_vehicle(self, vehicle_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return self._query(
            """SELECT * FROM zone_violations
            WHERE vehicle_id = ?
            ORDER BY timestamp DESC LIMIT ?""",
            (vehicle_id, limit),
        )

    def get_violations_between(self, start: str, end: str) -> list[dict[str, Any]]:
        return self._query(
            """SELECT * FROM zone_violations
            WHERE timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp DESC""",
            (start, end),
        )

    def delete_old_violations(self, before_timestamp: str) -> int:
        with self.transaction() as cur:
            cur.execute(
                "DELETE FROM zone_violations WHERE timestamp < ?",
                (before_timestamp,),
            )
            return cur.rowcount

    # --- Snapshot cache ---

    def replace_snapshot_cache(self, version: int, rows: list[dict[str, Any]]) -> None:
        """Replace the whole cached snapshot in one transaction."""
        now = self._now_iso()
        with self.transaction() as cur:
            cur.execute("DELETE FROM snapshot_cache")
            cur.executemany(
                """INSERT INTO snapshot_cache
                (zone_id, zone_id_kind, name, description, active, severity,
                 geometry_wkt, metadata_json, version, cached_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (str(r["zone_id"]), "int" if isinstance(r["zone_id"], int) else "str",
                     r["name"], r.get("description"), 1 if r.get("active", True) else 0,
                     r.get("severity"), r["geometry_wkt"], r.get("metadata_json"), version, now)
                    for r in rows
                ],
            )

    def delete_snapshot_cache_entry(self, zone_id: str) -> None:
        with self.transaction() as cur:
            cur.execute("DELETE FROM snapshot_cache WHERE zone_id = ?", (zone_id,))

    def get_snapshot_cache(self) -> list[dict[str, Any]]:
        return self._query("SELECT * FROM snapshot_cache ORDER BY rowid ASC")
