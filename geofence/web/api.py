"""HTTP API over the detection engine.

Endpoints (all under /api/geofencing):
    POST /check                         Check one GPS fix (JSON body)
    GET  /check-quick?vehicle_id&lat&lon  Same, timestamp = now
    GET  /zones                         Active zones in the published snapshot
    GET  /zones/nearby?lat&lon&meters    Zones within a distance, nearest first
    GET  /cache/stats                   Snapshot vs. source counts
    POST /cache/refresh                 Rebuild the snapshot now
    POST /cache/invalidate/<zone_id>    Drop one zone from the snapshot
    GET  /violations/<vehicle_id>       Logged violations for a vehicle
    GET  /health                        Liveness
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from flask import Flask, jsonify, request

from geofence.geometry.polygon import distance_to_polygon_m
from geofence.models import GpsFix, normalize_zone_id
from geofence.violation.engine import DetectionEngine, DetectionError, DetectionStatus
from geofence.violation.log import ViolationLog
from geofence.zones.source import ZoneSourceError

logger = logging.getLogger(__name__)

PREFIX = "/api/geofencing"


class RequestError(ValueError):
    """Request body or query could not be turned into a GPS fix."""


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _parse_number(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise RequestError(f"{name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RequestError(f"{name} must be a number") from None


def _parse_timestamp(value: Any) -> datetime:
    """Epoch milliseconds or an ISO-8601 string; missing means now."""
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, bool):
        raise RequestError("timestamp must be epoch millis or ISO-8601")
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        if isinstance(value, str):
            text = value.strip()
            if text.lstrip("-").isdigit():
                return datetime.fromtimestamp(int(text) / 1000.0, tz=timezone.utc)
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        pass
    raise RequestError("timestamp must be epoch millis or ISO-8601")


def fix_from_payload(data: Any) -> GpsFix:
    """Build a GpsFix from a request body. Accepts snake_case or camelCase."""
    if not isinstance(data, dict):
        raise RequestError("Request body must be a JSON object")
    vehicle_id = _first(data, "vehicle_id", "vehicleId")
    if vehicle_id is not None and not isinstance(vehicle_id, str):
        vehicle_id = str(vehicle_id)
    return GpsFix(
        vehicle_id=vehicle_id or "",
        latitude=_parse_number(_first(data, "latitude", "lat"), "latitude"),
        longitude=_parse_number(_first(data, "longitude", "lon"), "longitude"),
        timestamp=_parse_timestamp(data.get("timestamp")),
        accuracy_m=_parse_number(_first(data, "accuracy_m", "accuracy"), "accuracy"),
        speed=_parse_number(data.get("speed"), "speed"),
        heading=_parse_number(data.get("heading"), "heading"),
    )


def create_app(
    engine: DetectionEngine,
    violation_log: Optional[ViolationLog] = None,
    warning_distance_m: float = 50.0,
) -> Flask:
    """Build the Flask app around an already-warmed engine."""
    app = Flask(__name__)

    def run_check(fix: GpsFix):
        logger.info("Received GPS fix: %s", fix.to_log_string())
        result = engine.check_violation(fix)

        if result.status is DetectionStatus.REJECTED:
            return jsonify({
                "status": "REJECTED",
                "reason": result.reason,
                "message": result.error,
                "vehicle_id": fix.vehicle_id,
            }), 400

        if result.status is DetectionStatus.FAILED:
            return jsonify({
                "status": "UNAVAILABLE",
                "message": result.error,
                "vehicle_id": fix.vehicle_id,
            }), 503

        if violation_log is not None and result.violations:
            try:
                violation_log.append_all(result.violations)
            except Exception as e:
                logger.error("Failed to log %d violations: %s", len(result.violations), e)

        if not result.violations:
            return jsonify({
                "status": "OK",
                "message": "No violations detected",
                "vehicle_id": fix.vehicle_id,
                "location": {"latitude": fix.latitude, "longitude": fix.longitude},
                "source": result.source,
            })
        return jsonify({
            "status": "VIOLATION",
            "message": "Zone violation detected",
            "vehicle_id": fix.vehicle_id,
            "violations": [v.to_dict() for v in result.violations],
            "source": result.source,
        })

    @app.errorhandler(RequestError)
    def handle_bad_request(e):
        return jsonify({"status": "REJECTED", "reason": "request", "message": str(e)}), 400

    @app.route(f"{PREFIX}/check", methods=["POST"])
    def check():
        data = request.get_json(silent=True)
        return run_check(fix_from_payload(data))

    @app.route(f"{PREFIX}/check-quick")
    def check_quick():
        args = request.args
        return run_check(fix_from_payload({
            "vehicle_id": _first(args, "vehicle_id", "vehicleId"),
            "latitude": args.get("lat"),
            "longitude": args.get("lon"),
        }))

    @app.route(f"{PREFIX}/zones")
    def zones():
        return jsonify([z.to_dict() for z in engine.active_zones()])

    @app.route(f"{PREFIX}/zones/nearby")
    def zones_nearby():
        args = request.args
        lat = _parse_number(args.get("lat"), "lat")
        lon = _parse_number(args.get("lon"), "lon")
        if lat is None or lon is None:
            raise RequestError("lat and lon are required")
        meters = _parse_number(args.get("meters"), "meters")
        if meters is None:
            meters = warning_distance_m
        try:
            nearby = engine.zones_nearby(lat, lon, meters)
        except ValueError as e:
            raise RequestError(str(e)) from None
        except DetectionError as e:
            logger.error("Nearby zone lookup failed at (%s, %s): %s", lat, lon, e)
            return jsonify({"status": "UNAVAILABLE", "message": str(e)}), 503
        return jsonify({
            "location": {"latitude": lat, "longitude": lon},
            "meters": meters,
            "zones": [
                dict(z.to_dict(), distance_m=round(distance_to_polygon_m(z.boundary, lon, lat), 1))
                for z in nearby
            ],
        })

    @app.route(f"{PREFIX}/cache/stats")
    def cache_stats():
        return jsonify(engine.cache_stats().to_dict())

    @app.route(f"{PREFIX}/cache/refresh", methods=["POST"])
    def cache_refresh():
        try:
            count = engine.force_refresh()
        except ZoneSourceError as e:
            logger.error("Manual cache refresh failed: %s", e)
            return jsonify({"status": "UNAVAILABLE", "message": str(e)}), 503
        return jsonify({
            "status": "SUCCESS",
            "message": "Cache refreshed",
            "zones_refreshed": count,
        })

    @app.route(f"{PREFIX}/cache/invalidate/<zone_id>", methods=["POST"])
    def cache_invalidate(zone_id: str):
        try:
            key = normalize_zone_id(zone_id)
        except ValueError as e:
            raise RequestError(str(e)) from None
        removed = engine.invalidate_zone(key)
        return jsonify({
            "status": "SUCCESS" if removed else "NOT_CACHED",
            "zone_id": key,
        })

    @app.route(f"{PREFIX}/violations/<vehicle_id>")
    def violations(vehicle_id: str):
        if violation_log is None:
            return jsonify([])
        limit = request.args.get("limit", default=100, type=int)
        return jsonify(violation_log.for_vehicle(vehicle_id, limit=max(1, min(limit, 1000))))

    @app.route(f"{PREFIX}/health")
    def health():
        snapshot = engine.store.current_snapshot()
        return jsonify({
            "status": "UP",
            "service": "geofence-engine",
            "snapshot_version": snapshot.version,
            "cached_zones": snapshot.count,
        })

    return app
