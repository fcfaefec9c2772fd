"""Validation of incoming GPS fixes."""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from geofence.models import GpsFix


class ValidationError(Exception):
    """Raised when a GPS fix cannot be evaluated.

    Attributes:
        reason: Short machine-readable code: "vehicle", "coordinates",
            "stale", "future" or "accuracy".
    """

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def validate_fix(
    fix: GpsFix,
    now: datetime,
    max_age_seconds: float = 60.0,
    max_future_skew_seconds: float = 60.0,
    max_accuracy_m: float = 50.0,
) -> GpsFix:
    """Check a fix against identity, range, freshness and accuracy rules.

    Args:
        fix: The fix to check.
        now: Current time from the injected clock.
        max_age_seconds: Fixes older than this are stale.
        max_future_skew_seconds: Tolerated clock skew for future timestamps.
        max_accuracy_m: Largest acceptable reported accuracy radius.

    Returns:
        The same fix, if valid.

    Raises:
        ValidationError: describing the first rule the fix breaks.
    """
    if not isinstance(fix.vehicle_id, str) or not fix.vehicle_id.strip():
        raise ValidationError("vehicle", "Vehicle id cannot be blank")

    if not _is_number(fix.latitude) or not _is_number(fix.longitude):
        raise ValidationError("coordinates", f"Missing coordinates in {fix.to_log_string()}")
    if not -90.0 <= fix.latitude <= 90.0:
        raise ValidationError("coordinates", f"Latitude out of range: {fix.latitude}")
    if not -180.0 <= fix.longitude <= 180.0:
        raise ValidationError("coordinates", f"Longitude out of range: {fix.longitude}")

    if fix.timestamp > now + timedelta(seconds=max_future_skew_seconds):
        raise ValidationError("future", f"GPS timestamp is in the future: {fix.to_log_string()}")
    if fix.timestamp <= now - timedelta(seconds=max_age_seconds):
        raise ValidationError("stale", f"Stale GPS fix: {fix.to_log_string()}")

    if fix.speed is not None and (not _is_number(fix.speed) or fix.speed < 0):
        raise ValidationError("coordinates", f"Invalid speed {fix.speed!r}: {fix.to_log_string()}")
    if fix.heading is not None and (not _is_number(fix.heading) or fix.heading < 0):
        raise ValidationError(
            "coordinates", f"Invalid heading {fix.heading!r}: {fix.to_log_string()}",
        )

    if fix.accuracy_m is not None:
        if not _is_number(fix.accuracy_m) or fix.accuracy_m < 0:
            raise ValidationError(
                "accuracy",
                f"Invalid GPS accuracy {fix.accuracy_m!r}: {fix.to_log_string()}",
            )
        if fix.accuracy_m > max_accuracy_m:
            raise ValidationError(
                "accuracy",
                f"Poor GPS accuracy ({fix.accuracy_m:.1f}m > {max_accuracy_m:.1f}m): "
                f"{fix.to_log_string()}",
            )
    return fix
