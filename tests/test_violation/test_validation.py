"""Tests for GPS fix validation."""

import math
from datetime import timedelta

import pytest

from geofence.models import GpsFix
from geofence.violation.validation import ValidationError, validate_fix


def _fix(ts, **overrides):
    fields = dict(vehicle_id="SC-1", latitude=37.78, longitude=-122.415, timestamp=ts)
    fields.update(overrides)
    return GpsFix(**fields)


class TestValidateFix:
    def test_valid_fix_returned(self, sample_timestamp):
        fix = _fix(sample_timestamp)
        assert validate_fix(fix, now=sample_timestamp) is fix

    @pytest.mark.parametrize("vehicle_id", ["", "   ", None])
    def test_blank_vehicle(self, sample_timestamp, vehicle_id):
        with pytest.raises(ValidationError) as exc:
            validate_fix(_fix(sample_timestamp, vehicle_id=vehicle_id), now=sample_timestamp)
        assert exc.value.reason == "vehicle"

    @pytest.mark.parametrize("lat,lon", [
        (None, -122.4),
        (37.7, None),
        (math.nan, -122.4),
        (37.7, math.inf),
        (90.0001, 0.0),
        (-91.0, 0.0),
        (0.0, 180.5),
        (0.0, -181.0),
    ])
    def test_bad_coordinates(self, sample_timestamp, lat, lon):
        with pytest.raises(ValidationError) as exc:
            validate_fix(_fix(sample_timestamp, latitude=lat, longitude=lon), now=sample_timestamp)
        assert exc.value.reason == "coordinates"

    @pytest.mark.parametrize("lat,lon", [(90.0, 180.0), (-90.0, -180.0)])
    def test_extreme_coordinates_accepted(self, sample_timestamp, lat, lon):
        validate_fix(_fix(sample_timestamp, latitude=lat, longitude=lon), now=sample_timestamp)

    def test_stale(self, sample_timestamp):
        old = sample_timestamp - timedelta(seconds=61)
        with pytest.raises(ValidationError) as exc:
            validate_fix(_fix(old), now=sample_timestamp)
        assert exc.value.reason == "stale"

    def test_exactly_max_age_is_stale(self, sample_timestamp):
        old = sample_timestamp - timedelta(seconds=60)
        with pytest.raises(ValidationError):
            validate_fix(_fix(old), now=sample_timestamp)

    def test_just_inside_max_age(self, sample_timestamp):
        recent = sample_timestamp - timedelta(seconds=59)
        validate_fix(_fix(recent), now=sample_timestamp)

    def test_future_within_skew(self, sample_timestamp):
        ahead = sample_timestamp + timedelta(seconds=60)
        validate_fix(_fix(ahead), now=sample_timestamp)

    def test_future_beyond_skew(self, sample_timestamp):
        ahead = sample_timestamp + timedelta(seconds=61)
        with pytest.raises(ValidationError) as exc:
            validate_fix(_fix(ahead), now=sample_timestamp)
        assert exc.value.reason == "future"

    def test_poor_accuracy(self, sample_timestamp):
        with pytest.raises(ValidationError) as exc:
            validate_fix(_fix(sample_timestamp, accuracy_m=51.0), now=sample_timestamp)
        assert exc.value.reason == "accuracy"

    def test_accuracy_at_limit(self, sample_timestamp):
        validate_fix(_fix(sample_timestamp, accuracy_m=50.0), now=sample_timestamp)

    def test_custom_thresholds(self, sample_timestamp):
        fix = _fix(sample_timestamp - timedelta(seconds=100), accuracy_m=80.0)
        validate_fix(fix, now=sample_timestamp, max_age_seconds=120, max_accuracy_m=90)

    @pytest.mark.parametrize("accuracy", [math.nan, -500.0, -0.1])
    def test_invalid_accuracy(self, sample_timestamp, accuracy):
        with pytest.raises(ValidationError) as exc:
            validate_fix(_fix(sample_timestamp, accuracy_m=accuracy), now=sample_timestamp)
        assert exc.value.reason == "accuracy"

    def test_zero_accuracy_accepted(self, sample_timestamp):
        validate_fix(_fix(sample_timestamp, accuracy_m=0.0), now=sample_timestamp)

    @pytest.mark.parametrize("overrides", [
        {"speed": -1.0},
        {"speed": math.nan},
        {"heading": -10.0},
        {"heading": math.nan},
    ])
    def test_invalid_motion(self, sample_timestamp, overrides):
        with pytest.raises(ValidationError) as exc:
            validate_fix(_fix(sample_timestamp, **overrides), now=sample_timestamp)
        assert exc.value.reason == "coordinates"

    def test_stationary_vehicle_accepted(self, sample_timestamp):
        validate_fix(_fix(sample_timestamp, speed=0.0, heading=0.0), now=sample_timestamp)
