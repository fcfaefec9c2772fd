import pytest
from datetime import datetime, timezone

from geofence.models import make_zone
from geofence.utils.clock import ManualClock

# Downtown San Francisco rectangle, (lon, lat) ring.
SF_RING = [
    (-122.4194, 37.7749),
    (-122.4194, 37.7849),
    (-122.4094, 37.7849),
    (-122.4094, 37.7749),
    (-122.4194, 37.7749),
]


@pytest.fixture
def test_config_dir(tmp_path):
    """Creates a temporary config directory with test settings."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    settings = config_dir / "settings.yaml"
    settings.write_text("""
cache:
  refresh_interval_minutes: 15
  initial_delay_minutes: 1
  fallback_timeout_seconds: 0.5
  backing_cache_enabled: true

validation:
  max_age_seconds: 60
  max_future_skew_seconds: 60
  max_accuracy_m: 50

dedup:
  window_seconds: 300
  max_entries: 1000
  sweep_interval: 10

source:
  kind: "sqlite"
  base_url: "http://zones.test/api"
  timeout_seconds: 1
  seed_sample_zone: true

database:
  path: "{db_path}"
  violation_retention_days: 7

api:
  host: "127.0.0.1"
  port: 9090

logging:
  level: "DEBUG"
  json_format: false
  log_dir: "{log_dir}"

platform: "mock"
""".format(
        db_path=str(tmp_path / "geofence.db"),
        log_dir=str(tmp_path / "logs"),
    ))

    (tmp_path / "logs").mkdir(exist_ok=True)
    return config_dir


@pytest.fixture
def sample_timestamp():
    """Returns a fixed UTC timestamp for deterministic tests."""
    return datetime(2025, 6, 15, 10, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(sample_timestamp):
    return ManualClock(sample_timestamp)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Returns a path for a temporary SQLite database."""
    return str(tmp_path / "test.db")


@pytest.fixture
def sf_zone():
    return make_zone(1, "Downtown SF Test Zone", SF_RING, severity="HIGH")


@pytest.fixture
def square_zone():
    """Unit square zone at (0..1, 0..1)."""
    return make_zone(
        "square", "Unit Square",
        [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0), (0.0, 0.0)],
    )
