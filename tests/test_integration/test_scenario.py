"""End-to-end scenarios across source, snapshot store, engine and log."""

import pytest

from geofence.config import load_config
from geofence.main import GeofenceApp
from geofence.models import GpsFix, make_zone
from geofence.utils.database import Database
from geofence.violation.dedup import ViolationDeduplicator
from geofence.violation.engine import DetectionEngine, DetectionStatus
from geofence.violation.log import ViolationLog
from geofence.zones.backend import SqliteSnapshotBackend
from geofence.zones.cache import ZoneSnapshotStore
from geofence.zones.source import MockZoneSource, SqliteZoneSource, seed_sample_zone


@pytest.fixture
def db(tmp_db_path):
    database = Database(tmp_db_path)
    yield database
    database.close()


def _engine(source, store, clock):
    return DetectionEngine(store, source, ViolationDeduplicator(window_seconds=300), clock=clock)


class TestSqliteScenario:
    def test_san_francisco_walkthrough(self, db, clock):
        source = SqliteZoneSource(db)
        seed_sample_zone(source)
        store = ZoneSnapshotStore(source, backend=SqliteSnapshotBackend(db), clock=clock)
        store.warm_up()
        engine = _engine(source, store, clock)
        log = ViolationLog(db)

        try:
            inside = engine.check_violation(GpsFix("SC-TEST-001", 37.7800, -122.4150, clock.now()))
            assert len(inside.violations) == 1
            log.append_all(inside.violations)

            outside = engine.check_violation(GpsFix("SC-TEST-001", 37.7700, -122.4000, clock.now()))
            assert outside.violations == []

            clock.advance(1)
            again = engine.check_violation(GpsFix("SC-TEST-001", 37.7800, -122.4150, clock.now()))
            assert again.violations == []

            clock.advance(300)
            later = engine.check_violation(GpsFix("SC-TEST-001", 37.7800, -122.4150, clock.now()))
            assert len(later.violations) == 1
            log.append_all(later.violations)

            assert len(log.for_vehicle("SC-TEST-001")) == 2
        finally:
            engine.close()

    def test_catalog_change_visible_after_refresh(self, db, clock):
        source = SqliteZoneSource(db)
        store = ZoneSnapshotStore(source, clock=clock)
        store.warm_up()
        engine = _engine(source, store, clock)
        try:
            park = make_zone(0, "Park", [
                (-122.50, 37.76), (-122.48, 37.76), (-122.48, 37.78),
                (-122.50, 37.78), (-122.50, 37.76),
            ])
            zid = source.add_zone(park)
            # Cold snapshot answers through the fallback path
            fix = GpsFix("V", 37.77, -122.49, clock.now())
            first = engine.check_violation(fix)
            assert first.source == "fallback"
            store.join_background(timeout=5)

            db.set_zone_active(zid, False)
            # Still cached until the next refresh
            assert zid in store.current_snapshot()
            store.refresh_all()
            assert zid not in store.current_snapshot()
        finally:
            engine.close()


class TestWarmRestart:
    def test_backing_cache_serves_while_source_down(self, db, sf_zone, clock):
        healthy = MockZoneSource([sf_zone])
        ZoneSnapshotStore(healthy, backend=SqliteSnapshotBackend(db), clock=clock).warm_up()

        down = MockZoneSource([sf_zone])
        down.set_available(False)
        store = ZoneSnapshotStore(down, backend=SqliteSnapshotBackend(db), clock=clock)
        store.warm_up()
        engine = _engine(down, store, clock)
        try:
            result = engine.check_violation(GpsFix("V", 37.78, -122.415, clock.now()))
            assert result.status is DetectionStatus.CHECKED
            assert result.source == "snapshot"
            assert len(result.violations) == 1
        finally:
            engine.close()


class TestGeofenceApp:
    def test_wiring_and_lifecycle(self, test_config_dir):
        config = load_config(str(test_config_dir))
        app = GeofenceApp(config)
        try:
            app.start()
            assert app.engine.store.scheduler.running
            client = app.flask_app.test_client()
            assert client.get("/api/geofencing/health").get_json()["cached_zones"] == 1
            resp = client.get("/api/geofencing/check-quick?vehicle_id=SC-1&lat=37.78&lon=-122.415")
            assert resp.get_json()["status"] == "VIOLATION"
            assert len(client.get("/api/geofencing/violations/SC-1").get_json()) == 1
        finally:
            app.stop()
        assert not app.engine.store.scheduler.running
