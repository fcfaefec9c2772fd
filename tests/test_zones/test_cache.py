"""Tests for the zone snapshot store and refresh scheduler."""

import threading
import time

import pytest

from geofence.models import make_zone
from geofence.utils.database import Database
from geofence.zones.backend import SqliteSnapshotBackend
from geofence.zones.cache import RefreshScheduler, ZoneSnapshotStore
from geofence.zones.source import MockZoneSource, ZoneSourceError

BOWTIE = [(0, 0), (2, 2), (2, 0), (0, 1), (0, 0)]


@pytest.fixture
def backend(tmp_db_path):
    db = Database(tmp_db_path)
    yield SqliteSnapshotBackend(db)
    db.close()


class TestWarmUp:
    def test_populates_snapshot(self, sf_zone, square_zone, clock):
        store = ZoneSnapshotStore(MockZoneSource([sf_zone, square_zone]), clock=clock)
        assert store.warm_up() == 2
        snap = store.current_snapshot()
        assert snap.count == 2
        assert snap.version == 1
        assert snap.created_at == clock.now()

    def test_skips_invalid_zones(self, sf_zone):
        bad = make_zone(2, "Bowtie", BOWTIE)
        store = ZoneSnapshotStore(MockZoneSource([sf_zone, bad]))
        assert store.warm_up() == 1
        assert 2 not in store.current_snapshot()

    def test_source_down_publishes_empty(self, sf_zone):
        source = MockZoneSource([sf_zone])
        source.set_available(False)
        store = ZoneSnapshotStore(source)
        assert store.warm_up() == 0
        snap = store.current_snapshot()
        assert snap.is_empty
        assert snap.version == 1

    def test_source_down_uses_backing_cache(self, sf_zone, backend):
        ZoneSnapshotStore(MockZoneSource([sf_zone]), backend=backend).warm_up()

        source = MockZoneSource([sf_zone])
        source.set_available(False)
        store = ZoneSnapshotStore(source, backend=backend)
        assert store.warm_up() == 1
        assert 1 in store.current_snapshot()

    def test_writes_through_to_backing_cache(self, sf_zone, backend):
        ZoneSnapshotStore(MockZoneSource([sf_zone]), backend=backend).warm_up()
        assert backend.load() == [sf_zone]


class TestRefresh:
    def test_refresh_picks_up_changes(self, sf_zone, square_zone):
        source = MockZoneSource([sf_zone])
        store = ZoneSnapshotStore(source)
        store.warm_up()
        source.put_zone(square_zone)
        assert store.refresh_all() == 2
        assert store.current_snapshot().version == 2

    def test_failed_refresh_keeps_old_snapshot(self, sf_zone):
        source = MockZoneSource([sf_zone])
        store = ZoneSnapshotStore(source)
        store.warm_up()
        before = store.current_snapshot()

        source.set_available(False)
        with pytest.raises(ZoneSourceError):
            store.refresh_all()
        assert store.current_snapshot() is before
        assert store.stats().last_refresh_error is not None

    def test_scheduled_refresh_swallows_failure(self, sf_zone):
        source = MockZoneSource([sf_zone])
        store = ZoneSnapshotStore(source)
        store.warm_up()
        source.set_available(False)
        store.scheduled_refresh()
        assert store.current_snapshot().count == 1

    def test_unexpected_source_error_wrapped(self, sf_zone):
        class Exploding(MockZoneSource):
            def list_active_zones(self):
                raise RuntimeError("boom")

        store = ZoneSnapshotStore(Exploding([sf_zone]))
        with pytest.raises(ZoneSourceError, match="boom"):
            store.refresh_all()

    def test_refresh_zone_updates_one(self, sf_zone, square_zone):
        source = MockZoneSource([sf_zone])
        store = ZoneSnapshotStore(source)
        store.warm_up()
        source.put_zone(square_zone)
        assert store.refresh_zone("square") is True
        assert store.current_snapshot().zone_ids() == frozenset({1, "square"})

    def test_refresh_zone_removes_deactivated(self, sf_zone):
        source = MockZoneSource([sf_zone])
        store = ZoneSnapshotStore(source)
        store.warm_up()
        source.put_zone(make_zone(1, sf_zone.name, sf_zone.boundary, active=False))
        assert store.refresh_zone(1) is False
        assert store.current_snapshot().is_empty

    def test_refresh_zone_drops_invalid(self, sf_zone):
        source = MockZoneSource([sf_zone])
        store = ZoneSnapshotStore(source)
        store.warm_up()
        source.put_zone(make_zone(1, "Now broken", BOWTIE))
        assert store.refresh_zone(1) is False
        assert 1 not in store.current_snapshot()


class TestInvalidate:
    def test_invalidate_removes_zone(self, sf_zone, square_zone, backend):
        store = ZoneSnapshotStore(MockZoneSource([sf_zone, square_zone]), backend=backend)
        store.warm_up()
        assert store.invalidate_zone(1) is True
        assert store.current_snapshot().zone_ids() == frozenset({"square"})
        assert [z.zone_id for z in backend.load()] == ["square"]

    def test_invalidate_unknown(self, sf_zone):
        store = ZoneSnapshotStore(MockZoneSource([sf_zone]))
        store.warm_up()
        version = store.current_snapshot().version
        assert store.invalidate_zone(42) is False
        assert store.current_snapshot().version == version

    def test_invalidated_zone_returns_on_refresh(self, sf_zone):
        store = ZoneSnapshotStore(MockZoneSource([sf_zone]))
        store.warm_up()
        store.invalidate_zone(1)
        store.refresh_all()
        assert 1 in store.current_snapshot()


class TestStats:
    def test_healthy_after_warm_up(self, sf_zone, clock):
        store = ZoneSnapshotStore(MockZoneSource([sf_zone]), clock=clock)
        store.warm_up()
        stats = store.stats()
        assert stats.cached_count == 1
        assert stats.source_count == 1
        assert stats.healthy
        assert stats.last_refresh_at == clock.now()

    def test_unreachable_source(self, sf_zone):
        source = MockZoneSource([sf_zone])
        store = ZoneSnapshotStore(source)
        store.warm_up()
        source.set_available(False)
        stats = store.stats()
        assert stats.source_count == -1
        assert not stats.healthy


class TestConsistency:
    def test_readers_never_see_partial_snapshot(self):
        zones_a = [make_zone(f"a{i}", "A", [(i, 0), (i + 1, 0), (i + 1, 1), (i, 1), (i, 0)])
                   for i in range(20)]
        zones_b = [make_zone(f"b{i}", "B", [(i, 5), (i + 1, 5), (i + 1, 6), (i, 6), (i, 5)])
                   for i in range(30)]
        source = MockZoneSource(zones_a)
        store = ZoneSnapshotStore(source)
        store.warm_up()

        stop = threading.Event()
        seen = set()
        errors = []

        def reader():
            while not stop.is_set():
                snap = store.current_snapshot()
                ids = snap.zone_ids()
                prefixes = {zid[0] for zid in ids}
                if len(prefixes) > 1 or len(ids) not in (20, 30):
                    errors.append(ids)
                seen.add(len(ids))

        def writer():
            for i in range(50):
                target = zones_b if i % 2 == 0 else zones_a
                for z in list(source.list_active_zones()):
                    source.remove_zone(z.zone_id)
                for z in target:
                    source.put_zone(z)
                store.refresh_all()

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        writer()
        stop.set()
        for t in readers:
            t.join()
        assert not errors
        assert seen <= {20, 30}

    def test_concurrent_refreshes_serialised(self, sf_zone):
        source = MockZoneSource([sf_zone], latency_seconds=0.01)
        store = ZoneSnapshotStore(source)
        threads = [threading.Thread(target=store.refresh_all) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.current_snapshot().version == 5
        assert store.current_snapshot().count == 1


class TestRequestRefresh:
    def test_runs_in_background(self, sf_zone):
        source = MockZoneSource([sf_zone])
        store = ZoneSnapshotStore(source)
        assert store.request_refresh() is True
        store.join_background(timeout=5)
        assert store.current_snapshot().count == 1

    def test_coalesces(self, sf_zone):
        source = MockZoneSource([sf_zone], latency_seconds=0.2)
        store = ZoneSnapshotStore(source)
        assert store.request_refresh() is True
        assert store.request_refresh() is False
        store.join_background(timeout=5)
        assert source.list_calls == 1


class TestRefreshScheduler:
    def test_runs_periodically_until_stopped(self):
        calls = []
        scheduler = RefreshScheduler(lambda: calls.append(1), interval_seconds=0.02)
        scheduler.start()
        deadline = time.monotonic() + 2.0
        while len(calls) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        scheduler.stop()
        assert len(calls) >= 3
        assert not scheduler.running
        count = len(calls)
        time.sleep(0.1)
        assert len(calls) == count

    def test_initial_delay(self):
        calls = []
        scheduler = RefreshScheduler(
            lambda: calls.append(1), interval_seconds=0.01, initial_delay_seconds=10,
        )
        scheduler.start()
        time.sleep(0.05)
        scheduler.stop()
        assert calls == []
        assert scheduler.runs == 0

    def test_failing_task_keeps_running(self):
        calls = []

        def task():
            calls.append(1)
            raise RuntimeError("boom")

        scheduler = RefreshScheduler(task, interval_seconds=0.02)
        scheduler.start()
        deadline = time.monotonic() + 2.0
        while len(calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        scheduler.stop()
        assert len(calls) >= 2
        # Failed runs still count as runs
        assert scheduler.runs == len(calls)

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            RefreshScheduler(lambda: None, interval_seconds=0)

    def test_store_lifecycle(self, sf_zone):
        store = ZoneSnapshotStore(
            MockZoneSource([sf_zone]), refresh_interval_seconds=0.02, initial_delay_seconds=0,
        )
        store.start()
        assert store.scheduler.running
        deadline = time.monotonic() + 2.0
        while store.current_snapshot().count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        store.stop()
        assert store.current_snapshot().count == 1
        assert not store.scheduler.running
