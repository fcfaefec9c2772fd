"""Zone snapshot store: warm-up, scheduled refresh, invalidation.

Cache-aside layer over the zone source. Reads never touch the source;
refreshes are the only path that populates the cache. Changes made in the
zone catalog become visible after the next scheduled refresh, a forced
refresh, or an explicit invalidation.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Iterable, Optional

from geofence.models import CacheStats, Zone, ZoneGeometryError, ZoneId, validate_zone
from geofence.utils.clock import ClockBase, SystemClock
from geofence.zones.backend import SnapshotBackendBase
from geofence.zones.snapshot import ZoneSnapshot
from geofence.zones.source import ZoneSourceBase, ZoneSourceError

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Runs a task on a fixed period in a daemon thread until stopped.

    A failed run is not retried early; the next attempt is the next tick.
    """

    def __init__(
        self,
        task: Callable[[], object],
        interval_seconds: float,
        initial_delay_seconds: float = 0.0,
        name: str = "zone-refresh",
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._task = task
        self._interval = interval_seconds
        self._initial_delay = max(0.0, initial_delay_seconds)
        self._name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread.start()
        logger.info(
            "Refresh scheduler started (every %.0fs, first run in %.0fs)",
            self._interval, self._initial_delay,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Refresh scheduler stopped")

    def _loop(self) -> None:
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self._task()
            except Exception:
                logger.exception("Scheduled task %s raised", self._name)
            self.runs += 1
            if self._stop_event.wait(self._interval):
                break


class ZoneSnapshotStore:
    """Holds the published zone snapshot and keeps it fresh.

    The published snapshot is an immutable value behind a single attribute;
    readers take no lock. Rebuild-and-swap operations are serialised by
    one lock so that a scheduled and a manual refresh never interleave.
    """

    def __init__(
        self,
        source: ZoneSourceBase,
        backend: Optional[SnapshotBackendBase] = None,
        clock: Optional[ClockBase] = None,
        refresh_interval_seconds: float = 30 * 60,
        initial_delay_seconds: float = 30 * 60,
    ):
        self._source = source
        self._backend = backend
        self._clock = clock or SystemClock()
        self._snapshot = ZoneSnapshot.empty(created_at=self._clock.now())
        self._version = 0
        self._refresh_lock = threading.Lock()
        self._background_lock = threading.Lock()
        self._background: Optional[threading.Thread] = None
        self._last_refresh_at: Optional[datetime] = None
        self._last_refresh_error: Optional[str] = None
        self._scheduler = RefreshScheduler(
            self.scheduled_refresh,
            interval_seconds=refresh_interval_seconds,
            initial_delay_seconds=initial_delay_seconds,
        )

    # --- Reads ---

    def current_snapshot(self) -> ZoneSnapshot:
        return self._snapshot

    def stats(self) -> CacheStats:
        snapshot = self._snapshot
        try:
            source_count = self._source.count_active_zones()
        except ZoneSourceError as e:
            logger.warning("Could not count source zones for stats: %s", e)
            source_count = -1
        return CacheStats(
            cached_count=snapshot.count,
            source_count=source_count,
            version=snapshot.version,
            last_refresh_at=self._last_refresh_at,
            last_refresh_error=self._last_refresh_error,
        )

    # --- Writes ---

    def warm_up(self) -> int:
        """Build the first snapshot. Never raises; falls back to the backing
        cache, then to an explicitly empty snapshot."""
        logger.info("Starting zone cache warm-up...")
        start = time.monotonic()
        try:
            count = self.refresh_all()
            logger.info(
                "Zone cache warm-up completed: %d zones cached in %.0fms",
                count, (time.monotonic() - start) * 1000,
            )
            return count
        except ZoneSourceError as e:
            logger.error("Zone cache warm-up failed: %s", e)

        zones = self._load_backing()
        with self._refresh_lock:
            if zones:
                snapshot = self._publish(zones, persist=False)
                logger.warning(
                    "Serving %d zones from the backing cache until the source recovers",
                    snapshot.count,
                )
            else:
                snapshot = self._publish([], persist=False)
                logger.warning("Published empty zone snapshot; detection will use fallback")
        return snapshot.count

    def refresh_all(self) -> int:
        """Rebuild the snapshot from the source and swap it in.

        Returns:
            Number of zones in the new snapshot.

        Raises:
            ZoneSourceError: if the source could not be read. The previous
                snapshot stays published.
        """
        with self._refresh_lock:
            try:
                zones = self._source.list_active_zones()
            except ZoneSourceError as e:
                self._last_refresh_error = str(e)
                raise
            except Exception as e:
                self._last_refresh_error = str(e)
                raise ZoneSourceError(f"Zone source failed during refresh: {e}") from e

            snapshot = self._publish(self._validated(zones))
            self._last_refresh_error = None
            logger.info("Zone snapshot v%d published with %d zones", snapshot.version, snapshot.count)
            return snapshot.count

    def scheduled_refresh(self) -> None:
        """One tick of the periodic refresh. Failures keep the stale snapshot."""
        logger.info("Starting scheduled zone cache refresh...")
        try:
            count = self.refresh_all()
            logger.info("Scheduled zone cache refresh completed: %d zones", count)
        except ZoneSourceError as e:
            logger.error(
                "Scheduled zone cache refresh failed, keeping snapshot v%d (%d zones): %s",
                self._snapshot.version, self._snapshot.count, e,
            )

    def refresh_zone(self, zone_id: ZoneId) -> bool:
        """Re-read one zone from the source without a full rebuild.

        Returns:
            True if the zone is in the published snapshot afterwards.

        Raises:
            ZoneSourceError: if the source could not be read.
        """
        with self._refresh_lock:
            zone = self._source.get_zone(zone_id)
            current = self._snapshot
            if zone is not None and zone.active:
                try:
                    validate_zone(zone)
                except ZoneGeometryError as e:
                    logger.error("Refreshed zone %s is invalid, dropping it: %s", zone_id, e)
                    zone = None
            if zone is not None and zone.active:
                snapshot = self._swap(current.with_zone(zone, self._next_version(), self._clock.now()))
                logger.info("Refreshed zone %s in snapshot v%d", zone_id, snapshot.version)
                return True
            if zone_id in current:
                snapshot = self._swap(current.without_zone(zone_id, self._next_version(), self._clock.now()))
                logger.info("Removed zone %s from snapshot v%d", zone_id, snapshot.version)
            return False

    def invalidate_zone(self, zone_id: ZoneId) -> bool:
        """Drop one zone from the published snapshot and the backing cache.

        Returns:
            True if the zone was cached.
        """
        with self._refresh_lock:
            current = self._snapshot
            if zone_id not in current:
                logger.debug("Zone %s not cached, nothing to invalidate", zone_id)
                return False
            snapshot = current.without_zone(zone_id, self._next_version(), self._clock.now())
            self._snapshot = snapshot
            if self._backend is not None:
                try:
                    self._backend.remove(zone_id)
                except Exception as e:
                    logger.warning("Failed to drop zone %s from backing cache: %s", zone_id, e)
            logger.info("Invalidated cached zone %s (snapshot v%d)", zone_id, snapshot.version)
            return True

    def request_refresh(self) -> bool:
        """Start a background refresh unless one is already running.

        Returns:
            True if a new background refresh was started.
        """
        with self._background_lock:
            if self._background is not None and self._background.is_alive():
                return False
            if self._refresh_lock.locked():
                return False
            self._background = threading.Thread(
                target=self.scheduled_refresh, name="zone-refresh-bg", daemon=True,
            )
            self._background.start()
            logger.debug("Background zone refresh requested")
            return True

    def join_background(self, timeout: Optional[float] = None) -> None:
        """Wait for a background refresh started by request_refresh()."""
        thread = self._background
        if thread is not None:
            thread.join(timeout=timeout)

    # --- Lifecycle ---

    def start(self) -> None:
        self._scheduler.start()

    def stop(self) -> None:
        self._scheduler.stop()
        self.join_background(timeout=5.0)

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    # --- Internals (callers hold _refresh_lock) ---

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _validated(self, zones: Iterable[Zone]) -> list[Zone]:
        valid = []
        for zone in zones:
            try:
                valid.append(validate_zone(zone))
            except ZoneGeometryError as e:
                logger.error("Skipping invalid zone %s: %s", zone.zone_id, e)
        return valid

    def _publish(self, zones: list[Zone], persist: bool = True) -> ZoneSnapshot:
        snapshot = ZoneSnapshot(zones, version=self._next_version(), created_at=self._clock.now())
        return self._swap(snapshot, persist=persist)

    def _swap(self, snapshot: ZoneSnapshot, persist: bool = True) -> ZoneSnapshot:
        self._snapshot = snapshot
        self._last_refresh_at = snapshot.created_at
        if persist and self._backend is not None:
            try:
                self._backend.save(snapshot)
            except Exception as e:
                logger.warning("Failed to persist snapshot v%d: %s", snapshot.version, e)
        return snapshot

    def _load_backing(self) -> list[Zone]:
        if self._backend is None:
            return []
        try:
            return self._backend.load()
        except Exception as e:
            logger.error("Failed to load backing snapshot cache: %s", e)
            return []
