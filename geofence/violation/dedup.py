"""Duplicate-violation suppression per (vehicle, zone) pair."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Hashable, Optional

from geofence.models import ZoneId, to_utc

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64


class ViolationDeduplicator:
    """Suppresses repeat violations for a (vehicle, zone) pair inside a window.

    Windows are measured on event timestamps, not arrival time. For a key
    whose last recorded violation is at ``last``, an event at ``at`` is
    suppressed iff ``at < last + window``. So:

    * ``at == last`` is suppressed,
    * ``at == last + window`` is admitted (the window is half-open),
    * an out-of-order event (``at < last``) is suppressed and never moves
      ``last`` backward, so a replay can neither reopen nor extend a window.

    ``try_record`` performs the check and the update as one atomic step per
    key using striped locks; two racing fixes for the same pair cannot both
    be admitted.

    Memory is bounded two ways: entries idle for longer than the window are
    swept every ``sweep_interval`` admissions, and the map never exceeds
    ``max_entries``. At the cap, entries whose window has ended are dropped
    first; only when every entry is live is the least recently admitted one
    evicted, with a warning. A missing entry behaves exactly like a pair
    that never violated.
    """

    def __init__(
        self,
        window_seconds: float = 300.0,
        max_entries: int = 100_000,
        sweep_interval: int = 1000,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._window = timedelta(seconds=window_seconds)
        self._max_entries = max(1, max_entries)
        self._sweep_interval = max(1, sweep_interval)
        # (vehicle_id, zone_id) -> last violation event time
        self._entries: OrderedDict[tuple[str, ZoneId], datetime] = OrderedDict()
        self._map_lock = threading.Lock()
        self._stripes = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        self._admitted_since_sweep = 0

    @property
    def window(self) -> timedelta:
        return self._window

    @property
    def size(self) -> int:
        with self._map_lock:
            return len(self._entries)

    def _stripe(self, key: Hashable) -> threading.Lock:
        return self._stripes[hash(key) % _LOCK_STRIPES]

    def _suppressed(self, last: Optional[datetime], at: datetime) -> bool:
        return last is not None and at < last + self._window

    def last_violation(self, vehicle_id: str, zone_id: ZoneId) -> Optional[datetime]:
        with self._map_lock:
            return self._entries.get((vehicle_id, zone_id))

    def should_suppress(self, vehicle_id: str, zone_id: ZoneId, at: datetime) -> bool:
        """Read-only check. Use try_record() when the answer decides an emit."""
        return self._suppressed(self.last_violation(vehicle_id, zone_id), to_utc(at))

    def record(self, vehicle_id: str, zone_id: ZoneId, at: datetime) -> None:
        """Record a violation; the stored time only ever moves forward."""
        key = (vehicle_id, zone_id)
        with self._stripe(key):
            self._store(key, to_utc(at))

    def try_record(self, vehicle_id: str, zone_id: ZoneId, at: datetime) -> bool:
        """Atomically check and record.

        Returns:
            True if the violation should be emitted (and has been recorded),
            False if it is suppressed.
        """
        key = (vehicle_id, zone_id)
        at = to_utc(at)
        with self._stripe(key):
            with self._map_lock:
                last = self._entries.get(key)
            if self._suppressed(last, at):
                logger.debug(
                    "Duplicate violation suppressed: vehicle=%s zone=%s at=%s (last=%s)",
                    vehicle_id, zone_id, at.isoformat(), last.isoformat(),
                )
                return False
            self._store(key, at)

        with self._map_lock:
            self._admitted_since_sweep += 1
            due = self._admitted_since_sweep >= self._sweep_interval
            if due:
                self._admitted_since_sweep = 0
        if due:
            self.sweep(at)
        return True

    def _store(self, key: tuple[str, ZoneId], at: datetime) -> None:
        with self._map_lock:
            last = self._entries.get(key)
            if last is not None and last >= at:
                return
            self._entries[key] = at
            self._entries.move_to_end(key)
            if len(self._entries) > self._max_entries:
                self._enforce_cap(at)

    def _enforce_cap(self, now: datetime) -> None:
        # Caller holds _map_lock. Expired entries go first; a live entry is
        # dropped only when every entry is still inside its window.
        removed = self._drop_expired(to_utc(now) - self._window)
        if removed:
            logger.debug("Dedup table full, dropped %d expired entries", removed)
        while len(self._entries) > self._max_entries:
            evicted, last = self._entries.popitem(last=False)
            logger.warning(
                "Dedup table full (%d entries), evicted live entry %s (last=%s); "
                "a repeat violation may be emitted inside its window",
                self._max_entries, evicted, last.isoformat(),
            )

    def _drop_expired(self, cutoff: datetime) -> int:
        stale = [k for k, last in self._entries.items() if last <= cutoff]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def sweep(self, now: datetime) -> int:
        """Evict entries whose window ended before ``now``.

        Returns:
            Number of entries removed.
        """
        cutoff = to_utc(now) - self._window
        with self._map_lock:
            removed = self._drop_expired(cutoff)
        if removed:
            logger.debug("Dedup sweep evicted %d idle entries", removed)
        return removed

    def reset(self) -> None:
        with self._map_lock:
            self._entries.clear()
        self._admitted_since_sweep = 0
