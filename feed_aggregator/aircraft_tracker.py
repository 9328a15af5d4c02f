"""
Aircraft Tracker Module

Single merge point for updates from every active provider. Keeps one
ICAO-keyed map, ages out stale aircraft and publishes the display-ready,
distance-sorted view to subscribers.
"""

import logging
import math
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .aircraft import AircraftRecord, AircraftUpdate, Removed, Snapshot, Updated
from .config import SettingsSnapshot

logger = logging.getLogger(__name__)

# max_display at or above this means no cap
UNLIMITED_DISPLAY = 999

AircraftListener = Callable[[List[AircraftRecord]], None]


class AircraftStateStore:
    """
    Authoritative aircraft map shared by all sources

    Updated merges field by field, Removed deletes, Snapshot replaces the
    whole map. A Snapshot from a polling source therefore also drops
    aircraft that only a streaming source has reported since the last poll.

    All mutation and view computation happens under one lock, so readers
    never see a partially applied update.
    """

    def __init__(self, settings: Optional[SettingsSnapshot] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize state store

        Args:
            settings: Settings snapshot supplying reference point, stale
                threshold, sweep interval and view parameters
            clock: Time source, injectable for tests
        """
        self.clock = clock
        self.aircraft: Dict[str, AircraftRecord] = {}
        self.last_update: Optional[datetime] = None
        self.view: List[AircraftRecord] = []

        self._lock = threading.RLock()
        self._listeners: List[AircraftListener] = []
        self._sweep_timer: Optional[threading.Timer] = None
        self._sweeping = False

        self.stats = {
            'updates_applied': 0,
            'snapshots_applied': 0,
            'aircraft_removed': 0,
            'aircraft_expired': 0,
        }

        self.apply_settings(settings or SettingsSnapshot())

    def apply_settings(self, settings: SettingsSnapshot) -> None:
        """Take new view and ageing parameters and republish the view"""
        with self._lock:
            self.reference = settings.reference_location
            self.stale_threshold_sec = settings.stale_threshold_sec
            self.sweep_interval_sec = settings.sweep_interval_sec
            self.max_display = settings.max_aircraft_display
            self.show_without_position = settings.show_aircraft_without_position
            if self.aircraft or self.view:
                self._publish()

    def add_listener(self, listener: AircraftListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AircraftListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def apply_update(self, update: AircraftUpdate) -> None:
        """
        Merge one update from a provider

        Args:
            update: Updated, Removed or Snapshot event
        """
        with self._lock:
            if isinstance(update, Updated):
                record = update.record
                existing = self.aircraft.get(record.icao_hex)
                if existing is None:
                    self.aircraft[record.icao_hex] = record.copy()
                    logger.debug(f"New aircraft: {record}")
                else:
                    existing.merge_from(record)
                self.stats['updates_applied'] += 1

            elif isinstance(update, Removed):
                if self.aircraft.pop(update.icao_hex.upper(), None) is not None:
                    self.stats['aircraft_removed'] += 1

            elif isinstance(update, Snapshot):
                self.aircraft = {record.icao_hex: record.copy() for record in update.records}
                self.stats['snapshots_applied'] += 1

            else:
                logger.warning(f"Ignoring unknown update type: {type(update).__name__}")
                return

            self._publish()

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Evict aircraft not updated within the stale threshold

        Args:
            now: Reference time, defaults to the store clock

        Returns:
            Number of aircraft removed
        """
        now = now or self.clock()
        with self._lock:
            stale = [icao for icao, record in self.aircraft.items()
                     if record.age_seconds(now) > self.stale_threshold_sec]
            for icao in stale:
                del self.aircraft[icao]

            if stale:
                self.stats['aircraft_expired'] += len(stale)
                logger.debug(f"Expired {len(stale)} stale aircraft")
                self._publish()

        return len(stale)

    def clear_all(self) -> None:
        with self._lock:
            self.aircraft.clear()
            self._publish()

    def get_aircraft(self) -> List[AircraftRecord]:
        """Current sorted, filtered and capped view"""
        with self._lock:
            return list(self.view)

    def get_record(self, icao_hex: str) -> Optional[AircraftRecord]:
        with self._lock:
            record = self.aircraft.get(icao_hex.upper())
            return record.copy() if record is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self.aircraft)

    def build_view(self) -> List[AircraftRecord]:
        """
        Compute the display view from the current map

        Aircraft are ordered by distance from the reference point; aircraft
        without a position sort last and are dropped unless
        show_without_position is set. The list is capped at max_display.
        """
        with self._lock:
            records = [record.copy() for record in self.aircraft.values()]
            if not self.show_without_position:
                records = [record for record in records if record.position is not None]

            reference = self.reference

            def sort_key(record: AircraftRecord):
                distance = record.distance_from(reference) if reference else None
                return (math.inf if distance is None else distance, record.icao_hex)

            records.sort(key=sort_key)

            if self.max_display < UNLIMITED_DISPLAY:
                records = records[:self.max_display]
            return records

    def _publish(self) -> None:
        self.view = self.build_view()
        self.last_update = self.clock()
        view = list(self.view)
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as e:
                logger.exception(f"Aircraft listener failed: {e}")

    def start(self) -> None:
        """Start the periodic staleness sweep"""
        with self._lock:
            if self._sweeping:
                return
            self._sweeping = True
        logger.info(f"Stale sweep every {self.sweep_interval_sec}s, threshold {self.stale_threshold_sec}s")
        self._schedule_sweep()

    def stop(self) -> None:
        with self._lock:
            self._sweeping = False
            timer = self._sweep_timer
            self._sweep_timer = None
        if timer is not None:
            timer.cancel()

    def _schedule_sweep(self) -> None:
        with self._lock:
            if not self._sweeping:
                return
            timer = threading.Timer(self.sweep_interval_sec, self._sweep_tick)
            timer.daemon = True
            self._sweep_timer = timer
        timer.start()

    def _sweep_tick(self) -> None:
        self.sweep()
        self._schedule_sweep()

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self.stats,
                'aircraft_tracked': len(self.aircraft),
                'aircraft_displayed': len(self.view),
                'last_update': self.last_update.isoformat() if self.last_update else None,
            }
