"""
Aggregator Service

Wires the provider coordinator, aircraft state store and alert engine
together and exposes the subscriber streams consumed by a presentation
layer: the aircraft view, combined source status with message rate, alert
events and the active highlight colours.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .adsb_logger import LogCategory, get_category_logger
from .aircraft import AircraftRecord
from .aircraft_tracker import AircraftStateStore
from .alert_engine import AlertEngine, AlertEvent
from .config import AggregatorConfig, AlertColor, SettingsSnapshot, SourceConfig
from .message_source import ADSBProvider, SourceStatus, create_provider
from .source_manager import ProviderCoordinator

logger = logging.getLogger(__name__)
alert_logger = get_category_logger(LogCategory.ALERTS)

SETTINGS_DEBOUNCE_SEC = 0.5


class AggregatorService:
    """
    Feed aggregation service

    Every change of the aircraft view first refreshes the highlight map and
    then runs edge-triggered alert evaluation; new alerts go to the alert
    subscribers.
    """

    def __init__(self, settings: Optional[SettingsSnapshot] = None,
                 provider_factory: Callable[[SourceConfig, SettingsSnapshot], ADSBProvider] = create_provider,
                 clock: Callable[[], datetime] = datetime.now,
                 debounce_sec: float = SETTINGS_DEBOUNCE_SEC):
        """
        Initialize the service

        Args:
            settings: Initial settings snapshot
            provider_factory: Builds providers for source configurations
            clock: Time source shared by the store and alert engine
            debounce_sec: Quiet period before queued settings are applied
        """
        self.settings = settings or SettingsSnapshot()
        self.debounce_sec = debounce_sec

        self.store = AircraftStateStore(self.settings, clock=clock)
        self.coordinator = ProviderCoordinator(self.store, self.settings, provider_factory)
        self.alert_engine = AlertEngine(
            rules=self.settings.alert_rules,
            reference=self.settings.reference_location,
            cooldown_sec=self.settings.alert_cooldown_sec,
            clock=clock,
        )

        self._aircraft_subscribers: List[Callable[[List[AircraftRecord]], None]] = []
        self._status_subscribers: List[Callable[[SourceStatus, float], None]] = []
        self._alert_subscribers: List[Callable[[AlertEvent], None]] = []
        self._highlight_subscribers: List[Callable[[Dict[str, AlertColor]], None]] = []

        self._settings_lock = threading.Lock()
        self._pending_settings: Optional[SettingsSnapshot] = None
        self._debounce_timer: Optional[threading.Timer] = None
        self.running = False

        self.store.add_listener(self._on_aircraft_changed)
        self.coordinator.add_listener(self._on_status_changed)

    @classmethod
    def from_config(cls, config: AggregatorConfig, **kwargs) -> 'AggregatorService':
        return cls(config.snapshot(), **kwargs)

    # Subscriptions

    def subscribe_aircraft(self, callback: Callable[[List[AircraftRecord]], None]) -> None:
        self._aircraft_subscribers.append(callback)

    def subscribe_status(self, callback: Callable[[SourceStatus, float], None]) -> None:
        self._status_subscribers.append(callback)

    def subscribe_alerts(self, callback: Callable[[AlertEvent], None]) -> None:
        self._alert_subscribers.append(callback)

    def subscribe_highlights(self, callback: Callable[[Dict[str, AlertColor]], None]) -> None:
        self._highlight_subscribers.append(callback)

    # Lifecycle

    def start(self) -> None:
        logger.info(f"Starting aggregator with {len(self.settings.enabled_sources)} enabled source(s)")
        self.running = True
        self.store.start()
        self.coordinator.start_all()

    def stop(self) -> None:
        logger.info("Stopping aggregator")
        self.running = False
        with self._settings_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
            self._pending_settings = None
        self.coordinator.stop_all()
        self.store.stop()

    def restart(self) -> None:
        self.coordinator.restart()

    # Settings

    def apply_settings(self, settings: SettingsSnapshot) -> None:
        """
        Queue new settings; they take effect once no further settings have
        arrived for the debounce period
        """
        with self._settings_lock:
            self._pending_settings = settings
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            self._debounce_timer = threading.Timer(self.debounce_sec, self._apply_pending_settings)
            self._debounce_timer.daemon = True
            self._debounce_timer.start()

    def _apply_pending_settings(self) -> None:
        with self._settings_lock:
            settings = self._pending_settings
            self._pending_settings = None
            self._debounce_timer = None
        if settings is not None:
            self.apply_settings_now(settings)

    def apply_settings_now(self, settings: SettingsSnapshot) -> None:
        """Re-sync providers, store view and alert rules with a snapshot"""
        logger.info("Applying settings")
        self.settings = settings
        self.alert_engine.set_rules(settings.alert_rules)
        self.alert_engine.set_reference_position(settings.reference_location)
        self.alert_engine.cooldown_sec = settings.alert_cooldown_sec
        self.coordinator.sync(settings)
        self.store.apply_settings(settings)

    # Event fan-out

    def _on_aircraft_changed(self, aircraft: List[AircraftRecord]) -> None:
        colors = self.alert_engine.update_active_alerts(aircraft)
        alerts = self.alert_engine.evaluate(aircraft)

        self._notify(self._aircraft_subscribers, aircraft)
        self._notify(self._highlight_subscribers, colors)
        for alert in alerts:
            alert_logger.info(f"{alert.title} - {alert.rule_name}")
            self._notify(self._alert_subscribers, alert)

    def _on_status_changed(self, status: SourceStatus, rate: float) -> None:
        self._notify(self._status_subscribers, status, rate)

    @staticmethod
    def _notify(subscribers: List[Callable], *args) -> None:
        for callback in list(subscribers):
            try:
                callback(*args)
            except Exception as e:
                logger.exception(f"Subscriber failed: {e}")

    # Read surface

    def get_aircraft(self) -> List[AircraftRecord]:
        return self.store.get_aircraft()

    def get_recent_alerts(self, limit: Optional[int] = None) -> List[AlertEvent]:
        return self.alert_engine.get_recent_alerts(limit)

    def get_status(self) -> Dict[str, Any]:
        store_stats = self.store.get_statistics()
        alert_stats = self.alert_engine.get_statistics()
        return {
            'status': self.coordinator.combined_status.display_text,
            'message_rate': self.coordinator.total_message_rate,
            'aircraft_tracked': store_stats['aircraft_tracked'],
            'aircraft_displayed': store_stats['aircraft_displayed'],
            'last_update': store_stats['last_update'],
            'alerts_generated': alert_stats['alerts_generated'],
            'sources': self.coordinator.get_sources_status(),
        }
