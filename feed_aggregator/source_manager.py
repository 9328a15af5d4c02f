"""
Source Management

ProviderCoordinator owns the live providers built from the enabled source
configurations, feeds their updates into the aircraft state store and
aggregates their status and message rates.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from .aircraft import AircraftUpdate
from .aircraft_tracker import AircraftStateStore
from .config import SettingsSnapshot, SourceConfig
from .exceptions import ConfigurationError
from .message_source import ADSBProvider, BeastProvider, SourceState, SourceStatus, create_provider

logger = logging.getLogger(__name__)

CombinedStatusListener = Callable[[SourceStatus, float], None]


def combine_statuses(statuses: Iterable[SourceStatus]) -> SourceStatus:
    """
    Fold per-source statuses into one

    Connected wins (aircraft counts summed), then Reconnecting (reporting the
    highest attempt), then Connecting, then Error, then Disconnected.

    Args:
        statuses: Status of every live provider

    Returns:
        Combined status
    """
    statuses = list(statuses)
    connected = [s for s in statuses if s.state is SourceState.CONNECTED]
    if connected:
        return SourceStatus.connected(sum(s.aircraft_count for s in connected))

    reconnecting = [s for s in statuses if s.state is SourceState.RECONNECTING]
    if reconnecting:
        worst = max(reconnecting, key=lambda s: s.attempt)
        return SourceStatus.reconnecting(worst.attempt, worst.max_attempts)

    if any(s.state is SourceState.CONNECTING for s in statuses):
        return SourceStatus.connecting()

    errors = [s for s in statuses if s.state is SourceState.ERROR]
    if len(errors) == 1:
        return SourceStatus.error(errors[0].message or "Connection failed")
    if errors:
        return SourceStatus.error(f"{len(errors)} sources failed")

    return SourceStatus.disconnected()


class ProviderCoordinator:
    """
    Keeps the provider set in line with the configured sources

    Providers are keyed by source id. A changed source must arrive with a
    new id (or be removed and re-added) to be rebuilt; an unchanged id is
    left running.
    """

    def __init__(self, store: AircraftStateStore, settings: Optional[SettingsSnapshot] = None,
                 provider_factory: Callable[[SourceConfig, SettingsSnapshot], ADSBProvider] = create_provider):
        """
        Initialize coordinator

        Args:
            store: Aircraft state store receiving every provider's updates
            settings: Initial settings snapshot
            provider_factory: Builds a provider for a source configuration
        """
        self.store = store
        self.settings = settings or SettingsSnapshot()
        self.provider_factory = provider_factory

        self.providers: Dict[str, ADSBProvider] = {}
        self.combined_status = SourceStatus.disconnected()
        self.total_message_rate = 0.0
        self.running = False

        self._lock = threading.RLock()
        self._listeners: List[CombinedStatusListener] = []

        self.stats = {
            'providers_created': 0,
            'providers_removed': 0,
            'provider_errors': 0,
        }

    def add_listener(self, listener: CombinedStatusListener) -> None:
        self._listeners.append(listener)

    def sync(self, settings: Optional[SettingsSnapshot] = None) -> None:
        """
        Reconcile live providers with the enabled sources

        Providers whose source is gone or disabled are disconnected and
        dropped; new sources get a provider, connected right away when the
        coordinator is running. Existing providers are left alone.

        Args:
            settings: New settings snapshot, or None to re-use the current one
        """
        with self._lock:
            if settings is not None:
                self.settings = settings

            desired = {source.id: source for source in self.settings.enabled_sources}

            removed = [self.providers.pop(pid) for pid in list(self.providers) if pid not in desired]
            for provider in removed:
                provider.remove_listeners()
                self.stats['providers_removed'] += 1

            added = []
            for source_id, source in desired.items():
                if source_id in self.providers:
                    provider = self.providers[source_id]
                    if isinstance(provider, BeastProvider):
                        provider.set_reference_position(self.settings.reference_location)
                    continue
                try:
                    provider = self._build_provider(source)
                except ConfigurationError as e:
                    self.stats['provider_errors'] += 1
                    logger.error(f"Cannot create provider for {source.name}: {e}")
                    continue
                self.providers[source_id] = provider
                added.append(provider)

            running = self.running

        # Provider I/O threads call back into the coordinator, so never
        # connect or disconnect while holding the lock
        for provider in removed:
            provider.disconnect()
            logger.info(f"Removed source {provider.name}")

        if running:
            for provider in added:
                provider.connect()

        self._update_combined_status()

    def start_all(self) -> None:
        """Sync with the current settings and connect every provider"""
        with self._lock:
            self.running = True
        self.sync()

        with self._lock:
            providers = list(self.providers.values())
        for provider in providers:
            provider.connect()
        logger.info(f"Started {len(providers)} source(s)")
        self._update_combined_status()

    def stop_all(self) -> None:
        """Disconnect every provider and clear the aircraft store"""
        with self._lock:
            self.running = False
            providers = list(self.providers.values())

        for provider in providers:
            provider.disconnect()

        self.store.clear_all()
        logger.info(f"Stopped {len(providers)} source(s)")
        self._update_combined_status()

    def restart(self) -> None:
        self.stop_all()
        self.start_all()

    def get_provider(self, source_id: str) -> Optional[ADSBProvider]:
        return self.providers.get(source_id)

    def get_sources_status(self) -> List[Dict[str, object]]:
        with self._lock:
            return [provider.get_status() for provider in self.providers.values()]

    def _build_provider(self, source: SourceConfig) -> ADSBProvider:
        provider = self.provider_factory(source, self.settings)
        provider.add_update_listener(self._on_update)
        provider.add_status_listener(self._on_status)
        provider.add_rate_listener(self._on_rate)
        self.stats['providers_created'] += 1
        logger.info(f"Added {provider.protocol.value} source {source.name} ({source.url_string})")
        return provider

    def _on_update(self, provider: ADSBProvider, update: AircraftUpdate) -> None:
        self.store.apply_update(update)

    def _on_status(self, provider: ADSBProvider, status: SourceStatus) -> None:
        logger.debug(f"Source {provider.name}: {status.display_text}")
        self._update_combined_status()

    def _on_rate(self, provider: ADSBProvider, rate: float) -> None:
        self._update_combined_status()

    def _update_combined_status(self) -> None:
        with self._lock:
            providers = list(self.providers.values())
            status = combine_statuses(p.status for p in providers)
            rate = sum(p.message_rate for p in providers)
            changed = status != self.combined_status or rate != self.total_message_rate
            if status != self.combined_status:
                logger.info(f"Combined status: {status.display_text}")
            self.combined_status = status
            self.total_message_rate = rate

        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(status, rate)
            except Exception as e:
                logger.exception(f"Status listener failed: {e}")
