"""
Message Source Management

Uniform provider contract over the three feed types. A provider wraps one
decoder and one connection, republishes decoded updates to its listeners,
reports a SourceStatus and keeps a messages-per-second gauge.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .aircraft import AircraftUpdate, Coordinate
from .config import ProtocolKind, SettingsSnapshot, SourceConfig
from .connection import ConnectionPhase, ConnectionState, HTTPPoller, TCPConnection
from .decoder import BeastDecoder, Dump1090Decoder, SBSDecoder
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class SourceState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class SourceStatus:
    """Connectivity of one source (or the combination of all of them)"""
    state: SourceState
    aircraft_count: int = 0
    attempt: int = 0
    max_attempts: int = 0
    message: Optional[str] = None

    @classmethod
    def disconnected(cls) -> 'SourceStatus':
        return cls(SourceState.DISCONNECTED)

    @classmethod
    def connecting(cls) -> 'SourceStatus':
        return cls(SourceState.CONNECTING)

    @classmethod
    def connected(cls, aircraft_count: int) -> 'SourceStatus':
        return cls(SourceState.CONNECTED, aircraft_count=aircraft_count)

    @classmethod
    def reconnecting(cls, attempt: int, max_attempts: int) -> 'SourceStatus':
        return cls(SourceState.RECONNECTING, attempt=attempt, max_attempts=max_attempts)

    @classmethod
    def error(cls, message: str) -> 'SourceStatus':
        return cls(SourceState.ERROR, message=message)

    @property
    def is_connected(self) -> bool:
        return self.state is SourceState.CONNECTED

    @property
    def display_text(self) -> str:
        if self.state is SourceState.CONNECTED:
            return f"Connected ({self.aircraft_count} aircraft)"
        if self.state is SourceState.RECONNECTING:
            return f"Reconnecting ({self.attempt}/{self.max_attempts})"
        if self.state is SourceState.ERROR:
            return f"Error: {self.message}"
        return self.state.value.capitalize()


StatusListener = Callable[['ADSBProvider', SourceStatus], None]
UpdateListener = Callable[['ADSBProvider', AircraftUpdate], None]
RateListener = Callable[['ADSBProvider', float], None]


class ADSBProvider(ABC):
    """
    Base class for feed providers

    connect() is a no-op while running. disconnect() stops I/O and resets
    every cache so the next connect() starts clean.
    """

    protocol: ProtocolKind

    def __init__(self, config: SourceConfig, settings: Optional[SettingsSnapshot] = None,
                 rate_interval: float = 1.0):
        """
        Initialize provider

        Args:
            config: Source configuration this provider is built from
            settings: Settings snapshot in effect when the provider is built
            rate_interval: Seconds between message rate recomputations
        """
        self.config = config
        self.settings = settings or SettingsSnapshot()
        self.rate_interval = rate_interval

        self.status = SourceStatus.disconnected()
        self.message_rate = 0.0
        self._message_count = 0

        self._status_listeners: List[StatusListener] = []
        self._update_listeners: List[UpdateListener] = []
        self._rate_listeners: List[RateListener] = []

        self._lock = threading.RLock()
        self._running = False
        self._generation = 0
        self._rate_timer: Optional[threading.Timer] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_running(self) -> bool:
        return self._running

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_update_listener(self, listener: UpdateListener) -> None:
        self._update_listeners.append(listener)

    def add_rate_listener(self, listener: RateListener) -> None:
        self._rate_listeners.append(listener)

    def remove_listeners(self) -> None:
        self._status_listeners.clear()
        self._update_listeners.clear()
        self._rate_listeners.clear()

    def connect(self) -> None:
        """Start I/O; calling it again while running does nothing"""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._generation += 1
            self._message_count = 0
            self.message_rate = 0.0
            generation = self._generation

        logger.info(f"Connecting source {self.name} ({self.config.url_string})")
        self._set_status(SourceStatus.connecting(), generation)
        self._schedule_rate_tick(generation)
        self._open_connection()

    def disconnect(self) -> None:
        """Stop I/O and reset caches; safe to call in any state"""
        with self._lock:
            self._running = False
            self._generation += 1
            generation = self._generation
            timer = self._rate_timer
            self._rate_timer = None
        if timer is not None:
            timer.cancel()

        self._close_connection()

        with self._lock:
            self._reset_caches()
            self.message_rate = 0.0
            self._message_count = 0

        logger.info(f"Disconnected source {self.name}")
        self._set_status(SourceStatus.disconnected(), generation)

    def get_status(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'protocol': self.protocol.value,
            'url': self.config.url_string,
            'status': self.status.display_text,
            'message_rate': self.message_rate,
        }

    @abstractmethod
    def _open_connection(self) -> None:
        pass

    @abstractmethod
    def _close_connection(self) -> None:
        pass

    @abstractmethod
    def _reset_caches(self) -> None:
        pass

    def _on_rate_tick(self, now: datetime) -> None:
        """Per-second housekeeping hook"""
        pass

    def _schedule_rate_tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._running:
                return
            timer = threading.Timer(self.rate_interval, self._rate_tick, args=(generation,))
            timer.daemon = True
            self._rate_timer = timer
        timer.start()

    def _rate_tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self.message_rate = self._message_count / self.rate_interval
            self._message_count = 0
            rate = self.message_rate
            self._on_rate_tick(datetime.now())

        for listener in list(self._rate_listeners):
            try:
                listener(self, rate)
            except Exception as e:
                logger.exception(f"Rate listener for {self.name} failed: {e}")
        self._schedule_rate_tick(generation)

    def _set_status(self, status: SourceStatus, generation: int) -> None:
        with self._lock:
            if generation != self._generation or status == self.status:
                return
            self.status = status
        for listener in list(self._status_listeners):
            try:
                listener(self, status)
            except Exception as e:
                logger.exception(f"Status listener for {self.name} failed: {e}")

    def _publish(self, updates: List[AircraftUpdate], generation: int) -> None:
        """Deliver updates in arrival order unless a disconnect happened meanwhile"""
        for update in updates:
            if generation != self._generation:
                return
            for listener in list(self._update_listeners):
                try:
                    listener(self, update)
                except Exception as e:
                    logger.exception(f"Update listener for {self.name} failed: {e}")

    def _connection_state_changed(self, state: ConnectionState, generation: int) -> None:
        """Map transport state onto source status"""
        if state.phase is ConnectionPhase.CONNECTING:
            self._set_status(SourceStatus.connecting(), generation)
        elif state.phase is ConnectionPhase.RECONNECTING:
            self._set_status(SourceStatus.reconnecting(state.attempt, state.max_attempts), generation)
        elif state.phase is ConnectionPhase.ERROR:
            self._set_status(SourceStatus.error(state.message or "Connection failed"), generation)
        elif state.phase is ConnectionPhase.DISCONNECTED:
            self._set_status(SourceStatus.disconnected(), generation)
        # CONNECTED is reported once the first message has been decoded

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.config.url_string})"


class Dump1090Provider(ADSBProvider):
    """Polls a dump1090/readsb aircraft.json endpoint"""

    protocol = ProtocolKind.DUMP1090

    def __init__(self, config: SourceConfig, settings: Optional[SettingsSnapshot] = None,
                 rate_interval: float = 1.0):
        super().__init__(config, settings, rate_interval)
        self.decoder = Dump1090Decoder()
        self.connection: Optional[HTTPPoller] = None

    def _open_connection(self) -> None:
        generation = self._generation
        poller = HTTPPoller(
            url=self.config.url_string,
            host=self.config.host,
            port=self.config.port,
            refresh_interval=self.settings.refresh_interval_sec,
            retry=self.config.retry,
            name=self.name,
        )
        poller.state_listener = lambda state: self._connection_state_changed(state, generation)
        poller.body_handler = lambda body: self._handle_body(body, generation)
        self.connection = poller
        poller.connect()

    def _close_connection(self) -> None:
        if self.connection is not None:
            self.connection.disconnect()
            self.connection = None

    def _reset_caches(self) -> None:
        pass

    def _handle_body(self, body: bytes, generation: int) -> None:
        # DecodeError propagates so the poller counts the cycle as failed
        snapshot = self.decoder.decode(body)
        with self._lock:
            if generation != self._generation:
                return
            self._message_count += len(snapshot.records)
        self._set_status(SourceStatus.connected(len(snapshot.records)), generation)
        self._publish([snapshot], generation)


class _StreamingProvider(ADSBProvider):
    """Shared plumbing for the TCP stream providers"""

    def __init__(self, config: SourceConfig, settings: Optional[SettingsSnapshot] = None,
                 rate_interval: float = 1.0):
        super().__init__(config, settings, rate_interval)
        self.connection: Optional[TCPConnection] = None
        self.decoder = self._create_decoder()

    @abstractmethod
    def _create_decoder(self):
        pass

    def _open_connection(self) -> None:
        generation = self._generation
        connection = TCPConnection(self.config.host, self.config.port,
                                   retry=self.config.retry, name=self.name)
        connection.state_listener = lambda state: self._connection_state_changed(state, generation)
        connection.data_handler = lambda data: self._handle_data(data, generation)
        self.connection = connection
        connection.connect()

    def _close_connection(self) -> None:
        if self.connection is not None:
            self.connection.disconnect()
            self.connection = None

    def _reset_caches(self) -> None:
        self.decoder.reset()

    def _handle_data(self, data: bytes, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            updates = self.decoder.feed(data)
            self._message_count += len(updates)
            aircraft_count = len(self.decoder.aircraft)

        if updates:
            self._set_status(SourceStatus.connected(aircraft_count), generation)
            self._publish(updates, generation)

    def _on_rate_tick(self, now: datetime) -> None:
        pruned = self.decoder.prune(now, self.settings.stale_threshold_sec)
        if pruned:
            logger.debug(f"{self.name}: pruned {pruned} stale aircraft from decoder cache")


class SBSProvider(_StreamingProvider):
    """SBS BaseStation text feed over TCP"""

    protocol = ProtocolKind.SBS

    def _create_decoder(self) -> SBSDecoder:
        return SBSDecoder()


class BeastProvider(_StreamingProvider):
    """Beast binary feed over TCP"""

    protocol = ProtocolKind.BEAST

    def _create_decoder(self) -> BeastDecoder:
        return BeastDecoder(self.settings.reference_location)

    def set_reference_position(self, reference: Optional[Coordinate]) -> None:
        with self._lock:
            self.decoder.set_reference_position(reference)


PROVIDER_CLASSES = {
    ProtocolKind.DUMP1090: Dump1090Provider,
    ProtocolKind.SBS: SBSProvider,
    ProtocolKind.BEAST: BeastProvider,
}


def create_provider(config: SourceConfig, settings: Optional[SettingsSnapshot] = None) -> ADSBProvider:
    """
    Build the provider for a source configuration

    Raises:
        ConfigurationError: If the protocol is not one of the known kinds
    """
    try:
        provider_class = PROVIDER_CLASSES[config.protocol]
    except KeyError:
        raise ConfigurationError(f"Unsupported protocol: {config.protocol}") from None
    return provider_class(config, settings)
