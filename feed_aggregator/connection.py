"""
Connection Management

Reconnecting transports for feed sources: a streaming TCP client used by the
SBS and Beast providers and a polling HTTP client used by the dump1090
provider. Both share one RetryPolicy and report their state through a
listener callback. Framing and decoding are left to the caller.
"""

import logging
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import requests

from .config import RetryPolicy
from .exceptions import ConnectionFailedError, DecodeError

logger = logging.getLogger(__name__)

__all__ = ['ConnectionPhase', 'ConnectionState', 'RetryPolicy', 'TCPConnection', 'HTTPPoller']


class ConnectionPhase(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    """Transport state reported to the owning provider"""
    phase: ConnectionPhase
    attempt: int = 0
    max_attempts: int = 0
    next_retry_in: float = 0.0
    message: Optional[str] = None

    @classmethod
    def disconnected(cls) -> 'ConnectionState':
        return cls(ConnectionPhase.DISCONNECTED)

    @classmethod
    def connecting(cls) -> 'ConnectionState':
        return cls(ConnectionPhase.CONNECTING)

    @classmethod
    def connected(cls) -> 'ConnectionState':
        return cls(ConnectionPhase.CONNECTED)

    @classmethod
    def reconnecting(cls, attempt: int, max_attempts: int, next_retry_in: float) -> 'ConnectionState':
        return cls(ConnectionPhase.RECONNECTING, attempt, max_attempts, next_retry_in)

    @classmethod
    def error(cls, message: str) -> 'ConnectionState':
        return cls(ConnectionPhase.ERROR, message=message)

    def __str__(self) -> str:
        if self.phase is ConnectionPhase.RECONNECTING:
            return f"reconnecting ({self.attempt}/{self.max_attempts}, retry in {self.next_retry_in:.1f}s)"
        if self.phase is ConnectionPhase.ERROR:
            return f"error: {self.message}"
        return self.phase.value


StateListener = Callable[[ConnectionState], None]


def validate_endpoint(host: str, port: int) -> Optional[str]:
    """Return a reason string when host/port cannot be used, else None"""
    if not host or not host.strip():
        return "Invalid host: empty"
    if not isinstance(port, int) or not 1 <= port <= 65535:
        return f"Invalid port: {port}"
    return None


class _RetryingConnection:
    """
    Shared lifecycle for the TCP and HTTP transports

    Every connect() starts a new generation with its own stop event. The
    worker thread only reports state or delivers data while its generation
    is current, so nothing scheduled before a disconnect() can fire after it.
    """

    def __init__(self, host: str, port: int, retry: Optional[RetryPolicy] = None,
                 name: Optional[str] = None):
        self.host = host
        self.port = port
        self.retry = retry or RetryPolicy()
        self.name = name or f"{host}:{port}"

        self.state = ConnectionState.disconnected()
        self.state_listener: Optional[StateListener] = None

        self._lock = threading.RLock()
        self._generation = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.stats = {
            'connect_attempts': 0,
            'failures': 0,
            'bytes_received': 0,
        }

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def connect(self) -> None:
        """Start the worker; no-op while it is already running"""
        with self._lock:
            if self._thread is not None:
                return

            reason = validate_endpoint(self.host, self.port)
            if reason:
                logger.error(f"{self.name}: {reason}")
                self._set_state(ConnectionState.error(reason), self._generation)
                return

            self._generation += 1
            self._stop_event = threading.Event()
            generation = self._generation
            self._thread = threading.Thread(
                target=self._run,
                args=(generation, self._stop_event),
                name=f"{type(self).__name__}-{self.name}",
                daemon=True,
            )
            self._thread.start()

    def disconnect(self, timeout: float = 2.0) -> None:
        """Stop the worker and cancel any pending retry"""
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._close_transport()

        self._set_state(ConnectionState.disconnected(), generation)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the current worker to finish (used by tests and shutdown)"""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _set_state(self, state: ConnectionState, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation) or state == self.state:
                return
            self.state = state
            listener = self.state_listener

        if state.phase is ConnectionPhase.RECONNECTING:
            logger.warning(f"{self.name}: {state}")
        elif state.phase is ConnectionPhase.ERROR:
            logger.error(f"{self.name}: {state}")
        else:
            logger.info(f"{self.name}: {state}")

        if listener is not None:
            try:
                listener(state)
            except Exception as e:
                logger.exception(f"{self.name}: state listener failed: {e}")

    def _finish(self, generation: int) -> None:
        with self._lock:
            if self._is_current(generation):
                self._thread = None

    def _handle_failure(self, attempt: int, reason: str, generation: int,
                        stop_event: threading.Event) -> bool:
        """
        Record a failed cycle and wait out the backoff

        Args:
            attempt: Consecutive failure count including this one
            reason: Human readable failure reason
            generation: Worker generation
            stop_event: Worker stop event

        Returns:
            True when the worker should keep going, False when it must stop
        """
        self.stats['failures'] += 1

        if attempt > self.retry.max_attempts:
            self._set_state(ConnectionState.error(
                f"Connection failed after {self.retry.max_attempts} attempts: {reason}"), generation)
            return False

        delay = self.retry.delay(attempt)
        self._set_state(ConnectionState.reconnecting(attempt, self.retry.max_attempts, delay), generation)
        return not self._sleep(stop_event, delay)

    def _sleep(self, stop_event: threading.Event, delay: float) -> bool:
        """Wait for `delay` seconds; True if stopped meanwhile"""
        return stop_event.wait(delay)

    def _close_transport(self) -> None:
        pass

    def _run(self, generation: int, stop_event: threading.Event) -> None:
        raise NotImplementedError


class TCPConnection(_RetryingConnection):
    """
    Reconnecting TCP stream client

    Delivers raw byte chunks to `data_handler` as they arrive. Any read
    error or remote close while not intentionally disconnecting schedules a
    reconnect with backoff.
    """

    def __init__(self, host: str, port: int, retry: Optional[RetryPolicy] = None,
                 name: Optional[str] = None, connect_timeout: float = 5.0,
                 read_timeout: float = 1.0, read_size: int = 65536,
                 socket_factory: Callable[..., socket.socket] = socket.create_connection):
        super().__init__(host, port, retry, name)
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.read_size = read_size
        self.socket_factory = socket_factory

        self.data_handler: Optional[Callable[[bytes], None]] = None
        self._socket: Optional[socket.socket] = None

    def _close_transport(self) -> None:
        sock = self._socket
        self._socket = None
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.debug(f"{self.name}: error closing socket: {e}")

    def _run(self, generation: int, stop_event: threading.Event) -> None:
        attempt = 0
        try:
            while not stop_event.is_set():
                if attempt == 0:
                    self._set_state(ConnectionState.connecting(), generation)

                reason = self._connect_and_read(generation, stop_event)
                if reason is None:
                    # Connected, then lost the link; the backoff starts over
                    attempt = 0
                    reason = "Connection closed by server"
                elif reason == "":
                    break

                if stop_event.is_set():
                    break

                attempt += 1
                if not self._handle_failure(attempt, reason, generation, stop_event):
                    break
        finally:
            self._finish(generation)

    def _connect_and_read(self, generation: int, stop_event: threading.Event) -> Optional[str]:
        """
        One connection attempt plus its read loop

        Returns:
            None if the link was up and then closed, a failure reason if
            the connect or a read failed, or "" when stopped intentionally
        """
        self.stats['connect_attempts'] += 1
        try:
            sock = self.socket_factory((self.host, self.port), timeout=self.connect_timeout)
        except OSError as e:
            error = ConnectionFailedError(self.host, self.port, str(e) or type(e).__name__)
            logger.debug(f"{self.name}: {error}")
            return str(error)

        with self._lock:
            if stop_event.is_set() or not self._is_current(generation):
                sock.close()
                return ""
            self._socket = sock

        sock.settimeout(self.read_timeout)
        self._set_state(ConnectionState.connected(), generation)

        received_any = False
        while not stop_event.is_set():
            try:
                data = sock.recv(self.read_size)
            except socket.timeout:
                continue
            except OSError as e:
                if stop_event.is_set():
                    return ""
                with self._lock:
                    self._close_transport()
                return str(e) or type(e).__name__

            if not data:
                with self._lock:
                    self._close_transport()
                return None if received_any else "Connection closed by server"

            received_any = True
            self.stats['bytes_received'] += len(data)
            self._deliver(data, generation)

        return ""

    def _deliver(self, data: bytes, generation: int) -> None:
        handler = self.data_handler
        if handler is None or not self._is_current(generation):
            return
        try:
            handler(data)
        except Exception as e:
            logger.exception(f"{self.name}: data handler failed: {e}")


class HTTPPoller(_RetryingConnection):
    """
    Polling HTTP GET client

    One request per cycle. A 2xx response whose body the handler accepts
    resets the failure counter and waits `refresh_interval`; anything else
    counts as a failure and waits the backoff delay.
    """

    def __init__(self, url: str, host: str, port: int, refresh_interval: float = 5.0,
                 retry: Optional[RetryPolicy] = None, name: Optional[str] = None,
                 request_timeout: float = 5.0, session: Optional[requests.Session] = None):
        super().__init__(host, port, retry, name)
        self.url = url
        self.refresh_interval = refresh_interval
        self.request_timeout = request_timeout
        self.session = session

        self.body_handler: Optional[Callable[[bytes], None]] = None

    def _run(self, generation: int, stop_event: threading.Event) -> None:
        failures = 0
        self._set_state(ConnectionState.connecting(), generation)
        try:
            while not stop_event.is_set():
                reason = self._poll_once(generation)
                if stop_event.is_set():
                    break

                if reason is None:
                    failures = 0
                    self._set_state(ConnectionState.connected(), generation)
                    if self._sleep(stop_event, self.refresh_interval):
                        break
                    continue

                failures += 1
                if not self._handle_failure(failures, reason, generation, stop_event):
                    break
        finally:
            self._finish(generation)

    def _poll_once(self, generation: int) -> Optional[str]:
        """
        Fetch and hand over one document

        Returns:
            None on success, otherwise the failure reason
        """
        self.stats['connect_attempts'] += 1
        getter = self.session.get if self.session is not None else requests.get
        try:
            response = getter(self.url, timeout=self.request_timeout)
        except requests.RequestException as e:
            return f"Request failed: {e}"

        if not 200 <= response.status_code < 300:
            return f"HTTP {response.status_code}"

        self.stats['bytes_received'] += len(response.content)

        handler = self.body_handler
        if handler is None or not self._is_current(generation):
            return None
        try:
            handler(response.content)
        except DecodeError as e:
            return f"Invalid response: {e}"
        except Exception as e:
            logger.exception(f"{self.name}: body handler failed: {e}")
            return f"Response handling failed: {e}"
        return None
