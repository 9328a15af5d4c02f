"""
Configuration management for the feed aggregator.

This module holds the dataclass configuration (feed sources, alert rules,
tracking and logging settings), the read-only settings snapshot handed to
each component, and the JSON-backed ConfigManager.
"""

import copy
import json
import logging
import random
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .aircraft import Coordinate
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class ProtocolKind(Enum):
    """Wire formats a source can speak"""
    DUMP1090 = "dump1090"
    SBS = "sbs"
    BEAST = "beast"

    @property
    def default_port(self) -> int:
        return {
            ProtocolKind.DUMP1090: 8080,
            ProtocolKind.SBS: 30003,
            ProtocolKind.BEAST: 30005,
        }[self]

    @property
    def display_name(self) -> str:
        return {
            ProtocolKind.DUMP1090: "dump1090 / readsb",
            ProtocolKind.SBS: "SBS BaseStation",
            ProtocolKind.BEAST: "Beast",
        }[self]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter shared by TCP and HTTP connections."""
    max_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter_factor: float = 0.2

    def delay(self, attempt: int, jitter: Optional[Callable[[float, float], float]] = None) -> float:
        """
        Delay before retry number `attempt` (1-based)

        Args:
            attempt: Retry attempt number, starting at 1
            jitter: Source of uniform random numbers, random.uniform by default

        Returns:
            Delay in seconds, never below 0.1
        """
        jitter = jitter or random.uniform
        exponential = self.base_delay * (2 ** (attempt - 1))
        clamped = min(exponential, self.max_delay)
        offset = clamped * self.jitter_factor * jitter(-1.0, 1.0)
        return max(0.1, clamped + offset)


@dataclass(frozen=True)
class SourceConfig:
    """
    Configuration for one feed source

    Immutable once a provider is built from it; edits are applied by
    replacing the provider.
    """
    protocol: ProtocolKind = ProtocolKind.DUMP1090
    host: str = "localhost"
    port: Optional[int] = None
    enabled: bool = True
    priority: int = 0
    name: str = "New Source"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if isinstance(self.protocol, str):
            object.__setattr__(self, 'protocol', ProtocolKind(self.protocol))
        if self.port is None:
            object.__setattr__(self, 'port', self.protocol.default_port)

    @property
    def url_string(self) -> str:
        if self.protocol is ProtocolKind.DUMP1090:
            return f"http://{self.host}:{self.port}/data/aircraft.json"
        return f"{self.host}:{self.port}"

    def validate(self) -> List[str]:
        """Return a list of problems, empty when the source is usable"""
        errors = []
        if not self.host or not self.host.strip():
            errors.append(f"Source {self.name} has no host")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            errors.append(f"Invalid port {self.port} for source {self.name}")
        if self.retry.max_attempts < 1:
            errors.append(f"Source {self.name} needs at least one connection attempt")
        return errors

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceConfig':
        data = dict(data)
        retry = data.pop('retry', None)
        if isinstance(retry, dict):
            data['retry'] = RetryPolicy(**retry)
        # Older files used "type" for the protocol
        if 'type' in data and 'protocol' not in data:
            data['protocol'] = data.pop('type')
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'protocol': self.protocol.value,
            'host': self.host,
            'port': self.port,
            'enabled': self.enabled,
            'priority': self.priority,
            'retry': {
                'max_attempts': self.retry.max_attempts,
                'base_delay': self.retry.base_delay,
                'max_delay': self.retry.max_delay,
                'jitter_factor': self.retry.jitter_factor,
            },
        }


class AlertRuleKind(Enum):
    PROXIMITY = "proximity"
    WATCHLIST = "watchlist"
    SQUAWK = "squawk"
    AIRCRAFT_TYPE = "aircraft_type"


class AlertPriority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class AlertSound(Enum):
    NONE = "none"
    SUBTLE = "subtle"
    STANDARD = "standard"
    PROMINENT = "prominent"


@dataclass(frozen=True)
class AlertColor:
    """RGBA highlight colour; opaque to the aggregator."""
    red: float
    green: float
    blue: float
    alpha: float = 1.0

    @classmethod
    def default_highlight(cls) -> 'AlertColor':
        return cls(1.0, 0.6, 0.0, 1.0)  # orange


@dataclass
class AlertRuleConfig:
    """User-defined alert rule."""
    name: str
    kind: AlertRuleKind
    enabled: bool = True
    priority: AlertPriority = AlertPriority.NORMAL
    sound: AlertSound = AlertSound.STANDARD
    send_notification: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Proximity
    max_distance_nm: Optional[float] = None
    max_altitude_feet: Optional[int] = None
    min_altitude_feet: Optional[int] = None

    # Watchlist
    watch_callsigns: Optional[List[str]] = None
    watch_registrations: Optional[List[str]] = None
    watch_icao_hex: Optional[List[str]] = None

    # Squawk
    squawk_codes: Optional[List[str]] = None

    # Aircraft type
    type_categories: Optional[List[str]] = None
    type_codes: Optional[List[str]] = None

    highlight_color: Optional[AlertColor] = None

    def __post_init__(self):
        if isinstance(self.kind, str):
            self.kind = AlertRuleKind(self.kind)
        if isinstance(self.priority, str):
            self.priority = AlertPriority(self.priority)
        if isinstance(self.sound, str):
            self.sound = AlertSound(self.sound)
        if isinstance(self.highlight_color, dict):
            self.highlight_color = AlertColor(**self.highlight_color)

    @classmethod
    def default_proximity_rule(cls) -> 'AlertRuleConfig':
        return cls(name="Nearby Aircraft", kind=AlertRuleKind.PROXIMITY,
                   max_distance_nm=5.0, max_altitude_feet=10000)

    @classmethod
    def default_squawk_rule(cls) -> 'AlertRuleConfig':
        return cls(name="Emergency Squawks", kind=AlertRuleKind.SQUAWK,
                   priority=AlertPriority.CRITICAL, sound=AlertSound.PROMINENT,
                   squawk_codes=["7500", "7600", "7700"])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AlertRuleConfig':
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'name': self.name,
            'kind': self.kind.value,
            'enabled': self.enabled,
            'priority': self.priority.value,
            'sound': self.sound.value,
            'send_notification': self.send_notification,
        }
        for name in ('max_distance_nm', 'max_altitude_feet', 'min_altitude_feet',
                     'watch_callsigns', 'watch_registrations', 'watch_icao_hex',
                     'squawk_codes', 'type_categories', 'type_codes'):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.highlight_color is not None:
            c = self.highlight_color
            result['highlight_color'] = {'red': c.red, 'green': c.green, 'blue': c.blue, 'alpha': c.alpha}
        return result


@dataclass
class ReferencePosition:
    """Observer location; also the fallback reference for local CPR decoding."""
    latitude: float = 37.7749
    longitude: float = -122.4194
    name: str = "San Francisco"


@dataclass
class TrackingSettings:
    """Aircraft state store and display settings."""
    refresh_interval_sec: float = 5.0
    stale_threshold_sec: int = 60
    sweep_interval_sec: float = 10.0
    max_aircraft_display: int = 25
    show_aircraft_without_position: bool = False


@dataclass
class AlertSettings:
    cooldown_sec: float = 300.0
    rules: List[AlertRuleConfig] = field(default_factory=list)


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_file: str = "feed_aggregator.log"
    max_log_size_mb: int = 100
    backup_count: int = 5
    enable_console: bool = True
    status_interval_sec: int = 60


@dataclass
class AggregatorConfig:
    """Complete aggregator configuration."""
    sources: List[SourceConfig] = field(default_factory=list)
    reference_position: ReferencePosition = field(default_factory=ReferencePosition)
    tracking: TrackingSettings = field(default_factory=TrackingSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def snapshot(self) -> 'SettingsSnapshot':
        return SettingsSnapshot(
            sources=tuple(self.sources),
            reference_location=Coordinate(self.reference_position.latitude,
                                          self.reference_position.longitude),
            refresh_interval_sec=self.tracking.refresh_interval_sec,
            stale_threshold_sec=self.tracking.stale_threshold_sec,
            sweep_interval_sec=self.tracking.sweep_interval_sec,
            max_aircraft_display=self.tracking.max_aircraft_display,
            show_aircraft_without_position=self.tracking.show_aircraft_without_position,
            alert_rules=tuple(copy.deepcopy(self.alerts.rules)),
            alert_cooldown_sec=self.alerts.cooldown_sec,
        )


@dataclass(frozen=True)
class SettingsSnapshot:
    """
    Read-only view of the settings each component is built from

    Components never read mutable global settings; a changed configuration
    arrives as a new snapshot.
    """
    sources: Tuple[SourceConfig, ...] = ()
    reference_location: Coordinate = Coordinate(37.7749, -122.4194)
    refresh_interval_sec: float = 5.0
    stale_threshold_sec: float = 60.0
    sweep_interval_sec: float = 10.0
    max_aircraft_display: int = 25
    show_aircraft_without_position: bool = False
    alert_rules: Tuple[AlertRuleConfig, ...] = ()
    alert_cooldown_sec: float = 300.0

    @property
    def enabled_sources(self) -> List[SourceConfig]:
        return [source for source in self.sources if source.enabled]

    def with_changes(self, **changes) -> 'SettingsSnapshot':
        return replace(self, **changes)


class ConfigManager:
    """Manages configuration loading, validation and saving."""

    def __init__(self, config_path: str = "config.json"):
        self.config_path = Path(config_path)
        self.logger = logging.getLogger(__name__)
        self._config: Optional[AggregatorConfig] = None

    def load_config(self) -> AggregatorConfig:
        """Load configuration from file, creating a default one if missing."""
        if not self.config_path.exists():
            self.logger.warning(f"Config file {self.config_path} not found, creating default")
            self._config = self._create_default_config()
            self.save_config()
            return self._config

        try:
            with open(self.config_path, 'r') as f:
                raw_config = json.load(f)
            config = self._parse_config(raw_config)
        except (OSError, ValueError, TypeError, KeyError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        self._validate_config(config)
        self._config = config
        return self._config

    def save_config(self) -> None:
        """Save current configuration to file."""
        if self._config is None:
            raise ConfigurationError("No configuration loaded")

        try:
            with open(self.config_path, 'w') as f:
                json.dump(self._config_to_dict(self._config), f, indent=4)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {e}") from e

    def get_config(self) -> AggregatorConfig:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            return self.load_config()
        return self._config

    def _parse_config(self, config_dict: Dict[str, Any]) -> AggregatorConfig:
        config = AggregatorConfig()

        if 'sources' in config_dict:
            config.sources = [SourceConfig.from_dict(s) for s in config_dict['sources']]

        if 'reference_position' in config_dict:
            config.reference_position = ReferencePosition(**config_dict['reference_position'])

        if 'tracking' in config_dict:
            config.tracking = TrackingSettings(**config_dict['tracking'])

        if 'alerts' in config_dict:
            alerts_dict = config_dict['alerts']
            config.alerts = AlertSettings(
                cooldown_sec=alerts_dict.get('cooldown_sec', 300.0),
                rules=[AlertRuleConfig.from_dict(r) for r in alerts_dict.get('rules', [])],
            )

        if 'logging' in config_dict:
            config.logging = LoggingConfig(**config_dict['logging'])

        return config

    def _validate_config(self, config: AggregatorConfig) -> None:
        """Validate configuration for consistency and correctness."""
        errors = []

        ids = [source.id for source in config.sources]
        if len(ids) != len(set(ids)):
            errors.append("Source ids must be unique")

        for source in config.sources:
            if source.enabled:
                errors.extend(source.validate())

        ref = config.reference_position
        if not (-90 <= ref.latitude <= 90 and -180 <= ref.longitude <= 180):
            errors.append(f"Invalid reference position ({ref.latitude}, {ref.longitude})")

        if config.tracking.refresh_interval_sec <= 0:
            errors.append("Refresh interval must be positive")

        if config.tracking.stale_threshold_sec <= 0:
            errors.append("Stale threshold must be positive")

        if config.tracking.sweep_interval_sec <= 0:
            errors.append("Sweep interval must be positive")

        if config.tracking.max_aircraft_display <= 0:
            errors.append("Maximum aircraft display count must be positive")

        if config.alerts.cooldown_sec < 0:
            errors.append("Alert cooldown cannot be negative")

        if errors:
            raise ConfigurationError("Configuration validation failed: " + "; ".join(errors))

    def _create_default_config(self) -> AggregatorConfig:
        config = AggregatorConfig()
        config.sources = [
            SourceConfig(name="Local dump1090", protocol=ProtocolKind.DUMP1090, host="localhost"),
        ]
        config.alerts.rules = [
            AlertRuleConfig.default_proximity_rule(),
            AlertRuleConfig.default_squawk_rule(),
        ]
        return config

    def _config_to_dict(self, config: AggregatorConfig) -> Dict[str, Any]:
        return {
            'sources': [source.to_dict() for source in config.sources],
            'reference_position': {
                'latitude': config.reference_position.latitude,
                'longitude': config.reference_position.longitude,
                'name': config.reference_position.name,
            },
            'tracking': {
                'refresh_interval_sec': config.tracking.refresh_interval_sec,
                'stale_threshold_sec': config.tracking.stale_threshold_sec,
                'sweep_interval_sec': config.tracking.sweep_interval_sec,
                'max_aircraft_display': config.tracking.max_aircraft_display,
                'show_aircraft_without_position': config.tracking.show_aircraft_without_position,
            },
            'alerts': {
                'cooldown_sec': config.alerts.cooldown_sec,
                'rules': [rule.to_dict() for rule in config.alerts.rules],
            },
            'logging': {
                'level': config.logging.level,
                'log_file': config.logging.log_file,
                'max_log_size_mb': config.logging.max_log_size_mb,
                'backup_count': config.logging.backup_count,
                'enable_console': config.logging.enable_console,
                'status_interval_sec': config.logging.status_interval_sec,
            },
        }
