"""
ADS-B feed aggregator

Decodes dump1090 JSON, SBS BaseStation and Beast feeds into one aircraft
state model, merges concurrent sources and evaluates alert rules against
the live picture.
"""

__version__ = "1.0.0"

from .aircraft import (AircraftRecord, AircraftUpdate, AltitudeFeet, Coordinate, OnGround,
                       Removed, Snapshot, Updated)
from .aircraft_tracker import AircraftStateStore
from .aggregator import AggregatorService
from .alert_engine import AlertEngine, AlertEvent
from .config import (AggregatorConfig, AlertColor, AlertPriority, AlertRuleConfig, AlertRuleKind,
                     AlertSound, ConfigManager, ProtocolKind, RetryPolicy, SettingsSnapshot,
                     SourceConfig)
from .decoder import BeastDecoder, Dump1090Decoder, SBSDecoder
from .exceptions import AggregatorError, ConfigurationError, DecodeError
from .message_source import (ADSBProvider, BeastProvider, Dump1090Provider, SBSProvider,
                             SourceState, SourceStatus, create_provider)
from .position_calculator import CPRFrame, CPRTracker, cpr_nl, decode_global_cpr, decode_local_cpr, distance_nm
from .source_manager import ProviderCoordinator, combine_statuses

__all__ = [
    'AircraftRecord', 'AircraftUpdate', 'AltitudeFeet', 'Coordinate', 'OnGround',
    'Removed', 'Snapshot', 'Updated',
    'AircraftStateStore', 'AggregatorService', 'AlertEngine', 'AlertEvent',
    'AggregatorConfig', 'AlertColor', 'AlertPriority', 'AlertRuleConfig', 'AlertRuleKind',
    'AlertSound', 'ConfigManager', 'ProtocolKind', 'RetryPolicy', 'SettingsSnapshot', 'SourceConfig',
    'BeastDecoder', 'Dump1090Decoder', 'SBSDecoder',
    'AggregatorError', 'ConfigurationError', 'DecodeError',
    'ADSBProvider', 'BeastProvider', 'Dump1090Provider', 'SBSProvider', 'SourceState',
    'SourceStatus', 'create_provider',
    'CPRFrame', 'CPRTracker', 'cpr_nl', 'decode_global_cpr', 'decode_local_cpr', 'distance_nm',
    'ProviderCoordinator', 'combine_statuses',
]
