"""
Aircraft Data Structures

Canonical aircraft state shared by every feed decoder, plus the update
variants that decoders publish to the state store.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

EARTH_RADIUS_NM = 3440.065


@dataclass(frozen=True)
class Coordinate:
    """WGS84 latitude/longitude pair in degrees."""
    latitude: float
    longitude: float

    def distance_to(self, other: 'Coordinate') -> float:
        """Great-circle distance to another coordinate in nautical miles."""
        lat1 = math.radians(self.latitude)
        lat2 = math.radians(other.latitude)
        delta_lat = math.radians(other.latitude - self.latitude)
        delta_lon = math.radians(other.longitude - self.longitude)

        a = (math.sin(delta_lat / 2) ** 2 +
             math.cos(lat1) * math.cos(lat2) * math.sin(delta_lon / 2) ** 2)
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

        return EARTH_RADIUS_NM * c

    def is_valid(self) -> bool:
        return -90 <= self.latitude <= 90 and -180 <= self.longitude <= 180


@dataclass(frozen=True)
class AltitudeFeet:
    """Reported barometric or geometric altitude."""
    feet: int


@dataclass(frozen=True)
class OnGround:
    """Aircraft reports being on the ground; carries no altitude."""
    pass


Altitude = Union[AltitudeFeet, OnGround]


def altitude_value(altitude: Optional[Altitude]) -> Optional[int]:
    """Numeric feet for an altitude, None when absent or on the ground"""
    if isinstance(altitude, AltitudeFeet):
        return altitude.feet
    return None


# Fields a decoder may supply on an incremental update
UPDATABLE_FIELDS = (
    'callsign',
    'position',
    'altitude_feet',
    'on_ground',
    'heading_degrees',
    'speed_knots',
    'vertical_rate_fpm',
    'squawk',
    'registration',
    'aircraft_type_code',
    'operator_name',
)


@dataclass
class AircraftRecord:
    """
    Aircraft state keyed by ICAO address

    Every field except the ICAO address and last_seen is optional because
    messages arrive incrementally. Enrichment fields (registration, type
    code, operator) are passed through untouched.
    """

    icao_hex: str
    last_seen: datetime = field(default_factory=datetime.now)

    callsign: Optional[str] = None
    position: Optional[Coordinate] = None
    altitude_feet: Optional[int] = None
    heading_degrees: Optional[float] = None
    speed_knots: Optional[float] = None
    vertical_rate_fpm: Optional[float] = None
    squawk: Optional[str] = None
    on_ground: Optional[bool] = None

    # Enrichment
    registration: Optional[str] = None
    aircraft_type_code: Optional[str] = None
    operator_name: Optional[str] = None

    def __post_init__(self):
        self.icao_hex = self.icao_hex.upper()

    def merge_from(self, other: 'AircraftRecord') -> None:
        """
        Merge supplied fields from another record for the same aircraft

        Fields that are None on the other record are left unchanged, never
        cleared. last_seen is always refreshed.

        Args:
            other: Record carrying the newly received fields
        """
        for name in UPDATABLE_FIELDS:
            value = getattr(other, name)
            if value is not None:
                setattr(self, name, value)
        self.last_seen = other.last_seen

    def copy(self) -> 'AircraftRecord':
        return replace(self)

    def has_position(self) -> bool:
        return self.position is not None

    def distance_from(self, reference: Coordinate) -> Optional[float]:
        """Distance from a reference point in nautical miles"""
        if self.position is None:
            return None
        return reference.distance_to(self.position)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now()
        return (now - self.last_seen).total_seconds()

    def get_display_name(self) -> str:
        """Callsign if known, else the ICAO address"""
        return self.callsign or self.icao_hex

    @property
    def notification_subtitle(self) -> str:
        parts = []
        if self.aircraft_type_code:
            parts.append(self.aircraft_type_code)
        if self.registration:
            parts.append(f"({self.registration})")
        if self.operator_name:
            parts.append(f"· {self.operator_name}")
        return " ".join(parts) if parts else self.icao_hex

    def detail_summary(self, reference: Optional[Coordinate] = None) -> str:
        """
        Multi-line text summary suitable for alert bodies

        Args:
            reference: Observer location used for the distance line

        Returns:
            Summary text, one fact group per line
        """
        lines = []

        ident = []
        if self.aircraft_type_code:
            ident.append(self.aircraft_type_code)
        if self.registration:
            ident.append(f"({self.registration})")
        if ident:
            lines.append(" ".join(ident))

        flight = []
        if self.on_ground:
            flight.append("on ground")
        elif self.altitude_feet is not None:
            flight.append(f"{self.altitude_feet:,}ft")
        if self.speed_knots is not None:
            flight.append(f"{int(self.speed_knots)}kt")
        if self.heading_degrees is not None:
            flight.append(f"{self.heading_degrees:.0f}°")
        if flight:
            lines.append(" · ".join(flight))

        if reference is not None:
            distance = self.distance_from(reference)
            if distance is not None:
                lines.append(f"{distance:.1f} nm away")

        # 1200 is the VFR code and not worth mentioning
        if self.squawk and self.squawk != "1200":
            lines.append(f"Squawk: {self.squawk}")

        return "\n".join(lines)

    def to_api_dict(self) -> Dict[str, Any]:
        """Dictionary form for logging and external consumers"""
        return {
            'hex': self.icao_hex,
            'flight': self.callsign,
            'lat': self.position.latitude if self.position else None,
            'lon': self.position.longitude if self.position else None,
            'alt': self.altitude_feet,
            'on_ground': self.on_ground,
            'track': self.heading_degrees,
            'gs': self.speed_knots,
            'vertical_rate': self.vertical_rate_fpm,
            'squawk': self.squawk,
            'registration': self.registration,
            'type': self.aircraft_type_code,
            'operator': self.operator_name,
            'last_seen': self.last_seen.isoformat(),
        }

    def __str__(self) -> str:
        if self.callsign:
            return f"Aircraft({self.icao_hex} ({self.callsign}))"
        return f"Aircraft({self.icao_hex})"


@dataclass(frozen=True)
class Updated:
    """Incremental merge of one aircraft record"""
    record: AircraftRecord


@dataclass(frozen=True)
class Removed:
    """Explicit eviction of one aircraft"""
    icao_hex: str


@dataclass(frozen=True)
class Snapshot:
    """Authoritative full replacement from a polling source"""
    records: List[AircraftRecord]


AircraftUpdate = Union[Updated, Removed, Snapshot]
