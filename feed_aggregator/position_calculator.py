"""
Position Calculator Module

Implements CPR (Compact Position Reporting) position decoding and
great-circle distance for the Beast feed decoder.

Global decoding pairs an even and an odd airborne position frame; local
decoding resolves a single frame against a known reference position (the
aircraft's last good position, or the receiver location as fallback).
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from .aircraft import Coordinate

logger = logging.getLogger(__name__)

CPR_MAX = 131072.0  # 2^17
CPR_PAIR_WINDOW_SEC = 10.0
CPR_STATE_MAX_AGE_SEC = 60.0
LOCAL_DECODE_MAX_RANGE_NM = 500.0

# Latitude thresholds for NL 59 down to 2; at or above the last one NL is 1
NL_THRESHOLDS = (
    10.47047130, 14.82817437, 18.18626357, 21.02939493, 23.54504487,
    25.82924707, 27.93898710, 29.91135686, 31.77209708, 33.53993436,
    35.22899598, 36.85025108, 38.41241892, 39.92256684, 41.38651832,
    42.80914012, 44.19454951, 45.54626723, 46.86733252, 48.16039128,
    49.42776439, 50.67150166, 51.89342469, 53.09516153, 54.27817472,
    55.44378444, 56.59318756, 57.72747354, 58.84763776, 59.95459277,
    61.04917774, 62.13216659, 63.20427479, 64.26616523, 65.31845310,
    66.36171008, 67.39646774, 68.42322022, 69.44242631, 70.45451075,
    71.45986473, 72.45884545, 73.45177442, 74.43893416, 75.42056257,
    76.39684391, 77.36789461, 78.33374083, 79.29428225, 80.24923213,
    81.19801349, 82.13956981, 83.07199445, 83.99173563, 84.89166191,
    85.75541621, 86.53536998, 87.00000000,
)


@dataclass(frozen=True)
class CPRFrame:
    """One airborne position message, kept for pairing"""
    is_odd: bool
    lat_cpr: int
    lon_cpr: int
    altitude: Optional[int]
    timestamp: float


@dataclass
class CPRState:
    """Per-aircraft CPR tracking"""
    even_frame: Optional[CPRFrame] = None
    odd_frame: Optional[CPRFrame] = None
    last_decoded_position: Optional[Coordinate] = None

    def newest_timestamp(self) -> float:
        stamps = [f.timestamp for f in (self.even_frame, self.odd_frame) if f is not None]
        return max(stamps) if stamps else float('-inf')


def distance_nm(a: Coordinate, b: Coordinate) -> float:
    """Haversine great-circle distance in nautical miles"""
    return a.distance_to(b)


def cpr_mod(a: float, b: float) -> float:
    """Modulo that always returns a non-negative result"""
    return a % b


def cpr_nl(latitude: float) -> int:
    """
    Number of longitude zones for a latitude

    Args:
        latitude: Latitude in degrees

    Returns:
        NL value between 1 and 59
    """
    abs_lat = abs(latitude)
    for index, threshold in enumerate(NL_THRESHOLDS):
        if abs_lat < threshold:
            return 59 - index
    return 1


def decode_global_cpr(even: CPRFrame, odd: CPRFrame) -> Optional[Coordinate]:
    """
    Decode a position from an even/odd frame pair

    The most recent of the two frames decides which latitude and longitude
    are returned.

    Args:
        even: Even-format frame
        odd: Odd-format frame

    Returns:
        Decoded coordinate, or None when the frames straddle an NL zone
        boundary or the result is out of range
    """
    lat_cpr_even = even.lat_cpr / CPR_MAX
    lat_cpr_odd = odd.lat_cpr / CPR_MAX
    lon_cpr_even = even.lon_cpr / CPR_MAX
    lon_cpr_odd = odd.lon_cpr / CPR_MAX

    d_lat_even = 360.0 / 60.0
    d_lat_odd = 360.0 / 59.0

    j = math.floor(59.0 * lat_cpr_even - 60.0 * lat_cpr_odd + 0.5)

    lat_even = d_lat_even * (cpr_mod(j, 60) + lat_cpr_even)
    lat_odd = d_lat_odd * (cpr_mod(j, 59) + lat_cpr_odd)

    # Southern hemisphere
    if lat_even >= 270:
        lat_even -= 360
    if lat_odd >= 270:
        lat_odd -= 360

    nl_even = cpr_nl(lat_even)
    nl_odd = cpr_nl(lat_odd)
    if nl_even != nl_odd:
        logger.debug(f"CPR pair straddles NL zones ({nl_even} vs {nl_odd})")
        return None

    use_odd = odd.timestamp > even.timestamp
    lat = lat_odd if use_odd else lat_even
    lon_cpr = lon_cpr_odd if use_odd else lon_cpr_even
    nl = nl_odd if use_odd else nl_even
    ni = max(1, nl - 1) if use_odd else max(1, nl)

    d_lon = 360.0 / ni
    m = math.floor(even.lon_cpr * (nl - 1) / CPR_MAX - odd.lon_cpr * nl / CPR_MAX + 0.5)
    lon = d_lon * (cpr_mod(m, ni) + lon_cpr)

    if lon > 180:
        lon -= 360

    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None

    return Coordinate(lat, lon)


def decode_local_cpr(frame: CPRFrame, reference: Coordinate) -> Optional[Coordinate]:
    """
    Decode a single frame relative to a reference position

    Only valid when the aircraft is within roughly 250 nm of the reference;
    results further than 500 nm away are rejected.

    Args:
        frame: Even or odd position frame
        reference: Known nearby position

    Returns:
        Decoded coordinate or None
    """
    lat_cpr = frame.lat_cpr / CPR_MAX
    lon_cpr = frame.lon_cpr / CPR_MAX

    d_lat = 360.0 / 59.0 if frame.is_odd else 360.0 / 60.0

    j = (math.floor(reference.latitude / d_lat) +
         math.floor(0.5 + cpr_mod(reference.latitude, d_lat) / d_lat - lat_cpr))
    lat = d_lat * (j + lat_cpr)

    if not -90 <= lat <= 90:
        return None

    nl = cpr_nl(lat)
    ni = max(1, nl - 1) if frame.is_odd else max(1, nl)
    d_lon = 360.0 / ni

    m = (math.floor(reference.longitude / d_lon) +
         math.floor(0.5 + cpr_mod(reference.longitude, d_lon) / d_lon - lon_cpr))
    lon = d_lon * (m + lon_cpr)

    if lon > 180:
        lon -= 360
    if lon < -180:
        lon += 360

    if not -180 <= lon <= 180:
        return None

    position = Coordinate(lat, lon)
    if distance_nm(reference, position) >= LOCAL_DECODE_MAX_RANGE_NM:
        logger.debug(f"Local CPR result too far from reference: ({lat:.4f}, {lon:.4f})")
        return None

    return position


class CPRTracker:
    """
    Per-aircraft even/odd frame store for a single feed

    Tries a global decode first and falls back to a local decode against the
    aircraft's last decoded position or the receiver location.
    """

    def __init__(self, reference: Optional[Coordinate] = None):
        """
        Initialize CPR tracker

        Args:
            reference: Receiver location used as fallback for local decoding
        """
        self.reference = reference
        self.states: Dict[str, CPRState] = {}

        self.stats = {
            'global_positions_calculated': 0,
            'local_positions_calculated': 0,
            'position_failures': 0,
        }

    def set_reference_position(self, reference: Optional[Coordinate]) -> None:
        self.reference = reference
        logger.info(f"CPR reference position set to {reference}")

    def add_frame(self, icao: str, frame: CPRFrame) -> Optional[Coordinate]:
        """
        Store a frame and try to resolve a position

        Args:
            icao: Aircraft ICAO address
            frame: Newly received position frame

        Returns:
            Decoded position or None
        """
        state = self.states.setdefault(icao, CPRState())
        if frame.is_odd:
            state.odd_frame = frame
        else:
            state.even_frame = frame

        position = None

        even, odd = state.even_frame, state.odd_frame
        if even is not None and odd is not None and abs(even.timestamp - odd.timestamp) < CPR_PAIR_WINDOW_SEC:
            position = decode_global_cpr(even, odd)
            if position is not None:
                self.stats['global_positions_calculated'] += 1

        if position is None:
            reference = state.last_decoded_position or self.reference
            if reference is not None:
                position = decode_local_cpr(frame, reference)
                if position is not None:
                    self.stats['local_positions_calculated'] += 1

        if position is not None:
            state.last_decoded_position = position
        else:
            self.stats['position_failures'] += 1

        return position

    def prune(self, now: float, live_icaos: Iterable[str]) -> int:
        """
        Drop state for evicted aircraft and for frames older than 60 seconds

        Args:
            now: Current epoch time
            live_icaos: ICAO addresses the owning feed still tracks

        Returns:
            Number of aircraft states removed
        """
        live = set(live_icaos)
        stale = [
            icao for icao, state in self.states.items()
            if icao not in live or now - state.newest_timestamp() >= CPR_STATE_MAX_AGE_SEC
        ]
        for icao in stale:
            del self.states[icao]

        if stale:
            logger.debug(f"Pruned CPR state for {len(stale)} aircraft")
        return len(stale)

    def discard(self, icao: str) -> None:
        self.states.pop(icao, None)

    def clear(self) -> None:
        self.states.clear()

    def get_statistics(self) -> Dict[str, object]:
        stats = dict(self.stats)
        stats['aircraft_in_cache'] = len(self.states)
        stats['reference_position'] = self.reference
        return stats
