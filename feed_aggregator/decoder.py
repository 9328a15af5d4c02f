"""
Feed Decoders

Turns raw feed input into AircraftUpdate events:

- Dump1090Decoder: aircraft.json documents into one Snapshot each
- SBSDecoder: BaseStation CSV lines into Updated events
- BeastDecoder: Beast binary frames into Updated events, using pyModeS for
  CRC, DF, ICAO, type code, callsign and velocity and the position
  calculator for CPR

Streaming decoders keep their partial input and a per-aircraft cache between
calls; reset() returns them to a clean state.
"""

import codecs
import json
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pyModeS as pms

from .aircraft import (AircraftRecord, Altitude, AltitudeFeet, Coordinate, OnGround,
                       Snapshot, Updated, altitude_value)
from .exceptions import DecodeError, InvalidFrameTypeError
from .position_calculator import CPRFrame, CPRTracker

logger = logging.getLogger(__name__)

BEAST_ESCAPE = 0x1A
BEAST_PAYLOAD_LENGTHS = {
    0x31: 2,   # Mode-AC
    0x32: 7,   # Mode-S short
    0x33: 14,  # Mode-S extended squitter
}
BEAST_HEADER_LENGTH = 7  # 6-byte timestamp + signal level

SBS_MIN_FIELDS = 11


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    # json.loads accepts NaN and Infinity
    return isinstance(value, int) or math.isfinite(value)


def _optional_number(entry: Dict[str, Any], key: str) -> Optional[float]:
    value = entry.get(key)
    if value is None:
        return None
    if not _is_number(value):
        raise DecodeError(f"Field {key} is not numeric: {value!r}")
    return value


def _optional_string(entry: Dict[str, Any], key: str) -> Optional[str]:
    value = entry.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise DecodeError(f"Field {key} is not a string: {value!r}")
    value = value.strip()
    return value or None


class Dump1090Decoder:
    """Decoder for dump1090 / readsb aircraft.json documents"""

    def __init__(self):
        self.stats = {
            'documents_decoded': 0,
            'documents_rejected': 0,
            'entries_skipped': 0,
        }

    def decode(self, body: Union[bytes, str], now: Optional[datetime] = None) -> Snapshot:
        """
        Decode one aircraft.json document

        Args:
            body: Raw response body
            now: Ingestion time, defaults to the current time

        Returns:
            Snapshot containing every decodable aircraft

        Raises:
            DecodeError: If the document itself is malformed
        """
        now = now or datetime.now()
        try:
            document = json.loads(body)
        except (ValueError, TypeError) as e:
            self.stats['documents_rejected'] += 1
            raise DecodeError(f"Invalid JSON: {e}") from e

        entries = document.get('aircraft') if isinstance(document, dict) else None
        if not isinstance(entries, list):
            self.stats['documents_rejected'] += 1
            raise DecodeError("Document has no aircraft list")

        records = []
        for entry in entries:
            try:
                records.append(self.parse_entry(entry, now))
            except DecodeError as e:
                self.stats['entries_skipped'] += 1
                logger.debug(f"Skipping aircraft entry: {e}")

        self.stats['documents_decoded'] += 1
        return Snapshot(records)

    @staticmethod
    def resolve_altitude(entry: Dict[str, Any]) -> Optional[Altitude]:
        """alt_baro when numeric, "ground" means on the ground, else alt_geom"""
        alt_baro = entry.get('alt_baro')
        if _is_number(alt_baro):
            return AltitudeFeet(int(alt_baro))
        if alt_baro == "ground":
            return OnGround()
        alt_geom = entry.get('alt_geom')
        if _is_number(alt_geom):
            return AltitudeFeet(int(alt_geom))
        return None

    def parse_entry(self, entry: Any, now: datetime) -> AircraftRecord:
        if not isinstance(entry, dict):
            raise DecodeError(f"Aircraft entry is not an object: {entry!r}")

        icao_hex = _optional_string(entry, 'hex')
        if not icao_hex:
            raise DecodeError("Aircraft entry has no hex")

        lat = _optional_number(entry, 'lat')
        lon = _optional_number(entry, 'lon')
        position = Coordinate(lat, lon) if lat is not None and lon is not None else None

        altitude = self.resolve_altitude(entry)

        vertical_rate = _optional_number(entry, 'baro_rate')
        if vertical_rate is None:
            vertical_rate = _optional_number(entry, 'geom_rate')

        return AircraftRecord(
            icao_hex=icao_hex,
            last_seen=now,
            callsign=_optional_string(entry, 'flight'),
            position=position,
            altitude_feet=altitude_value(altitude),
            on_ground=isinstance(altitude, OnGround) if altitude is not None else None,
            heading_degrees=_optional_number(entry, 'track'),
            speed_knots=_optional_number(entry, 'gs'),
            vertical_rate_fpm=vertical_rate,
            squawk=_optional_string(entry, 'squawk'),
            registration=_optional_string(entry, 'r'),
            aircraft_type_code=_optional_string(entry, 't'),
        )


class SBSDecoder:
    """
    Decoder for SBS / BaseStation CSV lines (port 30003)

    Field mapping (0-based): 4 ICAO, 10 callsign, 11 altitude, 12 ground
    speed, 13 track, 14/15 latitude/longitude, 16 vertical rate, 17 squawk.
    """

    def __init__(self):
        self.buffer = ""
        self.aircraft: Dict[str, AircraftRecord] = {}
        self._text_decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')

        self.stats = {
            'lines_processed': 0,
            'lines_rejected': 0,
        }

    def feed(self, chunk: Union[bytes, str], now: Optional[datetime] = None) -> List[Updated]:
        """
        Add received data and decode every complete line

        Args:
            chunk: Raw bytes or text from the stream
            now: Ingestion time

        Returns:
            One Updated event per valid line
        """
        if isinstance(chunk, bytes):
            chunk = self._text_decoder.decode(chunk)
        self.buffer += chunk

        lines = self.buffer.split('\n')
        self.buffer = lines.pop()

        updates = []
        for line in lines:
            if line.endswith('\r'):
                line = line[:-1]
            update = self.decode_line(line, now)
            if update is not None:
                updates.append(update)
        return updates

    def decode_line(self, line: str, now: Optional[datetime] = None) -> Optional[Updated]:
        """Decode one line and fold it into the per-aircraft cache"""
        self.stats['lines_processed'] += 1
        try:
            partial = self.parse_line(line, now)
        except DecodeError as e:
            self.stats['lines_rejected'] += 1
            logger.debug(f"Dropping SBS line: {e}")
            return None

        record = self.aircraft.get(partial.icao_hex)
        if record is None:
            record = partial
            self.aircraft[partial.icao_hex] = record
        else:
            record.merge_from(partial)
        return Updated(record.copy())

    @staticmethod
    def parse_line(line: str, now: Optional[datetime] = None) -> AircraftRecord:
        """
        Parse the fields carried by one line

        Raises:
            DecodeError: Non-MSG line, too few fields or no ICAO address
        """
        fields = line.split(',')
        if fields[0] != 'MSG':
            raise DecodeError(f"Not a MSG line: {line[:20]!r}")
        if len(fields) < SBS_MIN_FIELDS:
            raise DecodeError(f"Only {len(fields)} fields")

        icao_hex = fields[4].strip()
        if not icao_hex:
            raise DecodeError("Empty ICAO field")

        def field_text(index: int) -> Optional[str]:
            if index < len(fields):
                value = fields[index].strip()
                if value:
                    return value
            return None

        def field_number(index: int, cast):
            value = field_text(index)
            if value is None:
                return None
            try:
                number = cast(value)
            except ValueError:
                return None
            return number if isinstance(number, int) or math.isfinite(number) else None

        lat = field_number(14, float)
        lon = field_number(15, float)

        return AircraftRecord(
            icao_hex=icao_hex,
            last_seen=now or datetime.now(),
            callsign=field_text(10),
            altitude_feet=field_number(11, int),
            speed_knots=field_number(12, float),
            heading_degrees=field_number(13, float),
            position=Coordinate(lat, lon) if lat is not None and lon is not None else None,
            vertical_rate_fpm=field_number(16, float),
            squawk=field_text(17),
        )

    def prune(self, now: datetime, max_age_sec: float) -> int:
        """Forget cached aircraft not heard from for max_age_sec"""
        stale = [icao for icao, record in self.aircraft.items()
                 if record.age_seconds(now) > max_age_sec]
        for icao in stale:
            del self.aircraft[icao]
        return len(stale)

    def reset(self) -> None:
        self.buffer = ""
        self.aircraft.clear()
        self._text_decoder.reset()


def decode_callsign(msg: str) -> Optional[str]:
    """Identification callsign with pyModeS '_' padding trimmed"""
    callsign = pms.adsb.callsign(msg).replace('_', ' ').strip()
    return callsign or None


def decode_altitude(payload: bytes) -> Optional[int]:
    """
    12-bit airborne altitude

    25 ft increments when the Q-bit is set; otherwise a simplified 100 ft
    decode rather than full Gillham.
    """
    alt_bits = (payload[5] << 4) | ((payload[6] >> 4) & 0x0F)
    q_bit = (alt_bits >> 4) & 1
    n = ((alt_bits >> 5) << 4) | (alt_bits & 0x0F)
    if q_bit:
        return n * 25 - 1000
    if n > 0:
        return n * 100 - 1000
    return None


def decode_cpr_fields(msg: str) -> Tuple[bool, int, int]:
    """Odd flag and the 17-bit latitude/longitude CPR values"""
    bits = pms.hex2bin(msg)
    is_odd = bool(pms.adsb.oe_flag(msg))
    return is_odd, pms.bin2int(bits[54:71]), pms.bin2int(bits[71:88])


def decode_velocity(msg: str) -> Optional[Tuple[Optional[float], Optional[float], Optional[float]]]:
    """
    Ground speed, track and vertical rate from a type code 19 message

    Returns:
        (speed_knots, heading_degrees, vertical_rate_fpm), speed and heading
        None for airspeed subtypes; None when pyModeS reports a velocity
        component as unavailable
    """
    velocity = pms.adsb.velocity(msg)
    if velocity is None:
        return None

    speed, heading, vertical_rate, speed_type = velocity
    if speed_type != 'GS':
        # Airspeed subtypes carry magnetic heading, not track
        speed = heading = None
    return speed, heading, vertical_rate


class BeastDecoder:
    """
    Decoder for the Beast binary protocol (port 30005)

    Frames are `1A <type> <6-byte timestamp> <signal> <payload>` with any
    0x1A data byte doubled. Only 14-byte extended squitters with DF 17/18
    are decoded into aircraft updates.
    """

    def __init__(self, reference: Optional[Coordinate] = None):
        self.buffer = bytearray()
        self.aircraft: Dict[str, AircraftRecord] = {}
        self.cpr = CPRTracker(reference)

        self.stats = {
            'frames_received': 0,
            'frames_decoded': 0,
            'frames_ignored': 0,
            'crc_failures': 0,
            'resyncs': 0,
        }

    def set_reference_position(self, reference: Optional[Coordinate]) -> None:
        self.cpr.set_reference_position(reference)

    def feed(self, chunk: bytes, now: Optional[datetime] = None) -> List[Updated]:
        """
        Add received bytes and decode every complete frame

        Args:
            chunk: Raw bytes from the stream
            now: Ingestion time

        Returns:
            One Updated event per decoded ADS-B frame
        """
        now = now or datetime.now()
        self.buffer.extend(chunk)

        updates = []
        for frame_type, payload in self._extract_frames():
            self.stats['frames_received'] += 1
            if frame_type != 0x33 or len(payload) != 14:
                self.stats['frames_ignored'] += 1
                continue
            update = self.decode_extended_squitter(bytes(payload), now)
            if update is not None:
                updates.append(update)
        return updates

    def _extract_frames(self) -> Iterable[Tuple[int, bytearray]]:
        """Pull complete frames off the buffer, leaving any partial frame"""
        buf = self.buffer
        while buf:
            start = buf.find(BEAST_ESCAPE)
            if start < 0:
                buf.clear()
                return
            if start > 0:
                del buf[:start]

            if len(buf) < 2:
                return

            frame_type = buf[1]
            try:
                payload_length = self.payload_length(frame_type)
            except InvalidFrameTypeError as e:
                # Drop the escape byte and rescan
                self.stats['resyncs'] += 1
                logger.debug(f"Beast resync: {e}")
                del buf[:1]
                continue

            body, consumed = self._unescape(buf, 2, BEAST_HEADER_LENGTH + payload_length)
            if body is None:
                if consumed is None:
                    return  # need more data
                # A lone escape inside the frame starts a new frame
                self.stats['resyncs'] += 1
                del buf[:consumed]
                continue

            del buf[:consumed]
            yield frame_type, body[BEAST_HEADER_LENGTH:]

    @staticmethod
    def payload_length(frame_type: int) -> int:
        try:
            return BEAST_PAYLOAD_LENGTHS[frame_type]
        except KeyError:
            raise InvalidFrameTypeError(frame_type) from None

    @staticmethod
    def _unescape(buf: bytearray, offset: int, length: int) -> Tuple[Optional[bytearray], Optional[int]]:
        """
        Read `length` unescaped bytes starting at `offset`

        Returns:
            (body, end offset) on success, (None, None) when the buffer is
            short, or (None, offset of the interrupting escape) when another
            frame starts first
        """
        body = bytearray()
        i = offset
        while len(body) < length:
            if i >= len(buf):
                return None, None
            byte = buf[i]
            if byte == BEAST_ESCAPE:
                if i + 1 >= len(buf):
                    return None, None
                if buf[i + 1] != BEAST_ESCAPE:
                    return None, i
                i += 1
            body.append(byte)
            i += 1
        return body, i

    def decode_extended_squitter(self, payload: bytes, now: datetime) -> Optional[Updated]:
        """
        Decode one 14-byte Mode-S extended squitter

        Args:
            payload: Message bytes
            now: Ingestion time

        Returns:
            Updated event, or None for non ADS-B downlink formats and
            frames failing the CRC check
        """
        msg = payload.hex().upper()
        if pms.df(msg) not in (17, 18):
            self.stats['frames_ignored'] += 1
            return None
        if pms.crc(msg) != 0:
            self.stats['crc_failures'] += 1
            logger.debug(f"Dropping extended squitter with bad CRC: {msg}")
            return None

        icao_hex = pms.icao(msg).upper()
        type_code = pms.adsb.typecode(msg)

        record = self.aircraft.get(icao_hex)
        if record is None:
            record = AircraftRecord(icao_hex=icao_hex, last_seen=now)
            self.aircraft[icao_hex] = record

        if type_code is not None and 1 <= type_code <= 4:
            callsign = decode_callsign(msg)
            if callsign:
                record.callsign = callsign
        elif type_code is not None and 9 <= type_code <= 18:
            altitude = decode_altitude(payload)
            is_odd, lat_cpr, lon_cpr = decode_cpr_fields(msg)
            frame = CPRFrame(is_odd, lat_cpr, lon_cpr, altitude, now.timestamp())
            position = self.cpr.add_frame(icao_hex, frame)
            record.on_ground = False
            if altitude is not None:
                record.altitude_feet = altitude
            if position is not None:
                record.position = position
        elif type_code == 19:
            velocity = decode_velocity(msg)
            if velocity is not None:
                speed, heading, vertical_rate = velocity
                if speed is not None:
                    record.speed_knots = speed
                    record.heading_degrees = heading
                if vertical_rate is not None:
                    record.vertical_rate_fpm = vertical_rate

        record.last_seen = now
        self.stats['frames_decoded'] += 1
        return Updated(record.copy())

    def prune(self, now: datetime, max_age_sec: float) -> int:
        """
        Evict cached aircraft older than max_age_sec together with their
        CPR state, and CPR state whose frames are older than 60 seconds
        """
        stale = [icao for icao, record in self.aircraft.items()
                 if record.age_seconds(now) > max_age_sec]
        for icao in stale:
            del self.aircraft[icao]
        self.cpr.prune(now.timestamp(), self.aircraft.keys())
        return len(stale)

    def reset(self) -> None:
        self.buffer.clear()
        self.aircraft.clear()
        self.cpr.clear()
