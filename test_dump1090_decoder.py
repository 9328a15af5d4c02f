#!/usr/bin/env python3
"""
Unit tests for the dump1090 aircraft.json decoder.
"""

import json
import unittest
from datetime import datetime

from feed_aggregator.aircraft import AltitudeFeet, OnGround, Snapshot
from feed_aggregator.decoder import Dump1090Decoder
from feed_aggregator.exceptions import DecodeError

NOW = datetime(2024, 6, 1, 12, 0, 0)


def document(*entries):
    return json.dumps({'now': 1717243200.0, 'messages': 1234, 'aircraft': list(entries)}).encode()


class TestDump1090Decoder(unittest.TestCase):
    """Test cases for Dump1090Decoder."""

    def setUp(self):
        self.decoder = Dump1090Decoder()

    def test_full_entry(self):
        body = document({
            'hex': 'a12345', 'flight': 'UAL123  ', 'lat': 37.7749, 'lon': -122.4194,
            'alt_baro': 35000, 'alt_geom': 35500, 'gs': 450.2, 'track': 180.5,
            'baro_rate': -640, 'squawk': '1200', 'r': 'N12345', 't': 'B738',
        })

        snapshot = self.decoder.decode(body, now=NOW)

        self.assertIsInstance(snapshot, Snapshot)
        self.assertEqual(len(snapshot.records), 1)
        record = snapshot.records[0]
        self.assertEqual(record.icao_hex, 'A12345')
        self.assertEqual(record.callsign, 'UAL123')
        self.assertEqual(record.position.latitude, 37.7749)
        self.assertEqual(record.position.longitude, -122.4194)
        self.assertEqual(record.altitude_feet, 35000)
        self.assertEqual(record.speed_knots, 450.2)
        self.assertEqual(record.heading_degrees, 180.5)
        self.assertEqual(record.vertical_rate_fpm, -640)
        self.assertEqual(record.squawk, '1200')
        self.assertEqual(record.registration, 'N12345')
        self.assertEqual(record.aircraft_type_code, 'B738')
        self.assertEqual(record.last_seen, NOW)

    def test_altitude_resolution(self):
        self.assertEqual(Dump1090Decoder.resolve_altitude({'alt_baro': 12000, 'alt_geom': 12300}),
                         AltitudeFeet(12000))
        self.assertEqual(Dump1090Decoder.resolve_altitude({'alt_geom': 12300}), AltitudeFeet(12300))
        self.assertEqual(Dump1090Decoder.resolve_altitude({'alt_baro': 'ground'}), OnGround())
        self.assertIsNone(Dump1090Decoder.resolve_altitude({}))

    def test_ground_yields_no_altitude(self):
        snapshot = self.decoder.decode(document({'hex': 'abc123', 'alt_baro': 'ground'}), now=NOW)
        self.assertEqual(len(snapshot.records), 1)
        self.assertIsNone(snapshot.records[0].altitude_feet)
        self.assertTrue(snapshot.records[0].on_ground)

    def test_airborne_altitude_not_on_ground(self):
        snapshot = self.decoder.decode(document({'hex': 'abc123', 'alt_baro': 1500}), now=NOW)
        self.assertFalse(snapshot.records[0].on_ground)
        snapshot = self.decoder.decode(document({'hex': 'abc123'}), now=NOW)
        self.assertIsNone(snapshot.records[0].on_ground)

    def test_non_finite_numbers(self):
        body = (b'{"aircraft": [{"hex": "abc123", "alt_baro": Infinity, "alt_geom": 2500},'
                b' {"hex": "def456", "alt_baro": NaN, "gs": 210.0},'
                b' {"hex": "bad789", "lat": NaN, "lon": 4.8}]}')

        snapshot = self.decoder.decode(body, now=NOW)

        records = {r.icao_hex: r for r in snapshot.records}
        self.assertEqual(sorted(records), ["ABC123", "DEF456"])
        self.assertEqual(records["ABC123"].altitude_feet, 2500)
        self.assertIsNone(records["DEF456"].altitude_feet)
        self.assertEqual(records["DEF456"].speed_knots, 210.0)
        self.assertEqual(self.decoder.stats['entries_skipped'], 1)

    def test_blank_flight_is_absent(self):
        snapshot = self.decoder.decode(document({'hex': 'abc123', 'flight': '        '}), now=NOW)
        self.assertIsNone(snapshot.records[0].callsign)

    def test_lone_latitude_gives_no_position(self):
        snapshot = self.decoder.decode(document({'hex': 'abc123', 'lat': 37.0}), now=NOW)
        self.assertIsNone(snapshot.records[0].position)

    def test_malformed_entries_skipped(self):
        body = document(
            {'hex': 'aaaaaa'},
            {'flight': 'NOHEX'},
            'not an object',
            {'hex': 'bbbbbb', 'lat': 'north', 'lon': 1.0},
            {'hex': 'cccccc', 'gs': 200},
        )

        snapshot = self.decoder.decode(body, now=NOW)

        self.assertEqual([r.icao_hex for r in snapshot.records], ['AAAAAA', 'CCCCCC'])
        self.assertEqual(self.decoder.stats['entries_skipped'], 3)

    def test_empty_aircraft_list(self):
        snapshot = self.decoder.decode(document(), now=NOW)
        self.assertEqual(snapshot.records, [])

    def test_invalid_json_rejected(self):
        with self.assertRaises(DecodeError):
            self.decoder.decode(b'{"aircraft": [', now=NOW)

    def test_missing_aircraft_list_rejected(self):
        with self.assertRaises(DecodeError):
            self.decoder.decode(b'{"now": 1}', now=NOW)
        with self.assertRaises(DecodeError):
            self.decoder.decode(b'{"aircraft": {}}', now=NOW)
        with self.assertRaises(DecodeError):
            self.decoder.decode(b'[]', now=NOW)
        self.assertEqual(self.decoder.stats['documents_rejected'], 3)


if __name__ == '__main__':
    unittest.main()
