#!/usr/bin/env python3
"""
Unit tests for the SBS BaseStation decoder and the SBS provider path into
the aircraft state store.
"""

import unittest
from datetime import datetime

from feed_aggregator.aircraft import Coordinate, Updated
from feed_aggregator.aircraft_tracker import AircraftStateStore
from feed_aggregator.config import ProtocolKind, SettingsSnapshot, SourceConfig
from feed_aggregator.decoder import SBSDecoder
from feed_aggregator.exceptions import DecodeError
from feed_aggregator.message_source import SBSProvider, SourceState

NOW = datetime(2024, 6, 1, 12, 0, 0)


def sbs_line(icao="A12345", callsign="", altitude="", speed="", track="",
             lat="", lon="", vertical_rate="", squawk="", transmission="3"):
    """Build a 22-field MSG line"""
    fields = ["MSG", transmission, "1", "1", icao, "1",
              "2024/06/01", "12:00:00.000", "2024/06/01", "12:00:00.000",
              callsign, altitude, speed, track, lat, lon, vertical_rate, squawk,
              "0", "0", "0", "0"]
    return ",".join(fields)


class TestSBSParsing(unittest.TestCase):
    """Test cases for single line parsing."""

    def test_full_line(self):
        line = sbs_line(callsign="UAL123  ", altitude="35000", speed="450", track="180",
                        lat="37.7749", lon="-122.4194", vertical_rate="-64", squawk="1200")

        record = SBSDecoder.parse_line(line, NOW)

        self.assertEqual(record.icao_hex, "A12345")
        self.assertEqual(record.callsign, "UAL123")
        self.assertEqual(record.altitude_feet, 35000)
        self.assertEqual(record.speed_knots, 450.0)
        self.assertEqual(record.heading_degrees, 180.0)
        self.assertEqual(record.position, Coordinate(37.7749, -122.4194))
        self.assertEqual(record.vertical_rate_fpm, -64.0)
        self.assertEqual(record.squawk, "1200")
        self.assertEqual(record.last_seen, NOW)

    def test_empty_fields_are_absent(self):
        record = SBSDecoder.parse_line(sbs_line(altitude="35000"), NOW)
        self.assertIsNone(record.callsign)
        self.assertIsNone(record.position)
        self.assertIsNone(record.speed_knots)
        self.assertIsNone(record.squawk)

    def test_lone_latitude_gives_no_position(self):
        record = SBSDecoder.parse_line(sbs_line(lat="37.7749"), NOW)
        self.assertIsNone(record.position)

    def test_non_finite_numbers_ignored(self):
        record = SBSDecoder.parse_line(sbs_line(lat="nan", lon="4.8", speed="inf", altitude="1200"), NOW)
        self.assertIsNone(record.position)
        self.assertIsNone(record.speed_knots)
        self.assertEqual(record.altitude_feet, 1200)

    def test_unparseable_number_ignored(self):
        record = SBSDecoder.parse_line(sbs_line(altitude="FL350", speed="450"), NOW)
        self.assertIsNone(record.altitude_feet)
        self.assertEqual(record.speed_knots, 450.0)

    def test_short_line_rejected(self):
        with self.assertRaises(DecodeError):
            SBSDecoder.parse_line("MSG,3,1,1,A12345,1,2024/06/01,12:00:00.000,2024/06/01,12:00:00.000", NOW)

    def test_non_msg_line_rejected(self):
        for line in ("STA,,1,1,A12345,1,,,,,", "AIR,,1,1,A12345,1,,,,,,", "", "garbage"):
            with self.assertRaises(DecodeError):
                SBSDecoder.parse_line(line, NOW)

    def test_empty_icao_rejected(self):
        with self.assertRaises(DecodeError):
            SBSDecoder.parse_line(sbs_line(icao="  ", altitude="35000"), NOW)

    def test_minimum_field_count_accepted(self):
        record = SBSDecoder.parse_line("MSG,1,1,1,abc123,1,,,,,DAL9", NOW)
        self.assertEqual(record.icao_hex, "ABC123")
        self.assertEqual(record.callsign, "DAL9")


class TestSBSStream(unittest.TestCase):
    """Test cases for line framing and the per-aircraft cache."""

    def setUp(self):
        self.decoder = SBSDecoder()

    def test_fragment_kept_across_calls(self):
        line = sbs_line(callsign="UAL123") + "\n"
        first, second = line[:25], line[25:]

        self.assertEqual(self.decoder.feed(first.encode(), NOW), [])
        self.assertEqual(self.decoder.buffer, first)

        updates = self.decoder.feed(second.encode(), NOW)
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0].record.callsign, "UAL123")
        self.assertEqual(self.decoder.buffer, "")

    def test_crlf_terminated_lines(self):
        data = (sbs_line(squawk="7700") + "\r\n" + sbs_line(icao="B22222", altitude="1000") + "\r\n")
        updates = self.decoder.feed(data.encode(), NOW)
        self.assertEqual([u.record.icao_hex for u in updates], ["A12345", "B22222"])
        self.assertEqual(updates[0].record.squawk, "7700")

    def test_invalid_lines_dropped(self):
        data = "MSG,3\n" + sbs_line(altitude="2000") + "\nSTA,,1\n"
        updates = self.decoder.feed(data.encode(), NOW)
        self.assertEqual(len(updates), 1)
        self.assertEqual(self.decoder.stats['lines_rejected'], 2)

    def test_fields_accumulate_per_aircraft(self):
        self.decoder.feed((sbs_line(callsign="UAL123", transmission="1") + "\n").encode(), NOW)
        updates = self.decoder.feed((sbs_line(altitude="35000") + "\n").encode(), NOW)

        record = updates[0].record
        self.assertEqual(record.callsign, "UAL123")
        self.assertEqual(record.altitude_feet, 35000)

    def test_published_records_are_copies(self):
        updates = self.decoder.feed((sbs_line(altitude="1000") + "\n").encode(), NOW)
        updates[0].record.altitude_feet = 99
        self.assertEqual(self.decoder.aircraft["A12345"].altitude_feet, 1000)

    def test_prune_and_reset(self):
        self.decoder.feed((sbs_line() + "\n" + sbs_line(icao="B22222")).encode(), NOW)
        self.assertEqual(len(self.decoder.aircraft), 1)

        later = NOW.replace(minute=2)
        self.assertEqual(self.decoder.prune(later, 60), 1)
        self.assertEqual(self.decoder.aircraft, {})

        self.decoder.reset()
        self.assertEqual(self.decoder.buffer, "")


class TestSBSProviderToStore(unittest.TestCase):
    """End to end: one SBS line through the provider into the store."""

    def test_single_line_populates_store(self):
        config = SourceConfig(protocol=ProtocolKind.SBS, host="localhost", name="SBS test")
        settings = SettingsSnapshot(sources=(config,), show_aircraft_without_position=True)
        provider = SBSProvider(config, settings)
        store = AircraftStateStore(settings)
        provider.add_update_listener(lambda source, update: store.apply_update(update))

        line = "MSG,3,1,1,A12345,1,2024/06/01,12:00:00.000,2024/06/01,12:00:00.000," \
               "UAL123,35000,450,180,37.7749,-122.4194,0,1200,0,0,0,0\n"

        before = datetime.now()
        provider._handle_data(line.encode(), provider._generation)
        after = datetime.now()

        record = store.get_record("A12345")
        self.assertIsNotNone(record)
        self.assertEqual(record.callsign, "UAL123")
        self.assertEqual(record.altitude_feet, 35000)
        self.assertEqual(record.speed_knots, 450.0)
        self.assertEqual(record.heading_degrees, 180.0)
        self.assertEqual(record.position, Coordinate(37.7749, -122.4194))
        self.assertEqual(record.squawk, "1200")
        self.assertTrue(before <= record.last_seen <= after)

        self.assertIs(provider.status.state, SourceState.CONNECTED)
        self.assertEqual(provider.status.aircraft_count, 1)


if __name__ == '__main__':
    unittest.main()
