#!/usr/bin/env python3
"""
Unit tests for the aircraft state store.
"""

import unittest
from datetime import datetime, timedelta

from feed_aggregator.aircraft import AircraftRecord, Coordinate, Removed, Snapshot, Updated
from feed_aggregator.aircraft_tracker import AircraftStateStore
from feed_aggregator.config import SettingsSnapshot

NOW = datetime(2024, 6, 1, 12, 0, 0)
HOME = Coordinate(37.7749, -122.4194)


def record(icao, seconds_ago=0, **fields):
    return AircraftRecord(icao_hex=icao, last_seen=NOW - timedelta(seconds=seconds_ago), **fields)


def north_of_home(nm):
    """Coordinate roughly `nm` nautical miles north of HOME"""
    return Coordinate(HOME.latitude + nm / 60.0, HOME.longitude)


class TestMerging(unittest.TestCase):
    """Test cases for applying provider updates."""

    def setUp(self):
        settings = SettingsSnapshot(reference_location=HOME, show_aircraft_without_position=True)
        self.store = AircraftStateStore(settings, clock=lambda: NOW)

    def test_merge_keeps_unsupplied_fields(self):
        self.store.apply_update(Updated(record("abc123", callsign="UAL1", altitude_feet=10000)))
        self.store.apply_update(Updated(record("ABC123", speed_knots=250.0, squawk="1200")))

        merged = self.store.get_record("abc123")
        self.assertEqual(merged.callsign, "UAL1")
        self.assertEqual(merged.altitude_feet, 10000)
        self.assertEqual(merged.speed_knots, 250.0)
        self.assertEqual(merged.squawk, "1200")
        self.assertEqual(len(self.store), 1)

    def test_ground_flag_merges(self):
        self.store.apply_update(Updated(record("ABC123", on_ground=True)))
        self.store.apply_update(Updated(record("ABC123", callsign="UAL1")))
        self.assertTrue(self.store.get_record("ABC123").on_ground)

        self.store.apply_update(Updated(record("ABC123", on_ground=False, altitude_feet=1200)))
        self.assertFalse(self.store.get_record("ABC123").on_ground)

    def test_merge_refreshes_last_seen(self):
        self.store.apply_update(Updated(record("ABC123", seconds_ago=30, callsign="UAL1")))
        self.store.apply_update(Updated(record("ABC123")))
        self.assertEqual(self.store.get_record("ABC123").last_seen, NOW)

    def test_store_holds_its_own_copy(self):
        incoming = record("ABC123", callsign="UAL1")
        self.store.apply_update(Updated(incoming))
        incoming.callsign = "CHANGED"
        self.assertEqual(self.store.get_record("ABC123").callsign, "UAL1")

    def test_removed(self):
        self.store.apply_update(Updated(record("ABC123")))
        self.store.apply_update(Removed("abc123"))
        self.assertIsNone(self.store.get_record("ABC123"))
        self.assertEqual(len(self.store), 0)

    def test_removed_unknown_is_harmless(self):
        self.store.apply_update(Removed("FFFFFF"))
        self.assertEqual(self.store.stats['aircraft_removed'], 0)

    def test_snapshot_replaces_map(self):
        self.store.apply_update(Updated(record("AAAAAA")))
        self.store.apply_update(Updated(record("BBBBBB")))

        self.store.apply_update(Snapshot([record("BBBBBB", callsign="NEW"), record("CCCCCC")]))

        self.assertIsNone(self.store.get_record("AAAAAA"))
        self.assertEqual(self.store.get_record("BBBBBB").callsign, "NEW")
        self.assertIsNotNone(self.store.get_record("CCCCCC"))
        self.assertEqual(len(self.store), 2)

    def test_empty_snapshot_clears(self):
        self.store.apply_update(Updated(record("AAAAAA")))
        self.store.apply_update(Snapshot([]))
        self.assertEqual(len(self.store), 0)
        self.assertEqual(self.store.get_aircraft(), [])

    def test_listener_receives_view(self):
        views = []
        self.store.add_listener(views.append)

        self.store.apply_update(Updated(record("AAAAAA")))
        self.store.apply_update(Updated(record("BBBBBB")))

        self.assertEqual(len(views), 2)
        self.assertEqual([r.icao_hex for r in views[-1]], ["AAAAAA", "BBBBBB"])
        self.assertEqual(self.store.last_update, NOW)

        self.store.remove_listener(views.append)
        self.store.apply_update(Updated(record("CCCCCC")))
        self.assertEqual(len(views), 2)

    def test_failing_listener_isolated(self):
        views = []

        def broken(view):
            raise RuntimeError("listener bug")

        self.store.add_listener(broken)
        self.store.add_listener(views.append)
        self.store.apply_update(Updated(record("AAAAAA")))
        self.assertEqual(len(views), 1)

    def test_clear_all(self):
        views = []
        self.store.apply_update(Updated(record("AAAAAA")))
        self.store.add_listener(views.append)

        self.store.clear_all()

        self.assertEqual(len(self.store), 0)
        self.assertEqual(views, [[]])


class TestSweep(unittest.TestCase):
    """Test cases for staleness eviction."""

    def setUp(self):
        settings = SettingsSnapshot(stale_threshold_sec=60, show_aircraft_without_position=True)
        self.store = AircraftStateStore(settings, clock=lambda: NOW)

    def test_sweep_evicts_only_stale(self):
        self.store.apply_update(Updated(record("OLD001", seconds_ago=61)))
        self.store.apply_update(Updated(record("EDGE01", seconds_ago=60)))
        self.store.apply_update(Updated(record("NEW001", seconds_ago=5)))

        removed = self.store.sweep(NOW)

        self.assertEqual(removed, 1)
        self.assertIsNone(self.store.get_record("OLD001"))
        self.assertIsNotNone(self.store.get_record("EDGE01"))
        self.assertIsNotNone(self.store.get_record("NEW001"))

    def test_sweep_uses_clock_by_default(self):
        self.store.apply_update(Updated(record("OLD001", seconds_ago=120)))
        self.assertEqual(self.store.sweep(), 1)
        self.assertEqual(self.store.stats['aircraft_expired'], 1)

    def test_nothing_stale_publishes_nothing(self):
        views = []
        self.store.apply_update(Updated(record("NEW001")))
        self.store.add_listener(views.append)
        self.assertEqual(self.store.sweep(NOW), 0)
        self.assertEqual(views, [])


class TestView(unittest.TestCase):
    """Test cases for the sorted, filtered and capped view."""

    def make_store(self, **settings):
        return AircraftStateStore(SettingsSnapshot(reference_location=HOME, **settings),
                                  clock=lambda: NOW)

    def populate(self, store):
        store.apply_update(Updated(record("FAR001", position=north_of_home(40))))
        store.apply_update(Updated(record("NEAR01", position=north_of_home(2))))
        store.apply_update(Updated(record("NOPOS1")))
        store.apply_update(Updated(record("MID001", position=north_of_home(10))))

    def test_sorted_by_distance_without_positionless(self):
        store = self.make_store()
        self.populate(store)
        self.assertEqual([r.icao_hex for r in store.get_aircraft()], ["NEAR01", "MID001", "FAR001"])
        self.assertEqual(len(store), 4)

    def test_positionless_sorted_last_when_shown(self):
        store = self.make_store(show_aircraft_without_position=True)
        self.populate(store)
        self.assertEqual([r.icao_hex for r in store.get_aircraft()],
                         ["NEAR01", "MID001", "FAR001", "NOPOS1"])

    def test_cap(self):
        store = self.make_store(max_aircraft_display=2)
        self.populate(store)
        self.assertEqual([r.icao_hex for r in store.get_aircraft()], ["NEAR01", "MID001"])

    def test_unlimited(self):
        store = self.make_store(max_aircraft_display=999, show_aircraft_without_position=True)
        for i in range(1100):
            store.apply_update(Updated(record(f"{i:06X}")))
        self.assertEqual(len(store.get_aircraft()), 1100)

    def test_settings_change_republishes(self):
        store = self.make_store()
        self.populate(store)
        views = []
        store.add_listener(views.append)

        store.apply_settings(SettingsSnapshot(reference_location=north_of_home(40), max_aircraft_display=1))

        self.assertEqual([r.icao_hex for r in views[-1]], ["FAR001"])

    def test_view_records_are_copies(self):
        store = self.make_store()
        self.populate(store)
        store.get_aircraft()[0].callsign = "CHANGED"
        self.assertIsNone(store.get_record("NEAR01").callsign)

    def test_statistics(self):
        store = self.make_store()
        self.populate(store)
        stats = store.get_statistics()
        self.assertEqual(stats['aircraft_tracked'], 4)
        self.assertEqual(stats['aircraft_displayed'], 3)
        self.assertEqual(stats['updates_applied'], 4)


if __name__ == '__main__':
    unittest.main()
