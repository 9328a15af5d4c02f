#!/usr/bin/env python3
"""
Integration tests for the aggregator service: provider updates flowing
through the store into alerts, highlights and status subscribers.
"""

import threading
import unittest
from unittest import mock

from feed_aggregator.aggregator import AggregatorService
from feed_aggregator.aircraft import AircraftRecord, Coordinate, Updated
from feed_aggregator.config import (AggregatorConfig, AlertColor, AlertRuleConfig, ProtocolKind,
                                    SettingsSnapshot, SourceConfig)
from feed_aggregator.message_source import ADSBProvider, SourceState, SourceStatus

RED = AlertColor(1.0, 0.0, 0.0)


class FakeProvider(ADSBProvider):
    """Provider without I/O"""

    protocol = ProtocolKind.BEAST

    def __init__(self, config, settings=None):
        super().__init__(config, settings, rate_interval=3600)

    def _open_connection(self):
        pass

    def _close_connection(self):
        pass

    def _reset_caches(self):
        pass

    def emit(self, record):
        self._publish([Updated(record)], self._generation)

    def report(self, status):
        self._set_status(status, self._generation)


def settings_with(*sources, **overrides):
    rule = AlertRuleConfig.default_squawk_rule()
    rule.highlight_color = RED
    fields = dict(sources=sources, alert_rules=(rule,), alert_cooldown_sec=0,
                  show_aircraft_without_position=True)
    fields.update(overrides)
    return SettingsSnapshot(**fields)


class TestAggregatorService(unittest.TestCase):
    """Test cases for AggregatorService."""

    def setUp(self):
        self.source = SourceConfig(protocol=ProtocolKind.BEAST, name="feed", id="feed")
        self.service = AggregatorService(settings_with(self.source), provider_factory=FakeProvider)
        self.addCleanup(self.service.stop)

        self.alerts = []
        self.views = []
        self.highlights = []
        self.statuses = []
        self.service.subscribe_alerts(self.alerts.append)
        self.service.subscribe_aircraft(self.views.append)
        self.service.subscribe_highlights(self.highlights.append)
        self.service.subscribe_status(lambda status, rate: self.statuses.append(status))

    def provider(self):
        return self.service.coordinator.get_provider("feed")

    def test_emergency_squawk_reaches_subscribers(self):
        self.service.start()

        self.provider().emit(AircraftRecord("A12345", callsign="UAL123", squawk="7700"))

        self.assertEqual(len(self.alerts), 1)
        self.assertEqual(self.alerts[0].title, "⚠️ EMERGENCY: UAL123")
        self.assertEqual([r.icao_hex for r in self.views[-1]], ["A12345"])
        self.assertEqual(self.highlights[-1], {"A12345": RED})
        self.assertEqual(self.service.get_recent_alerts()[0].aircraft.callsign, "UAL123")

    def test_repeated_update_alerts_once(self):
        self.service.start()
        self.provider().emit(AircraftRecord("A12345", squawk="7700"))
        self.provider().emit(AircraftRecord("A12345", altitude_feet=3000))
        self.assertEqual(len(self.alerts), 1)
        self.assertEqual(len(self.views), 2)

    def test_status_subscribers(self):
        self.service.start()
        self.assertIs(self.statuses[-1].state, SourceState.CONNECTING)

        self.provider().report(SourceStatus.connected(4))

        self.assertEqual(self.statuses[-1], SourceStatus.connected(4))
        status = self.service.get_status()
        self.assertEqual(status['status'], "Connected (4 aircraft)")
        self.assertEqual(len(status['sources']), 1)

    def test_failing_subscriber_isolated(self):
        def broken(alert):
            raise RuntimeError("subscriber bug")

        self.service._alert_subscribers.insert(0, broken)
        self.service.start()
        self.provider().emit(AircraftRecord("A12345", squawk="7700"))
        self.assertEqual(len(self.alerts), 1)

    def test_stop_clears_aircraft(self):
        self.service.start()
        self.provider().emit(AircraftRecord("A12345", squawk="7700"))

        self.service.stop()

        self.assertEqual(self.service.get_aircraft(), [])
        self.assertEqual(self.views[-1], [])
        self.assertFalse(self.service.running)

    def test_apply_settings_now(self):
        self.service.start()
        second = SourceConfig(protocol=ProtocolKind.SBS, name="second", id="second")
        new_settings = settings_with(self.source, second,
                                     reference_location=Coordinate(52.3, 4.8),
                                     alert_rules=(), alert_cooldown_sec=60)

        self.service.apply_settings_now(new_settings)

        self.assertEqual(sorted(self.service.coordinator.providers), ["feed", "second"])
        self.assertTrue(self.service.coordinator.get_provider("second").is_running)
        self.assertEqual(self.service.alert_engine.rules, [])
        self.assertEqual(self.service.alert_engine.reference, Coordinate(52.3, 4.8))
        self.assertEqual(self.service.alert_engine.cooldown_sec, 60)
        self.assertEqual(self.service.store.reference, Coordinate(52.3, 4.8))

    def test_settings_are_debounced(self):
        service = AggregatorService(settings_with(), provider_factory=FakeProvider, debounce_sec=0.2)
        applied = threading.Event()
        snapshots = [settings_with(max_aircraft_display=n) for n in (10, 20, 30)]

        with mock.patch.object(service, 'apply_settings_now',
                               side_effect=lambda settings: applied.set()) as apply_now:
            for snapshot in snapshots:
                service.apply_settings(snapshot)
            self.assertTrue(applied.wait(5))

        apply_now.assert_called_once_with(snapshots[-1])

    def test_from_config(self):
        config = AggregatorConfig(sources=[self.source])
        config.alerts.rules = [AlertRuleConfig.default_proximity_rule()]

        service = AggregatorService.from_config(config, provider_factory=FakeProvider)

        self.assertEqual(service.settings.sources, (self.source,))
        self.assertEqual(len(service.alert_engine.rules), 1)


if __name__ == '__main__':
    unittest.main()
