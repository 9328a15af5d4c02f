"""
Alert Rule Engine

Evaluates the configured alert rules against the live aircraft list.

evaluate() is edge-triggered: at most one new AlertEvent per aircraft per
call, gated by a per-aircraft cooldown and by comparison with the previous
evaluation. update_active_alerts() is level-triggered: it recomputes which
highlight colour applies to each aircraft right now.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .aircraft import AircraftRecord, Coordinate
from .config import AlertColor, AlertPriority, AlertRuleConfig, AlertRuleKind, AlertSound

logger = logging.getLogger(__name__)

MAX_RECENT_ALERTS = 50
DEFAULT_COOLDOWN_SEC = 300.0

SQUAWK_MEANINGS = {
    "7500": "HIJACK",
    "7600": "RADIO FAILURE",
    "7700": "EMERGENCY",
}


@dataclass
class AlertEvent:
    """One alert for one aircraft, produced by the first matching rule"""
    aircraft: AircraftRecord
    rule_id: str
    rule_name: str
    title: str
    subtitle: str
    body: str
    priority: AlertPriority
    sound: AlertSound
    send_notification: bool
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __str__(self) -> str:
        return f"[{self.priority.value.upper()}] {self.title} ({self.rule_name})"


def squawk_meaning(squawk: str) -> str:
    return SQUAWK_MEANINGS.get(squawk, f"Code {squawk}")


def matches_proximity(rule: AlertRuleConfig, aircraft: AircraftRecord, reference: Coordinate) -> bool:
    """Within max distance and, where known, inside the altitude bounds"""
    if rule.max_distance_nm is None:
        return False
    distance = aircraft.distance_from(reference)
    if distance is None or distance > rule.max_distance_nm:
        return False

    altitude = aircraft.altitude_feet
    if altitude is not None:
        if rule.max_altitude_feet is not None and altitude > rule.max_altitude_feet:
            return False
        if rule.min_altitude_feet is not None and altitude < rule.min_altitude_feet:
            return False
    return True


def watchlist_match_reason(rule: AlertRuleConfig, aircraft: AircraftRecord) -> Optional[str]:
    """
    Why an aircraft is on the watchlist, or None

    Callsigns match by substring, registrations and ICAO addresses exactly,
    all case-insensitive. When several lists match, the last one checked
    (ICAO) provides the reason.
    """
    reason = None

    if rule.watch_callsigns and aircraft.callsign:
        callsign = aircraft.callsign.upper()
        if any(entry.upper() in callsign for entry in rule.watch_callsigns):
            reason = f"Callsign match: {aircraft.callsign}"

    if rule.watch_registrations and aircraft.registration:
        registration = aircraft.registration.upper()
        if any(entry.upper() == registration for entry in rule.watch_registrations):
            reason = f"Registration match: {aircraft.registration}"

    if rule.watch_icao_hex:
        icao = aircraft.icao_hex.upper()
        if any(entry.upper() == icao for entry in rule.watch_icao_hex):
            reason = f"ICAO match: {aircraft.icao_hex}"

    return reason


def matches_squawk(rule: AlertRuleConfig, aircraft: AircraftRecord) -> bool:
    return bool(rule.squawk_codes) and aircraft.squawk is not None and aircraft.squawk in rule.squawk_codes


def matches_aircraft_type(rule: AlertRuleConfig, aircraft: AircraftRecord) -> bool:
    # type_categories would need enrichment data this core does not compute
    if not rule.type_codes or not aircraft.aircraft_type_code:
        return False
    type_code = aircraft.aircraft_type_code.upper()
    return any(entry.upper() in type_code for entry in rule.type_codes)


def matches_condition(rule: AlertRuleConfig, aircraft: AircraftRecord, reference: Coordinate) -> bool:
    """Whether a rule's condition holds right now, with no edge gating"""
    if rule.kind is AlertRuleKind.PROXIMITY:
        return matches_proximity(rule, aircraft, reference)
    if rule.kind is AlertRuleKind.WATCHLIST:
        return watchlist_match_reason(rule, aircraft) is not None
    if rule.kind is AlertRuleKind.SQUAWK:
        return matches_squawk(rule, aircraft)
    if rule.kind is AlertRuleKind.AIRCRAFT_TYPE:
        return matches_aircraft_type(rule, aircraft)
    return False


class AlertEngine:
    """
    Rule evaluation with cooldowns and edge detection

    State carried between evaluations (cooldowns and the previous aircraft
    snapshot) is only cleared by reset().
    """

    def __init__(self, rules: Optional[Iterable[AlertRuleConfig]] = None,
                 reference: Optional[Coordinate] = None,
                 cooldown_sec: float = DEFAULT_COOLDOWN_SEC,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize alert engine

        Args:
            rules: Rules in evaluation order
            reference: Observer location for proximity rules
            cooldown_sec: Minimum seconds between alerts for one aircraft
            clock: Time source, injectable for tests
        """
        self.rules: List[AlertRuleConfig] = list(rules or [])
        self.reference = reference or Coordinate(37.7749, -122.4194)
        self.cooldown_sec = cooldown_sec
        self.clock = clock

        self.cooldowns: Dict[str, datetime] = {}
        self.previous_state: Dict[str, AircraftRecord] = {}
        self.recent_alerts: List[AlertEvent] = []
        self.active_alert_colors: Dict[str, AlertColor] = {}

        self._lock = threading.RLock()

        self.stats = {
            'evaluations': 0,
            'alerts_generated': 0,
            'alerts_suppressed_cooldown': 0,
        }

    # Rule management

    def set_rules(self, rules: Iterable[AlertRuleConfig]) -> None:
        with self._lock:
            self.rules = list(rules)
        logger.info(f"Alert rules loaded: {len(self.rules)}")

    def add_rule(self, rule: AlertRuleConfig) -> None:
        with self._lock:
            self.rules.append(rule)
        logger.info(f"Added alert rule {rule.name}")

    def update_rule(self, rule: AlertRuleConfig) -> bool:
        with self._lock:
            for index, existing in enumerate(self.rules):
                if existing.id == rule.id:
                    self.rules[index] = rule
                    logger.info(f"Updated alert rule {rule.name}")
                    return True
        return False

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            before = len(self.rules)
            self.rules = [rule for rule in self.rules if rule.id != rule_id]
            removed = len(self.rules) != before
        if removed:
            logger.info(f"Deleted alert rule {rule_id}")
        return removed

    def set_reference_position(self, reference: Coordinate) -> None:
        with self._lock:
            self.reference = reference

    # Evaluation

    def evaluate(self, aircraft: List[AircraftRecord], now: Optional[datetime] = None) -> List[AlertEvent]:
        """
        Produce new alerts for the current aircraft list

        For each aircraft outside its cooldown the enabled rules are tried
        in order and the first one that fires creates the only alert for
        that aircraft. Every aircraft in the list then becomes the
        previous state for the next call.

        Args:
            aircraft: Current aircraft list
            now: Evaluation time, defaults to the engine clock

        Returns:
            New alerts, possibly empty
        """
        now = now or self.clock()
        with self._lock:
            self.stats['evaluations'] += 1
            rules = [rule for rule in self.rules if rule.enabled]
            new_alerts: List[AlertEvent] = []

            if rules:
                for record in aircraft:
                    last_alert = self.cooldowns.get(record.icao_hex)
                    if last_alert is not None and (now - last_alert).total_seconds() < self.cooldown_sec:
                        self.stats['alerts_suppressed_cooldown'] += 1
                        continue

                    for rule in rules:
                        alert = self._evaluate_rule(rule, record, now)
                        if alert is not None:
                            new_alerts.append(alert)
                            self.cooldowns[record.icao_hex] = now
                            break

            for record in aircraft:
                self.previous_state[record.icao_hex] = record.copy()

            if new_alerts:
                self.stats['alerts_generated'] += len(new_alerts)
                self.recent_alerts[:0] = new_alerts
                del self.recent_alerts[MAX_RECENT_ALERTS:]

        for alert in new_alerts:
            logger.info(f"Alert: {alert}")
        return new_alerts

    def update_active_alerts(self, aircraft: List[AircraftRecord]) -> Dict[str, AlertColor]:
        """
        Recompute the highlight colour for every aircraft

        Only enabled rules with a highlight colour take part; when several
        match one aircraft the last one in rule order wins.

        Args:
            aircraft: Current aircraft list

        Returns:
            Mapping of ICAO address to highlight colour
        """
        with self._lock:
            rules = [rule for rule in self.rules if rule.enabled and rule.highlight_color is not None]
            colors: Dict[str, AlertColor] = {}
            for record in aircraft:
                for rule in rules:
                    if matches_condition(rule, record, self.reference):
                        colors[record.icao_hex] = rule.highlight_color
            self.active_alert_colors = colors
            return dict(colors)

    def _evaluate_rule(self, rule: AlertRuleConfig, aircraft: AircraftRecord,
                       now: datetime) -> Optional[AlertEvent]:
        previous = self.previous_state.get(aircraft.icao_hex)

        if rule.kind is AlertRuleKind.PROXIMITY:
            if not matches_proximity(rule, aircraft, self.reference):
                return None
            if previous is not None:
                previous_distance = previous.distance_from(self.reference)
                if previous_distance is not None and previous_distance <= rule.max_distance_nm:
                    return None
            return self._make_alert(rule, aircraft, now, f"Aircraft Nearby: {aircraft.get_display_name()}")

        if rule.kind is AlertRuleKind.WATCHLIST:
            reason = watchlist_match_reason(rule, aircraft)
            if reason is None or previous is not None:
                return None
            return self._make_alert(rule, aircraft, now, f"Watchlist: {aircraft.get_display_name()}",
                                    body_prefix=reason)

        if rule.kind is AlertRuleKind.SQUAWK:
            if not matches_squawk(rule, aircraft):
                return None
            if previous is not None and previous.squawk == aircraft.squawk:
                return None
            meaning = squawk_meaning(aircraft.squawk)
            return self._make_alert(rule, aircraft, now, f"⚠️ {meaning}: {aircraft.get_display_name()}")

        if rule.kind is AlertRuleKind.AIRCRAFT_TYPE:
            if not matches_aircraft_type(rule, aircraft) or previous is not None:
                return None
            type_code = aircraft.aircraft_type_code or "Unknown"
            return self._make_alert(rule, aircraft, now, f"{type_code}: {aircraft.get_display_name()}")

        return None

    def _make_alert(self, rule: AlertRuleConfig, aircraft: AircraftRecord, now: datetime,
                    title: str, body_prefix: Optional[str] = None) -> AlertEvent:
        body = aircraft.detail_summary(self.reference)
        if body_prefix:
            body = f"{body_prefix}\n{body}"
        return AlertEvent(
            aircraft=aircraft.copy(),
            rule_id=rule.id,
            rule_name=rule.name,
            title=title,
            subtitle=aircraft.notification_subtitle,
            body=body,
            priority=rule.priority,
            sound=rule.sound,
            send_notification=rule.send_notification,
            timestamp=now,
        )

    # State management

    def clear_cooldowns(self) -> None:
        with self._lock:
            self.cooldowns.clear()

    def clear_alerts(self) -> None:
        with self._lock:
            self.recent_alerts.clear()

    def reset(self) -> None:
        """Forget cooldowns and the previous aircraft snapshot together"""
        with self._lock:
            self.cooldowns.clear()
            self.previous_state.clear()
            self.active_alert_colors.clear()
        logger.info("Alert engine state reset")

    def get_recent_alerts(self, limit: Optional[int] = None) -> List[AlertEvent]:
        with self._lock:
            alerts = list(self.recent_alerts)
        return alerts[:limit] if limit is not None else alerts

    def get_statistics(self) -> Dict[str, object]:
        with self._lock:
            return {
                **self.stats,
                'rules': len(self.rules),
                'enabled_rules': sum(1 for rule in self.rules if rule.enabled),
                'aircraft_in_cooldown': len(self.cooldowns),
                'recent_alerts': len(self.recent_alerts),
            }
