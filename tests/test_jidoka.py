"""
Tests for stop-the-line trigger evaluation and the event lifecycle.
"""
from datetime import datetime, timedelta, timezone

import pytest

from farm_safety.models.enums import ReadingType, Severity, TriggerKind, Unit
from farm_safety.safety.errors import IllegalStateTransition
from farm_safety.safety.jidoka import (
    DEFAULT_STOP_TRIGGERS,
    EXTERNAL_TRIGGERS,
    RECOMMENDED_ACTIONS,
    StopTriggerConfig,
    check,
    create_event,
    in_cooldown,
    recommended_actions,
    resolve,
    triggers_for_reading,
)
from farm_safety.safety.readings import to_fahrenheit

START = datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)


class TestThresholds:
    """Direction and escalation per trigger kind."""

    def test_frost_below_freezing_is_emergency(self):
        """
        INVARIANT: Anything under 32°F is an emergency regardless of the configured threshold.
        """
        result = check(TriggerKind.FROST_RISK, 30, StopTriggerConfig(threshold=35))
        assert result.triggered is True
        assert result.severity == Severity.EMERGENCY
        assert result.message == "Temperature 30°F below frost threshold 35°F"

    def test_frost_above_freezing_is_critical(self):
        assert check(TriggerKind.FROST_RISK, 33).severity == Severity.CRITICAL
        assert check(TriggerKind.FROST_RISK, 32).severity == Severity.CRITICAL
        assert check(TriggerKind.FROST_RISK, 36).triggered is False

    def test_overwatering(self):
        assert check(TriggerKind.OVERWATERING, 80).triggered is False
        warning = check(TriggerKind.OVERWATERING, 85)
        assert warning.severity == Severity.WARNING
        assert warning.message == "Soil moisture 85% exceeds threshold 80%"
        assert check(TriggerKind.OVERWATERING, 91).severity == Severity.CRITICAL

    def test_underwatering(self):
        assert check(TriggerKind.UNDERWATERING, 15).triggered is False
        assert check(TriggerKind.UNDERWATERING, 12).severity == Severity.WARNING
        assert check(TriggerKind.UNDERWATERING, 9).severity == Severity.CRITICAL

    def test_ec_spike_and_drop(self):
        assert check(TriggerKind.EC_SPIKE, 3.5).severity == Severity.WARNING
        assert check(TriggerKind.EC_SPIKE, 4.6).severity == Severity.CRITICAL
        drop = check(TriggerKind.EC_DROP, 0.05)
        assert drop.severity == Severity.WARNING
        assert "possible nutrient deficiency" in drop.message

    def test_heat(self):
        assert check(TriggerKind.HEAT_RISK, 105).triggered is False
        assert check(TriggerKind.HEAT_RISK, 108).severity == Severity.WARNING
        assert check(TriggerKind.HEAT_RISK, 111).severity == Severity.CRITICAL

    def test_disabled_config_never_triggers(self):
        assert check(TriggerKind.OVERWATERING, 99, StopTriggerConfig(enabled=False, threshold=80)).triggered is False

    def test_externally_raised_kinds_never_trigger_on_values(self):
        for kind in EXTERNAL_TRIGGERS:
            assert check(kind, 1000).triggered is False

    def test_default_configs_cover_every_kind(self):
        assert set(DEFAULT_STOP_TRIGGERS) == set(TriggerKind)
        assert DEFAULT_STOP_TRIGGERS[TriggerKind.OVERWATERING].cooldown_minutes == 240


class TestReadingMapping:

    def test_triggers_for_reading(self):
        assert triggers_for_reading(ReadingType.MOISTURE) == (TriggerKind.OVERWATERING, TriggerKind.UNDERWATERING)
        assert triggers_for_reading(ReadingType.EC) == (TriggerKind.EC_SPIKE, TriggerKind.EC_DROP)
        assert triggers_for_reading(ReadingType.PH) == ()

    def test_celsius_converts_to_fahrenheit(self):
        assert to_fahrenheit(0, Unit.CELSIUS) == 32
        assert to_fahrenheit(100, Unit.CELSIUS) == 212
        assert to_fahrenheit(50, Unit.FAHRENHEIT) == 50


class TestEventLifecycle:
    """Created unresolved, resolved exactly once."""

    def test_created_unresolved(self):
        event = create_event(TriggerKind.LEAK_DETECTED, Severity.EMERGENCY, "Flow with valves closed", now=START)
        assert event.id.startswith("jidoka_")
        assert event.resolved is False
        assert event.actions_taken == []

    def test_resolve_once(self):
        event = create_event(TriggerKind.OVERWATERING, Severity.CRITICAL, "Soil moisture 95%", sensor_id="soil-1")
        resolved = resolve(event, "farmer", notes="Drainage cleared", now=START).unwrap()
        assert resolved.resolved is True
        assert resolved.resolved_by == "farmer"
        assert resolved.notes == "Drainage cleared"

    def test_resolving_twice_is_refused(self):
        """
        INVARIANT: Resolving an already-resolved event is an illegal transition, never a silent no-op.
        """
        event = create_event(TriggerKind.OVERWATERING, Severity.CRITICAL, "Soil moisture 95%")
        resolved = resolve(event, "farmer", now=START).unwrap()
        with pytest.raises(IllegalStateTransition):
            resolve(resolved, "farmer", now=START).unwrap()

    def test_recommended_actions_for_every_kind(self):
        assert set(RECOMMENDED_ACTIONS) == set(TriggerKind)
        event = create_event(TriggerKind.LEAK_DETECTED, Severity.EMERGENCY, "Leak")
        assert recommended_actions(event)[0] == "Immediately shut off all valves"


class TestCooldown:

    def test_cooldown_window(self):
        config = StopTriggerConfig(threshold=80, cooldown_minutes=60)
        previous = create_event(TriggerKind.OVERWATERING, Severity.WARNING, "wet", sensor_id="soil-1", now=START)
        assert in_cooldown(previous, config, START + timedelta(minutes=30)) is True
        assert in_cooldown(previous, config, START + timedelta(minutes=61)) is False

    def test_no_previous_event_or_zero_cooldown(self):
        previous = create_event(TriggerKind.MANUAL_STOP, Severity.CRITICAL, "stop", now=START)
        assert in_cooldown(None, StopTriggerConfig(cooldown_minutes=60), START) is False
        assert in_cooldown(previous, StopTriggerConfig(cooldown_minutes=0), START) is False
