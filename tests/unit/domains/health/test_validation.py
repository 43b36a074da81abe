"""Tests for value, unit, timestamp and safety validation."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from vigil.core.catalog.models import SignalSource
from vigil.core.results import ValidationReason
from vigil.core.storage.models import SafetyAlertLevel, to_iso
from vigil.domains.health.domain_logic.signal_models import (
    confirmed_confidence,
    is_fresh,
    meets_threshold,
    risk_contribution,
    sanitize_context,
    source_confidence,
)
from vigil.domains.health.domain_logic.validation import (
    check_timestamp,
    evaluate_safety,
    resolve_unit,
    validate_value,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestValidateValue:
    @pytest.mark.parametrize("value", [40, 72, 72.5, 200])
    def test_numeric_in_range(self, catalog, value):
        check = validate_value(catalog.lookup("heart_rate"), value)
        assert check.ok
        assert check.numeric == float(value)

    @pytest.mark.parametrize("value", [39, 201])
    def test_numeric_out_of_range(self, catalog, value):
        check = validate_value(catalog.lookup("heart_rate"), value)
        assert check.reason is ValidationReason.OUT_OF_RANGE

    @pytest.mark.parametrize("value", ["72", True, None, float("nan"), float("inf")])
    def test_numeric_wrong_type(self, catalog, value):
        check = validate_value(catalog.lookup("heart_rate"), value)
        assert check.reason is ValidationReason.WRONG_TYPE

    def test_huge_integer(self, catalog):
        heart_rate = catalog.lookup("heart_rate")
        assert validate_value(heart_rate, 10**400).reason is ValidationReason.OUT_OF_RANGE

        unbounded = replace(heart_rate, validation=replace(heart_rate.validation, max=None))
        assert validate_value(unbounded, 10**400).reason is ValidationReason.OUT_OF_RANGE
        assert validate_value(unbounded, 10**6).numeric == 1e6

    def test_severity_bounds(self, catalog):
        headache = catalog.lookup("headache")
        assert validate_value(headache, 7).ok
        assert validate_value(headache, 11).reason is ValidationReason.OUT_OF_RANGE

    def test_boolean(self, catalog):
        fever = catalog.lookup("fever")
        assert validate_value(fever, True).numeric == 1.0
        assert validate_value(fever, False).numeric == 0.0
        assert validate_value(fever, "yes").reason is ValidationReason.WRONG_TYPE

    def test_categorical(self, catalog):
        mood = catalog.lookup("mood")
        check = validate_value(mood, "good")
        assert check.ok and check.numeric is None
        bad = validate_value(mood, "ecstatic")
        assert bad.reason is ValidationReason.INVALID_OPTION
        assert "very_low" in bad.message

    def test_text(self, catalog):
        name = catalog.lookup("medication_name")
        assert validate_value(name, "  Ibuprofen ").value == "Ibuprofen"
        assert validate_value(name, "   ").reason is ValidationReason.WRONG_TYPE
        assert validate_value(name, "drop;table").reason is ValidationReason.PATTERN_MISMATCH


class TestResolveUnit:
    def test_default_unit_applied(self, catalog):
        assert resolve_unit(catalog.lookup("heart_rate"), None) == ("bpm", "")

    def test_alternate_unit_accepted(self, catalog):
        assert resolve_unit(catalog.lookup("heart_rate"), "count/min") == ("count/min", "")

    def test_unknown_unit_rejected(self, catalog):
        unit, message = resolve_unit(catalog.lookup("heart_rate"), "Hz")
        assert unit is None
        assert "bpm" in message

    def test_categorical_has_no_unit(self, catalog):
        assert resolve_unit(catalog.lookup("mood"), None) == (None, "")
        unit, message = resolve_unit(catalog.lookup("mood"), "kg")
        assert unit is None and "does not take a unit" in message


class TestCheckTimestamp:
    def test_missing_means_now(self):
        assert check_timestamp(None, NOW) == (NOW, "")

    def test_zulu_suffix(self):
        moment, error = check_timestamp("2026-02-28T08:00:00Z", NOW)
        assert not error
        assert moment.hour == 8

    @pytest.mark.parametrize(
        "value, message",
        [
            ("yesterday", "ISO 8601"),
            (to_iso(NOW - timedelta(days=366)), "year in the past"),
            (to_iso(NOW + timedelta(hours=2)), "future"),
        ],
    )
    def test_rejected(self, value, message):
        moment, error = check_timestamp(value, NOW)
        assert moment is None
        assert message in error

    def test_small_clock_skew_allowed(self):
        moment, error = check_timestamp(to_iso(NOW + timedelta(minutes=30)), NOW)
        assert moment is not None and not error


class TestEvaluateSafety:
    @pytest.mark.parametrize(
        "value, level",
        [
            (72, SafetyAlertLevel.NORMAL),
            (105, SafetyAlertLevel.CAUTION),
            (130, SafetyAlertLevel.CAUTION),
            (180, SafetyAlertLevel.CAUTION),
            (181, SafetyAlertLevel.EXTREME),
        ],
    )
    def test_heart_rate_levels(self, catalog, value, level):
        assert evaluate_safety(catalog.lookup("heart_rate"), value).level is level

    def test_extreme_message_uses_action_text(self, catalog):
        check = evaluate_safety(catalog.lookup("heart_rate"), 190)
        assert check.message == "Heart rate is critically abnormal."

    def test_no_thresholds(self, catalog):
        assert evaluate_safety(catalog.lookup("steps_count"), 49000).level is SafetyAlertLevel.NORMAL


class TestConfidence:
    def test_source_table(self):
        assert source_confidence(SignalSource.DEVICE_HEALTHKIT) == 0.95
        assert source_confidence(SignalSource.DAILY_CHECKIN) == 0.90
        assert source_confidence(SignalSource.MANUAL_INPUT) == 0.75

    def test_confirmation_boost_is_capped(self):
        assert confirmed_confidence(0.5) == 0.7
        assert confirmed_confidence(0.7) == 0.8
        assert confirmed_confidence(0.99) == 0.8

    def test_thresholds(self):
        assert meets_threshold(0.7, "trend_analysis")
        assert not meets_threshold(0.69, "trend_analysis")
        assert meets_threshold(0.5, "emergency_trigger")


class TestRiskAndFreshness:
    def test_risk_contribution(self, catalog, seed):
        (instance,) = seed("heart_rate", [(1, 72)])
        assert risk_contribution(catalog.lookup("heart_rate"), instance) == 0.525

    def test_low_confidence_contributes_nothing(self, catalog, seed):
        (instance,) = seed("heart_rate", [(1, 72)], confidence=0.5)
        assert risk_contribution(catalog.lookup("heart_rate"), instance) == 0.0

    def test_non_risk_signal(self, catalog, seed):
        (instance,) = seed("steps_count", [(1, 8000)], source=SignalSource.DEVICE_HEALTHKIT, confidence=0.95)
        assert risk_contribution(catalog.lookup("steps_count"), instance) == 0.0

    def test_freshness(self, catalog, seed, clock):
        definition = catalog.lookup("heart_rate")
        (instance,) = seed("heart_rate", [(0, 72)])
        assert is_fresh(definition, instance, clock())
        later = clock() + timedelta(hours=definition.freshness_hours, minutes=1)
        assert not is_fresh(definition, instance, later)


class TestSanitizeContext:
    def test_keeps_whitelisted_values(self):
        clean = sanitize_context({
            "activity_state": "resting",
            "cycle_day": 14,
            "fasting": True,
            "notes": "after <b>coffee</b>",
        })
        assert clean == {
            "activity_state": "resting",
            "cycle_day": 14,
            "fasting": True,
            "notes": "after bcoffee/b",
        }

    def test_drops_unknown_and_malformed(self):
        clean = sanitize_context({
            "activity_state": "flying",
            "cycle_day": 99,
            "pregnancy_trimester": True,
            "favourite_colour": "blue",
        })
        assert clean == {}

    def test_none(self):
        assert sanitize_context(None) == {}
