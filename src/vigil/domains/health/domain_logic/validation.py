"""Value, unit, timestamp and safety checks against a signal definition.

Pure functions: nothing here touches storage. Validation dispatches on the
definition's value type tag rather than on per-signal code.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from vigil.core.catalog.models import SignalDefinition, ValueType
from vigil.core.results import ValidationReason
from vigil.core.storage.models import SafetyAlertLevel, parse_iso

# Accepted capture time window relative to now
MAX_BACKDATE = timedelta(days=365)
MAX_FUTURE_SKEW = timedelta(hours=1)


@dataclass(frozen=True)
class ValueCheck:
    """Outcome of validating one value. ``numeric`` is its arithmetic projection."""

    value: Any = None
    numeric: float | None = None
    reason: ValidationReason | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class SafetyCheck:
    level: SafetyAlertLevel
    message: str = ""


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    # math.isfinite converts to float, which overflows for very large ints
    return isinstance(value, int) or math.isfinite(value)


def _fail(reason: ValidationReason, message: str) -> ValueCheck:
    return ValueCheck(reason=reason, message=message)


def validate_value(definition: SignalDefinition, value: Any) -> ValueCheck:
    """Check ``value`` against the definition's type and bounds, options or pattern."""
    rule = definition.validation
    value_type = definition.value_type

    if value_type in (ValueType.NUMERIC, ValueType.SEVERITY):
        if not _is_number(value):
            return _fail(ValidationReason.WRONG_TYPE, f"{definition.name} must be a number")
        if rule.min is not None and value < rule.min:
            return _fail(ValidationReason.OUT_OF_RANGE, f"Value below minimum ({rule.min:g})")
        if rule.max is not None and value > rule.max:
            return _fail(ValidationReason.OUT_OF_RANGE, f"Value above maximum ({rule.max:g})")
        try:
            numeric = float(value)
        except OverflowError:
            return _fail(ValidationReason.OUT_OF_RANGE, f"{definition.name} is too large")
        return ValueCheck(value=value, numeric=numeric)

    if value_type is ValueType.BOOLEAN:
        if not isinstance(value, bool):
            return _fail(ValidationReason.WRONG_TYPE, f"{definition.name} must be true or false")
        return ValueCheck(value=value, numeric=1.0 if value else 0.0)

    if value_type is ValueType.CATEGORICAL:
        if not isinstance(value, str):
            return _fail(ValidationReason.WRONG_TYPE, f"{definition.name} must be one of its options")
        if value not in rule.options:
            return _fail(
                ValidationReason.INVALID_OPTION,
                f"Invalid option. Allowed: {', '.join(rule.options)}",
            )
        return ValueCheck(value=value)

    # Free text
    if not isinstance(value, str) or not value.strip():
        return _fail(ValidationReason.WRONG_TYPE, f"{definition.name} must be non-empty text")
    text = value.strip()
    if rule.pattern is not None and not re.fullmatch(rule.pattern, text):
        return _fail(ValidationReason.PATTERN_MISMATCH, f"{definition.name} has an invalid format")
    return ValueCheck(value=text)


def resolve_unit(definition: SignalDefinition, unit: str | None) -> tuple[str | None, str]:
    """Pick the unit to store.

    Returns:
        ``(unit, "")`` on success or ``(None, message)`` when the unit is
        missing or not recognized for this signal.
    """
    if unit:
        if definition.accepts_unit(unit):
            return unit, ""
        allowed = [u for u in (definition.default_unit, *definition.allowed_units) if u]
        if not allowed:
            return None, f"{definition.name} does not take a unit"
        return None, f"Invalid unit. Allowed: {', '.join(dict.fromkeys(allowed))}"

    if definition.is_numeric:
        if definition.default_unit:
            return definition.default_unit, ""
        return None, f"A unit is required for {definition.name}"
    return None, ""


def check_timestamp(captured_at: str | None, now: datetime) -> tuple[datetime | None, str]:
    """Parse and bound a capture time; ``None`` means 'now'.

    Returns:
        ``(moment, "")`` on success or ``(None, message)`` for unparseable,
        backdated (over a year) or future (over an hour) timestamps.
    """
    if not captured_at:
        return now, ""
    try:
        moment = parse_iso(captured_at)
    except (TypeError, ValueError):
        return None, "Timestamp is not valid ISO 8601"
    if moment < now - MAX_BACKDATE:
        return None, "Timestamp is more than a year in the past"
    if moment > now + MAX_FUTURE_SKEW:
        return None, "Timestamp is in the future"
    return moment, ""


def evaluate_safety(definition: SignalDefinition, numeric: float | None) -> SafetyCheck:
    """Classify a numeric value against the definition's absolute thresholds."""
    safety = definition.safety
    if safety is None or numeric is None or not definition.is_numeric:
        return SafetyCheck(SafetyAlertLevel.NORMAL)

    if (safety.extreme_low is not None and numeric < safety.extreme_low) or (
        safety.extreme_high is not None and numeric > safety.extreme_high
    ):
        return SafetyCheck(
            SafetyAlertLevel.EXTREME,
            safety.action_text or "Medical emergency level detected.",
        )

    if (safety.caution_low is not None and numeric < safety.caution_low) or (
        safety.caution_high is not None and numeric > safety.caution_high
    ):
        return SafetyCheck(
            SafetyAlertLevel.CAUTION,
            f"{definition.name} is in the urgent range. Please consult a clinician.",
        )

    if (safety.normal_min is not None and numeric < safety.normal_min) or (
        safety.normal_max is not None and numeric > safety.normal_max
    ):
        return SafetyCheck(
            SafetyAlertLevel.CAUTION,
            f"{definition.name} is outside the normal range.",
        )

    return SafetyCheck(SafetyAlertLevel.NORMAL)
