"""Data models for the signal catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SignalCategory(str, Enum):
    LIFESTYLE = "lifestyle"
    SYMPTOM = "symptom"
    VITAL = "vital"
    MENTAL = "mental"
    MEDICATION = "medication"
    CONTEXT = "context"
    REPRODUCTIVE = "reproductive"


class ValueType(str, Enum):
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"
    BOOLEAN = "boolean"
    TEXT = "text"
    SEVERITY = "severity"


class SignalSource(str, Enum):
    """Where an observation came from.

    An automated extractor is never a source: it can only propose, and a
    person confirms through ``CHAT_CONFIRMED``.
    """

    DEVICE_HEALTHKIT = "device_healthkit"
    DEVICE_HEALTH_CONNECT = "device_health_connect"
    ONBOARDING = "onboarding"
    DAILY_CHECKIN = "daily_checkin"
    CHAT_CONFIRMED = "chat_confirmed"
    MANUAL_INPUT = "manual_input"


class Frequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    ON_CHANGE = "on_change"
    CONTINUOUS = "continuous"


@dataclass(frozen=True)
class ValidationRule:
    """Bounds, enumerated options or a pattern a value must satisfy."""

    min: float | None = None
    max: float | None = None
    options: tuple[str, ...] = ()
    pattern: str | None = None


@dataclass(frozen=True)
class SafetyThresholds:
    """Absolute danger thresholds for a single value.

    ``extreme_*`` values trip the capture safety gate; ``caution_*`` values
    and anything outside the normal range are stored with a caution flag.
    """

    normal_min: float | None = None
    normal_max: float | None = None
    caution_low: float | None = None
    caution_high: float | None = None
    extreme_low: float | None = None
    extreme_high: float | None = None
    action_text: str = ""


@dataclass(frozen=True)
class ContextRules:
    """Who a signal applies to."""

    requires_sex: str | None = None
    requires_age_min: int | None = None
    requires_age_max: int | None = None
    requires_condition: tuple[str, ...] = ()


@dataclass(frozen=True)
class DeviceMapping:
    ios: str | None = None      # HealthKit type identifier
    android: str | None = None  # Health Connect record type


@dataclass(frozen=True)
class SignalDefinition:
    """A single catalog entry: what a signal *is*, never what a user reported."""

    id: str
    name: str
    category: SignalCategory
    value_type: ValueType
    validation: ValidationRule
    allowed_sources: tuple[SignalSource, ...]
    frequency: Frequency = Frequency.ON_CHANGE
    default_unit: str | None = None
    allowed_units: tuple[str, ...] = ()
    longitudinal: bool = False
    trend_window_days: int = 0
    freshness_hours: int = 24
    affects_risk: bool = False
    risk_weight: float = 0.0
    context_rules: ContextRules = field(default_factory=ContextRules)
    safety: SafetyThresholds | None = None
    device_mapping: DeviceMapping = field(default_factory=DeviceMapping)
    requires_followup: tuple[str, ...] = ()

    @property
    def is_numeric(self) -> bool:
        """Numeric and severity signals carry arithmetic values."""
        return self.value_type in (ValueType.NUMERIC, ValueType.SEVERITY)

    def accepts_source(self, source: SignalSource) -> bool:
        return source in self.allowed_sources

    def accepts_unit(self, unit: str) -> bool:
        return unit == self.default_unit or unit in self.allowed_units


@dataclass
class UserContext:
    """Profile facts used to decide which signals apply to a person."""

    sex: str | None = None
    age: int | None = None
    conditions: list[str] = field(default_factory=list)
