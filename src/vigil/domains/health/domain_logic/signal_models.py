"""Health signal domain constants: source reliability, confidence thresholds
and the situational-context whitelist."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any

from vigil.core.catalog.models import SignalDefinition, SignalSource
from vigil.core.storage.models import SignalInstance, parse_iso


# ---------------------------------------------------------------------------
# Source reliability
# ---------------------------------------------------------------------------

# Confidence is derived from the source, never supplied by the caller.
SOURCE_CONFIDENCE: dict[SignalSource, float] = {
    SignalSource.DEVICE_HEALTHKIT: 0.95,       # hardware sensor
    SignalSource.DEVICE_HEALTH_CONNECT: 0.95,  # hardware sensor
    SignalSource.ONBOARDING: 0.85,             # structured questions
    SignalSource.DAILY_CHECKIN: 0.90,          # structured chips/buttons
    SignalSource.CHAT_CONFIRMED: 0.80,         # person confirmed a proposal
    SignalSource.MANUAL_INPUT: 0.75,           # free typing, typos possible
}

_unmapped = set(SignalSource) - set(SOURCE_CONFIDENCE)
if _unmapped:
    raise RuntimeError(f"No confidence defined for sources: {sorted(s.value for s in _unmapped)}")

# Added to the extractor's confidence when a person confirms a proposal,
# capped at the chat_confirmed ceiling.
CONFIRMATION_BOOST = 0.2

# Minimum confidence for an instance to take part in each operation
CONFIDENCE_THRESHOLDS = {
    "diagnosis_trigger": 0.7,
    "risk_scoring": 0.6,
    "trend_analysis": 0.7,
    "emergency_trigger": 0.5,
}


def source_confidence(source: SignalSource) -> float:
    return SOURCE_CONFIDENCE[source]


def confirmed_confidence(ai_confidence: float) -> float:
    """Confidence of an instance created by confirming a proposal."""
    ceiling = SOURCE_CONFIDENCE[SignalSource.CHAT_CONFIRMED]
    return round(min(ai_confidence + CONFIRMATION_BOOST, ceiling), 4)


def meets_threshold(confidence: float, operation: str) -> bool:
    return confidence >= CONFIDENCE_THRESHOLDS[operation]


def risk_contribution(definition: SignalDefinition, instance: SignalInstance) -> float:
    """Weight an instance contributes to risk scoring; 0 when it does not qualify."""
    if not definition.affects_risk or not meets_threshold(instance.confidence, "risk_scoring"):
        return 0.0
    return round(definition.risk_weight * instance.confidence, 4)


def is_fresh(definition: SignalDefinition, instance: SignalInstance, now: datetime) -> bool:
    """Whether an instance is recent enough to stand for the signal's current state."""
    age = now - parse_iso(instance.captured_at)
    return age <= timedelta(hours=definition.freshness_hours)


# ---------------------------------------------------------------------------
# Situational context
# ---------------------------------------------------------------------------

CONTEXT_OPTIONS: dict[str, frozenset[str]] = {
    "activity_state": frozenset({"resting", "active", "post_exercise", "sleeping"}),
    "time_of_day": frozenset({"morning", "afternoon", "evening", "night"}),
    "location_type": frozenset({"home", "work", "school", "hospital", "outdoors", "transit"}),
}

CONTEXT_INT_RANGES: dict[str, tuple[int, int]] = {
    "pregnancy_trimester": (1, 3),
    "cycle_day": (1, 40),
}

MAX_NOTES_LENGTH = 10_000
_UNSAFE_TEXT = re.compile(r"[<>\"']")


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = _UNSAFE_TEXT.sub("", value).strip()[:MAX_NOTES_LENGTH]
    return cleaned or None


def sanitize_context(context: dict[str, Any] | None) -> dict[str, Any]:
    """Keep only whitelisted context keys holding well-formed values.

    Unknown keys and malformed values are dropped rather than rejected:
    context refines interpretation but never blocks a capture.
    """
    if not context:
        return {}

    clean: dict[str, Any] = {}
    for key, options in CONTEXT_OPTIONS.items():
        value = context.get(key)
        if isinstance(value, str) and value in options:
            clean[key] = value

    for key, (low, high) in CONTEXT_INT_RANGES.items():
        value = context.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and low <= value <= high:
            clean[key] = value

    if isinstance(context.get("fasting"), bool):
        clean["fasting"] = context["fasting"]

    for key in ("recent_medication", "notes"):
        text = _clean_text(context.get(key))
        if text:
            clean[key] = text

    return clean
