"""Data models for the signal bank persistence layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Normalize to a fixed-width UTC ISO 8601 string.

    Fixed width keeps lexical ordering in SQLite equal to time ordering.
    Naive datetimes are taken to be UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; a trailing ``Z`` and naive values mean UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class ProposalStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ResolvedBy(str, Enum):
    USER_CLICK = "user_click"
    USER_EDIT = "user_edit"
    TIMEOUT = "timeout"


class SafetyAlertLevel(str, Enum):
    NORMAL = "normal"
    CAUTION = "caution"
    EXTREME = "extreme"


class ChangeDirection(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    TOO_HIGH = "too_high"
    TOO_LOW = "too_low"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"


# Ordering for listings: most severe first
SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.URGENT: 1,
    Severity.WARNING: 2,
    Severity.INFO: 3,
}


class AnomalyStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


@dataclass
class SignalInstance:
    """One immutable observation of a catalog signal.

    ``value`` holds the typed value (number, option, bool or text). Numeric
    values are also projected into ``value_num`` for aggregate queries.
    ``context`` is stored encrypted.
    """

    id: str
    user_id: str
    signal_id: str
    value: Any
    source: str
    confidence: float
    captured_at: str  # ISO 8601, UTC
    unit: str | None = None
    value_num: float | None = None
    context: dict[str, Any] | None = None
    safety_alert_level: SafetyAlertLevel = SafetyAlertLevel.NORMAL
    requires_confirmation: bool = False
    ai_proposal_id: str | None = None

    # Supersession (the only fields that change after insert)
    superseded_by: str | None = None
    superseded_at: str | None = None
    supersede_reason: str | None = None

    created_at: str = ""

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "signal_id": self.signal_id,
            "value": self.value,
            "unit": self.unit,
            "source": self.source,
            "confidence": self.confidence,
            "captured_at": self.captured_at,
            "context": self.context or {},
            "safety_alert_level": self.safety_alert_level.value,
            "ai_proposal_id": self.ai_proposal_id,
            "superseded_by": self.superseded_by,
            "created_at": self.created_at,
        }


@dataclass
class AISignalProposal:
    """A candidate value from an automated extractor. Not a fact until confirmed."""

    id: str
    user_id: str
    signal_id: str
    proposed_value: Any
    ai_confidence: float
    proposed_unit: str | None = None
    extracted_from: str | None = None  # stored encrypted
    extraction_method: str | None = None
    status: ProposalStatus = ProposalStatus.PENDING
    resolved_at: str | None = None
    resolved_by: ResolvedBy | None = None
    final_value: Any = None
    final_unit: str | None = None
    created_at: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status is ProposalStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "signal_id": self.signal_id,
            "proposed_value": self.proposed_value,
            "proposed_unit": self.proposed_unit,
            "extracted_from": self.extracted_from,
            "extraction_method": self.extraction_method,
            "ai_confidence": self.ai_confidence,
            "status": self.status.value,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by.value if self.resolved_by else None,
            "final_value": self.final_value,
            "final_unit": self.final_unit,
            "created_at": self.created_at,
        }


@dataclass
class UserBaseline:
    """Rolling statistics for one user and metric, valid until ``expires_at``."""

    user_id: str
    metric_name: str
    baseline_value: float
    min_normal: float
    max_normal: float
    std_deviation: float
    data_points_count: int
    window_days: int
    window_start: str
    window_end: str
    calculated_at: str
    expires_at: str

    def is_expired(self, now: datetime) -> bool:
        return parse_iso(self.expires_at) <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "baseline_value": self.baseline_value,
            "min_normal": self.min_normal,
            "max_normal": self.max_normal,
            "std_deviation": self.std_deviation,
            "data_points_count": self.data_points_count,
            "window_days": self.window_days,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "calculated_at": self.calculated_at,
            "expires_at": self.expires_at,
        }


@dataclass
class Anomaly:
    """A classified deviation of a metric's recent average."""

    id: str
    user_id: str
    metric_name: str
    baseline_value: float
    current_value: float
    change_direction: ChangeDirection
    change_percent: float
    severity: Severity
    detection_window_days: int
    baseline_window_days: int
    status: AnomalyStatus = AnomalyStatus.ACTIVE
    detected_at: str = ""
    resolved_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "metric_name": self.metric_name,
            "baseline_value": self.baseline_value,
            "current_value": self.current_value,
            "change_direction": self.change_direction.value,
            "change_percent": self.change_percent,
            "severity": self.severity.value,
            "detection_window_days": self.detection_window_days,
            "baseline_window_days": self.baseline_window_days,
            "status": self.status.value,
            "detected_at": self.detected_at,
            "resolved_at": self.resolved_at,
        }

