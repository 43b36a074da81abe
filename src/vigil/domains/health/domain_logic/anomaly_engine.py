"""Anomaly detection — recent averages compared with each user's own baseline.

Per metric, the trailing recent window is compared with the non-overlapping
baseline window before it. Two independent checks run:

- deviation: relative change from the baseline average
- range: recent average outside the metric's absolute normal range

The range check wins when both fire, so a run produces at most one detection
per metric. Persisting is de-duplicated in storage: an active anomaly for the
same metric detected within the dedup window suppresses a new one.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from vigil.core.audit.logger import AuditLogger
from vigil.core.catalog.registry import SignalCatalog
from vigil.core.results import ErrorCode, Result, storage_failure
from vigil.core.security.caller import Caller
from vigil.core.storage.models import (
    Anomaly,
    AnomalyStatus,
    ChangeDirection,
    Severity,
    to_iso,
    utc_now,
)
from vigil.core.storage.repository import RepositoryError, SignalRepository
from vigil.domains.health.domain_logic.baseline_engine import BaselineEngine
from vigil.domains.health.domain_logic.metric_thresholds import (
    CRITICAL_RANGE_MARGIN,
    METRIC_THRESHOLDS,
    WARNING_CHANGE_FACTOR,
    MetricThreshold,
)
from vigil.domains.health.domain_logic.signal_models import CONFIDENCE_THRESHOLDS

logger = logging.getLogger(__name__)

DEFAULT_RECENT_DAYS = 7
DEFAULT_BASELINE_DAYS = 23
DEFAULT_DEDUP_HOURS = 24

_INCLUSIVE = timedelta(microseconds=1)


@dataclass(frozen=True)
class Detection:
    """A classified deviation, before de-duplication and persistence."""

    metric_name: str
    baseline_value: float
    current_value: float
    change_direction: ChangeDirection
    change_percent: float
    severity: Severity

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "baseline_value": self.baseline_value,
            "current_value": self.current_value,
            "change_direction": self.change_direction.value,
            "change_percent": self.change_percent,
            "severity": self.severity.value,
        }


@dataclass
class DetectionRun:
    detected: list[Detection] = field(default_factory=list)
    persisted: list[Anomaly] = field(default_factory=list)
    baselines_refreshed: list[str] = field(default_factory=list)
    diagnostics: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected": [d.to_dict() for d in self.detected],
            "persisted": [a.to_dict() for a in self.persisted],
            "baselines_refreshed": self.baselines_refreshed,
            "diagnostics": self.diagnostics,
        }


def classify(
    metric: str,
    baseline_avg: float,
    recent_avg: float,
    threshold: MetricThreshold,
) -> Detection | None:
    """Classify one metric's recent average against its baseline and range.

    Returns ``None`` when neither check fires. The deviation check is
    skipped when the baseline average is 0.
    """
    change_percent = (
        abs(recent_avg - baseline_avg) / abs(baseline_avg) * 100 if baseline_avg else 0.0
    )

    direction: ChangeDirection | None = None
    severity: Severity | None = None

    if recent_avg < threshold.min:
        direction = ChangeDirection.TOO_LOW
        critical = recent_avg < threshold.min * (1 - CRITICAL_RANGE_MARGIN)
        severity = Severity.CRITICAL if critical else Severity.WARNING
    elif recent_avg > threshold.max:
        direction = ChangeDirection.TOO_HIGH
        critical = recent_avg > threshold.max * (1 + CRITICAL_RANGE_MARGIN)
        severity = Severity.CRITICAL if critical else Severity.WARNING
    elif baseline_avg and change_percent > threshold.change_percent:
        direction = (
            ChangeDirection.INCREASE if recent_avg > baseline_avg else ChangeDirection.DECREASE
        )
        if change_percent > threshold.severity_urgent:
            severity = Severity.URGENT
        elif change_percent > threshold.change_percent * WARNING_CHANGE_FACTOR:
            severity = Severity.WARNING
        else:
            severity = Severity.INFO

    if direction is None or severity is None:
        return None

    return Detection(
        metric_name=metric,
        baseline_value=round(baseline_avg, 2),
        current_value=round(recent_avg, 2),
        change_direction=direction,
        change_percent=round(change_percent, 2),
        severity=severity,
    )


class AnomalyEngine:
    """Runs detection for one user and manages the resulting anomaly records.

    Usage::

        engine = AnomalyEngine(catalog, repository, baselines, audit)
        run = engine.run_detection(caller, "user-1").value
        for anomaly in run.persisted:
            ...
    """

    def __init__(
        self,
        catalog: SignalCatalog,
        repository: SignalRepository,
        baselines: BaselineEngine,
        audit: AuditLogger | None = None,
        *,
        recent_window_days: int = DEFAULT_RECENT_DAYS,
        baseline_window_days: int = DEFAULT_BASELINE_DAYS,
        dedup_window_hours: int = DEFAULT_DEDUP_HOURS,
        thresholds: dict[str, MetricThreshold] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._catalog = catalog
        self._repo = repository
        self._baselines = baselines
        self._audit = audit
        self._recent_days = recent_window_days
        self._baseline_days = baseline_window_days
        self._dedup = timedelta(hours=dedup_window_hours)
        self._thresholds = thresholds if thresholds is not None else METRIC_THRESHOLDS
        self._clock = clock

    def detect(self, user_id: str, now: datetime) -> tuple[list[Detection], list[dict[str, Any]]]:
        """Classify every tracked metric with data in both windows.

        Returns:
            ``(detections, diagnostics)``; a metric whose data cannot be read
            is reported in diagnostics and the scan continues.
        """
        recent_start = now - timedelta(days=self._recent_days)
        baseline_start = recent_start - timedelta(days=self._baseline_days)
        min_confidence = CONFIDENCE_THRESHOLDS["trend_analysis"]

        detections: list[Detection] = []
        diagnostics: list[dict[str, Any]] = []

        try:
            metric_ids = self._repo.get_numeric_signal_ids(user_id, since=to_iso(baseline_start))
        except RepositoryError as exc:
            failure = storage_failure("detect_anomalies", exc, audit=self._audit, user_id=user_id)
            return [], [{"stage": "detect", **failure.error.to_dict()}]

        for metric in metric_ids:
            threshold = self._thresholds.get(metric)
            if threshold is None or metric not in self._catalog:
                continue
            try:
                recent = self._repo.get_numeric_values(
                    user_id, metric,
                    since=to_iso(recent_start),
                    until=to_iso(now + _INCLUSIVE),
                    min_confidence=min_confidence,
                )
                baseline = self._repo.get_numeric_values(
                    user_id, metric,
                    since=to_iso(baseline_start),
                    until=to_iso(recent_start),
                    min_confidence=min_confidence,
                )
            except RepositoryError as exc:
                failure = storage_failure("detect_anomalies", exc, audit=self._audit, user_id=user_id)
                diagnostics.append({"metric": metric, "stage": "detect", **failure.error.to_dict()})
                continue

            if not recent or not baseline:
                logger.debug("Skipping %s: empty window", metric)
                continue

            detection = classify(
                metric,
                sum(baseline) / len(baseline),
                sum(recent) / len(recent),
                threshold,
            )
            if detection is not None:
                detections.append(detection)

        return detections, diagnostics

    def save(
        self, user_id: str, detections: list[Detection], now: datetime
    ) -> tuple[list[Anomaly], list[dict[str, Any]]]:
        """Persist detections that are not duplicates of a recent active anomaly."""
        dedup_since = to_iso(now - self._dedup)
        persisted: list[Anomaly] = []
        diagnostics: list[dict[str, Any]] = []

        for detection in detections:
            anomaly = Anomaly(
                id="",
                user_id=user_id,
                metric_name=detection.metric_name,
                baseline_value=detection.baseline_value,
                current_value=detection.current_value,
                change_direction=detection.change_direction,
                change_percent=detection.change_percent,
                severity=detection.severity,
                detection_window_days=self._recent_days,
                baseline_window_days=self._baseline_days,
                detected_at=to_iso(now),
            )
            try:
                inserted = self._repo.insert_anomaly_if_absent(anomaly, dedup_since=dedup_since)
            except RepositoryError as exc:
                failure = storage_failure("save_anomaly", exc, audit=self._audit, user_id=user_id)
                diagnostics.append({
                    "metric": detection.metric_name, "stage": "save", **failure.error.to_dict(),
                })
                continue
            if inserted:
                persisted.append(anomaly)
            else:
                logger.debug("Duplicate anomaly for %s suppressed", detection.metric_name)

        return persisted, diagnostics

    def run_detection(self, caller: Caller, user_id: str) -> Result[DetectionRun]:
        """Refresh baselines, detect, persist. Per-metric problems become diagnostics."""
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not run detection for this user")

        started = time.monotonic()
        now = self._clock()
        run = DetectionRun()

        refresh = self._baselines.refresh_baselines(caller, user_id)
        if refresh.ok:
            run.baselines_refreshed = [b.metric_name for b in refresh.value.refreshed]
            run.diagnostics.extend(refresh.value.diagnostics)
        else:
            run.diagnostics.append({"stage": "baseline", **refresh.error.to_dict()})

        run.detected, detect_diagnostics = self.detect(user_id, now)
        run.diagnostics.extend(detect_diagnostics)

        run.persisted, save_diagnostics = self.save(user_id, run.detected, now)
        run.diagnostics.extend(save_diagnostics)

        logger.info(
            "Detection run: %d detected, %d persisted", len(run.detected), len(run.persisted)
        )
        if self._audit is not None:
            self._audit.log_operation(
                "detection_run",
                operation="run_detection",
                user_id=user_id,
                duration_ms=(time.monotonic() - started) * 1000,
                metadata={
                    "detected": len(run.detected),
                    "persisted": len(run.persisted),
                    "baselines_refreshed": len(run.baselines_refreshed),
                    "diagnostics": len(run.diagnostics),
                },
            )
        return Result.success(run)

    def list_active_anomalies(self, caller: Caller, user_id: str) -> Result[list[Anomaly]]:
        """Active anomalies, most severe first, then newest first."""
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not read this user's anomalies")
        try:
            return Result.success(self._repo.list_active_anomalies(user_id))
        except RepositoryError as exc:
            return storage_failure("list_active_anomalies", exc, audit=self._audit, user_id=user_id)

    def resolve_anomaly(self, caller: Caller, anomaly_id: str) -> Result[Anomaly]:
        try:
            anomaly = self._repo.get_anomaly(anomaly_id)
        except RepositoryError as exc:
            return storage_failure("resolve_anomaly", exc, audit=self._audit, user_id=caller.user_id)
        if anomaly is None:
            return Result.failure(ErrorCode.NOT_FOUND, f"No anomaly {anomaly_id}")
        if not caller.owns(anomaly.user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not resolve this anomaly")
        if anomaly.status is not AnomalyStatus.ACTIVE:
            return Result.failure(ErrorCode.ALREADY_RESOLVED, f"Anomaly {anomaly_id} is already resolved")

        resolved_at = to_iso(self._clock())
        try:
            changed = self._repo.resolve_anomaly(anomaly_id, resolved_at=resolved_at)
        except RepositoryError as exc:
            return storage_failure("resolve_anomaly", exc, audit=self._audit, user_id=anomaly.user_id)
        if not changed:
            return Result.failure(ErrorCode.ALREADY_RESOLVED, f"Anomaly {anomaly_id} is already resolved")

        anomaly.status = AnomalyStatus.RESOLVED
        anomaly.resolved_at = resolved_at
        if self._audit is not None:
            self._audit.log_operation(
                "anomaly_resolved",
                operation="resolve_anomaly",
                user_id=anomaly.user_id,
                metadata={"anomaly_id": anomaly_id, "metric": anomaly.metric_name},
            )
        return Result.success(anomaly)
