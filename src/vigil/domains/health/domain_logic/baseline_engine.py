"""Per-user baselines and trends computed from stored signal instances.

A baseline needs at least ``min_samples`` usable points in its window and
carries an expiry; once expired it is reported as insufficient data until it
is recomputed.
"""

from __future__ import annotations

import logging
import statistics
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from vigil.core.audit.logger import AuditLogger
from vigil.core.catalog.models import ValueType
from vigil.core.catalog.registry import SignalCatalog
from vigil.core.results import ErrorCode, Result, ValidationReason, storage_failure
from vigil.core.security.caller import Caller
from vigil.core.storage.models import UserBaseline, parse_iso, to_iso, utc_now
from vigil.core.storage.repository import RepositoryError, SignalRepository
from vigil.domains.health.domain_logic.signal_models import CONFIDENCE_THRESHOLDS

logger = logging.getLogger(__name__)

DEFAULT_MIN_SAMPLES = 5
DEFAULT_WINDOW_DAYS = 30
MAX_TREND_DAYS = 365

# Repository windows are half-open; this makes "now" part of the window
_INCLUSIVE = timedelta(microseconds=1)


@dataclass
class TrendPoint:
    value: Any
    captured_at: str
    confidence: float


@dataclass
class SignalTrend:
    """Ordered history of one signal plus the arithmetic its type allows."""

    signal_id: str
    value_type: str
    days: int
    data_points: list[TrendPoint] = field(default_factory=list)
    last_updated_hours_ago: float | None = None

    # numeric / severity
    from_value: float | None = None
    to_value: float | None = None
    change: float | None = None
    change_percent: float | None = None

    # boolean
    true_count: int | None = None
    false_count: int | None = None
    frequency: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "signal_id": self.signal_id,
            "value_type": self.value_type,
            "days": self.days,
            "data_points": [
                {"value": p.value, "captured_at": p.captured_at, "confidence": p.confidence}
                for p in self.data_points
            ],
            "last_updated_hours_ago": self.last_updated_hours_ago,
        }
        if self.from_value is not None:
            data.update({
                "from": self.from_value,
                "to": self.to_value,
                "change": self.change,
                "change_percent": self.change_percent,
            })
        if self.true_count is not None:
            data.update({
                "true_count": self.true_count,
                "false_count": self.false_count,
                "frequency": self.frequency,
            })
        return data


@dataclass
class BaselineRefresh:
    """Outcome of refreshing every tracked metric for one user."""

    refreshed: list[UserBaseline] = field(default_factory=list)
    diagnostics: list[dict[str, Any]] = field(default_factory=list)


class BaselineEngine:
    """Computes, stores and serves per-user metric baselines and trends.

    Usage::

        engine = BaselineEngine(catalog, repository)
        result = engine.compute_baseline(caller, "user-1", "resting_heart_rate")
        if not result.ok and result.error.code is ErrorCode.INSUFFICIENT_DATA:
            ...
    """

    def __init__(
        self,
        catalog: SignalCatalog,
        repository: SignalRepository,
        audit: AuditLogger | None = None,
        *,
        min_samples: int = DEFAULT_MIN_SAMPLES,
        window_days: int = DEFAULT_WINDOW_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._catalog = catalog
        self._repo = repository
        self._audit = audit
        self._min_samples = max(min_samples, 2)
        self._window_days = window_days
        self._clock = clock

    # ------------------------------------------------------------------
    # Baselines
    # ------------------------------------------------------------------

    def compute_baseline(
        self,
        caller: Caller,
        user_id: str,
        signal_id: str,
        window_days: int | None = None,
    ) -> Result[UserBaseline]:
        """Compute and store the baseline for one metric over a trailing window."""
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not read this user's signals")

        definition = self._catalog.lookup(signal_id)
        if definition is None:
            return Result.failure(ErrorCode.UNKNOWN_SIGNAL, f"Unknown signal: {signal_id}")
        if not definition.is_numeric:
            return Result.failure(
                ErrorCode.VALIDATION_FAILED,
                f"{definition.name} is not numeric and has no baseline",
                reason=ValidationReason.WRONG_TYPE,
            )

        window_days = min(max(1, int(window_days or self._window_days)), MAX_TREND_DAYS)
        now = self._clock()
        window_start = now - timedelta(days=window_days)

        try:
            values = self._repo.get_numeric_values(
                user_id,
                signal_id,
                since=to_iso(window_start),
                until=to_iso(now + _INCLUSIVE),
                min_confidence=CONFIDENCE_THRESHOLDS["trend_analysis"],
            )
        except RepositoryError as exc:
            return storage_failure("compute_baseline", exc, audit=self._audit, user_id=user_id)

        if len(values) < self._min_samples:
            return Result.failure(
                ErrorCode.INSUFFICIENT_DATA,
                f"{len(values)} usable points in {window_days} days; "
                f"{self._min_samples} are needed",
                reason="too_few_points",
                details={"data_points": len(values), "required": self._min_samples},
            )

        baseline = UserBaseline(
            user_id=user_id,
            metric_name=signal_id,
            baseline_value=round(statistics.mean(values), 4),
            min_normal=min(values),
            max_normal=max(values),
            std_deviation=round(statistics.stdev(values), 4),
            data_points_count=len(values),
            window_days=window_days,
            window_start=to_iso(window_start),
            window_end=to_iso(now),
            calculated_at=to_iso(now),
            expires_at=to_iso(now + timedelta(days=window_days)),
        )
        try:
            self._repo.upsert_baseline(baseline)
        except RepositoryError as exc:
            return storage_failure("compute_baseline", exc, audit=self._audit, user_id=user_id)

        logger.debug("Baseline for %s: %d points", signal_id, len(values))
        return Result.success(baseline)

    def get_baseline(
        self,
        caller: Caller,
        user_id: str,
        signal_id: str,
        now: datetime | None = None,
    ) -> Result[UserBaseline]:
        """The stored baseline, only while it has not expired."""
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not read this user's signals")
        try:
            baseline = self._repo.get_baseline(user_id, signal_id)
        except RepositoryError as exc:
            return storage_failure("get_baseline", exc, audit=self._audit, user_id=user_id)

        if baseline is None:
            return Result.failure(
                ErrorCode.INSUFFICIENT_DATA, f"No baseline for {signal_id}", reason="missing"
            )
        if baseline.is_expired(now or self._clock()):
            return Result.failure(
                ErrorCode.INSUFFICIENT_DATA,
                f"Baseline for {signal_id} expired at {baseline.expires_at}",
                reason="expired",
            )
        return Result.success(baseline)

    def refresh_baselines(self, caller: Caller, user_id: str) -> Result[BaselineRefresh]:
        """Recompute the baseline of every longitudinal numeric metric with recent data.

        A metric that cannot be computed is recorded in ``diagnostics`` and
        the rest are still refreshed.
        """
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not read this user's signals")

        since = to_iso(self._clock() - timedelta(days=self._window_days))
        try:
            metric_ids = self._repo.get_numeric_signal_ids(user_id, since=since)
        except RepositoryError as exc:
            return storage_failure("refresh_baselines", exc, audit=self._audit, user_id=user_id)

        outcome = BaselineRefresh()
        for metric_id in metric_ids:
            definition = self._catalog.lookup(metric_id)
            if definition is None or not definition.longitudinal or not definition.is_numeric:
                continue
            result = self.compute_baseline(caller, user_id, metric_id)
            if result.ok:
                outcome.refreshed.append(result.value)
            else:
                outcome.diagnostics.append({
                    "metric": metric_id,
                    "stage": "baseline",
                    **result.error.to_dict(),
                })

        logger.info(
            "Refreshed %d baselines (%d skipped)", len(outcome.refreshed), len(outcome.diagnostics)
        )
        return Result.success(outcome)

    # ------------------------------------------------------------------
    # Trends
    # ------------------------------------------------------------------

    def compute_trend(
        self,
        caller: Caller,
        user_id: str,
        signal_id: str,
        days: int = 30,
    ) -> Result[SignalTrend]:
        """Ordered points over the last ``days`` (clamped to 1..365), oldest first.

        Only points meeting the trend-analysis confidence threshold are used.
        Categorical and text signals get history only.
        """
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not read this user's signals")
        definition = self._catalog.lookup(signal_id)
        if definition is None:
            return Result.failure(ErrorCode.UNKNOWN_SIGNAL, f"Unknown signal: {signal_id}")

        days = min(max(1, int(days)), MAX_TREND_DAYS)
        now = self._clock()
        try:
            instances = self._repo.get_instances(
                user_id,
                signal_id=signal_id,
                since=to_iso(now - timedelta(days=days)),
                oldest_first=True,
            )
        except RepositoryError as exc:
            return storage_failure("compute_trend", exc, audit=self._audit, user_id=user_id)

        threshold = CONFIDENCE_THRESHOLDS["trend_analysis"]
        usable = [i for i in instances if i.confidence >= threshold]

        trend = SignalTrend(
            signal_id=signal_id,
            value_type=definition.value_type.value,
            days=days,
            data_points=[TrendPoint(i.value, i.captured_at, i.confidence) for i in usable],
        )
        if usable:
            age = now - parse_iso(usable[-1].captured_at)
            trend.last_updated_hours_ago = round(age.total_seconds() / 3600, 1)

        if definition.is_numeric and usable:
            first, last = usable[0].value_num, usable[-1].value_num
            trend.from_value = first
            trend.to_value = last
            trend.change = round(last - first, 2)
            trend.change_percent = round((last - first) / first * 100, 2) if first else 0.0
        elif definition.value_type is ValueType.BOOLEAN:
            true_count = sum(1 for i in usable if i.value is True)
            trend.true_count = true_count
            trend.false_count = len(usable) - true_count
            trend.frequency = round(true_count / len(usable), 2) if usable else 0.0

        return Result.success(trend)
