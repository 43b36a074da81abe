"""Apple Health importer — turns an export.xml into device-sourced captures.

Users export via iOS Health app → Share → Export Health Data → produces
export.xml. Each HealthKit type is matched to a catalog signal through the
definition's iOS device mapping, converted to the catalog unit, and submitted
through :class:`SignalCaptureService` like any other observation.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from vigil.core.audit.logger import AuditLogger
from vigil.core.catalog.models import SignalDefinition, SignalSource
from vigil.core.catalog.registry import SignalCatalog
from vigil.core.results import ErrorCode, Result, ValidationReason, storage_failure
from vigil.core.security.caller import Caller
from vigil.core.storage.models import SignalInstance, to_iso, utc_now
from vigil.core.storage.repository import RepositoryError, SignalRepository
from vigil.domains.health.connectors import SyncSummary
from vigil.domains.health.connectors.apple_health_parser import (
    DAILY_TOTAL_TYPES,
    AppleHealthParseError,
    DeviceRecord,
    parse_apple_health_export,
)
from vigil.domains.health.domain_logic.signal_capture import SignalCaptureService

logger = logging.getLogger(__name__)

MAX_IMPORT_DAYS = 365

# (device unit, catalog unit) -> conversion
_CONVERSIONS: dict[tuple[str, str], Callable[[float], float]] = {
    ("degF", "°C"): lambda v: (v - 32) * 5 / 9,
    ("degC", "°C"): lambda v: v,
    ("count/min", "bpm"): lambda v: v,
    ("count", "steps"): lambda v: v,
    ("hr", "hours"): lambda v: v,
    ("min", "hours"): lambda v: v / 60,
    ("lb", "kg"): lambda v: v * 0.45359237,
    ("g", "kg"): lambda v: v / 1000,
    ("m", "cm"): lambda v: v * 100,
    ("in", "cm"): lambda v: v * 2.54,
    ("ft", "cm"): lambda v: v * 30.48,
    ("dBASPL", "dB"): lambda v: v,
}


def normalize_reading(definition: SignalDefinition, record: DeviceRecord) -> tuple[float, str] | None:
    """Convert a device reading into the definition's unit.

    HealthKit reports oxygen saturation as a fraction (0.97); percentages
    are scaled to 0-100. Returns ``None`` for a unit with no known
    conversion.
    """
    value, unit = record.value, record.unit
    if unit == "%" and value <= 1:
        value *= 100

    target = definition.default_unit
    if target is None:
        return None
    convert = _CONVERSIONS.get((unit, target))
    if convert is not None:
        return round(convert(value), 2), target
    if definition.accepts_unit(unit):
        return round(value, 2), unit
    return None


class AppleHealthImporter:
    """Imports an Apple Health export for one user.

    Usage::

        importer = AppleHealthImporter(catalog, repository, capture_service)
        summary = importer.import_export(caller, "user-1", "/path/to/export.xml").value
    """

    source = SignalSource.DEVICE_HEALTHKIT

    def __init__(
        self,
        catalog: SignalCatalog,
        repository: SignalRepository,
        capture_service: SignalCaptureService,
        audit: AuditLogger | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._catalog = catalog
        self._repo = repository
        self._capture = capture_service
        self._audit = audit
        self._clock = clock

    @property
    def platform(self) -> str:
        return "ios"

    def mapped_types(self) -> dict[str, SignalDefinition]:
        """HealthKit identifier -> definition, for signals a device may report."""
        return {
            d.device_mapping.ios: d
            for d in self._catalog.device_mapped(self.platform)
            if d.accepts_source(self.source)
        }

    def import_export(
        self, caller: Caller, user_id: str, export_path: str, *, days: int = 30
    ) -> Result[SyncSummary]:
        """Capture every mapped reading from the last ``days`` (1..365).

        Readings already imported (same signal, time and source) are counted
        as duplicates, so re-importing an export is harmless. A day's step
        total or a night's sleep keeps growing while the day is running; a
        later export supersedes the total stored for that day.
        """
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not record signals for this user")
        if not export_path or not Path(export_path).expanduser().exists():
            return Result.failure(ErrorCode.NOT_FOUND, "Export file not found")

        started = time.monotonic()
        days = min(max(1, int(days)), MAX_IMPORT_DAYS)
        mapped = self.mapped_types()
        try:
            records = parse_apple_health_export(
                Path(export_path).expanduser(),
                since=self._clock() - timedelta(days=days),
                record_types=mapped.keys(),
            )
        except AppleHealthParseError:
            logger.exception("Failed to parse Apple Health export")
            return Result.failure(
                ErrorCode.VALIDATION_FAILED,
                "The file is not a readable Apple Health export",
                reason=ValidationReason.WRONG_TYPE,
            )

        summary = SyncSummary(source=self.source.value)
        for record in records:
            self._import_record(caller, user_id, mapped[record.type], record, summary)

        logger.info(
            "Apple Health import: %d imported, %d duplicates, %d rejected, %d held for confirmation",
            summary.imported, summary.duplicates, summary.rejected, summary.requires_confirmation,
        )
        if self._audit is not None:
            self._audit.log_operation(
                "device_sync",
                operation="import_apple_health_export",
                user_id=user_id,
                duration_ms=(time.monotonic() - started) * 1000,
                metadata={k: v for k, v in summary.to_dict().items() if isinstance(v, int)},
            )
        return Result.success(summary)

    def _import_record(
        self,
        caller: Caller,
        user_id: str,
        definition: SignalDefinition,
        record: DeviceRecord,
        summary: SyncSummary,
    ) -> None:
        reading = normalize_reading(definition, record)
        if reading is None:
            summary.unsupported += 1
            return
        value, unit = reading
        captured_at = to_iso(record.captured_at)

        replaces: str | None = None
        try:
            if record.type in DAILY_TOTAL_TYPES:
                existing = self._stored_daily_total(user_id, definition.id, record.captured_at)
                if existing is not None:
                    if existing.captured_at == captured_at and existing.value == value:
                        summary.duplicates += 1
                        return
                    replaces = existing.id
            elif self._repo.has_instance(
                user_id, definition.id, captured_at=captured_at, source=self.source.value
            ):
                summary.duplicates += 1
                return
        except RepositoryError as exc:
            failure = storage_failure("import_apple_health_export", exc, audit=self._audit, user_id=user_id)
            summary.failed += 1
            summary.correlation_ids.append(failure.error.correlation_id)
            return

        result = self._capture.capture(
            caller,
            user_id,
            definition.id,
            value,
            source=self.source,
            unit=unit,
            captured_at=captured_at,
            replaces=replaces,
        )
        if result.ok and replaces:
            summary.updated += 1
        elif result.ok:
            summary.imported += 1
        elif result.error.code is ErrorCode.REQUIRES_CONFIRMATION:
            summary.requires_confirmation += 1
        elif result.error.code is ErrorCode.STORAGE_FAILURE:
            summary.failed += 1
            summary.correlation_ids.append(result.error.correlation_id)
        else:
            summary.rejected += 1
            summary.rejection_reasons[result.error.reason or result.error.code.value] += 1

    def _stored_daily_total(
        self, user_id: str, signal_id: str, moment: datetime
    ) -> SignalInstance | None:
        """The current total this importer stored for ``moment``'s local calendar day."""
        day_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        stored = self._repo.get_instances(
            user_id,
            signal_id=signal_id,
            since=to_iso(day_start),
            until=to_iso(day_start + timedelta(days=1)),
        )
        return next((i for i in stored if i.source == self.source.value), None)
