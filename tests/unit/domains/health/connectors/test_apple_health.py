"""Tests for the Apple Health export parser and importer."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from vigil.core.results import ErrorCode
from vigil.domains.health.connectors import DeviceImporter
from vigil.domains.health.connectors.apple_health import AppleHealthImporter, normalize_reading
from vigil.domains.health.connectors.apple_health_parser import (
    SLEEP,
    STEPS,
    AppleHealthParseError,
    DeviceRecord,
    parse_apple_health_export,
)

OWNER_ID = "user-1"
SINCE = datetime(2026, 1, 30, tzinfo=timezone.utc)


def _record(rec_type: str, value: str, unit: str, start: str, end: str | None = None) -> str:
    return (
        f' <Record type="{rec_type}" sourceName="Apple Watch" unit="{unit}" value="{value}"\n'
        f'         startDate="{start}" endDate="{end or start}"/>\n'
    )


# Clock in tests is 2026-03-01 12:00 UTC
_SAMPLE_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    "<!DOCTYPE HealthData [\n]>\n"
    '<HealthData locale="en_US">\n'
    + _record("HKQuantityTypeIdentifierHeartRate", "72", "count/min", "2026-02-27 08:00:00 +0000")
    + _record("HKQuantityTypeIdentifierHeartRate", "190", "count/min", "2026-02-27 09:00:00 +0000")
    + _record("HKQuantityTypeIdentifierHeartRate", "250", "count/min", "2026-02-27 10:00:00 +0000")
    + _record("HKQuantityTypeIdentifierHeartRate", "abc", "count/min", "2026-02-27 11:00:00 +0000")
    + _record("HKQuantityTypeIdentifierHeartRate", "64", "count/min", "2025-12-01 08:00:00 +0000")
    + _record(STEPS, "3000", "count", "2026-02-27 09:00:00 +0000", "2026-02-27 10:00:00 +0000")
    + _record(STEPS, "4500", "count", "2026-02-27 17:00:00 +0000", "2026-02-27 18:30:00 +0000")
    + _record("HKQuantityTypeIdentifierBodyTemperature", "98.6", "degF", "2026-02-26 07:00:00 +0000")
    + _record("HKQuantityTypeIdentifierOxygenSaturation", "0.97", "%", "2026-02-26 07:05:00 +0000")
    + _record("HKQuantityTypeIdentifierDietaryWater", "500", "mL", "2026-02-26 12:00:00 +0000")
    + _record("HKQuantityTypeIdentifierFlightsClimbed", "4", "count", "2026-02-26 12:00:00 +0000")
    + _record(
        SLEEP, "HKCategoryValueSleepAnalysisInBed", "",
        "2026-02-27 22:30:00 +0000", "2026-02-28 07:00:00 +0000",
    )
    + _record(
        SLEEP, "HKCategoryValueSleepAnalysisAsleepCore", "",
        "2026-02-27 23:00:00 +0000", "2026-02-28 03:00:00 +0000",
    )
    + _record(
        SLEEP, "HKCategoryValueSleepAnalysisAsleepDeep", "",
        "2026-02-28 03:30:00 +0000", "2026-02-28 06:30:00 +0000",
    )
    + "</HealthData>\n"
)


@pytest.fixture
def export_file(tmp_path: Path) -> Path:
    path = tmp_path / "export.xml"
    path.write_text(_SAMPLE_XML, encoding="utf-8")
    return path


@pytest.fixture
def importer(catalog, signal_repository, capture_service, audit_logger, clock):
    return AppleHealthImporter(
        catalog, signal_repository, capture_service, audit_logger, clock=clock
    )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class TestParser:
    def _parse(self, path, types=None):
        return parse_apple_health_export(
            path,
            since=SINCE,
            record_types=types or {
                "HKQuantityTypeIdentifierHeartRate", STEPS, SLEEP,
            },
        )

    def test_heart_rate_readings(self, export_file):
        hr = [r for r in self._parse(export_file) if r.type == "HKQuantityTypeIdentifierHeartRate"]
        assert [r.value for r in hr] == [72, 190, 250]
        assert hr[0].unit == "count/min"

    def test_steps_summed_per_day(self, export_file):
        steps = [r for r in self._parse(export_file) if r.type == STEPS]
        assert len(steps) == 1
        assert steps[0].value == 7500
        assert steps[0].unit == "count"
        assert steps[0].captured_at == datetime(2026, 2, 27, 18, 30, tzinfo=timezone.utc)

    def test_only_asleep_segments_count(self, export_file):
        sleep = [r for r in self._parse(export_file) if r.type == SLEEP]
        assert len(sleep) == 1
        assert sleep[0].value == 7.0
        assert sleep[0].unit == "hr"
        assert sleep[0].captured_at == datetime(2026, 2, 28, 6, 30, tzinfo=timezone.utc)

    def test_sorted_by_capture_time(self, export_file):
        records = self._parse(export_file)
        assert records == sorted(records, key=lambda r: r.captured_at)

    def test_unrequested_types_skipped(self, export_file):
        records = self._parse(export_file, types={"HKQuantityTypeIdentifierDietaryWater"})
        assert [r.value for r in records] == [500]

    def test_missing_file(self, tmp_path):
        with pytest.raises(AppleHealthParseError, match="not found"):
            self._parse(tmp_path / "nope.xml")

    def test_invalid_xml(self, tmp_path):
        bad = tmp_path / "export.xml"
        bad.write_text("<HealthData><Record", encoding="utf-8")
        with pytest.raises(AppleHealthParseError, match="Invalid XML"):
            self._parse(bad)


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------

class TestNormalizeReading:
    def _reading(self, catalog, signal_id, value, unit):
        moment = datetime(2026, 2, 27, tzinfo=timezone.utc)
        return normalize_reading(catalog.lookup(signal_id), DeviceRecord("x", value, unit, moment))

    def test_fahrenheit(self, catalog):
        assert self._reading(catalog, "body_temperature", 98.6, "degF") == (37.0, "°C")

    def test_pounds(self, catalog):
        assert self._reading(catalog, "weight", 154, "lb") == (69.85, "kg")

    def test_oxygen_fraction(self, catalog):
        assert self._reading(catalog, "blood_oxygen", 0.97, "%") == (97.0, "%")

    def test_catalog_unit_passes_through(self, catalog):
        assert self._reading(catalog, "heart_rate", 72, "bpm") == (72, "bpm")

    def test_unknown_unit(self, catalog):
        assert self._reading(catalog, "water_intake", 500, "mL") is None


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------

class TestImporter:
    def test_is_device_importer(self, importer):
        assert isinstance(importer, DeviceImporter)
        assert importer.platform == "ios"

    def test_mapped_types_respect_allowed_sources(self, importer):
        mapped = importer.mapped_types()
        assert mapped["HKQuantityTypeIdentifierHeartRate"].id == "heart_rate"
        assert "HKQuantityTypeIdentifierHeight" not in mapped

    def test_import_summary(self, importer, owner, export_file):
        summary = importer.import_export(owner, OWNER_ID, str(export_file)).value

        assert summary.source == "device_healthkit"
        assert summary.imported == 5
        assert summary.requires_confirmation == 1
        assert summary.rejected == 1
        assert summary.rejection_reasons == {"out_of_range": 1}
        assert summary.unsupported == 1
        assert summary.duplicates == 0
        assert summary.failed == 0

    def test_imported_values(self, importer, owner, export_file, capture_service):
        importer.import_export(owner, OWNER_ID, str(export_file))

        hr = capture_service.get_latest_signal(owner, OWNER_ID, "heart_rate").value
        assert hr.value == 72
        assert hr.unit == "bpm"
        assert hr.source == "device_healthkit"
        assert hr.confidence == 0.95
        temp = capture_service.get_latest_signal(owner, OWNER_ID, "body_temperature").value
        assert (temp.value, temp.unit) == (37.0, "°C")
        sleep = capture_service.get_latest_signal(owner, OWNER_ID, "sleep_duration").value
        assert (sleep.value, sleep.unit) == (7.0, "hours")

    def test_extreme_reading_not_stored(self, importer, owner, export_file, signal_repository):
        importer.import_export(owner, OWNER_ID, str(export_file))
        values = [i.value for i in signal_repository.get_instances(OWNER_ID, signal_id="heart_rate")]
        assert values == [72]

    def test_reimport_counts_duplicates(self, importer, owner, export_file, signal_repository):
        importer.import_export(owner, OWNER_ID, str(export_file))
        second = importer.import_export(owner, OWNER_ID, str(export_file)).value
        assert second.imported == 0
        assert second.duplicates == 5
        assert signal_repository.count_instances(OWNER_ID) == 5

    def test_days_window(self, importer, owner, export_file):
        summary = importer.import_export(owner, OWNER_ID, str(export_file), days=2).value
        # Only the evening steps and the night ending 2026-02-28 start after the cutoff
        assert summary.imported == 2

    def test_import_is_audited(self, importer, owner, export_file, audit_logger):
        importer.import_export(owner, OWNER_ID, str(export_file))
        event = audit_logger.get_events(action="device_sync")[0]
        assert event["operation"] == "import_apple_health_export"

    def test_missing_file(self, importer, owner, tmp_path):
        result = importer.import_export(owner, OWNER_ID, str(tmp_path / "nope.xml"))
        assert result.error.code is ErrorCode.NOT_FOUND

    def test_unreadable_file(self, importer, owner, tmp_path):
        bad = tmp_path / "export.xml"
        bad.write_text("not xml at all <", encoding="utf-8")
        result = importer.import_export(owner, OWNER_ID, str(bad))
        assert result.error.code is ErrorCode.VALIDATION_FAILED

    def test_stranger(self, importer, stranger, export_file):
        result = importer.import_export(stranger, OWNER_ID, str(export_file))
        assert result.error.code is ErrorCode.UNAUTHORIZED


class TestDailyTotals:
    """A day's total keeps growing between exports; only the newest one is current."""

    def _export(self, tmp_path, *records: str) -> str:
        path = tmp_path / "export.xml"
        path.write_text(
            '<?xml version="1.0" encoding="UTF-8"?>\n<HealthData locale="en_US">\n'
            + "".join(records)
            + "</HealthData>\n",
            encoding="utf-8",
        )
        return str(path)

    def _morning(self):
        return _record(STEPS, "3000", "count", "2026-02-28 08:00:00 +0000", "2026-02-28 08:30:00 +0000")

    def _late_morning(self):
        return _record(STEPS, "4000", "count", "2026-02-28 10:00:00 +0000", "2026-02-28 10:30:00 +0000")

    def test_grown_day_supersedes_earlier_total(self, importer, owner, tmp_path, signal_repository):
        importer.import_export(owner, OWNER_ID, self._export(tmp_path, self._morning()))
        summary = importer.import_export(
            owner, OWNER_ID, self._export(tmp_path, self._morning(), self._late_morning())
        ).value

        assert summary.updated == 1
        assert summary.imported == 0
        current = signal_repository.get_instances(OWNER_ID, signal_id="steps_count")
        assert [(i.value, i.captured_at) for i in current] == [(7000, "2026-02-28T10:30:00.000000+00:00")]
        history = signal_repository.get_instances(
            OWNER_ID, signal_id="steps_count", include_superseded=True
        )
        assert len(history) == 2
        assert history[1].superseded_by == current[0].id

    def test_unchanged_day_is_duplicate(self, importer, owner, tmp_path, signal_repository):
        export = self._export(tmp_path, self._morning(), self._late_morning())
        importer.import_export(owner, OWNER_ID, export)
        summary = importer.import_export(owner, OWNER_ID, export).value
        assert (summary.duplicates, summary.updated) == (1, 0)
        assert signal_repository.count_instances(OWNER_ID) == 1

    def test_other_days_untouched(self, importer, owner, tmp_path, signal_repository):
        importer.import_export(owner, OWNER_ID, self._export(tmp_path, self._morning()))
        next_day = _record(STEPS, "500", "count", "2026-03-01 07:00:00 +0000", "2026-03-01 07:10:00 +0000")
        summary = importer.import_export(
            owner, OWNER_ID, self._export(tmp_path, self._morning(), next_day)
        ).value
        assert (summary.imported, summary.duplicates, summary.updated) == (1, 1, 0)
        assert len(signal_repository.get_instances(OWNER_ID, signal_id="steps_count")) == 2

    def test_growing_night_of_sleep(self, importer, owner, tmp_path, capture_service):
        first = _record(
            SLEEP, "HKCategoryValueSleepAnalysisAsleepCore", "",
            "2026-02-28 00:00:00 +0000", "2026-02-28 03:00:00 +0000",
        )
        second = _record(
            SLEEP, "HKCategoryValueSleepAnalysisAsleepDeep", "",
            "2026-02-28 03:00:00 +0000", "2026-02-28 07:00:00 +0000",
        )
        importer.import_export(owner, OWNER_ID, self._export(tmp_path, first))
        summary = importer.import_export(owner, OWNER_ID, self._export(tmp_path, first, second)).value
        assert summary.updated == 1
        sleep = capture_service.get_latest_signal(owner, OWNER_ID, "sleep_duration").value
        assert sleep.value == 7.0
