"""Apple Health XML export parser.

Parses the ``export.xml`` file produced by Apple Health (iOS → Share → Export
Health Data) into flat :class:`DeviceRecord` items. Large exports are read
incrementally with iterparse.

Quantity records are kept one per reading, except:
- HKQuantityTypeIdentifierStepCount → summed per calendar day
- HKCategoryTypeIdentifierSleepAnalysis → asleep segments summed per night,
  reported in hours and dated by wake-up time
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections import defaultdict
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

STEPS = "HKQuantityTypeIdentifierStepCount"
SLEEP = "HKCategoryTypeIdentifierSleepAnalysis"

# Types reported as one running total per day (steps) or night (sleep)
DAILY_TOTAL_TYPES = frozenset({STEPS, SLEEP})

# Sleep category values that count as time asleep (in-bed and awake do not)
_ASLEEP_PREFIX = "HKCategoryValueSleepAnalysisAsleep"


class AppleHealthParseError(Exception):
    """Raised when parsing Apple Health export XML fails."""


@dataclass(frozen=True)
class DeviceRecord:
    """One reading from a device export, still in the device's units."""

    type: str
    value: float
    unit: str
    captured_at: datetime


def _parse_date(date_str: str) -> datetime:
    """Parse Apple Health date format: '2025-12-01 08:30:00 -0500'."""
    try:
        moment = datetime.strptime(date_str, "%Y-%m-%d %H:%M:%S %z")
    except ValueError:
        moment = datetime.fromisoformat(date_str)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def parse_apple_health_export(
    export_path: str | Path,
    *,
    since: datetime,
    record_types: Collection[str],
) -> list[DeviceRecord]:
    """Parse an Apple Health export.xml into device records.

    Args:
        export_path: Path to the Apple Health export.xml file.
        since: Readings that started before this moment are ignored.
        record_types: HealthKit identifiers to keep; everything else is skipped.

    Returns:
        Records sorted by capture time.

    Raises:
        AppleHealthParseError: If the file is missing or not valid XML.
    """
    path = Path(export_path)
    if not path.exists():
        raise AppleHealthParseError(f"Export file not found: {path}")

    wanted = set(record_types)
    records: list[DeviceRecord] = []
    daily_steps: dict[str, float] = defaultdict(float)
    step_ends: dict[str, datetime] = {}
    nightly_sleep: dict[str, float] = defaultdict(float)
    sleep_ends: dict[str, datetime] = {}
    malformed = 0

    try:
        for _event, elem in ET.iterparse(str(path), events=("end",)):
            if elem.tag != "Record":
                continue
            rec_type = elem.get("type", "")
            if rec_type not in wanted:
                elem.clear()
                continue

            try:
                start = _parse_date(elem.get("startDate", ""))
                end = _parse_date(elem.get("endDate", "") or elem.get("startDate", ""))
            except (ValueError, TypeError):
                malformed += 1
                elem.clear()
                continue
            if start < since:
                elem.clear()
                continue

            if rec_type == SLEEP:
                if elem.get("value", "").startswith(_ASLEEP_PREFIX):
                    night = end.date().isoformat()
                    nightly_sleep[night] += (end - start).total_seconds() / 3600
                    sleep_ends[night] = max(end, sleep_ends.get(night, end))
                elem.clear()
                continue

            try:
                value = float(elem.get("value", ""))
            except ValueError:
                malformed += 1
                elem.clear()
                continue

            if rec_type == STEPS:
                day = start.date().isoformat()
                daily_steps[day] += value
                step_ends[day] = max(end, step_ends.get(day, end))
            else:
                records.append(DeviceRecord(rec_type, value, elem.get("unit", ""), start))
            elem.clear()

    except ET.ParseError as exc:
        raise AppleHealthParseError(f"Invalid XML: {exc}") from exc

    for day, total in daily_steps.items():
        records.append(DeviceRecord(STEPS, round(total), "count", step_ends[day]))
    for night, hours in nightly_sleep.items():
        records.append(DeviceRecord(SLEEP, round(hours, 2), "hr", sleep_ends[night]))

    records.sort(key=lambda r: r.captured_at)
    logger.info(
        "Parsed Apple Health export: %d records (%d malformed skipped)", len(records), malformed
    )
    return records
