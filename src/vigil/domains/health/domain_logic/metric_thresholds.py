"""Anomaly thresholds per tracked metric, keyed by catalog signal id.

Each entry gives the absolute normal range of a recent average, the percent
change from baseline that counts as a deviation, and the larger change that
makes a deviation urgent.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MetricThreshold:
    min: float
    max: float
    change_percent: float
    severity_urgent: float


METRIC_THRESHOLDS: dict[str, MetricThreshold] = {
    "heart_rate": MetricThreshold(50, 100, 15, 25),
    "resting_heart_rate": MetricThreshold(45, 90, 12, 20),
    "heart_rate_variability": MetricThreshold(20, 100, 15, 25),
    "blood_pressure_systolic": MetricThreshold(90, 140, 10, 20),
    "blood_pressure_diastolic": MetricThreshold(60, 90, 10, 20),
    "sleep_duration": MetricThreshold(5, 10, 20, 35),
    "steps_count": MetricThreshold(2000, 20000, 30, 50),
    "body_temperature": MetricThreshold(36.0, 37.5, 2, 5),
    "blood_oxygen": MetricThreshold(92, 100, 3, 5),
    # Inverse of a 3-10 energy band: severity above 8 is abnormal
    "fatigue": MetricThreshold(1, 8, 30, 50),
}

# Margin beyond a range bound at which a range violation becomes critical
CRITICAL_RANGE_MARGIN = 0.2
# Multiple of the change threshold at which a deviation becomes a warning
WARNING_CHANGE_FACTOR = 1.5