"""Consistency checks between anomaly thresholds and the catalog."""

from __future__ import annotations

import pytest

from vigil.domains.health.domain_logic.metric_thresholds import METRIC_THRESHOLDS


@pytest.mark.parametrize("metric", sorted(METRIC_THRESHOLDS))
def test_threshold_metric_is_tracked_numeric_signal(catalog, metric):
    definition = catalog.lookup(metric)
    assert definition is not None
    assert definition.is_numeric
    assert definition.longitudinal


@pytest.mark.parametrize("metric", sorted(METRIC_THRESHOLDS))
def test_threshold_is_well_formed(metric):
    threshold = METRIC_THRESHOLDS[metric]
    assert threshold.min < threshold.max
    assert 0 < threshold.change_percent < threshold.severity_urgent


@pytest.mark.parametrize("metric", sorted(METRIC_THRESHOLDS))
def test_normal_band_within_capture_bounds(catalog, metric):
    threshold = METRIC_THRESHOLDS[metric]
    validation = catalog.lookup(metric).validation
    assert validation.min <= threshold.min
    assert threshold.max <= validation.max


def test_fatigue_band_uses_severity_scale(catalog):
    fatigue = METRIC_THRESHOLDS["fatigue"]
    assert (fatigue.min, fatigue.max) == (1, 8)
    assert fatigue.max < catalog.lookup("fatigue").validation.max
