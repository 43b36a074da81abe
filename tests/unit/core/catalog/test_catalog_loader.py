"""Tests for loading the YAML signal catalog."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from vigil.core.catalog.loader import load_catalog
from vigil.core.catalog.models import SignalCategory, SignalSource, ValueType
from vigil.core.catalog.registry import CatalogError


def _write(directory: Path, name: str, body: str) -> None:
    (directory / name).write_text(textwrap.dedent(body), encoding="utf-8")


VITALS = """\
    catalog_version: "9.1"
    category: vital
    signals:
      - id: pulse
        name: Pulse
        value_type: numeric
        validation: {min: 20, max: 250}
        allowed_sources: [manual_input]
        default_unit: bpm
        longitudinal: true
"""


class TestBundledCatalog:
    def test_loads_every_file(self, catalog):
        assert catalog.version == "4.0"
        assert len(catalog) > 50

    def test_all_categories_present(self, catalog):
        for category in SignalCategory:
            assert catalog.by_category(category), category

    def test_heart_rate_definition(self, catalog):
        hr = catalog.lookup("heart_rate")
        assert hr.value_type is ValueType.NUMERIC
        assert hr.default_unit == "bpm"
        assert hr.longitudinal is True
        assert hr.safety.extreme_high == 180
        assert hr.device_mapping.ios == "HKQuantityTypeIdentifierHeartRate"
        assert hr.accepts_source(SignalSource.MANUAL_INPUT)

    def test_followups_resolve(self, catalog):
        for definition in catalog.all():
            for followup in definition.requires_followup:
                assert followup in catalog


class TestLoaderErrors:
    def test_custom_directory(self, tmp_path):
        _write(tmp_path, "vitals.yaml", VITALS)
        catalog = load_catalog(tmp_path)
        assert catalog.version == "9.1"
        assert catalog.lookup("pulse").validation.max == 250

    def test_missing_directory(self, tmp_path):
        with pytest.raises(CatalogError, match="does not exist"):
            load_catalog(tmp_path / "nope")

    def test_empty_directory(self, tmp_path):
        with pytest.raises(CatalogError, match="No catalog files"):
            load_catalog(tmp_path)

    def test_underscore_files_skipped(self, tmp_path):
        _write(tmp_path, "vitals.yaml", VITALS)
        _write(tmp_path, "_draft.yaml", "this: [is not: valid")
        assert len(load_catalog(tmp_path)) == 1

    def test_duplicate_id_is_fatal(self, tmp_path):
        _write(tmp_path, "a.yaml", VITALS)
        _write(tmp_path, "b.yaml", VITALS)
        with pytest.raises(CatalogError, match="Duplicate signal id"):
            load_catalog(tmp_path)

    def test_version_mismatch_is_fatal(self, tmp_path):
        _write(tmp_path, "a.yaml", VITALS)
        _write(tmp_path, "b.yaml", """\
            catalog_version: "9.2"
            category: mental
            signals: []
        """)
        with pytest.raises(CatalogError, match="expected '9.1'"):
            load_catalog(tmp_path)

    def test_dangling_followup_is_fatal(self, tmp_path):
        _write(tmp_path, "a.yaml", """\
            catalog_version: "1"
            category: symptom
            signals:
              - id: cough
                name: Cough
                value_type: boolean
                allowed_sources: [manual_input]
                requires_followup: [cough_colour]
        """)
        with pytest.raises(CatalogError, match="cough_colour"):
            load_catalog(tmp_path)

    def test_bad_header(self, tmp_path):
        _write(tmp_path, "a.yaml", "category: vital\nsignals: []\n")
        with pytest.raises(CatalogError, match="invalid catalog header"):
            load_catalog(tmp_path)

    @pytest.mark.parametrize(
        "definition, message",
        [
            ("value_type: numeric\n        allowed_sources: [telepathy]", "telepathy"),
            ("value_type: categorical\n        allowed_sources: [manual_input]", "options"),
            ("value_type: severity\n        allowed_sources: [manual_input]", "validation.min"),
            ("value_type: numeric\n        allowed_sources: []", "must not be empty"),
        ],
    )
    def test_malformed_definitions(self, tmp_path, definition, message):
        (tmp_path / "a.yaml").write_text(
            'catalog_version: "1"\ncategory: vital\nsignals:\n'
            "  - id: broken\n    name: Broken\n    "
            + definition.replace("\n        ", "\n    ")
            + "\n",
            encoding="utf-8",
        )
        with pytest.raises(CatalogError, match=message):
            load_catalog(tmp_path)
