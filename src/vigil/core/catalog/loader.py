"""Catalog loader — reads versioned YAML signal definitions from disk."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from vigil.core.catalog.models import (
    ContextRules,
    DeviceMapping,
    Frequency,
    SafetyThresholds,
    SignalCategory,
    SignalDefinition,
    SignalSource,
    ValidationRule,
    ValueType,
)
from vigil.core.catalog.registry import CatalogError, SignalCatalog

logger = logging.getLogger(__name__)

# Bundled definitions live under src/vigil/domains/health/catalog/
DEFAULT_CATALOG_DIR = (
    Path(__file__).resolve().parent.parent.parent / "domains" / "health" / "catalog"
)


def load_catalog(directory: str | Path | None = None) -> SignalCatalog:
    """Build a catalog from every ``*.yaml`` file in ``directory``.

    Unlike optional resources, a broken catalog is fatal: an unknown or
    malformed definition would let illegal observations through.

    Raises:
        CatalogError: On a missing directory, malformed file, duplicate id,
            dangling follow-up reference or mixed catalog versions.
    """
    directory = Path(directory) if directory else DEFAULT_CATALOG_DIR
    if not directory.is_dir():
        raise CatalogError(f"Catalog directory does not exist: {directory}")

    catalog: SignalCatalog | None = None
    for path in sorted(directory.glob("*.yaml")):
        if path.name.startswith("_"):
            continue
        version, definitions = load_catalog_file(path)
        if catalog is None:
            catalog = SignalCatalog(version=version)
        elif catalog.version != version:
            raise CatalogError(
                f"{path.name} declares catalog version {version!r}, "
                f"expected {catalog.version!r}"
            )
        for definition in definitions:
            catalog.register(definition)
        logger.info("Loaded %d signal definitions from %s", len(definitions), path.name)

    if catalog is None:
        raise CatalogError(f"No catalog files found in {directory}")

    _check_references(catalog)
    logger.info("Signal catalog v%s ready: %d signals", catalog.version, len(catalog))
    return catalog


def load_catalog_file(path: Path) -> tuple[str, list[SignalDefinition]]:
    """Parse one YAML document into its version and definitions."""
    with open(path, encoding="utf-8") as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}

    try:
        version = str(data["catalog_version"])
        category = SignalCategory(data["category"])
        raw_signals = data.get("signals", [])
    except (KeyError, ValueError) as exc:
        raise CatalogError(f"{path.name}: invalid catalog header: {exc}") from exc

    definitions = []
    for raw in raw_signals:
        try:
            definitions.append(parse_definition(raw, category))
        except (KeyError, ValueError, TypeError) as exc:
            raise CatalogError(
                f"{path.name}: invalid definition {raw.get('id', '?')!r}: {exc}"
            ) from exc
    return version, definitions


def parse_definition(data: dict[str, Any], category: SignalCategory) -> SignalDefinition:
    """Convert a raw mapping into a :class:`SignalDefinition`."""
    value_type = ValueType(data["value_type"])
    validation_data = data.get("validation") or {}
    rules_data = data.get("context_rules") or {}
    device_data = data.get("device_mapping") or {}
    safety_data = data.get("safety")

    validation = ValidationRule(
        min=validation_data.get("min"),
        max=validation_data.get("max"),
        options=tuple(validation_data.get("options", [])),
        pattern=validation_data.get("pattern"),
    )
    if validation.pattern is not None:
        re.compile(validation.pattern)
    if value_type is ValueType.CATEGORICAL and not validation.options:
        raise ValueError("categorical signals need validation.options")
    if value_type is ValueType.SEVERITY and (validation.min is None or validation.max is None):
        raise ValueError("severity signals need validation.min and validation.max")

    allowed_sources = tuple(SignalSource(s) for s in data["allowed_sources"])
    if not allowed_sources:
        raise ValueError("allowed_sources must not be empty")

    age = rules_data.get("requires_age") or {}

    return SignalDefinition(
        id=data["id"],
        name=data["name"],
        category=category,
        value_type=value_type,
        validation=validation,
        allowed_sources=allowed_sources,
        frequency=Frequency(data.get("frequency", Frequency.ON_CHANGE.value)),
        default_unit=data.get("default_unit"),
        allowed_units=tuple(data.get("allowed_units", [])),
        longitudinal=bool(data.get("longitudinal", False)),
        trend_window_days=int(data.get("trend_window_days", 0)),
        freshness_hours=int(data.get("freshness_hours", 24)),
        affects_risk=bool(data.get("affects_risk", False)),
        risk_weight=float(data.get("risk_weight", 0.0)),
        context_rules=ContextRules(
            requires_sex=rules_data.get("requires_sex"),
            requires_age_min=age.get("min"),
            requires_age_max=age.get("max"),
            requires_condition=tuple(rules_data.get("requires_condition", [])),
        ),
        safety=SafetyThresholds(**safety_data) if safety_data else None,
        device_mapping=DeviceMapping(
            ios=device_data.get("ios"),
            android=device_data.get("android"),
        ),
        requires_followup=tuple(data.get("requires_followup", [])),
    )


def _check_references(catalog: SignalCatalog) -> None:
    """Every follow-up id must resolve to exactly one definition."""
    for definition in catalog.all():
        for followup in definition.requires_followup:
            if followup not in catalog:
                raise CatalogError(
                    f"{definition.id!r} references unknown follow-up signal {followup!r}"
                )
