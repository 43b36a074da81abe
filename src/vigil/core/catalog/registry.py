"""Signal catalog — in-memory index of every legal signal definition."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from vigil.core.catalog.models import (
    SignalCategory,
    SignalDefinition,
    SignalSource,
    UserContext,
)

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Raised when the catalog is built from inconsistent definitions."""


class SignalCatalog:
    """Read-only registry of signal definitions keyed by id.

    Populated once at startup by the loader; nothing mutates it afterwards.
    Every other component consults :meth:`lookup` before acting on a signal id.
    """

    def __init__(self, version: str = "0") -> None:
        self.version = version
        self._signals: dict[str, SignalDefinition] = {}
        self._by_category: dict[SignalCategory, list[str]] = {}
        self._by_source: dict[SignalSource, list[str]] = {}

    def register(self, definition: SignalDefinition) -> None:
        """Add a definition to all indexes."""
        if definition.id in self._signals:
            raise CatalogError(f"Duplicate signal id registered: {definition.id!r}")
        self._signals[definition.id] = definition

        self._by_category.setdefault(definition.category, []).append(definition.id)
        for source in definition.allowed_sources:
            self._by_source.setdefault(source, []).append(definition.id)

    def lookup(self, signal_id: str) -> SignalDefinition | None:
        """Resolve a signal id; ``None`` means the id is not a legal signal."""
        return self._signals.get(signal_id)

    def __contains__(self, signal_id: object) -> bool:
        return signal_id in self._signals

    def __len__(self) -> int:
        return len(self._signals)

    def all(self) -> list[SignalDefinition]:
        """Return all registered definitions in registration order."""
        return list(self._signals.values())

    def by_category(self, category: SignalCategory) -> list[SignalDefinition]:
        return [self._signals[sid] for sid in self._by_category.get(category, [])]

    def by_source(self, source: SignalSource) -> list[SignalDefinition]:
        return [self._signals[sid] for sid in self._by_source.get(source, [])]

    def longitudinal(self) -> list[SignalDefinition]:
        """Definitions whose history is trend-tracked."""
        return [d for d in self._signals.values() if d.longitudinal]

    def device_mapped(self, platform: str) -> list[SignalDefinition]:
        """Definitions a device platform ('ios' or 'android') can report."""
        if platform not in ("ios", "android"):
            raise ValueError(f"Unknown device platform: {platform!r}")
        return [
            d for d in self._signals.values()
            if getattr(d.device_mapping, platform)
        ]

    def by_device_type(self, platform: str, device_type: str) -> SignalDefinition | None:
        """Reverse device mapping: HealthKit / Health Connect type -> definition."""
        for definition in self.device_mapped(platform):
            if getattr(definition.device_mapping, platform) == device_type:
                return definition
        return None

    def filter_by_context(
        self,
        definitions: Iterable[SignalDefinition],
        user_context: UserContext,
    ) -> list[SignalDefinition]:
        """Drop definitions whose context rules the user does not satisfy.

        An unknown age never excludes a signal. Condition requirements are
        only enforced once the user's conditions are known.
        """
        return [d for d in definitions if applies_to(d, user_context)]


def applies_to(definition: SignalDefinition, user_context: UserContext) -> bool:
    """Whether a single definition's context rules admit this user."""
    rules = definition.context_rules

    if rules.requires_sex and user_context.sex != rules.requires_sex:
        return False

    if user_context.age is not None:
        if rules.requires_age_min is not None and user_context.age < rules.requires_age_min:
            return False
        if rules.requires_age_max is not None and user_context.age > rules.requires_age_max:
            return False

    if rules.requires_condition and user_context.conditions:
        if not set(rules.requires_condition) & set(user_context.conditions):
            return False

    return True
