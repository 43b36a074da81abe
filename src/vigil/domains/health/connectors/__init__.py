"""Device connectors — bring wearable and phone readings in as signal captures."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from vigil.core.results import Result
from vigil.core.security.caller import Caller


@dataclass
class SyncSummary:
    """What happened to each record of one device import.

    Records whose value crosses an extreme safety threshold are counted in
    ``requires_confirmation`` and left out; an import never bypasses the
    safety gate. ``updated`` counts daily totals that replaced the total an
    earlier import stored for the same day.
    """

    source: str
    imported: int = 0
    updated: int = 0
    duplicates: int = 0
    rejected: int = 0
    requires_confirmation: int = 0
    unsupported: int = 0
    failed: int = 0
    rejection_reasons: Counter = field(default_factory=Counter)
    correlation_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "imported": self.imported,
            "updated": self.updated,
            "duplicates": self.duplicates,
            "rejected": self.rejected,
            "requires_confirmation": self.requires_confirmation,
            "unsupported": self.unsupported,
            "failed": self.failed,
            "rejection_reasons": dict(self.rejection_reasons),
            "correlation_ids": self.correlation_ids,
        }


@runtime_checkable
class DeviceImporter(Protocol):
    """Interface for a device export importer.

    Tools call this without knowing which platform's export format is
    being read.
    """

    @property
    def platform(self) -> str:
        """Catalog device platform: 'ios' or 'android'."""
        ...

    def import_export(
        self, caller: Caller, user_id: str, export_path: str, *, days: int = 30
    ) -> Result[SyncSummary]:
        """Capture every mapped reading of the export for ``user_id``."""
        ...
