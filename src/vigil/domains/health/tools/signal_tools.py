"""MCP tools for the signal catalog, captures, history and trends.

Every tool acts as the server's owner. Values are validated against the
catalog before anything is stored, and an extreme value is only stored
when the person explicitly confirms it with ``bypass_confirmation``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from vigil.core.catalog.models import SignalCategory, SignalDefinition, SignalSource, UserContext
from vigil.domains.health.tools.responses import error_json, result_json

if TYPE_CHECKING:
    from vigil.core.catalog.registry import SignalCatalog
    from vigil.core.security.caller import Caller
    from vigil.domains.health.domain_logic.baseline_engine import BaselineEngine
    from vigil.domains.health.domain_logic.signal_capture import SignalCaptureService

logger = logging.getLogger(__name__)


def describe_signal(definition: SignalDefinition) -> dict[str, Any]:
    """Catalog entry as shown to a client."""
    rule = definition.validation
    data: dict[str, Any] = {
        "id": definition.id,
        "name": definition.name,
        "category": definition.category.value,
        "value_type": definition.value_type.value,
        "sources": [s.value for s in definition.allowed_sources],
        "frequency": definition.frequency.value,
        "longitudinal": definition.longitudinal,
    }
    if definition.default_unit:
        data["unit"] = definition.default_unit
        data["allowed_units"] = list(dict.fromkeys((definition.default_unit, *definition.allowed_units)))
    if rule.min is not None or rule.max is not None:
        data["range"] = {"min": rule.min, "max": rule.max}
    if rule.options:
        data["options"] = list(rule.options)
    if definition.requires_followup:
        data["requires_followup"] = list(definition.requires_followup)
    return data


def register_signal_tools(
    mcp: FastMCP,
    catalog: SignalCatalog,
    capture_service: SignalCaptureService,
    baselines: BaselineEngine,
    caller: Caller,
) -> None:
    """Register catalog, capture and read tools on the MCP server."""

    @mcp.tool
    async def list_signals(
        ctx: Context,
        category: str = "",
        source: str = "",
        device_platform: str = "",
        longitudinal_only: bool = False,
        sex: str = "",
        age: int | None = None,
        conditions: list[str] | None = None,
    ) -> str:
        """List catalog signals, optionally filtered.

        Args:
            category: Only this category (e.g., 'vital', 'symptom', 'lifestyle').
            source: Only signals accepting this source (e.g., 'daily_checkin').
            device_platform: Only signals a device platform reports ('ios' or 'android').
            longitudinal_only: Only trend-tracked signals.
            sex: Drop signals that do not apply to this sex.
            age: Drop signals that do not apply at this age.
            conditions: Known conditions, for condition-specific signals.
        """
        try:
            definitions = catalog.device_mapped(device_platform) if device_platform else catalog.all()
            if category:
                wanted_category = SignalCategory(category)
                definitions = [d for d in definitions if d.category is wanted_category]
            if source:
                wanted_source = SignalSource(source)
                definitions = [d for d in definitions if d.accepts_source(wanted_source)]
        except ValueError as exc:
            return json.dumps({"status": "error", "code": "validation_failed", "message": str(exc)})

        if longitudinal_only:
            definitions = [d for d in definitions if d.longitudinal]
        if sex or age is not None or conditions:
            user_context = UserContext(sex=sex or None, age=age, conditions=list(conditions or []))
            definitions = catalog.filter_by_context(definitions, user_context)

        return json.dumps({
            "status": "ok",
            "catalog_version": catalog.version,
            "count": len(definitions),
            "signals": [describe_signal(d) for d in definitions],
        }, indent=2)

    @mcp.tool
    async def capture_signal(
        ctx: Context,
        signal_id: str,
        value: bool | int | float | str,
        source: str = "manual_input",
        unit: str = "",
        captured_at: str = "",
        context: dict[str, Any] | None = None,
        bypass_confirmation: bool = False,
    ) -> str:
        """Record one observation of a catalog signal.

        A value beyond an emergency threshold is not stored; the response
        has code 'requires_confirmation' and the value can be resubmitted
        with bypass_confirmation=true once the person confirms it.

        Args:
            signal_id: Catalog id (see list_signals).
            value: Number, option, true/false or text, per the signal's type.
            source: 'manual_input', 'daily_checkin', 'onboarding', 'chat_confirmed', ...
            unit: Unit of the value. Defaults to the catalog unit.
            captured_at: ISO 8601 time of the measurement. Defaults to now.
            context: Situational context. Recognised keys are activity_state,
                time_of_day, location_type, fasting, cycle_day, pregnancy_trimester,
                recent_medication and notes; anything else is dropped.
            bypass_confirmation: The person confirmed an extreme value.
        """
        result = capture_service.capture(
            caller,
            caller.user_id,
            signal_id,
            value,
            source=source,
            unit=unit or None,
            captured_at=captured_at or None,
            context=context,
            bypass_confirmation=bypass_confirmation,
        )
        return result_json(result, "instance")

    @mcp.tool
    async def correct_signal(
        ctx: Context,
        instance_id: str,
        value: bool | int | float | str,
        source: str = "manual_input",
        unit: str = "",
        reason: str = "",
        bypass_confirmation: bool = False,
    ) -> str:
        """Replace a stored observation with a corrected value.

        The original is kept and marked superseded; history and trends use
        the correction from then on.

        Args:
            instance_id: Id of the instance to correct.
            value: The corrected value.
            source: How the corrected value was obtained.
            unit: Unit of the corrected value.
            reason: Why the original was wrong.
            bypass_confirmation: The person confirmed an extreme value.
        """
        result = capture_service.correct(
            caller,
            instance_id,
            value,
            source=source,
            unit=unit or None,
            reason=reason,
            bypass_confirmation=bypass_confirmation,
        )
        return result_json(result, "instance", supersedes=instance_id)

    @mcp.tool
    async def get_latest_signal(ctx: Context, signal_id: str) -> str:
        """Most recent current value of a signal, or null if never recorded.

        Args:
            signal_id: Catalog id.
        """
        result = capture_service.get_latest_signal(caller, caller.user_id, signal_id)
        return result_json(
            result, "instance", lambda instance: instance.to_dict() if instance else None
        )

    @mcp.tool
    async def get_signal_history(
        ctx: Context,
        signal_id: str = "*",
        limit: int = 30,
        include_superseded: bool = False,
    ) -> str:
        """Recorded observations, newest first.

        Args:
            signal_id: Catalog id, or '*' for every signal.
            limit: Maximum entries (1-100, default: 30).
            include_superseded: Also return corrected-away originals.
        """
        result = capture_service.get_signal_history(
            caller,
            caller.user_id,
            signal_id,
            limit=limit,
            include_superseded=include_superseded,
        )
        if not result.ok:
            return error_json(result)
        return json.dumps({
            "status": "ok",
            "signal_id": signal_id,
            "count": len(result.value),
            "history": [instance.to_dict() for instance in result.value],
        }, indent=2)

    @mcp.tool
    async def compute_signal_trend(ctx: Context, signal_id: str, days: int = 30) -> str:
        """Ordered history of a signal with its change over the period.

        Args:
            signal_id: Catalog id.
            days: Look-back period in days (1-365, default: 30).
        """
        return result_json(baselines.compute_trend(caller, caller.user_id, signal_id, days), "trend")

    @mcp.tool
    async def get_signal_baseline(
        ctx: Context, signal_id: str, recompute: bool = False, window_days: int = 0
    ) -> str:
        """Personal baseline (mean, spread, range) of a numeric signal.

        Args:
            signal_id: Catalog id of a numeric signal.
            recompute: Recalculate from stored data instead of reading the stored baseline.
            window_days: Window for a recalculation (default: the configured refresh window).
        """
        if recompute:
            result = baselines.compute_baseline(
                caller, caller.user_id, signal_id, window_days or None
            )
        else:
            result = baselines.get_baseline(caller, caller.user_id, signal_id)
        return result_json(result, "baseline")

    logger.info("Signal tools registered (%d catalog signals)", len(catalog))
