"""MCP tools for anomaly detection and review."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from vigil.domains.health.tools.responses import error_json, result_json

if TYPE_CHECKING:
    from vigil.core.security.caller import Caller
    from vigil.domains.health.domain_logic.anomaly_engine import AnomalyEngine

logger = logging.getLogger(__name__)


def register_anomaly_tools(
    mcp: FastMCP,
    engine: AnomalyEngine,
    caller: Caller,
) -> None:
    """Register anomaly tools on the MCP server."""

    @mcp.tool
    async def run_anomaly_detection(ctx: Context) -> str:
        """Refresh baselines and compare the last week with each metric's baseline.

        Returns everything detected and the subset newly recorded; a metric
        with an active anomaly from the last 24 hours is not recorded twice.
        """
        return result_json(engine.run_detection(caller, caller.user_id), "run")

    @mcp.tool
    async def list_active_anomalies(ctx: Context) -> str:
        """Unresolved anomalies, most severe first, then newest first."""
        result = engine.list_active_anomalies(caller, caller.user_id)
        if not result.ok:
            return error_json(result)
        return json.dumps({
            "status": "ok",
            "count": len(result.value),
            "anomalies": [a.to_dict() for a in result.value],
        }, indent=2)

    @mcp.tool
    async def resolve_anomaly(ctx: Context, anomaly_id: str) -> str:
        """Mark an active anomaly as resolved.

        Args:
            anomaly_id: Id of the anomaly.
        """
        return result_json(engine.resolve_anomaly(caller, anomaly_id), "anomaly")
