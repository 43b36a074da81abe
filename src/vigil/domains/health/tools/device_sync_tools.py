"""MCP tools for importing device exports."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from vigil.domains.health.tools.responses import result_json

if TYPE_CHECKING:
    from vigil.core.security.caller import Caller
    from vigil.domains.health.connectors import DeviceImporter

logger = logging.getLogger(__name__)


def register_device_sync_tools(
    mcp: FastMCP,
    importer: DeviceImporter,
    caller: Caller,
) -> None:
    """Register device import tools on the MCP server."""

    @mcp.tool
    async def import_apple_health_export(ctx: Context, export_path: str, days: int = 30) -> str:
        """Import readings from an Apple Health export.xml as device signals.

        Readings already imported are skipped. Readings at emergency levels
        are counted under requires_confirmation and not stored.

        Args:
            export_path: Path to export.xml (iOS Health → Share → Export Health Data).
            days: Only import readings from the last N days (1-365, default: 30).
        """
        result = importer.import_export(caller, caller.user_id, export_path, days=days)
        return result_json(result, "summary")
