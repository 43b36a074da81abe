"""MCP tool for reviewing the audit trail.

The owner can see what happened to the signal bank: captures and rejections,
proposal decisions, detection runs, device syncs and storage failures. The
trail holds hashed references only, never a signal value.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from vigil.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

RECENT_EVENT_LIMIT = 20

# Columns safe to show; hashes and row ids stay in the database
_DISPLAY_FIELDS = (
    "timestamp",
    "action",
    "operation",
    "status",
    "error_type",
    "correlation_id",
    "duration_ms",
)


def _display(event: dict[str, Any]) -> dict[str, Any]:
    return {name: event.get(name) for name in _DISPLAY_FIELDS}


def register_audit_tools(mcp: FastMCP, audit_logger: AuditLogger) -> None:
    """Register the audit summary tool on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 30,
        correlation_id: str = "",
    ) -> str:
        """Summarize signal bank activity and storage failures.

        A storage failure message carries a reference id; pass it as
        correlation_id to find the matching entry.

        Args:
            days: Number of days to look back (default: 30).
            correlation_id: Only the entry with this reference id.
        """
        days = max(1, days)
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        actions = audit_logger.count_by_action(since=since)
        recent = audit_logger.get_events(
            since=since, correlation_id=correlation_id or None, limit=RECENT_EVENT_LIMIT
        )
        logger.debug("audit_summary over %d days: %d actions", days, len(actions))

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": sum(actions.values()),
            "actions": actions,
            "storage_failures": actions.get("storage_failure", 0),
            "recent_events": [_display(event) for event in recent],
            "note": "This audit trail contains no signal values or user ids.",
        }, indent=2)
