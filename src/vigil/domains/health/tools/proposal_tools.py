"""MCP tools for the AI proposal workflow.

An extractor may only propose a value. It becomes a recorded signal when the
person confirms it, optionally after editing it.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from vigil.domains.health.tools.responses import error_json, result_json

if TYPE_CHECKING:
    from vigil.core.security.caller import Caller
    from vigil.domains.health.domain_logic.proposals import ProposalWorkflow

logger = logging.getLogger(__name__)


def register_proposal_tools(
    mcp: FastMCP,
    workflow: ProposalWorkflow,
    caller: Caller,
) -> None:
    """Register proposal tools on the MCP server."""

    @mcp.tool
    async def create_signal_proposal(
        ctx: Context,
        signal_id: str,
        proposed_value: bool | int | float | str,
        ai_confidence: float,
        proposed_unit: str = "",
        extracted_from: str = "",
        extraction_method: str = "",
    ) -> str:
        """Propose a signal value extracted from conversation, pending confirmation.

        Args:
            signal_id: Catalog id of the signal.
            proposed_value: The extracted value.
            ai_confidence: Extractor confidence between 0 and 1.
            proposed_unit: Unit of the value, if any.
            extracted_from: The text the value was extracted from (stored encrypted).
            extraction_method: How the value was extracted (e.g., 'llm', 'regex').
        """
        result = workflow.create_proposal(
            caller,
            caller.user_id,
            signal_id,
            proposed_value,
            ai_confidence=ai_confidence,
            proposed_unit=proposed_unit or None,
            extracted_from=extracted_from or None,
            extraction_method=extraction_method or None,
        )
        return result_json(result, "proposal")

    @mcp.tool
    async def confirm_signal_proposal(
        ctx: Context,
        proposal_id: str,
        final_value: bool | int | float | str | None = None,
        final_unit: str = "",
        context: dict[str, Any] | None = None,
        bypass_confirmation: bool = False,
    ) -> str:
        """Confirm a pending proposal, recording it as a signal.

        Args:
            proposal_id: Id of the pending proposal.
            final_value: Edited value; omit to accept the proposed value.
            final_unit: Edited unit; omit to keep the proposed unit.
            context: Situational context for the recorded signal.
            bypass_confirmation: The person confirmed an extreme value.
        """
        result = workflow.confirm_proposal(
            caller,
            proposal_id,
            final_value=final_value,
            final_unit=final_unit or None,
            context=context,
            bypass_confirmation=bypass_confirmation,
        )
        return result_json(result, "instance", proposal_id=proposal_id)

    @mcp.tool
    async def reject_signal_proposal(ctx: Context, proposal_id: str) -> str:
        """Reject a pending proposal. Nothing is recorded.

        Args:
            proposal_id: Id of the pending proposal.
        """
        return result_json(workflow.reject_proposal(caller, proposal_id), "proposal")

    @mcp.tool
    async def list_pending_proposals(ctx: Context, limit: int = 100) -> str:
        """Proposals still awaiting a decision, newest first.

        Args:
            limit: Maximum entries (1-100, default: 100).
        """
        result = workflow.get_pending_proposals(caller, caller.user_id, limit=limit)
        if not result.ok:
            return error_json(result)
        return json.dumps({
            "status": "ok",
            "count": len(result.value),
            "proposals": [p.to_dict() for p in result.value],
        }, indent=2)

    @mcp.tool
    async def expire_stale_proposals(ctx: Context) -> str:
        """Expire pending proposals older than the configured expiry age."""
        result = workflow.expire_stale_proposals()
        if result.ok and result.value:
            logger.info("Expired %d stale proposals", result.value)
        return result_json(result, "expired", lambda count: count)
