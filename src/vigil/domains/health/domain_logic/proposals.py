"""Proposal workflow — an extractor's guess becomes a fact only when a person confirms it.

State machine::

    pending ──confirm──▶ confirmed   (exactly one instance, source chat_confirmed)
       │────reject───▶ rejected    (no instance)
       └────sweep────▶ expired     (no instance, resolved_by = timeout)

Terminal states never change again; resolving twice returns
``already_resolved`` instead of silently succeeding.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from vigil.core.audit.logger import AuditLogger
from vigil.core.catalog.models import SignalSource
from vigil.core.catalog.registry import SignalCatalog
from vigil.core.results import ErrorCode, Result, ValidationReason, storage_failure
from vigil.core.security.caller import Caller
from vigil.core.storage.models import (
    AISignalProposal,
    ProposalStatus,
    ResolvedBy,
    SignalInstance,
    to_iso,
    utc_now,
)
from vigil.core.storage.repository import RepositoryError, SignalRepository
from vigil.domains.health.domain_logic.signal_capture import SignalCaptureService
from vigil.domains.health.domain_logic.validation import resolve_unit, validate_value

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_HOURS = 72
MAX_PENDING_LISTED = 100


class ProposalWorkflow:
    """Creates and resolves AI signal proposals.

    Confirmation goes through :class:`SignalCaptureService`, so a confirmed
    value passes exactly the same checks as any other capture.
    """

    def __init__(
        self,
        catalog: SignalCatalog,
        repository: SignalRepository,
        capture_service: SignalCaptureService,
        audit: AuditLogger | None = None,
        *,
        expiry_hours: int = DEFAULT_EXPIRY_HOURS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._catalog = catalog
        self._repo = repository
        self._capture = capture_service
        self._audit = audit
        self._expiry = timedelta(hours=expiry_hours)
        self._clock = clock

    def create_proposal(
        self,
        caller: Caller,
        user_id: str,
        signal_id: str,
        proposed_value: Any,
        *,
        ai_confidence: float,
        proposed_unit: str | None = None,
        extracted_from: str | None = None,
        extraction_method: str | None = None,
    ) -> Result[AISignalProposal]:
        """Record a candidate value awaiting confirmation.

        ``ai_confidence`` outside [0, 1] is rejected, never clamped.
        """
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not propose signals for this user")

        if (
            isinstance(ai_confidence, bool)
            or not isinstance(ai_confidence, (int, float))
            or not 0.0 <= ai_confidence <= 1.0
        ):
            return Result.failure(
                ErrorCode.VALIDATION_FAILED,
                "ai_confidence must be a number between 0 and 1",
                reason=ValidationReason.INVALID_CONFIDENCE,
            )

        definition = self._catalog.lookup(signal_id)
        if definition is None:
            return Result.failure(ErrorCode.UNKNOWN_SIGNAL, f"Unknown signal: {signal_id}")
        if not definition.accepts_source(SignalSource.CHAT_CONFIRMED):
            return Result.failure(
                ErrorCode.SOURCE_NOT_ALLOWED,
                f"{definition.name} cannot be confirmed in conversation",
            )

        unit, unit_error = resolve_unit(definition, proposed_unit)
        if unit_error:
            return Result.failure(ErrorCode.INVALID_UNIT, unit_error)
        check = validate_value(definition, proposed_value)
        if not check.ok:
            return Result.failure(ErrorCode.VALIDATION_FAILED, check.message, reason=check.reason)

        proposal = AISignalProposal(
            id="",
            user_id=user_id,
            signal_id=definition.id,
            proposed_value=check.value,
            proposed_unit=unit,
            extracted_from=extracted_from or None,
            extraction_method=extraction_method,
            ai_confidence=float(ai_confidence),
            created_at=to_iso(self._clock()),
        )
        try:
            stored = self._repo.insert_proposal(proposal)
        except RepositoryError as exc:
            return storage_failure("create_proposal", exc, audit=self._audit, user_id=user_id)

        if self._audit is not None:
            self._audit.log_operation(
                "proposal_created",
                operation="create_proposal",
                user_id=user_id,
                payload={"signal_id": signal_id},
                metadata={"proposal_id": stored.id, "signal_id": signal_id},
            )
        return Result.success(stored)

    def confirm_proposal(
        self,
        caller: Caller,
        proposal_id: str,
        *,
        final_value: Any = None,
        final_unit: str | None = None,
        context: dict[str, Any] | None = None,
        bypass_confirmation: bool = False,
    ) -> Result[SignalInstance]:
        """Turn a pending proposal into an instance, optionally with an edited value."""
        loaded = self._load_owned(caller, proposal_id)
        if not loaded.ok:
            return Result(error=loaded.error)
        proposal = loaded.value
        if not proposal.is_pending:
            return Result.failure(
                ErrorCode.ALREADY_RESOLVED, f"Proposal {proposal_id} is already {proposal.status.value}"
            )

        result = self._capture.capture(
            caller,
            proposal.user_id,
            proposal.signal_id,
            proposal.proposed_value if final_value is None else final_value,
            source=SignalSource.CHAT_CONFIRMED,
            unit=final_unit or proposal.proposed_unit,
            context=context,
            proposal_id=proposal.id,
            bypass_confirmation=bypass_confirmation,
        )
        if result.ok:
            logger.info("Proposal %s confirmed as instance %s", proposal_id, result.value.id)
        return result

    def reject_proposal(self, caller: Caller, proposal_id: str) -> Result[AISignalProposal]:
        loaded = self._load_owned(caller, proposal_id)
        if not loaded.ok:
            return loaded
        proposal = loaded.value
        if not proposal.is_pending:
            return Result.failure(
                ErrorCode.ALREADY_RESOLVED, f"Proposal {proposal_id} is already {proposal.status.value}"
            )

        resolved_at = to_iso(self._clock())
        try:
            changed = self._repo.close_proposal(
                proposal_id,
                status=ProposalStatus.REJECTED,
                resolved_by=ResolvedBy.USER_CLICK,
                resolved_at=resolved_at,
            )
        except RepositoryError as exc:
            return storage_failure("reject_proposal", exc, audit=self._audit, user_id=caller.user_id)

        if not changed:
            return Result.failure(
                ErrorCode.ALREADY_RESOLVED, f"Proposal {proposal_id} is no longer pending"
            )

        proposal.status = ProposalStatus.REJECTED
        proposal.resolved_by = ResolvedBy.USER_CLICK
        proposal.resolved_at = resolved_at
        if self._audit is not None:
            self._audit.log_operation(
                "proposal_resolved",
                operation="reject_proposal",
                user_id=proposal.user_id,
                metadata={"proposal_id": proposal_id, "status": "rejected"},
            )
        return Result.success(proposal)

    def get_pending_proposals(
        self, caller: Caller, user_id: str, *, limit: int = MAX_PENDING_LISTED
    ) -> Result[list[AISignalProposal]]:
        """Pending proposals for ``user_id``, newest first."""
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not read this user's proposals")
        limit = min(max(1, int(limit)), MAX_PENDING_LISTED)
        try:
            return Result.success(self._repo.get_pending_proposals(user_id, limit=limit))
        except RepositoryError as exc:
            return storage_failure("get_pending_proposals", exc, audit=self._audit, user_id=user_id)

    def expire_stale_proposals(self, now: datetime | None = None) -> Result[int]:
        """Background sweep: expire pending proposals older than the expiry age."""
        now = now or self._clock()
        cutoff = to_iso(now - self._expiry)
        try:
            expired = self._repo.expire_proposals(created_before=cutoff, resolved_at=to_iso(now))
        except RepositoryError as exc:
            return storage_failure("expire_stale_proposals", exc, audit=self._audit)

        if expired and self._audit is not None:
            self._audit.log_operation(
                "proposals_expired",
                operation="expire_stale_proposals",
                metadata={"expired": expired, "cutoff": cutoff},
            )
        return Result.success(expired)

    def _load_owned(self, caller: Caller, proposal_id: str) -> Result[AISignalProposal]:
        try:
            proposal = self._repo.get_proposal(proposal_id)
        except RepositoryError as exc:
            return storage_failure("load_proposal", exc, audit=self._audit, user_id=caller.user_id)
        if proposal is None:
            return Result.failure(ErrorCode.NOT_FOUND, f"No proposal {proposal_id}")
        if not caller.owns(proposal.user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not resolve this proposal")
        return Result.success(proposal)
