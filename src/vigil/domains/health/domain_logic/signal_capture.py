"""Signal capture service — the only path by which an observation becomes a fact.

Every capture runs the same ordered checks, each of which can stop it:

1. the caller owns the user id,
2. the signal exists in the catalog,
3. the source is allowed for that signal,
4. the unit is recognized (numeric signals fall back to the default unit),
5. the value and timestamp are valid,
6. the safety gate (extreme values need an explicit bypass),
7. confidence is derived from the source,
8. the instance is persisted, together with a proposal transition if one
   is being confirmed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from vigil.core.audit.logger import AuditLogger
from vigil.core.catalog.models import SignalDefinition, SignalSource
from vigil.core.catalog.registry import SignalCatalog
from vigil.core.results import ErrorCode, Result, ValidationReason, storage_failure
from vigil.core.security.caller import Caller
from vigil.core.storage.models import (
    AISignalProposal,
    ResolvedBy,
    SafetyAlertLevel,
    SignalInstance,
    to_iso,
    utc_now,
)
from vigil.core.storage.repository import ConflictError, RepositoryError, SignalRepository
from vigil.domains.health.domain_logic.signal_models import (
    confirmed_confidence,
    sanitize_context,
    source_confidence,
)
from vigil.domains.health.domain_logic.validation import (
    check_timestamp,
    evaluate_safety,
    resolve_unit,
    validate_value,
)

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100
ALL_SIGNALS = ("*", "all")


@dataclass
class _Prepared:
    """A validated, not yet persisted instance plus its safety warning."""

    instance: SignalInstance
    definition: SignalDefinition
    warning: str | None = None


class SignalCaptureService:
    """Validates, scores and stores signal instances.

    Usage::

        service = SignalCaptureService(catalog, repository, audit)
        result = service.capture(
            caller, "user-1", "heart_rate", 72, source=SignalSource.DEVICE_HEALTHKIT
        )
        if result.ok:
            print(result.value.confidence)  # 0.95
    """

    def __init__(
        self,
        catalog: SignalCatalog,
        repository: SignalRepository,
        audit: AuditLogger | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._catalog = catalog
        self._repo = repository
        self._audit = audit
        self._clock = clock

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture(
        self,
        caller: Caller,
        user_id: str,
        signal_id: str,
        value: Any,
        *,
        source: SignalSource | str,
        unit: str | None = None,
        captured_at: str | None = None,
        context: dict[str, Any] | None = None,
        proposal_id: str | None = None,
        bypass_confirmation: bool = False,
        replaces: str | None = None,
    ) -> Result[SignalInstance]:
        """Record one observation for ``user_id``.

        Args:
            caller: The authenticated caller; must own ``user_id``.
            signal_id: Catalog id of the signal.
            value: Typed value (number, option string, bool or text).
            source: How the value was obtained.
            unit: Unit of ``value``; numeric signals default to the catalog unit.
            captured_at: ISO 8601 time of measurement; defaults to now.
            context: Situational context; unknown keys are dropped.
            proposal_id: Pending proposal this capture confirms.
            bypass_confirmation: Persist a value beyond the extreme threshold.
            replaces: Current instance the new one supersedes, used when a
                device re-reports a running total. Not combined with
                ``proposal_id``.

        Returns:
            The stored instance, with a warning for caution-level values.
        """
        if proposal_id and replaces:
            raise ValueError("A capture cannot both confirm a proposal and replace an instance")
        started = time.monotonic()
        if not caller.owns(user_id):
            return self._reject("capture", user_id, Result.failure(
                ErrorCode.UNAUTHORIZED, "Caller may not record signals for this user",
            ))

        proposal: AISignalProposal | None = None
        if proposal_id:
            loaded = self._load_pending_proposal(user_id, signal_id, proposal_id)
            if not loaded.ok:
                return self._reject("capture", user_id, loaded)
            proposal = loaded.value

        prepared = self._prepare(
            user_id,
            signal_id,
            value,
            source=source,
            unit=unit,
            captured_at=captured_at,
            context=context,
            bypass_confirmation=bypass_confirmation,
            proposal=proposal,
        )
        if not prepared.ok:
            return self._reject("capture", user_id, prepared)

        instance = prepared.value.instance
        if proposal is not None:
            proposal.final_value = instance.value
            proposal.final_unit = instance.unit
            proposal.resolved_at = instance.created_at
            edited = instance.value != proposal.proposed_value or (
                proposal.proposed_unit is not None and instance.unit != proposal.proposed_unit
            )
            proposal.resolved_by = ResolvedBy.USER_EDIT if edited else ResolvedBy.USER_CLICK

        try:
            if replaces:
                stored = self._repo.supersede_instance(
                    replaces, instance, reason=f"updated {instance.source} reading"
                )
            else:
                stored = self._repo.insert_instance(instance, confirm_proposal=proposal)
        except ConflictError:
            message = (
                f"Instance {replaces} cannot be replaced" if replaces
                else f"Proposal {proposal_id} has already been resolved"
            )
            return self._reject("capture", user_id, Result.failure(
                ErrorCode.ALREADY_RESOLVED, message,
            ))
        except RepositoryError as exc:
            return storage_failure("capture", exc, audit=self._audit, user_id=user_id)

        self._log_success(
            "signal_capture",
            "capture",
            user_id,
            started,
            payload={"signal_id": signal_id, "source": stored.source},
            metadata={
                "instance_id": stored.id,
                "signal_id": signal_id,
                "safety_alert_level": stored.safety_alert_level.value,
                "proposal_id": proposal_id,
                "replaces": replaces,
            },
        )
        return Result.success(stored, warning=prepared.value.warning)

    def correct(
        self,
        caller: Caller,
        instance_id: str,
        value: Any,
        *,
        source: SignalSource | str,
        unit: str | None = None,
        reason: str = "",
        bypass_confirmation: bool = False,
    ) -> Result[SignalInstance]:
        """Replace an observation with a corrected one.

        The corrected value goes through the full capture checks. The original
        row is kept and marked superseded; it is never edited or deleted.
        """
        started = time.monotonic()
        try:
            original = self._repo.get_instance(instance_id)
        except RepositoryError as exc:
            return storage_failure("correct", exc, audit=self._audit, user_id=caller.user_id)

        if original is None:
            return self._reject("correct", caller.user_id, Result.failure(
                ErrorCode.NOT_FOUND, f"No signal instance {instance_id}",
            ))
        if not caller.owns(original.user_id):
            return self._reject("correct", caller.user_id, Result.failure(
                ErrorCode.UNAUTHORIZED, "Caller may not correct this user's signals",
            ))
        if original.is_superseded:
            return self._reject("correct", caller.user_id, Result.failure(
                ErrorCode.ALREADY_RESOLVED,
                f"Instance {instance_id} was already superseded by {original.superseded_by}",
            ))

        prepared = self._prepare(
            original.user_id,
            original.signal_id,
            value,
            source=source,
            unit=unit,
            captured_at=None,
            context=original.context,
            bypass_confirmation=bypass_confirmation,
            captured_moment=original.captured_at,
        )
        if not prepared.ok:
            return self._reject("correct", caller.user_id, prepared)

        try:
            stored = self._repo.supersede_instance(
                instance_id, prepared.value.instance, reason=reason
            )
        except ConflictError:
            return self._reject("correct", caller.user_id, Result.failure(
                ErrorCode.ALREADY_RESOLVED, f"Instance {instance_id} was already superseded",
            ))
        except RepositoryError as exc:
            return storage_failure("correct", exc, audit=self._audit, user_id=caller.user_id)

        self._log_success(
            "signal_correction",
            "correct",
            original.user_id,
            started,
            payload={"instance_id": instance_id},
            metadata={"superseded": instance_id, "replacement": stored.id},
        )
        return Result.success(stored, warning=prepared.value.warning)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_latest_signal(
        self, caller: Caller, user_id: str, signal_id: str
    ) -> Result[SignalInstance | None]:
        """The non-superseded instance with the greatest ``captured_at``, or None."""
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not read this user's signals")
        if signal_id not in self._catalog:
            return Result.failure(ErrorCode.UNKNOWN_SIGNAL, f"Unknown signal: {signal_id}")
        try:
            return Result.success(self._repo.get_latest_instance(user_id, signal_id))
        except RepositoryError as exc:
            return storage_failure("get_latest_signal", exc, audit=self._audit, user_id=user_id)

    def get_signal_history(
        self,
        caller: Caller,
        user_id: str,
        signal_id: str = "*",
        *,
        limit: int = 30,
        include_superseded: bool = False,
    ) -> Result[list[SignalInstance]]:
        """Newest-first history of one signal (or every signal with ``"*"``).

        ``limit`` is clamped to 1..100.
        """
        if not caller.owns(user_id):
            return Result.failure(ErrorCode.UNAUTHORIZED, "Caller may not read this user's signals")
        if signal_id not in ALL_SIGNALS and signal_id not in self._catalog:
            return Result.failure(ErrorCode.UNKNOWN_SIGNAL, f"Unknown signal: {signal_id}")

        limit = min(max(1, int(limit)), MAX_HISTORY_LIMIT)
        try:
            history = self._repo.get_instances(
                user_id,
                signal_id=None if signal_id in ALL_SIGNALS else signal_id,
                include_superseded=include_superseded,
                limit=limit,
            )
        except RepositoryError as exc:
            return storage_failure("get_signal_history", exc, audit=self._audit, user_id=user_id)
        return Result.success(history)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_pending_proposal(
        self, user_id: str, signal_id: str, proposal_id: str
    ) -> Result[AISignalProposal]:
        try:
            proposal = self._repo.get_proposal(proposal_id)
        except RepositoryError as exc:
            return storage_failure("capture", exc, audit=self._audit, user_id=user_id)

        if proposal is None or proposal.user_id != user_id:
            return Result.failure(ErrorCode.NOT_FOUND, f"No proposal {proposal_id} for this user")
        if proposal.signal_id != signal_id:
            return Result.failure(
                ErrorCode.NOT_FOUND, f"Proposal {proposal_id} is not for signal {signal_id}"
            )
        if not proposal.is_pending:
            return Result.failure(
                ErrorCode.ALREADY_RESOLVED,
                f"Proposal {proposal_id} is already {proposal.status.value}",
            )
        return Result.success(proposal)

    def _prepare(
        self,
        user_id: str,
        signal_id: str,
        value: Any,
        *,
        source: SignalSource | str,
        unit: str | None,
        captured_at: str | None,
        context: dict[str, Any] | None,
        bypass_confirmation: bool,
        proposal: AISignalProposal | None = None,
        captured_moment: str | None = None,
    ) -> Result[_Prepared]:
        """Run checks 2 through 7 and build the instance to persist."""
        definition = self._catalog.lookup(signal_id)
        if definition is None:
            return Result.failure(ErrorCode.UNKNOWN_SIGNAL, f"Unknown signal: {signal_id}")

        try:
            source = SignalSource(source)
        except ValueError:
            return Result.failure(ErrorCode.SOURCE_NOT_ALLOWED, f"Unknown source: {source!r}")
        if not definition.accepts_source(source):
            return Result.failure(
                ErrorCode.SOURCE_NOT_ALLOWED,
                f"Source '{source.value}' not allowed for {definition.name}",
            )
        if proposal is not None and source is not SignalSource.CHAT_CONFIRMED:
            return Result.failure(
                ErrorCode.SOURCE_NOT_ALLOWED,
                "Confirming a proposal must use the chat_confirmed source",
            )

        resolved_unit, unit_error = resolve_unit(definition, unit)
        if unit_error:
            return Result.failure(ErrorCode.INVALID_UNIT, unit_error)

        check = validate_value(definition, value)
        if not check.ok:
            return Result.failure(ErrorCode.VALIDATION_FAILED, check.message, reason=check.reason)

        now = self._clock()
        if captured_moment is not None:
            captured_iso = captured_moment
        else:
            moment, timestamp_error = check_timestamp(captured_at, now)
            if timestamp_error:
                return Result.failure(
                    ErrorCode.VALIDATION_FAILED,
                    timestamp_error,
                    reason=ValidationReason.INVALID_TIMESTAMP,
                )
            captured_iso = to_iso(moment)

        safety = evaluate_safety(definition, check.numeric)
        if safety.level is SafetyAlertLevel.EXTREME and not bypass_confirmation:
            return Result.failure(
                ErrorCode.REQUIRES_CONFIRMATION,
                safety.message,
                details={"safety_alert_level": safety.level.value},
            )

        if proposal is not None:
            confidence = confirmed_confidence(proposal.ai_confidence)
        else:
            confidence = source_confidence(source)

        instance = SignalInstance(
            id="",
            user_id=user_id,
            signal_id=definition.id,
            value=check.value,
            value_num=check.numeric,
            unit=resolved_unit,
            source=source.value,
            confidence=confidence,
            captured_at=captured_iso,
            context=sanitize_context(context),
            safety_alert_level=safety.level,
            requires_confirmation=safety.level is SafetyAlertLevel.EXTREME,
            created_at=to_iso(now),
        )
        warning = safety.message if safety.level is not SafetyAlertLevel.NORMAL else None
        return Result.success(_Prepared(instance=instance, definition=definition, warning=warning))

    def _reject(self, operation: str, user_id: str, result: Result[Any]) -> Result[Any]:
        """Audit a refused operation and hand its result back unchanged."""
        if self._audit is not None and result.error is not None:
            self._audit.log_operation(
                "signal_rejected",
                operation=operation,
                user_id=user_id,
                status="rejected",
                error_type=result.error.code.value,
                metadata={"reason": result.error.reason} if result.error.reason else None,
            )
        logger.info(
            "%s refused: %s%s",
            operation,
            result.error.code.value if result.error else "unknown",
            f" ({result.error.reason})" if result.error and result.error.reason else "",
        )
        return result

    def _log_success(
        self,
        action: str,
        operation: str,
        user_id: str,
        started: float,
        *,
        payload: Any,
        metadata: dict[str, Any],
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_operation(
            action,
            operation=operation,
            user_id=user_id,
            payload=payload,
            duration_ms=(time.monotonic() - started) * 1000,
            metadata=metadata,
        )
