"""Typed results returned by every signal service operation.

Recoverable problems (bad input, ownership, workflow state) come back as a
:class:`Result` carrying a :class:`SignalError`, never as an exception, so the
MCP tools can turn them into specific guidance for the caller.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from vigil.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCode(str, Enum):
    UNKNOWN_SIGNAL = "unknown_signal"
    SOURCE_NOT_ALLOWED = "source_not_allowed"
    INVALID_UNIT = "invalid_unit"
    VALIDATION_FAILED = "validation_failed"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    UNAUTHORIZED = "unauthorized"
    ALREADY_RESOLVED = "already_resolved"
    INSUFFICIENT_DATA = "insufficient_data"
    STORAGE_FAILURE = "storage_failure"
    NOT_FOUND = "not_found"


class ValidationReason(str, Enum):
    WRONG_TYPE = "wrong_type"
    OUT_OF_RANGE = "out_of_range"
    INVALID_OPTION = "invalid_option"
    PATTERN_MISMATCH = "pattern_mismatch"
    INVALID_TIMESTAMP = "invalid_timestamp"
    INVALID_CONFIDENCE = "invalid_confidence"


@dataclass(frozen=True)
class SignalError:
    """Why an operation did not happen.

    ``reason`` refines ``validation_failed`` and ``insufficient_data``.
    ``correlation_id`` is only set for storage failures and points at the
    matching log line and audit entry.
    """

    code: ErrorCode
    message: str
    reason: str | None = None
    correlation_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.reason:
            data["reason"] = self.reason
        if self.correlation_id:
            data["correlation_id"] = self.correlation_id
        if self.details:
            data["details"] = self.details
        return data


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an error, plus an optional non-fatal warning."""

    value: T | None = None
    error: SignalError | None = None
    warning: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, warning: str | None = None) -> Result[T]:
        return cls(value=value, warning=warning)

    @classmethod
    def failure(
        cls,
        code: ErrorCode,
        message: str,
        *,
        reason: ValidationReason | str | None = None,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Result[T]:
        if isinstance(reason, Enum):
            reason = reason.value
        return cls(
            error=SignalError(
                code=code,
                message=message,
                reason=reason,
                correlation_id=correlation_id,
                details=details,
            )
        )


def storage_failure(
    operation: str,
    exc: Exception,
    *,
    audit: AuditLogger | None = None,
    user_id: str = "",
) -> Result[Any]:
    """Log a storage error under a fresh correlation id and hide its details.

    The caller gets a generic failure naming only the correlation id; the
    exception and query details go to the log and the audit trail.
    """
    correlation_id = str(uuid.uuid4())
    logger.error(
        "Storage failure in %s (correlation_id=%s)", operation, correlation_id, exc_info=exc
    )
    if audit is not None:
        audit.log_storage_failure(
            operation,
            correlation_id=correlation_id,
            user_id=user_id,
            error_type=type(exc).__name__,
        )
    return Result.failure(
        ErrorCode.STORAGE_FAILURE,
        f"The signal store could not complete this request (reference {correlation_id}).",
        correlation_id=correlation_id,
    )
