"""Audit logger — PHI-free trail of every signal bank state change.

Records captures, corrections, proposal transitions, detection runs, anomaly
resolutions and storage failures in the ``audit_log`` table:

* ``user_hash``  — SHA-256 of the user id, never the id itself.
* ``input_hash`` — SHA-256 of canonical JSON of the operation input, so two
  entries can be matched without storing any value.
* ``correlation_id`` — joins an entry to the log line of the same failure.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from vigil.core.storage.database import SignalDatabase

logger = logging.getLogger(__name__)


def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON — no PHI stored in audit logs.

    Returns:
        Hex-encoded SHA-256 digest, or empty string on failure.
    """
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'signal_capture' | 'proposal_resolved' | 'storage_failure' | ...
    operation: str = ""                  # service operation or MCP tool name
    user_hash: str = ""
    input_hash: str = ""
    correlation_id: str | None = None
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure' | 'rejected'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Writes run outside any repository transaction, so an entry for a failed
    operation survives that operation's rollback.

    Usage::

        audit = AuditLogger(signal_db)
        audit.log_operation(
            "capture",
            user_id="local-owner",
            payload={"signal_id": "heart_rate"},
            metadata={"instance_id": "..."},
        )
    """

    def __init__(self, database: SignalDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID, or ``""`` if it was lost."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            self._db.connection.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, operation, user_hash, input_hash,
                    correlation_id, duration_ms, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.operation or None,
                    event.user_hash or None,
                    event.input_hash or None,
                    event.correlation_id,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
        except Exception:
            logger.exception("Failed to write audit event — event lost")
            return ""

        return event_id

    def log_operation(
        self,
        action: str,
        *,
        operation: str = "",
        user_id: str = "",
        payload: Any = None,
        status: str = "success",
        error_type: str | None = None,
        correlation_id: str | None = None,
        duration_ms: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Convenience wrapper for a service-level state change.

        Args:
            action: Event kind, e.g. 'signal_capture' or 'detection_run'.
            operation: The service operation or tool that caused it.
            user_id: Owner of the affected data (hashed, never stored raw).
            payload: Operation input (hashed, never stored raw).
            status: 'success', 'failure' or 'rejected'.
            error_type: Error code or exception class name.
            correlation_id: Id shared with the matching log line.
            duration_ms: Execution duration in milliseconds.
            metadata: Additional non-PHI metadata (ids, counts, codes).
        """
        return self.log_event(AuditEvent(
            action=action,
            operation=operation or action,
            user_hash=_hash_input(user_id) if user_id else "",
            input_hash=_hash_input(payload) if payload is not None else "",
            correlation_id=correlation_id,
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_storage_failure(
        self,
        operation: str,
        *,
        correlation_id: str,
        user_id: str = "",
        error_type: str = "",
    ) -> str:
        """Record a storage failure. The caller only ever sees the correlation id."""
        return self.log_event(AuditEvent(
            action="storage_failure",
            operation=operation,
            user_hash=_hash_input(user_id) if user_id else "",
            correlation_id=correlation_id,
            status="failure",
            error_type=error_type or None,
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        operation: str | None = None,
        correlation_id: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if operation:
            conditions.append("operation = ?")
            params.append(operation)
        if correlation_id:
            conditions.append("correlation_id = ?")
            params.append(correlation_id)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None, since: str | None = None) -> int:
        """Count audit events, optionally of a single action and since a time."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(f"SELECT COUNT(*) FROM audit_log{where}", params).fetchone()
        return row[0]

    def count_by_action(self, *, since: str | None = None) -> dict[str, int]:
        """Number of events per action, optionally since a time."""
        where, params = (" WHERE timestamp >= ?", [since]) if since else ("", [])
        rows = self._db.connection.execute(
            f"SELECT action, COUNT(*) FROM audit_log{where} GROUP BY action ORDER BY action",
            params,
        ).fetchall()
        return {row[0]: row[1] for row in rows}
