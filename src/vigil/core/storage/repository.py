"""Signal bank repository — persistence for instances, proposals, baselines
and anomalies.

The repository mediates between the dataclasses in :mod:`models` and the
SQLite database, using FieldEncryptor for free-text columns. Every write that
pairs a check with a change (proposal resolution, supersession, anomaly
de-duplication) runs as one statement or one ``BEGIN IMMEDIATE``
transaction, so concurrent callers cannot interleave between them.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from vigil.core.storage.database import SignalDatabase
from vigil.core.storage.encryption import EncryptionError, FieldEncryptor
from vigil.core.storage.models import (
    SEVERITY_RANK,
    AISignalProposal,
    Anomaly,
    AnomalyStatus,
    ChangeDirection,
    ProposalStatus,
    ResolvedBy,
    SafetyAlertLevel,
    Severity,
    SignalInstance,
    UserBaseline,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when repository operations fail."""


class ConflictError(Exception):
    """Raised when a conditional write finds its row no longer in the expected state."""


_SEVERITY_ORDER = "CASE severity {} ELSE {} END".format(
    " ".join(f"WHEN '{s.value}' THEN {rank}" for s, rank in SEVERITY_RANK.items()),
    len(SEVERITY_RANK),
)


class SignalRepository:
    """CRUD repository for the signal bank.

    Usage::

        db = SignalDatabase(":memory:")
        db.initialize()
        encryptor = FieldEncryptor(key="...")
        repo = SignalRepository(db, encryptor)

        repo.insert_instance(instance)
        latest = repo.get_latest_instance("user-1", "heart_rate")
    """

    def __init__(self, database: SignalDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return to_iso(utc_now())

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block under SQLite's write lock; roll back on any error."""
        conn = self._db.connection
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise RepositoryError(f"Could not begin transaction: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise RepositoryError(str(exc)) from exc
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise RepositoryError(f"Commit failed: {exc}") from exc

    def _fetchall(self, query: str, params: list[Any] | tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._db.connection.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise RepositoryError(str(exc)) from exc

    def _fetchone(self, query: str, params: list[Any] | tuple = ()) -> sqlite3.Row | None:
        try:
            return self._db.connection.execute(query, params).fetchone()
        except sqlite3.Error as exc:
            raise RepositoryError(str(exc)) from exc

    def _encrypt(self, data: Any) -> str:
        try:
            return self._enc.encrypt(data)
        except EncryptionError as exc:
            raise RepositoryError(str(exc)) from exc

    def _decrypt(self, token: str | None) -> Any:
        try:
            return self._enc.decrypt(token)
        except EncryptionError as exc:
            raise RepositoryError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Signal instances (append-only)
    # ------------------------------------------------------------------

    def _insert_instance_row(self, conn: sqlite3.Connection, instance: SignalInstance) -> None:
        conn.execute(
            """INSERT INTO signal_instances (
                id, user_id, signal_id, value_json, value_num, unit, source,
                confidence, captured_at, context_enc, safety_alert_level,
                requires_confirmation, ai_proposal_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                instance.id,
                instance.user_id,
                instance.signal_id,
                json.dumps(instance.value),
                instance.value_num,
                instance.unit,
                instance.source,
                instance.confidence,
                instance.captured_at,
                self._encrypt(instance.context),
                instance.safety_alert_level.value,
                1 if instance.requires_confirmation else 0,
                instance.ai_proposal_id,
                instance.created_at,
            ),
        )

    def insert_instance(
        self,
        instance: SignalInstance,
        *,
        confirm_proposal: AISignalProposal | None = None,
    ) -> SignalInstance:
        """Persist a new instance.

        When ``confirm_proposal`` is given, the proposal's transition to
        ``confirmed`` and the insert commit together or not at all.

        Raises:
            ConflictError: The proposal is no longer pending.
            RepositoryError: On any storage failure.
        """
        instance.id = instance.id or self.new_id()
        instance.created_at = instance.created_at or self._now_iso()

        with self._transaction() as conn:
            if confirm_proposal is not None:
                cursor = conn.execute(
                    """UPDATE ai_signal_proposals
                       SET status = 'confirmed', resolved_at = ?, resolved_by = ?,
                           final_value_json = ?, final_unit = ?
                       WHERE id = ? AND user_id = ? AND status = 'pending'""",
                    (
                        confirm_proposal.resolved_at or instance.created_at,
                        confirm_proposal.resolved_by.value if confirm_proposal.resolved_by else None,
                        json.dumps(confirm_proposal.final_value),
                        confirm_proposal.final_unit,
                        confirm_proposal.id,
                        confirm_proposal.user_id,
                    ),
                )
                if cursor.rowcount != 1:
                    raise ConflictError(f"Proposal {confirm_proposal.id} is no longer pending")
                instance.ai_proposal_id = confirm_proposal.id
            self._insert_instance_row(conn, instance)

        logger.info(
            "Stored instance %s (signal=%s, source=%s, alert=%s)",
            instance.id, instance.signal_id, instance.source,
            instance.safety_alert_level.value,
        )
        return instance

    def supersede_instance(
        self,
        old_instance_id: str,
        replacement: SignalInstance,
        *,
        reason: str = "",
    ) -> SignalInstance:
        """Insert ``replacement`` and point the old instance at it, atomically.

        Raises:
            ConflictError: The old instance is missing or already superseded.
        """
        replacement.id = replacement.id or self.new_id()
        replacement.created_at = replacement.created_at or self._now_iso()

        with self._transaction() as conn:
            self._insert_instance_row(conn, replacement)
            cursor = conn.execute(
                """UPDATE signal_instances
                   SET superseded_by = ?, superseded_at = ?, supersede_reason = ?
                   WHERE id = ? AND user_id = ? AND superseded_by IS NULL""",
                (
                    replacement.id,
                    replacement.created_at,
                    reason or None,
                    old_instance_id,
                    replacement.user_id,
                ),
            )
            if cursor.rowcount != 1:
                raise ConflictError(f"Instance {old_instance_id} cannot be superseded")

        logger.info("Instance %s superseded by %s", old_instance_id, replacement.id)
        return replacement

    def get_instance(self, instance_id: str) -> SignalInstance | None:
        row = self._fetchone("SELECT * FROM signal_instances WHERE id = ?", (instance_id,))
        return self._row_to_instance(row) if row else None

    def get_latest_instance(self, user_id: str, signal_id: str) -> SignalInstance | None:
        """The current instance: greatest ``captured_at`` among non-superseded rows."""
        row = self._fetchone(
            """SELECT * FROM signal_instances
               WHERE user_id = ? AND signal_id = ? AND superseded_by IS NULL
               ORDER BY captured_at DESC, created_at DESC LIMIT 1""",
            (user_id, signal_id),
        )
        return self._row_to_instance(row) if row else None

    def get_instances(
        self,
        user_id: str,
        *,
        signal_id: str | None = None,
        since: str | None = None,
        until: str | None = None,
        include_superseded: bool = False,
        oldest_first: bool = False,
        limit: int | None = None,
    ) -> list[SignalInstance]:
        """Query a user's instances, newest first unless ``oldest_first``.

        Args:
            signal_id: Restrict to one signal.
            since: ISO 8601 lower bound on ``captured_at`` (inclusive).
            until: ISO 8601 upper bound on ``captured_at`` (exclusive).
        """
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]

        if signal_id:
            conditions.append("signal_id = ?")
            params.append(signal_id)
        if not include_superseded:
            conditions.append("superseded_by IS NULL")
        if since:
            conditions.append("captured_at >= ?")
            params.append(since)
        if until:
            conditions.append("captured_at < ?")
            params.append(until)

        order = "ASC" if oldest_first else "DESC"
        query = (
            f"SELECT * FROM signal_instances WHERE {' AND '.join(conditions)} "
            f"ORDER BY captured_at {order}, created_at {order}"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return [self._row_to_instance(row) for row in self._fetchall(query, params)]

    def get_numeric_values(
        self,
        user_id: str,
        signal_id: str,
        *,
        since: str,
        until: str,
        min_confidence: float = 0.0,
    ) -> list[float]:
        """Numeric values of current instances captured in ``[since, until)``."""
        rows = self._fetchall(
            """SELECT value_num FROM signal_instances
               WHERE user_id = ? AND signal_id = ? AND superseded_by IS NULL
                 AND value_num IS NOT NULL AND confidence >= ?
                 AND captured_at >= ? AND captured_at < ?
               ORDER BY captured_at ASC""",
            (user_id, signal_id, min_confidence, since, until),
        )
        return [row[0] for row in rows]

    def get_numeric_signal_ids(self, user_id: str, *, since: str) -> list[str]:
        """Signals with at least one current numeric value since ``since``."""
        rows = self._fetchall(
            """SELECT DISTINCT signal_id FROM signal_instances
               WHERE user_id = ? AND superseded_by IS NULL
                 AND value_num IS NOT NULL AND captured_at >= ?
               ORDER BY signal_id""",
            (user_id, since),
        )
        return [row[0] for row in rows]

    def count_instances(self, user_id: str | None = None) -> int:
        if user_id:
            row = self._fetchone(
                "SELECT COUNT(*) FROM signal_instances WHERE user_id = ?", (user_id,)
            )
        else:
            row = self._fetchone("SELECT COUNT(*) FROM signal_instances")
        return row[0]

    def has_instance(self, user_id: str, signal_id: str, *, captured_at: str, source: str) -> bool:
        """Whether a current instance already exists for this exact capture."""
        row = self._fetchone(
            """SELECT 1 FROM signal_instances
               WHERE user_id = ? AND signal_id = ? AND captured_at = ? AND source = ?
                 AND superseded_by IS NULL
               LIMIT 1""",
            (user_id, signal_id, captured_at, source),
        )
        return row is not None

    def _row_to_instance(self, row: sqlite3.Row) -> SignalInstance:
        return SignalInstance(
            id=row["id"],
            user_id=row["user_id"],
            signal_id=row["signal_id"],
            value=json.loads(row["value_json"]),
            value_num=row["value_num"],
            unit=row["unit"],
            source=row["source"],
            confidence=row["confidence"],
            captured_at=row["captured_at"],
            context=self._decrypt(row["context_enc"]),
            safety_alert_level=SafetyAlertLevel(row["safety_alert_level"]),
            requires_confirmation=bool(row["requires_confirmation"]),
            ai_proposal_id=row["ai_proposal_id"],
            superseded_by=row["superseded_by"],
            superseded_at=row["superseded_at"],
            supersede_reason=row["supersede_reason"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def insert_proposal(self, proposal: AISignalProposal) -> AISignalProposal:
        proposal.id = proposal.id or self.new_id()
        proposal.created_at = proposal.created_at or self._now_iso()

        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO ai_signal_proposals (
                    id, user_id, signal_id, proposed_value_json, proposed_unit,
                    extracted_from_enc, extraction_method, ai_confidence, status,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    proposal.id,
                    proposal.user_id,
                    proposal.signal_id,
                    json.dumps(proposal.proposed_value),
                    proposal.proposed_unit,
                    self._encrypt(proposal.extracted_from),
                    proposal.extraction_method,
                    proposal.ai_confidence,
                    proposal.status.value,
                    proposal.created_at,
                ),
            )
        logger.info("Stored proposal %s (signal=%s)", proposal.id, proposal.signal_id)
        return proposal

    def get_proposal(self, proposal_id: str) -> AISignalProposal | None:
        row = self._fetchone("SELECT * FROM ai_signal_proposals WHERE id = ?", (proposal_id,))
        return self._row_to_proposal(row) if row else None

    def get_pending_proposals(self, user_id: str, *, limit: int = 100) -> list[AISignalProposal]:
        rows = self._fetchall(
            """SELECT * FROM ai_signal_proposals
               WHERE user_id = ? AND status = 'pending'
               ORDER BY created_at DESC LIMIT ?""",
            (user_id, limit),
        )
        return [self._row_to_proposal(row) for row in rows]

    def close_proposal(
        self,
        proposal_id: str,
        *,
        status: ProposalStatus,
        resolved_by: ResolvedBy,
        resolved_at: str,
    ) -> bool:
        """Move a pending proposal to a terminal state without an instance.

        Returns:
            False when the proposal was not pending (nothing changed).
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE ai_signal_proposals
                   SET status = ?, resolved_by = ?, resolved_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (status.value, resolved_by.value, resolved_at, proposal_id),
            )
        return cursor.rowcount == 1

    def expire_proposals(self, *, created_before: str, resolved_at: str) -> int:
        """Expire every pending proposal created before ``created_before``."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE ai_signal_proposals
                   SET status = 'expired', resolved_by = 'timeout', resolved_at = ?
                   WHERE status = 'pending' AND created_at < ?""",
                (resolved_at, created_before),
            )
        if cursor.rowcount:
            logger.info("Expired %d stale proposals", cursor.rowcount)
        return cursor.rowcount

    def _row_to_proposal(self, row: sqlite3.Row) -> AISignalProposal:
        final_json = row["final_value_json"]
        return AISignalProposal(
            id=row["id"],
            user_id=row["user_id"],
            signal_id=row["signal_id"],
            proposed_value=json.loads(row["proposed_value_json"]),
            proposed_unit=row["proposed_unit"],
            extracted_from=self._decrypt(row["extracted_from_enc"]),
            extraction_method=row["extraction_method"],
            ai_confidence=row["ai_confidence"],
            status=ProposalStatus(row["status"]),
            resolved_at=row["resolved_at"],
            resolved_by=ResolvedBy(row["resolved_by"]) if row["resolved_by"] else None,
            final_value=json.loads(final_json) if final_json is not None else None,
            final_unit=row["final_unit"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Baselines
    # ------------------------------------------------------------------

    def upsert_baseline(self, baseline: UserBaseline) -> None:
        """Insert or replace the single baseline row for (user, metric)."""
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO user_baselines (
                    user_id, metric_name, baseline_value, min_normal, max_normal,
                    std_deviation, data_points_count, window_days, window_start,
                    window_end, calculated_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, metric_name) DO UPDATE SET
                    baseline_value = excluded.baseline_value,
                    min_normal = excluded.min_normal,
                    max_normal = excluded.max_normal,
                    std_deviation = excluded.std_deviation,
                    data_points_count = excluded.data_points_count,
                    window_days = excluded.window_days,
                    window_start = excluded.window_start,
                    window_end = excluded.window_end,
                    calculated_at = excluded.calculated_at,
                    expires_at = excluded.expires_at""",
                (
                    baseline.user_id,
                    baseline.metric_name,
                    baseline.baseline_value,
                    baseline.min_normal,
                    baseline.max_normal,
                    baseline.std_deviation,
                    baseline.data_points_count,
                    baseline.window_days,
                    baseline.window_start,
                    baseline.window_end,
                    baseline.calculated_at,
                    baseline.expires_at,
                ),
            )

    def get_baseline(self, user_id: str, metric_name: str) -> UserBaseline | None:
        """The stored baseline, expired or not; callers check expiry."""
        row = self._fetchone(
            "SELECT * FROM user_baselines WHERE user_id = ? AND metric_name = ?",
            (user_id, metric_name),
        )
        if row is None:
            return None
        return UserBaseline(**{key: row[key] for key in row.keys()})

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    def insert_anomaly_if_absent(self, anomaly: Anomaly, *, dedup_since: str) -> bool:
        """Insert unless an active anomaly for (user, metric) was detected since ``dedup_since``.

        The existence check and the insert are a single statement under the
        write lock, so two concurrent detection runs cannot both insert.

        Returns:
            True if the anomaly was persisted, False if it was a duplicate.
        """
        anomaly.id = anomaly.id or self.new_id()
        anomaly.detected_at = anomaly.detected_at or self._now_iso()

        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO health_anomalies (
                    id, user_id, metric_name, baseline_value, current_value,
                    change_direction, change_percent, severity,
                    detection_window_days, baseline_window_days, status, detected_at
                )
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM health_anomalies
                    WHERE user_id = ? AND metric_name = ? AND status = 'active'
                      AND detected_at >= ?
                )""",
                (
                    anomaly.id,
                    anomaly.user_id,
                    anomaly.metric_name,
                    anomaly.baseline_value,
                    anomaly.current_value,
                    anomaly.change_direction.value,
                    anomaly.change_percent,
                    anomaly.severity.value,
                    anomaly.detection_window_days,
                    anomaly.baseline_window_days,
                    anomaly.detected_at,
                    anomaly.user_id,
                    anomaly.metric_name,
                    dedup_since,
                ),
            )
        return cursor.rowcount == 1

    def get_anomaly(self, anomaly_id: str) -> Anomaly | None:
        row = self._fetchone("SELECT * FROM health_anomalies WHERE id = ?", (anomaly_id,))
        return self._row_to_anomaly(row) if row else None

    def list_active_anomalies(self, user_id: str) -> list[Anomaly]:
        """Active anomalies, most severe first, then newest first."""
        rows = self._fetchall(
            f"""SELECT * FROM health_anomalies
                WHERE user_id = ? AND status = 'active'
                ORDER BY {_SEVERITY_ORDER}, detected_at DESC""",
            (user_id,),
        )
        return [self._row_to_anomaly(row) for row in rows]

    def resolve_anomaly(self, anomaly_id: str, *, resolved_at: str) -> bool:
        """Mark an active anomaly resolved. False if it was not active."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE health_anomalies SET status = 'resolved', resolved_at = ?
                   WHERE id = ? AND status = 'active'""",
                (resolved_at, anomaly_id),
            )
        return cursor.rowcount == 1

    @staticmethod
    def _row_to_anomaly(row: sqlite3.Row) -> Anomaly:
        return Anomaly(
            id=row["id"],
            user_id=row["user_id"],
            metric_name=row["metric_name"],
            baseline_value=row["baseline_value"],
            current_value=row["current_value"],
            change_direction=ChangeDirection(row["change_direction"]),
            change_percent=row["change_percent"],
            severity=Severity(row["severity"]),
            detection_window_days=row["detection_window_days"],
            baseline_window_days=row["baseline_window_days"],
            status=AnomalyStatus(row["status"]),
            detected_at=row["detected_at"],
            resolved_at=row["resolved_at"],
        )
