"""SQLite database management for the signal bank.

Handles connection lifecycle, schema creation, and migrations. Connections
run in autocommit mode; the repository opens explicit transactions
(``BEGIN IMMEDIATE``) wherever a check and a write must be atomic.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 3

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_APPEND_ONLY_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS trg_instances_append_only
BEFORE UPDATE OF id, user_id, signal_id, value_json, value_num, unit, source,
                 confidence, captured_at, context_enc, safety_alert_level,
                 requires_confirmation, ai_proposal_id, created_at
ON signal_instances
BEGIN
    SELECT RAISE(ABORT, 'signal_instances is append-only');
END;
"""

_SCHEMA_V1 = """
-- Candidate values extracted from unstructured input, not yet facts
CREATE TABLE IF NOT EXISTS ai_signal_proposals (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    signal_id           TEXT NOT NULL,
    proposed_value_json TEXT NOT NULL,
    proposed_unit       TEXT,
    extracted_from_enc  TEXT,
    extraction_method   TEXT,
    ai_confidence       REAL NOT NULL CHECK (ai_confidence >= 0 AND ai_confidence <= 1),
    status              TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'confirmed', 'rejected', 'expired')),
    resolved_at         TEXT,
    resolved_by         TEXT,
    final_value_json    TEXT,
    final_unit          TEXT,
    created_at          TEXT NOT NULL
);

-- One row per observation. Append-only: corrections insert a new row and
-- point the old one at it through superseded_by.
CREATE TABLE IF NOT EXISTS signal_instances (
    id                    TEXT PRIMARY KEY,
    user_id               TEXT NOT NULL,
    signal_id             TEXT NOT NULL,
    value_json            TEXT NOT NULL,

    -- Unencrypted numeric projection (for indexed baseline/trend queries)
    value_num             REAL,

    unit                  TEXT,
    source                TEXT NOT NULL,
    confidence            REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
    captured_at           TEXT NOT NULL,

    -- Encrypted JSON blob (situational context)
    context_enc           TEXT,

    safety_alert_level    TEXT NOT NULL DEFAULT 'normal'
                          CHECK (safety_alert_level IN ('normal', 'caution', 'extreme')),
    requires_confirmation INTEGER NOT NULL DEFAULT 0,
    ai_proposal_id        TEXT REFERENCES ai_signal_proposals(id),
    superseded_by         TEXT REFERENCES signal_instances(id),
    superseded_at         TEXT,
    supersede_reason      TEXT,
    created_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_baselines (
    user_id           TEXT NOT NULL,
    metric_name       TEXT NOT NULL,
    baseline_value    REAL NOT NULL,
    min_normal        REAL NOT NULL,
    max_normal        REAL NOT NULL,
    std_deviation     REAL NOT NULL,
    data_points_count INTEGER NOT NULL,
    window_days       INTEGER NOT NULL,
    window_start      TEXT NOT NULL,
    window_end        TEXT NOT NULL,
    calculated_at     TEXT NOT NULL,
    expires_at        TEXT NOT NULL,
    PRIMARY KEY (user_id, metric_name)
);

CREATE TABLE IF NOT EXISTS health_anomalies (
    id                    TEXT PRIMARY KEY,
    user_id               TEXT NOT NULL,
    metric_name           TEXT NOT NULL,
    baseline_value        REAL NOT NULL,
    current_value         REAL NOT NULL,
    change_direction      TEXT NOT NULL
                          CHECK (change_direction IN ('increase', 'decrease', 'too_high', 'too_low')),
    change_percent        REAL NOT NULL,
    severity              TEXT NOT NULL
                          CHECK (severity IN ('info', 'warning', 'urgent', 'critical')),
    detection_window_days INTEGER NOT NULL,
    baseline_window_days  INTEGER NOT NULL,
    status                TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'resolved')),
    detected_at           TEXT NOT NULL,
    resolved_at           TEXT
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Indexes for common query patterns
CREATE INDEX IF NOT EXISTS idx_instances_user_signal ON signal_instances(user_id, signal_id, captured_at);
CREATE INDEX IF NOT EXISTS idx_instances_user_ts     ON signal_instances(user_id, captured_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_instances_proposal
    ON signal_instances(ai_proposal_id) WHERE ai_proposal_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_proposals_user_status ON ai_signal_proposals(user_id, status, created_at);
CREATE INDEX IF NOT EXISTS idx_anomalies_dedup
    ON health_anomalies(user_id, metric_name, status, detected_at);

-- History is immutable: only the supersession columns may change
""" + _APPEND_ONLY_TRIGGER + """
CREATE TRIGGER IF NOT EXISTS trg_instances_no_delete
BEFORE DELETE ON signal_instances
BEGIN
    SELECT RAISE(ABORT, 'signal_instances is append-only');
END;
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (PHI-free access and workflow trail)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id             TEXT PRIMARY KEY,
    timestamp      TEXT NOT NULL,
    action         TEXT NOT NULL,
    operation      TEXT,
    user_hash      TEXT,
    input_hash     TEXT,
    correlation_id TEXT,
    duration_ms    REAL,
    status         TEXT NOT NULL DEFAULT 'success',
    error_type     TEXT,
    metadata_json  TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp   ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action      ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_correlation ON audit_log(correlation_id);
"""


# ---------------------------------------------------------------------------
# V3: Freeze requires_confirmation on stored instances
# ---------------------------------------------------------------------------

_SCHEMA_V3 = "DROP TRIGGER IF EXISTS trg_instances_append_only;\n" + _APPEND_ONLY_TRIGGER


# Migrations applied in order on top of the V1 tables: (version, script, label)
_MIGRATIONS: tuple[tuple[int, str, str], ...] = (
    (2, _SCHEMA_V2, "audit_log table"),
    (3, _SCHEMA_V3, "append-only trigger covers requires_confirmation"),
)


class DatabaseError(Exception):
    """Raised when the signal bank is used before it is opened."""


class SignalDatabase:
    """Owns the SQLite connection behind the signal bank.

    ``":memory:"`` gives a private throwaway bank, which is what tests use.
    A file path is expanded and its parent directory created on open.

    Usage::

        with SignalDatabase("~/.vigil/signals.db") as db:
            db.connection.execute("SELECT COUNT(*) FROM signal_instances")
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        """The open connection.

        Raises:
            DatabaseError: If :meth:`initialize` has not been called.
        """
        if self._conn is None:
            raise DatabaseError("Signal database not initialized; call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Open the connection and bring the schema up to date. Safe to repeat."""
        if self._conn is not None:
            return

        target = self._db_path
        if target != ":memory:":
            db_file = Path(target).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_file)

        # isolation_level=None: autocommit, transactions are opened explicitly
        self._conn = sqlite3.connect(target, isolation_level=None, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._migrate()
        logger.info("Signal database opened: %s", self._db_path)

    def _migrate(self) -> None:
        conn = self.connection
        # V1 uses CREATE IF NOT EXISTS throughout
        conn.executescript(_SCHEMA_V1)

        found = self.get_schema_version()
        for version, script, label in _MIGRATIONS:
            if found < version:
                conn.executescript(script)
                logger.info("Applied schema migration V%d: %s", version, label)

        if found < SCHEMA_VERSION:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            logger.info("Signal bank schema moved from v%d to v%d", found, SCHEMA_VERSION)

    def get_schema_version(self) -> int:
        """Highest recorded schema version, 0 for a brand new file."""
        (version,) = self.connection.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return version or 0

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None
        logger.info("Signal database closed")

    def __enter__(self) -> SignalDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
