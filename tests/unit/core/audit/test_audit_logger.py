"""Tests for the AuditLogger and related utilities."""

from __future__ import annotations

import json
import time

from vigil.core.audit.logger import AuditEvent, _hash_input


# ---------------------------------------------------------------------------
# _hash_input tests
# ---------------------------------------------------------------------------

class TestHashInput:
    def test_hashes_dict(self):
        h = _hash_input({"key": "value"})
        assert len(h) == 64  # SHA-256 hex

    def test_order_independent(self):
        assert _hash_input({"z": 1, "a": 2}) == _hash_input({"a": 2, "z": 1})

    def test_different_inputs_differ(self):
        assert _hash_input({"a": 1}) != _hash_input({"a": 2})

    def test_non_serializable_returns_empty(self):
        assert _hash_input(object()) == ""


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

class TestLogOperation:
    def test_returns_uuid(self, audit_logger):
        eid = audit_logger.log_event(AuditEvent(action="signal_capture"))
        assert len(eid) == 36

    def test_user_id_and_payload_are_hashed(self, audit_logger):
        audit_logger.log_operation(
            "signal_capture",
            operation="capture",
            user_id="user-1",
            payload={"signal_id": "heart_rate", "value": 72},
            duration_ms=3.2,
        )
        event = audit_logger.get_events()[0]
        assert event["user_hash"] == _hash_input("user-1")
        assert "user-1" not in json.dumps(event)
        assert len(event["input_hash"]) == 64
        assert event["status"] == "success"
        assert event["duration_ms"] == 3.2

    def test_metadata_json_stored(self, audit_logger):
        audit_logger.log_operation("proposal_resolved", metadata={"proposal_id": "p-1"})
        meta = json.loads(audit_logger.get_events()[0]["metadata_json"])
        assert meta == {"proposal_id": "p-1"}

    def test_operation_defaults_to_action(self, audit_logger):
        audit_logger.log_operation("detection_run")
        assert audit_logger.get_events()[0]["operation"] == "detection_run"

    def test_storage_failure_entry(self, audit_logger):
        audit_logger.log_storage_failure(
            "capture", correlation_id="cid-1", user_id="user-1", error_type="RepositoryError"
        )
        event = audit_logger.get_events(correlation_id="cid-1")[0]
        assert event["action"] == "storage_failure"
        assert event["status"] == "failure"
        assert event["error_type"] == "RepositoryError"

    def test_write_failure_is_swallowed(self, audit_logger, signal_db):
        signal_db.connection.execute("DROP TABLE audit_log")
        assert audit_logger.log_operation("signal_capture") == ""


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestGetEvents:
    def test_filter_by_action_and_operation(self, audit_logger):
        audit_logger.log_operation("signal_capture", operation="capture")
        audit_logger.log_operation("signal_rejected", operation="capture", status="rejected")
        audit_logger.log_operation("signal_capture", operation="correct")

        assert len(audit_logger.get_events(action="signal_capture")) == 2
        assert len(audit_logger.get_events(operation="capture")) == 2

    def test_limit_respected(self, audit_logger):
        for i in range(10):
            audit_logger.log_operation("signal_capture", metadata={"i": i})
        assert len(audit_logger.get_events(limit=3)) == 3

    def test_newest_first(self, audit_logger):
        audit_logger.log_operation("first")
        time.sleep(0.01)
        audit_logger.log_operation("second")
        events = audit_logger.get_events()
        assert [e["action"] for e in events] == ["second", "first"]


class TestCounts:
    def test_count_events(self, audit_logger):
        assert audit_logger.count_events() == 0
        audit_logger.log_operation("signal_capture")
        audit_logger.log_operation("storage_failure")
        assert audit_logger.count_events() == 2
        assert audit_logger.count_events(action="storage_failure") == 1

    def test_count_since(self, audit_logger):
        audit_logger.log_operation("signal_capture")
        assert audit_logger.count_events(since="2999-01-01T00:00:00+00:00") == 0

    def test_count_by_action(self, audit_logger):
        audit_logger.log_operation("signal_capture")
        audit_logger.log_operation("signal_capture")
        audit_logger.log_operation("detection_run")
        assert audit_logger.count_by_action() == {"detection_run": 1, "signal_capture": 2}
        assert audit_logger.count_by_action(since="2999-01-01T00:00:00+00:00") == {}
