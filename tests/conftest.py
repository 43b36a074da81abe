"""Shared test fixtures for Vigil health signal tests."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from vigil.core.catalog.loader import load_catalog  # noqa: E402
from vigil.core.catalog.models import SignalSource  # noqa: E402
from vigil.core.security.caller import Caller  # noqa: E402
from vigil.core.storage.models import SafetyAlertLevel, SignalInstance, to_iso  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
OWNER_ID = "user-1"


# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("CATALOG_DIR", "")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "signals.db"))
    monkeypatch.setenv("OWNER_USER_ID", OWNER_ID)


# ---------------------------------------------------------------------------
# Clock and identity
# ---------------------------------------------------------------------------

class FixedClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def owner() -> Caller:
    return Caller(user_id=OWNER_ID)


@pytest.fixture
def stranger() -> Caller:
    return Caller(user_id="user-2")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def catalog():
    """The packaged signal catalog (read-only, shared across tests)."""
    return load_catalog()


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def signal_db():
    """Create an in-memory SignalDatabase for testing."""
    from vigil.core.storage.database import SignalDatabase

    db = SignalDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from vigil.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def signal_repository(signal_db, field_encryptor):
    """Create a SignalRepository backed by in-memory SQLite."""
    from vigil.core.storage.repository import SignalRepository

    return SignalRepository(signal_db, field_encryptor)


@pytest.fixture
def audit_logger(signal_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from vigil.core.audit.logger import AuditLogger

    return AuditLogger(signal_db)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def capture_service(catalog, signal_repository, audit_logger, clock):
    from vigil.domains.health.domain_logic.signal_capture import SignalCaptureService

    return SignalCaptureService(catalog, signal_repository, audit_logger, clock=clock)


@pytest.fixture
def proposal_workflow(catalog, signal_repository, capture_service, audit_logger, clock):
    from vigil.domains.health.domain_logic.proposals import ProposalWorkflow

    return ProposalWorkflow(catalog, signal_repository, capture_service, audit_logger, clock=clock)


@pytest.fixture
def baseline_engine(catalog, signal_repository, audit_logger, clock):
    from vigil.domains.health.domain_logic.baseline_engine import BaselineEngine

    return BaselineEngine(catalog, signal_repository, audit_logger, clock=clock)


@pytest.fixture
def anomaly_engine(catalog, signal_repository, baseline_engine, audit_logger, clock):
    from vigil.domains.health.domain_logic.anomaly_engine import AnomalyEngine

    return AnomalyEngine(catalog, signal_repository, baseline_engine, audit_logger, clock=clock)


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

@pytest.fixture
def seed(signal_repository, clock):
    """Insert instances directly, dated relative to the test clock.

    Usage::

        seed("heart_rate", [(1, 80), (2, 82)])   # (days_ago, value)
    """

    def _seed(
        signal_id: str,
        points: list[tuple[float, float]],
        *,
        user_id: str = OWNER_ID,
        source: SignalSource = SignalSource.MANUAL_INPUT,
        confidence: float = 0.75,
        unit: str | None = None,
    ) -> list[SignalInstance]:
        stored = []
        for days_ago, value in points:
            moment = clock() - timedelta(days=days_ago)
            stored.append(signal_repository.insert_instance(SignalInstance(
                id="",
                user_id=user_id,
                signal_id=signal_id,
                value=value,
                value_num=float(value),
                unit=unit,
                source=source.value,
                confidence=confidence,
                captured_at=to_iso(moment),
                safety_alert_level=SafetyAlertLevel.NORMAL,
                created_at=to_iso(moment),
            )))
        return stored

    return _seed
