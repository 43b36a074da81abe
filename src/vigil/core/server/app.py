"""Vigil Health Signals MCP Server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery (fastmcp.json points here)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime

from fastmcp import Context, FastMCP

from vigil.core.audit.logger import AuditLogger
from vigil.core.catalog.loader import DEFAULT_CATALOG_DIR, load_catalog
from vigil.core.catalog.registry import SignalCatalog
from vigil.core.config.settings import Settings, get_settings
from vigil.core.security.caller import Caller
from vigil.core.storage.database import SignalDatabase
from vigil.core.storage.encryption import FieldEncryptor
from vigil.core.storage.models import utc_now
from vigil.core.storage.repository import SignalRepository
from vigil.domains.health.connectors.apple_health import AppleHealthImporter
from vigil.domains.health.domain_logic.anomaly_engine import AnomalyEngine
from vigil.domains.health.domain_logic.baseline_engine import BaselineEngine
from vigil.domains.health.domain_logic.proposals import ProposalWorkflow
from vigil.domains.health.domain_logic.signal_capture import SignalCaptureService
from vigil.domains.health.tools.anomaly_tools import register_anomaly_tools
from vigil.domains.health.tools.audit_tools import register_audit_tools
from vigil.domains.health.tools.device_sync_tools import register_device_sync_tools
from vigil.domains.health.tools.proposal_tools import register_proposal_tools
from vigil.domains.health.tools.signal_tools import register_signal_tools

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    *,
    settings_override: Settings | None = None,
    database_override: SignalDatabase | None = None,
    encryptor_override: FieldEncryptor | None = None,
    catalog_override: SignalCatalog | None = None,
    clock_override: Callable[[], datetime] | None = None,
) -> FastMCP:
    """Create and configure the Vigil health signals MCP server.

    This is the main application factory. It:
    1. Loads the signal catalog (packaged YAML or ``catalog_dir``)
    2. Opens the signal bank (SQLite + Fernet field encryption)
    3. Builds the capture, proposal, baseline and anomaly services
    4. Registers all tools, scoped to the configured owner

    Raises:
        CatalogError: If the catalog cannot be loaded.
        EncryptionError: If ``encryption_key`` is not a valid Fernet key.
    """
    settings = settings_override or get_settings()
    clock = clock_override or utc_now

    # --- Server instance ---
    server = FastMCP(
        "Vigil Health Signals",
        instructions=(
            "Personal health signal bank. Records validated observations of "
            "catalog signals, keeps AI-extracted values as proposals until the "
            "person confirms them, and detects deviations from personal "
            "baselines. It never diagnoses."
        ),
    )

    # --- Catalog ---
    catalog = catalog_override or load_catalog(settings.catalog_dir or DEFAULT_CATALOG_DIR)
    logger.info("Loaded %d signal definitions (catalog v%s)", len(catalog), catalog.version)

    # --- Signal bank ---
    if encryptor_override is not None:
        encryptor = encryptor_override
    elif settings.encryption_key:
        encryptor = FieldEncryptor(settings.encryption_key)
    else:
        encryptor = FieldEncryptor(FieldEncryptor.generate_key())
        logger.warning(
            "No ENCRYPTION_KEY configured; using an ephemeral key. Encrypted context "
            "stored in this session will be unreadable after restart."
        )

    database = database_override or SignalDatabase(settings.db_path)
    database.initialize()
    logger.info(
        "Signal bank initialized: %s (schema v%d)",
        settings.db_path if database_override is None else "<override>",
        database.get_schema_version(),
    )
    repository = SignalRepository(database, encryptor)
    audit = AuditLogger(database)

    # --- Services ---
    capture_service = SignalCaptureService(catalog, repository, audit, clock=clock)
    workflow = ProposalWorkflow(
        catalog,
        repository,
        capture_service,
        audit,
        expiry_hours=settings.proposal_expiry_hours,
        clock=clock,
    )
    baselines = BaselineEngine(
        catalog,
        repository,
        audit,
        min_samples=settings.min_baseline_samples,
        window_days=settings.baseline_refresh_days,
        clock=clock,
    )
    anomalies = AnomalyEngine(
        catalog,
        repository,
        baselines,
        audit,
        recent_window_days=settings.recent_window_days,
        baseline_window_days=settings.baseline_window_days,
        dedup_window_hours=settings.dedup_window_hours,
        clock=clock,
    )
    importer = AppleHealthImporter(catalog, repository, capture_service, audit, clock=clock)

    owner = Caller(user_id=settings.owner_user_id)

    # --- Register tools ---
    @server.tool
    async def health_check(ctx: Context) -> str:
        """Check server health and return basic status information."""
        return json.dumps({
            "status": "ok",
            "server": "Vigil Health Signals",
            "version": VERSION,
            "catalog_version": catalog.version,
            "signals_loaded": len(catalog),
            "schema_version": database.get_schema_version(),
            "instances_stored": repository.count_instances(owner.user_id),
        }, indent=2)

    register_signal_tools(server, catalog, capture_service, baselines, owner)
    register_proposal_tools(server, workflow, owner)
    register_anomaly_tools(server, anomalies, owner)
    register_device_sync_tools(server, importer, owner)
    register_audit_tools(server, audit)
    logger.info("Signal, proposal, anomaly, device sync and audit tools registered")

    return server


# Module-level instance for `fastmcp run src/vigil/core/server/app.py:mcp`.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
