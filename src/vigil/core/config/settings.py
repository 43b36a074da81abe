"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Vigil health signal server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default; a health signal server should never be reachable
    # from the LAN unless the operator opts in explicitly.
    vigil_host: str = "127.0.0.1"
    vigil_port: int = 8001
    vigil_log_level: str = "info"
    vigil_allow_insecure_bind: bool = False

    # Identity of the person this server records signals for. Every tool call
    # is scoped to this user id.
    owner_user_id: str = "local-owner"

    # Storage (signal bank)
    db_path: str = "~/.vigil/signals.db"

    # Encryption (situational context and proposal source text)
    encryption_key: str = ""

    # Catalog override (directory of *.yaml signal definitions)
    catalog_dir: str = ""

    # Baselines
    baseline_refresh_days: int = 30
    min_baseline_samples: int = 5

    # Anomaly detection windows
    recent_window_days: int = 7
    baseline_window_days: int = 23
    dedup_window_hours: int = 24

    # Proposal workflow
    proposal_expiry_hours: int = 72


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
