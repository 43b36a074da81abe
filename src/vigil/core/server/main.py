"""Vigil server entry point — ``python -m vigil.core.server.main`` or ``vigil-server``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from vigil.core.config.settings import Settings, get_settings
from vigil.core.server.app import create_app

logger = logging.getLogger(__name__)

_LOOPBACK_NAMES = frozenset({"localhost", "localhost.localdomain"})


def is_loopback_host(host: str) -> bool:
    """Whether ``host`` only accepts connections from this machine."""
    if host.lower() in _LOOPBACK_NAMES:
        return True
    try:
        return ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def check_bind(settings: Settings) -> None:
    """Refuse a LAN-reachable bind unless the operator opted in.

    Tools act as the configured owner without per-request authentication, so
    anyone who can reach the port can read and write that person's signals.

    Raises:
        RuntimeError: If the host is not loopback and insecure binds are not allowed.
    """
    if is_loopback_host(settings.vigil_host):
        return
    if not settings.vigil_allow_insecure_bind:
        raise RuntimeError(
            f"Refusing to serve health signals on non-loopback host {settings.vigil_host!r} "
            "without an auth layer. Set VIGIL_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.warning("Serving on non-loopback host %s without authentication", settings.vigil_host)


def run() -> None:
    """Start the Vigil MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.vigil_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    check_bind(settings)
    logger.info(
        "Starting Vigil Health Signals on %s:%d for owner %s",
        settings.vigil_host,
        settings.vigil_port,
        settings.owner_user_id,
    )

    mcp = create_app(settings_override=settings)
    mcp.run(
        transport="streamable-http",
        host=settings.vigil_host,
        port=settings.vigil_port,
    )


if __name__ == "__main__":
    run()
