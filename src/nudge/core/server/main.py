"""Nudge server entry point: ``python -m nudge.core.server.main``.

Configures logging once for the process, refuses to expose the tool surface
beyond loopback unless explicitly allowed, then serves over Streamable HTTP.
"""

from __future__ import annotations

import logging
from ipaddress import ip_address

from nudge.core.config.settings import Settings, get_settings
from nudge.core.server.app import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level_name: str) -> None:
    """Root logging setup from NUDGE_LOG_LEVEL; unknown names fall back to INFO."""
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def check_bind_host(settings: Settings) -> None:
    """Raise unless the bind address is loopback or the override is set.

    Raises:
        RuntimeError: For a non-loopback host without NUDGE_ALLOW_INSECURE_BIND.
    """
    if settings.nudge_allow_insecure_bind or is_loopback(settings.nudge_host):
        return
    raise RuntimeError(
        f"Refusing to serve participant health data on {settings.nudge_host}: "
        "the MCP tools have no authentication. Bind to 127.0.0.1 or set "
        "NUDGE_ALLOW_INSECURE_BIND=true."
    )


def run() -> None:
    """Start the coaching prompt engine."""
    settings = get_settings()
    configure_logging(settings.nudge_log_level)
    check_bind_host(settings)

    logger = logging.getLogger(__name__)
    logger.info(
        "Starting Nudge coaching engine on %s:%d (fire policy: %s)",
        settings.nudge_host,
        settings.nudge_port,
        settings.fire_policy,
    )
    create_app(settings_override=settings).run(
        transport="streamable-http",
        host=settings.nudge_host,
        port=settings.nudge_port,
    )


if __name__ == "__main__":
    run()
