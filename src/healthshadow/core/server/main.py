"""Health Shadow server entry point — ``python -m healthshadow.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from healthshadow.core.config.settings import get_settings
from healthshadow.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host in {"localhost"}:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the Health Shadow MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.shadow_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger = logging.getLogger(__name__)
    if not settings.shadow_allow_insecure_bind and not _is_loopback_host(settings.shadow_host):
        raise RuntimeError(
            "Refusing to bind the health shadow server to a non-loopback host without an auth layer. "
            "Set SHADOW_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info(
        "Starting Health Shadow server on %s:%d",
        settings.shadow_host,
        settings.shadow_port,
    )

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.shadow_host,
        port=settings.shadow_port,
    )


if __name__ == "__main__":
    run()
