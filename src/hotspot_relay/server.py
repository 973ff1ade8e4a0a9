"""Entrypoint for the hotspot relay service."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

import uvicorn

from hotspot_relay import __version__
from hotspot_relay.config import load_settings, validate_startup
from hotspot_relay.errors import ConfigurationError
from hotspot_relay.logging_utils import configure_logging

logger = logging.getLogger(__name__)


def run_entrypoint() -> None:
    """Validate configuration, then serve the HTTP API with the background loops."""
    settings = load_settings()
    configure_logging()
    try:
        validate_startup(settings)
    except ConfigurationError as exc:
        logger.error("refusing to start: %s", exc.message)
        raise SystemExit(2) from exc

    from hotspot_relay.transport.http_server import create_http_app

    logger.info("Starting hotspot relay v%s", __version__)
    app = create_http_app()
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":
    run_entrypoint()
