"""Entrypoint for the campaign planner storage server."""

from __future__ import annotations

import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from campaign_planner import __version__
from campaign_planner.config import load_settings
from campaign_planner.logging_utils import configure_logging, get_logger


def run_entrypoint() -> None:
    """Configure logging and serve the HTTP application with uvicorn."""
    settings = load_settings()
    configure_logging(settings)
    logger = get_logger(__name__)

    import uvicorn

    from campaign_planner.transport.http_server import create_http_app

    logger.info("Starting campaign planner storage v%s", __version__)
    logger.info("Key-value store: %s", settings.storage.kv_path or "in memory")
    if settings.storage.sqlite_enabled:
        logger.info("SQLite layer: %s", settings.storage.sqlite_path)
    if settings.remote.configured:
        logger.info("Remote sync to %s/%s:%s", settings.remote.owner, settings.remote.repo, settings.remote.path)

    app = create_http_app()
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
