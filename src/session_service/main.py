"""ASGI entrypoint for running the session service."""
from __future__ import annotations

import logging

import uvicorn

from .config import Settings, get_settings


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.environment == "development" else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.echo_sql:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)


def run() -> None:
    """Serve ``session_service.api:app`` with uvicorn."""

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        "session_service.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_config=None,
    )


if __name__ == "__main__":
    run()
