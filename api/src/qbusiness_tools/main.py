"""Serve the API with uvicorn for local and container runs."""
from __future__ import annotations

import logging

import uvicorn

from .app import create_app
from .settings import Settings

logger = logging.getLogger(__name__)


def main() -> None:
    settings = Settings.from_env()
    app = create_app(settings)
    logger.info("Starting QBusiness tools API on port %s", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
