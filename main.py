"""
Entry point: HTTP control surface plus the mailbox/browser service.
"""
import logging
import sys

import uvicorn

from app.api import create_app
from core.config import ConfigError, load_settings
from worker.main import UmzugshilfeService, configure_logging

log = logging.getLogger("main")


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as e:
        configure_logging()
        log.error("Configuration error: %s", e)
        return 1

    configure_logging(settings.log_level)
    app = create_app(UmzugshilfeService(settings))
    log.info("Serving control API", extra={"port": settings.port})
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
