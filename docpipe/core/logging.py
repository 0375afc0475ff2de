from __future__ import annotations

import logging

from docpipe.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging once per process (API server or Celery worker)."""
    level = logging.DEBUG if settings.debug else getattr(
        logging, settings.log_level.upper(), logging.INFO
    )
    logging.basicConfig(level=level, format=LOG_FORMAT)

    # botocore logs every request at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
