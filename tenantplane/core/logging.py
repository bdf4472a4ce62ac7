from __future__ import annotations

import logging
import sys

from tenantplane.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; workers and the API share the format.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)
    if resolved != "DEBUG":
        # arq logs every job start/finish at INFO.
        logging.getLogger("arq").setLevel(logging.WARNING)
