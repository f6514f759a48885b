from __future__ import annotations

import logging

from botledger.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Apply one root format so API, worker and script logs line up in aggregation.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_FORMAT)
    else:
        root.setLevel(level)
    # httpx logs every request at INFO; keep it for debugging only.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
