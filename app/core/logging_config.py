# app/core/logging_config.py
from __future__ import annotations

import logging
import sys
from typing import Optional

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """
    One stream handler on the root logger.
    Safe to call more than once (uvicorn reload, tests).
    """
    root = logging.getLogger()
    lvl = (level or settings.LOG_LEVEL or "INFO").upper()
    root.setLevel(lvl)

    for h in root.handlers:
        if getattr(h, "_requisition_handler", False):
            h.setLevel(lvl)
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(lvl)
    handler._requisition_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
