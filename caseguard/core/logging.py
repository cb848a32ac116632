from __future__ import annotations

import logging
import sys

from caseguard.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install one stdout handler; repeated app factories must not duplicate output.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if any(getattr(handler, "_caseguard", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._caseguard = True  # type: ignore[attr-defined]
    root.addHandler(handler)
