from __future__ import annotations

import logging
import sys

from contentflow.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not any(getattr(handler, "_contentflow", False) for handler in root.handlers):
        handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._contentflow = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
    # SQL echo stays off unless explicitly enabled through logger config.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
