from __future__ import annotations

import logging

from infergate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install one stream handler on the package logger; repeated app creation must not duplicate it.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    package_logger = logging.getLogger("infergate")
    package_logger.setLevel(level)
    if not any(getattr(handler, "_infergate", False) for handler in package_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._infergate = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)
