from __future__ import annotations

import os
import sys

from loguru import logger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "0") == "1"


def configure_logging(level: str | None = None, *, serialize: bool | None = None) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or LOG_LEVEL).upper(),
        serialize=LOG_JSON if serialize is None else serialize,
        backtrace=False,
        diagnose=False,
    )
