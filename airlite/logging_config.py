"""Logging configuration for airlite."""

import logging
import sys
from typing import Optional

FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_level: Optional[str] = "INFO") -> logging.Logger:
    """Configure the `airlite` logger tree once; later calls only change the level."""

    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)

    logger = logging.getLogger("airlite")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(stream=sys.stderr)
        handler.setFormatter(logging.Formatter(FORMAT, datefmt=DATEFMT))
        logger.addHandler(handler)
    for handler in logger.handlers:
        handler.setLevel(level)

    return logger
