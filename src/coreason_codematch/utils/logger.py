# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import os
import sys
from typing import Any

from loguru import logger as _logger

__all__ = ["logger", "configure_logging"]

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def configure_logging(level: str | None = None) -> int:
    """
    (Re)installs the single stderr sink.

    The level defaults to the CODEMATCH_LOG_LEVEL environment variable, then INFO.
    Returns the loguru handler id.
    """
    resolved = (level or os.getenv("CODEMATCH_LOG_LEVEL") or "INFO").upper()
    _logger.remove()
    return _logger.add(sys.stderr, level=resolved, format=LOG_FORMAT)


configure_logging()

logger: Any = _logger
