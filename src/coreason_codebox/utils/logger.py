# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

import sys
from pathlib import Path

from loguru import logger

__all__ = ["configure_logging", "logger"]


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """
    Replace loguru's default sink with a stderr sink and, optionally, a JSON file sink.
    """
    logger.remove()

    # Sink 1: Stdout/Stderr (Human-readable)
    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
        ),
    )

    # Sink 2: File (JSON, rotating)
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            rotation="10 MB",
            retention="7 days",
            serialize=True,
            enqueue=True,
        )
