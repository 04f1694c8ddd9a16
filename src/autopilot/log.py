from __future__ import annotations

import logging
from pathlib import Path

from autopilot.config import AutopilotConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
ROOT_LOGGER = "autopilot"


def configure_logging(
    config: AutopilotConfig, state_dir: Path, *, verbose: bool = False
) -> logging.Logger:
    """Attach stderr and (optionally) file handlers to the package logger."""

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper())
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if config.logging.file:
        log_path = Path(config.logging.file)
        if not log_path.is_absolute():
            log_path = state_dir / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
