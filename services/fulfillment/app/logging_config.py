"""
Fulfillment Service — logging setup

Console output plus two files under LOG_DIR:
  error.log     ERROR and above
  combined.log  everything
"""

import logging
import logging.config
from pathlib import Path

from . import config


def setup_logging(level: str | None = None, log_dir: Path | None = None) -> None:
    log_dir = Path(log_dir or config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
                "error_file": {
                    "class": "logging.FileHandler",
                    "formatter": "default",
                    "filename": str(log_dir / "error.log"),
                    "level": "ERROR",
                },
                "combined_file": {
                    "class": "logging.FileHandler",
                    "formatter": "default",
                    "filename": str(log_dir / "combined.log"),
                },
            },
            "root": {
                "level": (level or config.LOG_LEVEL).upper(),
                "handlers": ["console", "error_file", "combined_file"],
            },
        }
    )
