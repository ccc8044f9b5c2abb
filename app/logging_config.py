from __future__ import annotations

import logging
import logging.config


def configure_logging(level: str = "INFO") -> None:
    level_name = level.upper()
    if level_name not in logging.getLevelNamesMapping():
        raise ValueError(f"unknown log level: {level}")

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "stream": "ext://sys.stderr",
                },
            },
            "loggers": {
                "httpx": {"level": "WARNING"},
            },
            "root": {"level": level_name, "handlers": ["console"]},
        }
    )
