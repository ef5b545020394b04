import logging
import logging.config

from learnflow.core.config import settings


def setup_logging(level: str = None) -> None:
    """Configure application logging once at startup"""
    log_level = (level or settings.LOG_LEVEL).upper()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "loggers": {
            "learnflow": {"level": log_level},
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    })
