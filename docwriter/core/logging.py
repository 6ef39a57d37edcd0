import sys
from logging.config import dictConfig

from docwriter.core.config import settings

# Third-party loggers that only matter when something goes wrong
QUIET_LOGGERS = ("openai", "httpx", "httpcore")


def build_logging_config(level: str) -> dict:
    """dictConfig layout shared with uvicorn; ``docwriter.*`` logs at ``level`` on stdout."""
    config: dict = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": "uvicorn.logging.DefaultFormatter",
                "fmt": "%(levelprefix)s %(asctime)s [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "access": {
                "()": "uvicorn.logging.AccessFormatter",
                "fmt": '%(levelprefix)s %(asctime)s "%(request_line)s" %(status_code)s',
            },
        },
        "handlers": {
            "stderr": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": sys.stderr,
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": sys.stdout,
            },
            "docwriter": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "root": {"handlers": ["stderr"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["stderr"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
            "docwriter": {"handlers": ["docwriter"], "level": level, "propagate": False},
        },
    }
    for name in QUIET_LOGGERS:
        config["loggers"][name] = {"handlers": ["stderr"], "level": "WARNING", "propagate": False}
    return config


def setup_logging(level: str | None = None) -> None:
    dictConfig(build_logging_config((level or settings.log_level).upper()))
