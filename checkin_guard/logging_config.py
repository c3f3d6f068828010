# checkin_guard/logging_config.py
"""JSON structured logging configuration."""
import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from checkin_guard.config import APP_ENV, LOG_LEVEL


def setup_logging() -> None:
    """Configure the root logger with JSON output."""
    handler = logging.StreamHandler(sys.stdout)

    formatter = JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={
            "asctime": "timestamp",
            "levelname": "level",
            "name": "logger",
        },
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(
        logging.INFO if APP_ENV == "development" else logging.WARNING
    )
