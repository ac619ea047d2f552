#!/usr/bin/env python3
"""
Logging setup shared by the API, the CLI and the transfer engine
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER = "ct_transfer"

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in ("step", "total", "label", "signature", "attempt", "run_id"):
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: Optional[str] = None, json_lines: Optional[bool] = None) -> logging.Logger:
    """
    Attach a stderr handler to the package root logger.

    Args:
        level: log level name; defaults to LOG_LEVEL env or INFO
        json_lines: emit JSON lines; defaults to LOG_JSON env ("1"/"true")

    Returns:
        the configured root logger
    """
    global _configured
    root = logging.getLogger(ROOT_LOGGER)

    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_lines is None:
        json_lines = os.getenv("LOG_JSON", "0").lower() in ("1", "true", "yes")

    if _configured:
        for h in list(root.handlers):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    if json_lines:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(level)
    _configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    """Child of the package root logger, e.g. get_logger("transfer.submission")"""
    logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")
    root = logging.getLogger(ROOT_LOGGER)
    if not _configured and not root.handlers:
        root.addHandler(logging.NullHandler())
    return logger
