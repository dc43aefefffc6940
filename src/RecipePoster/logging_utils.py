"""
Structured Logging Utilities

Console and JSONL logging for RecipePoster. Module loggers throughout the
package emit ``event key=value`` messages; :func:`setup_logging` attaches a
console handler and, optionally, a rotating JSONL file handler whose records
have API keys and bearer tokens masked.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

__all__ = ["JSONFormatter", "mask_sensitive_data", "setup_logging", "LOGGER_NAME"]

LOGGER_NAME = "RecipePoster"
LOG_LEVEL_ENV = "RECIPE_POSTER_LOG_LEVEL"

_SENSITIVE_KEYS = {"authorization", "api_key", "apikey", "token", "secret", "password"}
_MASK = "***masked***"


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Return a copy of ``payload`` with credential-like fields masked.

    Examples:
        >>> mask_sensitive_data({"api_key": "sk-123", "status": 429})
        {'api_key': '***masked***', 'status': 429}
    """
    masked: Dict[str, object] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            masked[key] = _MASK
        elif isinstance(value, str) and ("bearer " in value.lower() or "sk-" in value):
            masked[key] = _MASK
        else:
            masked[key] = value
    return masked


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, object] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_obj.update(extra_fields)
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj), ensure_ascii=False)


def setup_logging(
    level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    *,
    max_log_size_mb: float = 10.0,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure handlers on the ``RecipePoster`` logger.

    Args:
        level: Level name; falls back to ``RECIPE_POSTER_LOG_LEVEL`` then INFO.
        log_dir: When given, also write ``recipe-poster.jsonl`` there.
        max_log_size_mb: Rotation threshold for the JSONL file.
        backup_count: Rotated files to keep.

    Returns:
        The configured package logger. Calling again replaces the handlers
        installed by a previous call.
    """
    level_name = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_recipe_poster_managed", False):
            logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    stream_handler._recipe_poster_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "recipe-poster.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._recipe_poster_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    return logger
