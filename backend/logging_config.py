from __future__ import annotations

import logging
import os
from logging.config import dictConfig
from typing import Any, Dict, Optional
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_TIMEZONE = "UTC"


class ZonedTimeFormatter(logging.Formatter):
  """Logging formatter that renders timestamps in a configured time zone."""

  def __init__(
    self,
    fmt: str | None = None,
    datefmt: str | None = None,
    timezone: str = DEFAULT_LOG_TIMEZONE,
  ) -> None:
    super().__init__(fmt=fmt, datefmt=datefmt)
    try:
      self.zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
      self.zone = ZoneInfo(DEFAULT_LOG_TIMEZONE)

  def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
    dt = datetime.fromtimestamp(record.created, self.zone)
    if datefmt:
      return dt.strftime(datefmt)
    return dt.isoformat(timespec="seconds")


def _build_config(level: str, timezone: str) -> Dict[str, Any]:
  formatter = {
    "format": "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    "datefmt": "%Y-%m-%d %H:%M:%S",
    "()": ZonedTimeFormatter,
    "timezone": timezone,
  }

  return {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
      "zoned": formatter,
    },
    "handlers": {
      "default": {
        "formatter": "zoned",
        "class": "logging.StreamHandler",
      },
      "uvicorn.access": {
        "formatter": "zoned",
        "class": "logging.StreamHandler",
      },
    },
    "loggers": {
      "": {"handlers": ["default"], "level": level},
      "uvicorn": {"handlers": ["default"], "level": level, "propagate": False},
      "uvicorn.error": {
        "handlers": ["default"],
        "level": level,
        "propagate": False,
      },
      "uvicorn.access": {
        "handlers": ["uvicorn.access"],
        "level": level,
        "propagate": False,
      },
      "kubernetes": {"level": "WARNING"},
      "urllib3": {"level": "WARNING"},
    },
  }


def configure_logging(level: Optional[str] = None, timezone: Optional[str] = None) -> None:
  """Apply the logging configuration; arguments fall back to the environment."""
  level = (level or os.getenv("INSPECTOR_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
  if not isinstance(logging.getLevelName(level), int):
    level = DEFAULT_LOG_LEVEL
  timezone = timezone or os.getenv("INSPECTOR_LOG_TIMEZONE") or DEFAULT_LOG_TIMEZONE
  dictConfig(_build_config(level, timezone))
