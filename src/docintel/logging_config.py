"""JSON logging for the service and the ingest audit trail."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from docintel.config import PipelineSettings

AUDIT_LOGGER_NAME = "docintel.ingest.audit"

# Attributes every LogRecord carries; anything else was passed via ``extra``.
_STANDARD_ATTRS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
}


def _utc_timestamp(created: float) -> str:
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class MinimalJSONFormatter(logging.Formatter):
    """One JSON object per record.

    Dict messages (as emitted by :func:`docintel.telemetry.log_event`) are
    merged into the object; plain messages land under ``message``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - inherited
        payload: Dict[str, Any] = {
            "ts": _utc_timestamp(record.created),
            "level": record.levelname,
            "module": record.name,
        }
        if isinstance(record.msg, dict):
            payload.update(record.msg)
        else:
            text = record.getMessage()
            if text:
                payload["message"] = text
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        )
        return json.dumps(payload, ensure_ascii=False, default=str)


def _level_name(level: str) -> str:
    name = (level or "").strip().upper()
    if not isinstance(logging.getLevelName(name), int):
        logging.getLogger(__name__).warning("Unknown log level %r; using INFO", level)
        return "INFO"
    return name


def configure_logging(
    settings: Optional[PipelineSettings] = None,
    *,
    audit_path: Optional[Path] = None,
) -> None:
    """Route JSON logs to stderr and skip/ingest records to the audit file.

    Level and audit file come from ``settings`` (``DOCINTEL_LOG_LEVEL`` and
    ``DOCINTEL_AUDIT_LOG``); ``audit_path`` overrides the latter.
    """

    settings = settings or PipelineSettings()
    audit_file = Path(audit_path or settings.audit_log_path)
    audit_file.parent.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": MinimalJSONFormatter}},
            "handlers": {
                "stderr": {"class": "logging.StreamHandler", "formatter": "json"},
                "audit_file": {
                    "class": "logging.FileHandler",
                    "filename": str(audit_file),
                    "mode": "a",
                    "encoding": "utf-8",
                    "formatter": "json",
                },
            },
            "root": {"level": _level_name(settings.log_level), "handlers": ["stderr"]},
            "loggers": {
                AUDIT_LOGGER_NAME: {
                    "level": "INFO",
                    "handlers": ["audit_file"],
                    "propagate": False,
                },
            },
        }
    )


__all__ = ["AUDIT_LOGGER_NAME", "MinimalJSONFormatter", "configure_logging"]
