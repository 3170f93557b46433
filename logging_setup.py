"""Process logging for the hub: plain lines on a terminal, JSON lines for collectors."""
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
# hub context passed through ``extra=``; copied into JSON lines when present
CONTEXT_FIELDS = ("floor", "device", "state", "date", "detection_id")


def resolve_level(raw: Any) -> int:
    """Map a LOG_LEVEL value (name or number) to a logging level, INFO when unknown."""
    if raw is None:
        return logging.INFO
    text = str(raw).strip()
    if text.isdigit():
        return int(text)
    value = logging.getLevelName(text.upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> int:
    """Configure root logging on stdout from arguments or LOG_LEVEL / LOG_JSON.

    Returns the effective level.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if json_format is None:
        json_format = os.getenv("LOG_JSON", "0") == "1"
    level_value = resolve_level(level)

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=PLAIN_FORMAT, datefmt=DATE_FORMAT))
    logging.basicConfig(level=level_value, handlers=[handler], force=True)

    # werkzeug writes one line per request; nodes push every few seconds
    logging.getLogger("werkzeug").setLevel(logging.DEBUG if level_value <= logging.DEBUG else logging.WARNING)
    return level_value


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, datefmt=DATE_FORMAT),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, ensure_ascii=False)
