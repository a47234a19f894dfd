"""Logging setup shared by the gateway server and the client CLI."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

from stream_gateway.core.config import settings

# Record attributes passed via ``extra=`` that end up in JSON output
_EXTRA_FIELDS = ("model_name", "desync", "attempt", "status_code")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping in production."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(stream: TextIO | None = None, level: str | None = None) -> None:
    """Route all records to one handler on the root logger.

    The server logs to stdout. The CLI passes ``sys.stderr`` because stdout
    carries the generated text.
    """
    resolved = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(resolved)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(resolved)
    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)

    # Per-request noise from the HTTP stack
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(resolved if settings.app_debug else logging.WARNING)
