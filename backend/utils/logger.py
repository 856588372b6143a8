import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from utils.utcnow import utcnow

_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite", "urllib3")

# Lifted out of "data" so one market or order can be followed across services
_TRACE_FIELDS = ("market_id", "condition_id", "trade_id", "order_id", "opportunity_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; trade identifiers sit at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        fields = dict(getattr(record, "fields", None) or {})
        for key in _TRACE_FIELDS:
            if key in fields:
                entry[key] = fields.pop(key)
        if fields:
            entry["data"] = fields

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # Decimals, datetimes and enums show up in trade context
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Console format: ``time [LEVEL] name: message | key=value ...``"""

    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if fields:
            line += " | " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


class ContextLogger:
    """Wraps a stdlib logger so call sites can pass structured fields as kwargs:

        logger.info("Order placed", market_id=m.id, size=10.0)
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, *args: Any, **fields: Any):
        exc_info = fields.pop("exc_info", None)
        if not self.logger.isEnabledFor(level):
            return
        self.logger.log(
            level,
            msg,
            *args,
            exc_info=exc_info,
            stacklevel=3,  # report the caller, not this wrapper
            extra={"fields": fields or None},
        )

    def debug(self, msg: str, *args: Any, **fields: Any):
        self._log(logging.DEBUG, msg, *args, **fields)

    def info(self, msg: str, *args: Any, **fields: Any):
        self._log(logging.INFO, msg, *args, **fields)

    def warning(self, msg: str, *args: Any, **fields: Any):
        self._log(logging.WARNING, msg, *args, **fields)

    def error(self, msg: str, *args: Any, **fields: Any):
        self._log(logging.ERROR, msg, *args, **fields)

    def critical(self, msg: str, *args: Any, **fields: Any):
        self._log(logging.CRITICAL, msg, *args, **fields)

    def exception(self, msg: str, *args: Any, **fields: Any):
        fields.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, *args, **fields)


def setup_logging(
    level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None
):
    """Route all logging to stdout, plus an optional JSON log file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter() if json_format else TextFormatter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(name)
