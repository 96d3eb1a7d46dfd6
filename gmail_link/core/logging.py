# gmail_link/core/logging.py
from __future__ import annotations

import json
import logging
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# ---- Request-ID context ------------------------------------------------------
_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

def set_request_id(value: str) -> None:
    _request_id_ctx.set(value)

def get_request_id() -> str:
    return _request_id_ctx.get()

class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True

# ---- Secret masking ----------------------------------------------------------
_SECRET_MARKERS = ("token", "secret", "verifier", "password", "code")
REDACTED = "[REDACTED]"

def is_secret_key(key: str) -> bool:
    k = key.lower()
    return any(marker in k for marker in _SECRET_MARKERS)

# ---- JSON formatter ----------------------------------------------------------
_RESERVED = frozenset((
    "args", "msg", "exc_info", "exc_text", "stack_info", "pathname",
    "lineno", "levelname", "name", "created",
))

class JsonFormatter(logging.Formatter):
    def _ts(self, record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="seconds")

    def format(self, record: logging.LogRecord) -> str:
        try:
            base = {
                "ts": self._ts(record),
                "lvl": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "request_id": getattr(record, "request_id", "-"),
                "file": record.pathname,
                "line": record.lineno,
            }
            for k, v in list(record.__dict__.items()):
                if k in _RESERVED or k in base:
                    continue
                if is_secret_key(k):
                    base[k] = REDACTED
                    continue
                try:
                    json.dumps({k: v})
                except (TypeError, ValueError):
                    continue
                base[k] = v
            if record.exc_info:
                base["exc"] = self.formatException(record.exc_info)
            return json.dumps(base, ensure_ascii=False)
        except Exception as e:  # never crash logging
            return json.dumps({"ts": self._ts(record), "lvl": "ERROR", "logger": "logging",
                               "msg": f"formatting-error: {e!r}"}, ensure_ascii=False)

# ---- Setup -------------------------------------------------------------------
def setup_logging(log_dir: Optional[str] = None, level: Optional[str] = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    path = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    path.mkdir(parents=True, exist_ok=True)

    max_bytes = int(os.getenv("LOG_MAX_BYTES", "1048576"))  # 1 MiB
    backups = int(os.getenv("LOG_BACKUPS", "7"))

    file_handler = RotatingFileHandler(path / "gmail_link.log",
                                       maxBytes=max_bytes, backupCount=backups,
                                       encoding="utf-8")
    console_handler = logging.StreamHandler()

    jf = JsonFormatter()
    rid_filter = RequestIdFilter()
    for h in (file_handler, console_handler):
        h.setFormatter(jf)
        h.addFilter(rid_filter)

    root = logging.getLogger()
    root.setLevel(level)

    # Reset handlers to avoid double-logging
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(name).setLevel(level)
    # httpx logs full request URLs at INFO, which include authorization codes
    logging.getLogger("httpx").setLevel(max(logging.getLevelName(level), logging.WARNING))
