"""Gateway logging: one JSON object per line on stdout."""

import io
import json
import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

logger = logging.getLogger("whatsapp_gateway")


def _stdout_stream() -> TextIO:
    # Chat names and message errors can carry any unicode; never let the console encoding fail a write
    buffer = getattr(sys.stdout, "buffer", None)
    if buffer is not None:
        return io.TextIOWrapper(buffer, encoding="utf-8", errors="replace", line_buffering=True)
    return sys.stdout


def setup_logging(level: str = "INFO") -> None:
    """
    Attach a single stdout handler to the package logger. Calling it again only
    updates the level, so the app factory can run more than once (tests).
    """
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler(_stdout_stream())
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False


def json_log(event: str, level: int = logging.INFO, **kwargs):
    """Log a session or request event, e.g. ``json_log("reconnect_scheduled", delay=5.0)``."""
    payload = {"ts": datetime.now(timezone.utc).isoformat(), "event": event, **kwargs}
    logger.log(level, json.dumps(payload, ensure_ascii=True, default=str))
