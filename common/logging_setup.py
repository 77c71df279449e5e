from __future__ import annotations

import logging
import os
import sys
import json
import time
from typing import List, Optional


class JsonFormatter(logging.Formatter):
    """
    Minimal JSON log formatter:
      { "t": 169, "lvl": "INFO", "name": "mod", "msg": "text", "extra": {...} }
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        # Include extra dict if present
        if hasattr(record, "extra") and isinstance(record.extra, dict):  # type: ignore[attr-defined]
            payload["extra"] = record.extra  # type: ignore[attr-defined]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logger once with JSON formatting.
    Level precedence:
      - explicit `level` arg
      - env LOG_LEVEL (e.g., DEBUG/INFO/WARN/ERROR)
      - default INFO
    """
    root = logging.getLogger()
    if getattr(root, "_imgsrv_configured", False):  # idempotent
        return

    lvl_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    lvl = getattr(logging, lvl_name, logging.INFO)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(lvl)
    # urllib3 is chatty at DEBUG on every origin/metadata request
    logging.getLogger("urllib3").setLevel(max(lvl, logging.INFO))
    root._imgsrv_configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    """Get a module logger; ensures root is configured."""
    setup_logging()
    return logging.getLogger(name)


class NullTrace:
    """Trace sink used for normal requests; drops everything."""

    def add(self, msg: str, *args) -> None:
        pass

    @property
    def lines(self) -> List[str]:
        return []

    def render(self) -> str:
        return ""


class TraceCollector(NullTrace):
    """
    Collects the decisions taken while serving one request (`?debug`).

    Components append through `add()` regardless of whether debugging is on;
    the request decides which sink it carries.
    """

    def __init__(self) -> None:
        self._t0 = time.perf_counter()
        self._lines: List[str] = []

    def add(self, msg: str, *args) -> None:
        text = msg % args if args else msg
        dt_ms = (time.perf_counter() - self._t0) * 1e3
        self._lines.append(f"[{dt_ms:8.1f} ms] {text}")

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def render(self) -> str:
        return "\n".join(self._lines) + "\n"
