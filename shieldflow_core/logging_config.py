"""
Structured logging configuration for ShieldFlow.

Two console formats:
  - **human** – one line per record, coloured when the stream is a TTY
  - **json**  – newline-delimited JSON for log aggregators

Wallet events carry public context through ``extra=`` (block height,
transaction id, value balance); the JSON formatter lifts those keys
into the object and the human formatter appends them as ``key=value``.

Key material must never reach a sink.  Every handler installed here gets a
:class:`SecretRedactingFilter`, which masks any run of 64+ hex characters
(the shape of a serialised key, scalar or seed) in the message and in any
attached traceback.

Usage:
    from shieldflow_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="shieldflow.log")
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

_SECRET_RE = re.compile(r"\b[0-9a-fA-F]{64,}\b")
REDACTED = "<redacted>"

# Public, per-event fields that may be passed with ``extra=``.
CONTEXT_FIELDS = ("height", "tx_id", "value_balance")

_PREFIX = "shieldflow_"
_OWNED = "_shieldflow_handler"


def redact(text: str) -> str:
    return _SECRET_RE.sub(REDACTED, text)


class SecretRedactingFilter(logging.Filter):
    """Mask long hex tokens in the rendered message and the traceback."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        masked = redact(msg)
        if masked != msg:
            record.msg = masked
            record.args = None
        if record.exc_info and record.exc_info[1]:
            # Render once, mask, and stop formatters from re-rendering.
            record.exc_text = redact(logging.Formatter().formatException(record.exc_info))
            record.exc_info = None
        return True


def _context(record: logging.LogRecord) -> dict:
    return {k: getattr(record, k) for k in CONTEXT_FIELDS if hasattr(record, k)}


def _exception(formatter: logging.Formatter, record: logging.LogRecord) -> Optional[str]:
    if record.exc_info and record.exc_info[1]:
        return formatter.formatException(record.exc_info)
    return record.exc_text or None


class _JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        log_obj.update(_context(record))
        exc = _exception(self, record)
        if exc:
            log_obj["exception"] = exc
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL  ] module: message key=value``."""

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"[{record.levelname:<7}]"
        if self.colour:
            level = f"{self.COLOURS.get(record.levelname, '')}{level}{self.RESET}"
        name = record.name[len(_PREFIX):] if record.name.startswith(_PREFIX) else record.name
        line = f"{ts} {level} {name}: {record.getMessage()}"
        ctx = _context(record)
        if ctx:
            line += " " + " ".join(f"{k}={v}" for k, v in ctx.items())
        exc = _exception(self, record)
        if exc:
            line += "\n" + exc
        return line


def _install(root: logging.Logger, handler: logging.Handler,
             formatter: logging.Formatter) -> None:
    handler.setFormatter(formatter)
    handler.addFilter(SecretRedactingFilter())
    setattr(handler, _OWNED, True)
    root.addHandler(handler)


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger for the wallet process.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL (any case).
    fmt : str
        ``"human"`` or ``"json"`` for the console.
    log_file : str, optional
        Also write to this file, always as JSON.

    Calling it again replaces the handlers a previous call installed and
    leaves other handlers on the root logger alone.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in [h for h in root.handlers if getattr(h, _OWNED, False)]:
        root.removeHandler(h)
        h.close()

    stream = sys.stderr
    if fmt == "json":
        console_fmt: logging.Formatter = _JSONFormatter()
    else:
        console_fmt = _HumanFormatter(colour=stream.isatty())
    _install(root, logging.StreamHandler(stream), console_fmt)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _install(root, logging.FileHandler(str(path)), _JSONFormatter())
