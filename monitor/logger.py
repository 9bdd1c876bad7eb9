"""
Structured logging with triple output:
  - stderr: human-readable, ANSI-colored console output
  - file (default on): verbose debug log at logs/keeper_YYYYMMDD_HHMMSS.log
  - file (optional): machine-readable single-line JSON (ndjson)

Keeper extras (outcome fields, stats snapshot) passed via extra= are
appended to file lines and emitted as JSON keys.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

from monitor.stats import SUMMARY_FIELDS


# ANSI color codes
_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_CYAN = "\033[36m"
_WHITE = "\033[37m"

_LEVEL_STYLES = {
    "DEBUG": (_DIM, "DBG"),
    "INFO": (_CYAN, "INF"),
    "WARNING": (_YELLOW, "WRN"),
    "ERROR": (_RED, "ERR"),
    "CRITICAL": (_RED + _BOLD, "CRT"),
}

# LogRecord attributes written to the file and JSON logs when passed via extra=:
# per-write outcome fields plus the periodic stats snapshot
_EXTRA_KEYS = ("cycle", "target_id", "kind", "status", "tx_hash", "attempts", "reason") + SUMMARY_FIELDS

_NOISY_LOGGERS = ("httpx", "httpcore", "web3", "urllib3")

DEFAULT_LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")


class ConsoleFormatter(logging.Formatter):
    """Human-readable log lines with timestamps and color-coded levels."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color and _supports_color()

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        color, tag = _LEVEL_STYLES.get(record.levelname, (_WHITE, "???"))
        msg = record.getMessage()

        if self._use_color:
            line = f"{_DIM}{ts}{_RESET} {color}{tag}{_RESET} {msg}"
        else:
            line = f"{ts} {tag} {msg}"

        # Console shows the exception message only; the full trace goes to the file log
        if record.exc_info and record.exc_info[1]:
            if self._use_color:
                line += f"\n{_RED}     {record.exc_info[1]}{_RESET}"
            else:
                line += f"\n     {record.exc_info[1]}"

        return line


def _extras(record: logging.LogRecord) -> dict:
    """Known extra= fields present on *record*, in declaration order."""
    out = {}
    for key in _EXTRA_KEYS:
        value = getattr(record, key, None)
        if value is not None:
            out[key] = value
    return out


class VerboseFormatter(logging.Formatter):
    """File log line with any keeper extras appended as key=value pairs."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)-8s %(name)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        extras = _extras(record)
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


class JSONFormatter(logging.Formatter):
    """Single-line JSON for machine consumption."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_extras(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, separators=(",", ":"), default=str)


def setup_logging(
    level: str = "INFO",
    json_log_file: str | None = None,
    log_dir: str | None = DEFAULT_LOG_DIR,
) -> str | None:
    """
    Configure root logger.
      - Always: ConsoleFormatter on stderr at *level*
      - When log_dir is set: verbose debug log file in log_dir
      - Optionally: JSON file handler for machine logs

    Returns the path to the verbose log file, or None when file logging is off.
    """
    root = logging.getLogger()
    # Root must be DEBUG so the file handler captures everything
    root.setLevel(logging.DEBUG)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    log_path = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        log_path = os.path.join(log_dir, f"keeper_{timestamp}.log")

        verbose_handler = logging.FileHandler(log_path, mode="a")
        verbose_handler.setLevel(logging.DEBUG)
        verbose_handler.setFormatter(VerboseFormatter())
        root.addHandler(verbose_handler)

    if json_log_file:
        fh = logging.FileHandler(json_log_file, mode="a")
        fh.setLevel(logging.INFO)
        fh.setFormatter(JSONFormatter())
        root.addHandler(fh)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_path


def _supports_color() -> bool:
    """Check if stderr supports ANSI color."""
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
