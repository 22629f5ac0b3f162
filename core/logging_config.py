"""
core/logging_config.py - Logging Configuration

Two-channel logging:
  - MAIN log  (<LOG_DIR>/gate_main.log): WARNING+ plus whitelisted
    operational INFO (portfolio locks, regime shifts, blocked signals,
    exits). Safe to tail -f for live monitoring.
  - DEBUG log (<LOG_DIR>/gate_debug.log): everything (DEBUG+), for
    post-mortem investigation.

Console mirrors the main log (WARNING+) so stdout stays quiet in prod.
"""

import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# ---------------------------------------------------------------------------
# Whitelist: INFO-level messages that ARE important enough for the main log.
# Matched as a substring of record.getMessage() (case-insensitive).
# ---------------------------------------------------------------------------
_MAIN_LOG_INFO_KEYWORDS = (
    # Portfolio
    "portfolio lock", "portfolio unlocked", "position registered", "position closed",
    "capital updated",
    # Regime
    "regime shift",
    # Admission
    "signal blocked", "signal downgraded",
    # Exits
    "exit signal", "exit tracking", "trailing stop active",
    # Lifecycle
    "daily reset", "started periodic task", "stopped periodic task",
    "config override",
)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

class MainLogFilter(logging.Filter):
    """
    Allow a record through to the main log if:
      - level >= WARNING, OR
      - level == INFO and the message contains a whitelisted keyword.
    DEBUG records are always blocked.
    """
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        if record.levelno == logging.INFO:
            msg = record.getMessage().lower()
            return any(kw in msg for kw in _MAIN_LOG_INFO_KEYWORDS)
        return False  # DEBUG


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

class MainFormatter(logging.Formatter):
    """
    Clean, human-readable single-line format for the main (tailed) log.
    Adds ANSI colour when writing to a real TTY.
    """
    _COLORS = {
        logging.DEBUG:    "\033[36m",   # cyan
        logging.INFO:     "\033[32m",   # green
        logging.WARNING:  "\033[33m",   # yellow
        logging.ERROR:    "\033[31m",   # red
        logging.CRITICAL: "\033[35m",   # magenta
    }
    _RESET = "\033[0m"

    def __init__(self, use_color: bool = False):
        super().__init__()
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname[:4]  # WARN, INFO, ERRO, CRIT, DEBU
        if self._use_color:
            c = self._COLORS.get(record.levelno, "")
            level_str = f"{c}{level}{self._RESET}"
        else:
            level_str = level

        line = f"{ts} {level_str} [{record.name}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class DebugFormatter(logging.Formatter):
    """Verbose format for the debug log, with module, line and thread."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        line = (
            f"{ts} {record.levelname:8} "
            f"{record.name}:{record.lineno} [{record.threadName}] - {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def setup_logging(
    level: Optional[str] = None,
    log_dir: Optional[str] = None,
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    main_log_name: Optional[str] = "gate_main.log",
    debug_log_name: Optional[str] = "gate_debug.log",
) -> logging.Logger:
    """
    Configure the two-channel logging pipeline.

    Parameters
    ----------
    level          : Root logger level (defaults to GateConfig.LOG_LEVEL).
    log_dir        : Directory for both files (defaults to GateConfig.LOG_DIR).
    main_log_name  : File name of the clean main log; None disables it.
    debug_log_name : File name of the verbose debug log; None disables it.
    """
    from config import GateConfig

    level = level or GateConfig.LOG_LEVEL
    directory = Path(log_dir or GateConfig.LOG_DIR)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.DEBUG))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    # ------------------------------------------------------------------
    # 1. MAIN file handler - WARNING+ plus whitelisted INFO
    # ------------------------------------------------------------------
    if main_log_name:
        directory.mkdir(parents=True, exist_ok=True)
        main_handler = logging.handlers.RotatingFileHandler(
            directory / main_log_name,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        main_handler.setLevel(logging.INFO)   # filter will tighten further
        main_handler.addFilter(MainLogFilter())
        main_handler.setFormatter(MainFormatter(use_color=False))
        root.addHandler(main_handler)

    # ------------------------------------------------------------------
    # 2. DEBUG file handler - everything
    # ------------------------------------------------------------------
    if debug_log_name:
        directory.mkdir(parents=True, exist_ok=True)
        debug_handler = logging.handlers.RotatingFileHandler(
            directory / debug_log_name,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        debug_handler.setLevel(logging.DEBUG)
        debug_handler.setFormatter(DebugFormatter())
        root.addHandler(debug_handler)

    # ------------------------------------------------------------------
    # 3. Console - mirrors main log (WARNING+ only), coloured on TTY
    # ------------------------------------------------------------------
    if console_output:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(logging.WARNING)
        is_tty = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
        console.setFormatter(MainFormatter(use_color=is_tty))
        root.addHandler(console)

    return root
