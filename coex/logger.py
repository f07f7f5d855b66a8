"""
Coex Logging System
===================

Thread-safe logging setup for the executor. Console output goes through
`rich` so block numbers, order ids and transaction hashes stand out; a
rotating file keeps a plain copy of everything.

Every record carries the block being reconciled when it was emitted
(``%(block)s``), taken from a context variable that the block synchronizer
sets. Tasks spawned while a block is processed, such as detached dispatches,
inherit it.

Usage:
    >>> from coex.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Executor started")
"""

import contextvars
import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_FILE_PATH,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_FILE_OUTPUT,
)


NO_BLOCK = "-"
QUIET_LIBRARIES = ("httpx", "httpcore", "websockets")

_current_block: contextvars.ContextVar = contextvars.ContextVar("coex_block", default=NO_BLOCK)

COEX_THEME = Theme(
    {
        "coex.address":         "cyan",
        "coex.block":           "bold cyan",
        "coex.hash":            "magenta",
        "coex.level_critical":  "bold red reverse",
        "coex.level_debug":     "bold dim",
        "coex.level_error":     "bold red",
        "coex.level_info":      "bold green",
        "coex.level_warning":   "bold yellow",
        "coex.logger_name":     "magenta",
        "coex.network_error":   "bold red",
        "coex.tag":             "bold magenta",
        "coex.timestamp":       "bold cyan",
        "coex.url":             "cyan",
    }
)


def set_block_context(block_number: int) -> contextvars.Token:
    """Tag records emitted from the current context with ``block_number``."""
    return _current_block.set(block_number)


def reset_block_context(token: contextvars.Token) -> None:
    _current_block.reset(token)


class BlockContextFilter(logging.Filter):
    """Adds the ``block`` attribute used by ``LOG_FORMAT``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "block"):
            record.block = _current_block.get()
        return True


class LogManager:
    """
    Singleton owner of the root logger configuration.

    Attributes:
        _instance (LogManager): The singleton instance.
        _lock (threading.Lock): Guards first-time configuration.
    """

    _instance: Optional["LogManager"] = None
    _lock: threading.Lock = threading.Lock()


    def __new__(cls) -> "LogManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._configured = False
        return cls._instance


    @staticmethod
    def validate_log_format(log_format: str) -> str:
        """
        Check a format string against a sample executor record.

        Returns:
            str: ``log_format`` if it renders, otherwise the default format.
        """
        if not log_format:
            return str(LOG_FORMAT.default())
        record = logging.LogRecord(
            name="coex", level=logging.INFO, pathname="", lineno=0,
            msg="sample", args=(), exc_info=None,
        )
        record.block = NO_BLOCK
        try:
            logging.Formatter(fmt=str(log_format)).format(record)
        except (ValueError, KeyError, TypeError) as e:
            print(
                f"{time.strftime(str(LOG_DATE_FORMAT.default()))} - coex.logger - "
                f"Invalid LOG_FORMAT ({e}), using the default.",
                file=sys.stderr,
            )
            return str(LOG_FORMAT.default())
        return str(log_format)


    def _formatter(self) -> logging.Formatter:
        date_format = str(LOG_DATE_FORMAT) or str(LOG_DATE_FORMAT.default())
        formatter = TerminalSafeFormatter(fmt=self.validate_log_format(LOG_FORMAT), datefmt=date_format + " UTC")
        formatter.converter = time.gmtime
        return formatter


    @staticmethod
    def _console_handler(highlighting: bool) -> logging.Handler:
        if not highlighting:
            return logging.StreamHandler(sys.stdout)
        return RichHandler(
            console=Console(theme=COEX_THEME, highlight=False),
            highlighter=CoexLogHighlighter(),
            keywords=[],
            rich_tracebacks=True,
            show_path=False,
            show_time=False,
            show_level=False,
            markup=False,
        )


    @staticmethod
    def _file_handler(path: Path) -> logging.Handler:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            filename=str(path),
            maxBytes=LOG_MAX_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )


    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
    ) -> None:
        """
        Install console and file handlers on the root logger, once.

        Args:
            log_level (Optional[str]): DEBUG, INFO, ... Defaults to ``LOG_LEVEL``.
            log_file (Optional[Path]): Defaults to ``LOG_FILE_PATH``.
            console_output (bool): Enable console logging.
            file_output (Optional[bool]): Defaults to ``LOG_FILE_OUTPUT``.
        """
        with self._lock:
            if self._configured:
                return

            numeric_level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
            root_logger = logging.getLogger()
            root_logger.setLevel(numeric_level)
            root_logger.handlers.clear()

            # Transport libraries log every request
            for lib in QUIET_LIBRARIES:
                logging.getLogger(lib).setLevel(logging.WARNING)

            handlers: List[logging.Handler] = []
            if console_output:
                handlers.append(self._console_handler(bool(LOG_CONSOLE_HIGHLIGHTING)))
            if file_output is None:
                file_output = bool(LOG_FILE_OUTPUT)
            if file_output:
                handlers.append(self._file_handler(log_file or Path(str(LOG_FILE_PATH))))

            formatter = self._formatter()
            block_filter = BlockContextFilter()
            for handler in handlers:
                handler.setLevel(numeric_level)
                handler.setFormatter(formatter)
                handler.addFilter(block_filter)
                root_logger.addHandler(handler)

            self._configured = True


    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


class TerminalSafeFormatter(logging.Formatter):
    """
    Strips ANSI escapes and control characters from rendered records.

    Token symbols, revert reasons and node error messages come from the
    chain and are never written to the terminal verbatim.
    """

    _ansi_escape_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"
        r"|\x1b[@-Z\\-_]"
    )
    # Control chars (0x00-0x1F) excluding Tab and Newline
    _control_chars_re = re.compile(r"[\x00-\x08\x0B\x0C\x0D\x0E-\x1F\x7F]")


    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        return cls._control_chars_re.sub("", cls._ansi_escape_re.sub("", text))


    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class CoexLogHighlighter(RegexHighlighter):
    """Highlights hashes, addresses and block numbers in executor logs."""

    base_style = "coex."
    highlights = [
        r"(?P<hash>\b0x[0-9a-fA-F]{64}\b)",
        r"(?P<address>\b0x[0-9a-fA-F]{40}\b)",
        r"(?P<block>\b[Bb]locks? \d+(?:-\d+)?\b)",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<network_error>NETWORK_ERROR)",
        r"(?P<tag>\[.*?\])",
        r"(?P<timestamp>^(.*?)UTC)",
        r"(?P<url>(?:https?|wss?)://\S+)",
    ]


_manager = LogManager()

def get_logger(name: str) -> logging.Logger:
    """Logger for ``name``, configuring the logging system on first use."""
    return _manager.get_logger(name)

_manager.configure()
