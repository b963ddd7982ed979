"""
Logging for the Time Marketplace.

Every subsystem logs under the ``timemarket`` root (``timemarket.ledger``,
``timemarket.fhe``, ``timemarket.indexer`` ...). The console gets colorlog
output with long hex values abbreviated, since addresses, handles and
transaction hashes dominate marketplace messages. The optional log file
keeps them in full so records can be grepped by hash.
"""

import logging
import re
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog

ROOT_LOGGER_NAME = "timemarket"
LOG_FILE_NAME = "timemarket.log"

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CONSOLE_FORMAT = "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s"
FILE_FORMAT = "%(asctime)s [%(name)s] %(levelname)-8s %(message)s"

LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# 0x-prefixed runs longer than an address prefix + suffix
_LONG_HEX = re.compile(r"0x([0-9a-fA-F]{6})[0-9a-fA-F]{8,}([0-9a-fA-F]{4})")


def shorten_hex(text: str) -> str:
    """``0x1234567890...`` -> ``0x123456...7890`` for every long hex run."""
    return _LONG_HEX.sub(r"0x\1...\2", text)


class ConsoleFormatter(colorlog.ColoredFormatter):
    """Colored formatter that abbreviates hex in the rendered message."""

    def __init__(self, abbreviate_hex: bool = True):
        super().__init__(CONSOLE_FORMAT, datefmt=DATE_FORMAT, log_colors=LEVEL_COLORS)
        self.abbreviate_hex = abbreviate_hex

    def formatMessage(self, record: logging.LogRecord) -> str:
        rendered = super().formatMessage(record)
        return shorten_hex(rendered) if self.abbreviate_hex else rendered


def parse_level(level: Union[int, str]) -> int:
    """Accept ``logging.DEBUG`` or ``"debug"``; unknown names raise ValueError."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def _console_handler(level: int, abbreviate_hex: bool) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(ConsoleFormatter(abbreviate_hex=abbreviate_hex))
    return handler


def _file_handler(log_dir: Path, level: int) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / LOG_FILE_NAME)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


class MarketLogger:
    """Owns the handlers on the ``timemarket`` root logger"""

    _initialized = False
    _log_dir: Optional[Path] = None

    @classmethod
    def setup(
        cls,
        level: Union[int, str] = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = False,
        abbreviate_hex: bool = True,
        force: bool = False,
    ):
        """
        Install console (and optionally file) handlers.

        Args:
            level: Level as an int or a name such as "DEBUG"
            log_dir: Directory for timemarket.log; ./logs if None
            log_to_file: Also write full, unabbreviated records to a file
            abbreviate_hex: Shorten long hex values on the console
            force: Replace handlers even if already set up
        """
        if cls._initialized and not force:
            return

        level = parse_level(level)
        root = logging.getLogger(ROOT_LOGGER_NAME)
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        root.setLevel(level)
        root.addHandler(_console_handler(level, abbreviate_hex))

        cls._log_dir = None
        if log_to_file:
            cls._log_dir = Path(log_dir) if log_dir else Path("logs")
            root.addHandler(_file_handler(cls._log_dir, level))

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Child logger for a subsystem, e.g. ``get_logger("ledger")``."""
        if not cls._initialized:
            cls.setup()
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def get_logger(name: str) -> logging.Logger:
    return MarketLogger.get_logger(name)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[str] = None,
    log_to_file: bool = False,
    abbreviate_hex: bool = True,
):
    """Apply logging settings, replacing any earlier setup"""
    MarketLogger.setup(
        level=level,
        log_dir=log_dir,
        log_to_file=log_to_file,
        abbreviate_hex=abbreviate_hex,
        force=True,
    )
