"""Timestamped, coloured console logging tagged with the running component."""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import NoReturn

from termcolor import colored


@dataclass
class _Settings:
    debug: bool = False
    component: str = ""


_settings = _Settings()
_output_lock = threading.Lock()


def init(debug: bool, component: str) -> None:
    """Set whether debug messages are shown and the component tag of every line."""
    _settings.debug = debug
    _settings.component = component


def _emit(level: str, color: str, message: str, args: tuple) -> None:
    text = message % args if args else message
    timestamp = datetime.now().astimezone().isoformat(timespec="seconds")
    line = f"{timestamp} {_settings.component} {colored(level, color)} {text}"
    with _output_lock:
        print(line, file=sys.stdout, flush=True)


def info(message: str, *args: object) -> None:
    """Log an informational message."""
    _emit("INFO", "green", message, args)


def debug(message: str, *args: object) -> None:
    """Log a debug message, only when debug output is enabled."""
    if _settings.debug:
        _emit("DEBUG", "yellow", message, args)


def error(message: str, *args: object) -> None:
    """Log an error message."""
    _emit("ERROR", "red", message, args)


def fatal(message: str, *args: object) -> NoReturn:
    """Log a fatal error and exit with status 1."""
    _emit("FATAL", "red", message, args)
    raise SystemExit(1)