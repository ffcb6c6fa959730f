"""Verbosity-controlled event logging and invariant checks."""

from __future__ import annotations

import enum
import logging
import os
import sys
import time
from collections.abc import Mapping
from dataclasses import dataclass, field


class LogEvent(str, enum.Enum):
    """Categories of debug events; the value is the printed tag."""

    ERROR = "ERRO"
    INFO = "INFO"
    WARN = "WARN"
    TEST = "TEST"
    VOTE = "VOTE"
    HEARTBEAT = "HEARTBEAT"
    COMMIT = "CMIT"
    SNAP = "SNAP"
    DROP = "DROP"
    PERSIST = "PERS"
    TERM = "TERM"
    TIMER = "TIMR"
    TRACE = "TRCE"


class InvariantError(AssertionError):
    """Raised when an internal invariant does not hold."""


@dataclass
class _DebugState:
    verbosity: int = 0
    start: float = field(default_factory=time.monotonic)


_state = _DebugState()
_logger = logging.getLogger("shardraft")


def verbosity_from_env(environ: Mapping[str, str] | None = None) -> int:
    """Read the verbosity level from ``VERBOSE``; absent or empty means 0."""
    env = os.environ if environ is None else environ
    value = env.get("VERBOSE", "")
    if value == "":
        return 0
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid verbosity {value}") from None


def debug_init(environ: Mapping[str, str] | None = None) -> int:
    """Reset the debug clock and load the verbosity level; return the level."""
    _state.verbosity = verbosity_from_env(environ)
    _state.start = time.monotonic()
    if _state.verbosity >= 1:
        _logger.setLevel(logging.DEBUG)
        if not _logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("%(message)s"))
            _logger.addHandler(handler)
    return _state.verbosity


def debug(what: LogEvent, who: int, message: str, *args) -> str | None:
    """Log an event line when verbosity is at least 1 and return it, else None."""
    if _state.verbosity < 1:
        return None
    elapsed = int((time.monotonic() - _state.start) * 1_000_000)
    tag = what.value if isinstance(what, LogEvent) else str(what)
    body = message % args if args else message
    line = f"{elapsed:06d} {tag} S{who} {body}".rstrip("\n")
    _logger.debug(line)
    return line


def ensure(condition: bool, message: str, *args) -> None:
    """Raise InvariantError with the formatted message if ``condition`` is false."""
    if not condition:
        raise InvariantError(message % args if args else message)