"""Console helpers for jaxbgen.

Build steps log from worker threads, so every write goes through one lock.
"""

from __future__ import annotations

import sys
import threading
from contextlib import contextmanager
from typing import Iterator

_LOG_SILENCED = False
_WRITE_LOCK = threading.Lock()


def configure_console(*, quiet: bool = False) -> None:
    global _LOG_SILENCED
    _LOG_SILENCED = quiet


def log(message: str) -> None:
    if _LOG_SILENCED:
        return
    with _WRITE_LOCK:
        print(f"[jaxbgen] {message}", file=sys.stdout)


def log_error(message: str) -> None:
    with _WRITE_LOCK:
        print(f"[jaxbgen] {message}", file=sys.stderr)


def emit_block(text: str) -> None:
    """Write captured tool output verbatim, ending with a newline."""
    if not text:
        return
    with _WRITE_LOCK:
        sys.stderr.write(text)
        if not text.endswith("\n"):
            sys.stderr.write("\n")


@contextmanager
def suppress_logs() -> Iterator[None]:
    global _LOG_SILENCED
    previous = _LOG_SILENCED
    _LOG_SILENCED = True
    try:
        yield
    finally:
        _LOG_SILENCED = previous
