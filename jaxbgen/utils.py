"""Shared utility helpers for jaxbgen."""

from __future__ import annotations

import hashlib
import os
import re
import shlex
import tempfile
from pathlib import Path
from typing import Any, Optional, Sequence

from .errors import CLIError


def format_cli_command(argv: Sequence[str]) -> str:
    return shlex.join(str(part) for part in argv)


_SENSITIVE_KV_PATTERN = re.compile(
    r"(?i)\b("
    r"token|access_token|password|passwd|secret|api_key|apikey|keystorepass|storepass"
    r")\b\s*([:=])\s*([^\s]+)"
)
_URL_CREDENTIALS_PATTERN = re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://)([^/\s:@]+):([^/\s@]+)@")


def redact(text: str) -> str:
    """Best-effort redaction for common secret patterns in logs."""
    value = str(text)
    value = _URL_CREDENTIALS_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}:***@", value)
    value = _SENSITIVE_KV_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}***", value)
    return value


def parse_duration_seconds(value: str) -> float:
    raw = (value or "").strip().lower()
    if not raw:
        raise CLIError("duration is empty")
    if raw.isdigit():
        return float(raw)
    units = {"s": 1, "m": 60, "h": 60 * 60}
    suffix = raw[-1]
    number = raw[:-1].strip()
    if suffix not in units or not number or not number.isdigit():
        raise CLIError(
            f"invalid duration {value!r}; use seconds (e.g. 90) or a unit suffix like 10m/1h"
        )
    return float(int(number) * units[suffix])


def safe_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        normalized = value.strip()
        return normalized or None
    return str(value).strip() or None


def safe_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        if isinstance(value, bool):
            return int(value)
        return int(str(value))
    except (TypeError, ValueError):
        return None


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    hasher = hashlib.new(algorithm)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def atomic_write_text(target: Path, text: str) -> None:
    """Replace ``target`` so readers see either the old or the new content."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def is_within(path: Path, other: Path) -> bool:
    """True when ``path`` equals ``other`` or lies below it."""
    return path == other or other in path.parents
