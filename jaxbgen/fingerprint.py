"""Up-to-date tracking for generation units.

A fingerprint is a SHA-256 digest over everything that influences the
compiler output of one unit: the content hash and modification time of each
schema, binding and catalog file, the option set, the package override, the
output location and the tool version. Input files are sorted by path before
hashing, so directory iteration order never changes the digest.

After a successful run the fingerprint is stored as a small JSON record next
to the list of files that run produced. The next evaluation recomputes the
fingerprint and compares; a missing record, a different digest or a missing
generated file marks the unit dirty. Records can be deleted at any time.
"""

from __future__ import annotations

import errno
import hashlib
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .constants import FINGERPRINT_FORMAT
from .errors import CLIError
from .units import GenerationUnit
from .utils import atomic_write_text, file_digest


@dataclass(frozen=True)
class InputEntry:
    path: str
    sha256: str
    mtime_ns: int


@dataclass(frozen=True)
class Fingerprint:
    unit: str
    digest: str
    tool_version: str
    inputs: Tuple[InputEntry, ...] = ()


@dataclass(frozen=True)
class FingerprintRecord:
    unit: str
    digest: str
    tool_version: str
    outputs: Tuple[str, ...]
    committed_at: float


@dataclass(frozen=True)
class DirtyCheck:
    dirty: bool
    reason: str
    fingerprint: Optional[Fingerprint] = None


def expand_inputs(paths: Iterable[Path]) -> List[Path]:
    """Expand directories to their regular files; fail on missing entries."""
    files: Dict[str, Path] = {}
    for path in paths:
        if path.is_dir():
            for child in path.rglob("*"):
                if child.is_file():
                    files[child.as_posix()] = child
        elif path.is_file():
            files[path.as_posix()] = path
        else:
            raise FileNotFoundError(errno.ENOENT, "input not found", str(path))
    return [files[key] for key in sorted(files)]


def compute_fingerprint(unit: GenerationUnit, tool_version: str) -> Fingerprint:
    entries: List[InputEntry] = []
    for path in expand_inputs(unit.declared_inputs()):
        stat = path.stat()
        entries.append(InputEntry(path.as_posix(), file_digest(path), stat.st_mtime_ns))
    payload: Dict[str, Any] = {
        "inputs": [[entry.path, entry.sha256, entry.mtime_ns] for entry in entries],
        "options": unit.options.as_dict(),
        "package_name": unit.package_name,
        "output_dir": unit.output_path().as_posix(),
        "tool_version": tool_version,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return Fingerprint(
        unit=unit.name,
        digest=hashlib.sha256(encoded).hexdigest(),
        tool_version=tool_version,
        inputs=tuple(entries),
    )


def list_generated_files(root: Path) -> List[str]:
    if not root.is_dir():
        return []
    return sorted(
        path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file()
    )


class FingerprintTracker:
    """Per-unit fingerprint records stored under ``state_dir``."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    def record_path(self, unit_name: str) -> Path:
        return self.state_dir / f"{unit_name}.json"

    def load_record(self, unit_name: str) -> Optional[FingerprintRecord]:
        path = self.record_path(unit_name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict) or data.get("format") != FINGERPRINT_FORMAT:
            return None
        digest = data.get("fingerprint")
        outputs = data.get("outputs")
        if not isinstance(digest, str) or not isinstance(outputs, list):
            return None
        return FingerprintRecord(
            unit=str(data.get("unit") or unit_name),
            digest=digest,
            tool_version=str(data.get("tool_version") or ""),
            outputs=tuple(str(item) for item in outputs),
            committed_at=float(data.get("committed_at") or 0.0),
        )

    def compute(self, unit: GenerationUnit, tool_version: str) -> Fingerprint:
        return compute_fingerprint(unit, tool_version)

    def check(self, unit: GenerationUnit, tool_version: str) -> DirtyCheck:
        try:
            current = self.compute(unit, tool_version)
        except OSError as exc:
            target = exc.filename or exc
            return DirtyCheck(True, f"input missing or unreadable: {target}")
        record = self.load_record(unit.name)
        if record is None:
            return DirtyCheck(True, "no previous record", current)
        if record.digest != current.digest:
            if record.tool_version != tool_version:
                reason = f"tool version changed ({record.tool_version} -> {tool_version})"
            else:
                reason = "inputs or options changed"
            return DirtyCheck(True, reason, current)
        output_root = unit.output_path()
        for relative in record.outputs:
            if not (output_root / relative).is_file():
                return DirtyCheck(True, f"generated file missing: {relative}", current)
        return DirtyCheck(False, "up-to-date", current)

    def is_dirty(self, unit: GenerationUnit, tool_version: str) -> bool:
        return self.check(unit, tool_version).dirty

    def commit(
        self,
        unit: GenerationUnit,
        fingerprint: Fingerprint,
        outputs: Sequence[str],
    ) -> Path:
        if fingerprint.unit != unit.name:
            raise CLIError(
                f"fingerprint for unit {fingerprint.unit!r} cannot be committed for {unit.name!r}"
            )
        payload = {
            "format": FINGERPRINT_FORMAT,
            "unit": unit.name,
            "fingerprint": fingerprint.digest,
            "tool_version": fingerprint.tool_version,
            "outputs": sorted(outputs),
            "committed_at": time.time(),
        }
        target = self.record_path(unit.name)
        try:
            atomic_write_text(target, json.dumps(payload, indent=2, sort_keys=True) + "\n")
        except OSError as exc:
            raise CLIError(f"failed to write fingerprint record {target}: {exc}") from exc
        return target

    def forget(self, unit_name: str) -> bool:
        try:
            self.record_path(unit_name).unlink()
        except FileNotFoundError:
            return False
        return True

    def forget_all(self) -> List[str]:
        removed: List[str] = []
        if not self.state_dir.is_dir():
            return removed
        for path in sorted(self.state_dir.glob("*.json")):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed.append(path.stem)
        return removed
