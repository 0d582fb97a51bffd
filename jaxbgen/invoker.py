"""Runs the external schema compiler for one generation unit."""

from __future__ import annotations

import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .console import log
from .constants import MAX_CAPTURE_CHARS, TERMINATE_GRACE_SECONDS
from .errors import GenerationCancelled, GenerationFailed
from .fingerprint import list_generated_files
from .tooling import ToolArtifactSet
from .units import GenerationUnit
from .utils import format_cli_command, redact


@dataclass(frozen=True)
class GenerationResult:
    unit: str
    success: bool
    outputs: Tuple[str, ...] = ()
    diagnostics: str = ""
    exit_code: Optional[int] = None
    duration: float = 0.0
    skipped: bool = False


def build_xjc_arguments(unit: GenerationUnit) -> List[str]:
    """Compiler arguments for ``unit``, without the launcher prefix."""
    argv: List[str] = ["-d", str(unit.output_path())]
    if unit.package_name:
        argv.extend(["-p", unit.package_name])
    argv.extend(unit.options.to_arguments(unit.base_dir))
    for binding in unit.binding_paths():
        argv.extend(["-b", str(binding)])
    argv.extend(str(path) for path in unit.schema_paths())
    return argv


class _BoundedCapture:
    def __init__(self, limit: int = MAX_CAPTURE_CHARS) -> None:
        self.limit = limit
        self._lines: deque[str] = deque()
        self._size = 0

    def add(self, line: str) -> None:
        if len(line) > self.limit:
            self._lines.clear()
            line = line[-self.limit:]
            self._size = 0
        self._lines.append(line)
        self._size += len(line)
        while self._lines and self._size > self.limit:
            removed = self._lines.popleft()
            self._size -= len(removed)

    def text(self) -> str:
        return "".join(self._lines)


def _stop_process(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def run_process(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Optional[Dict[str, str]] = None,
    label: str = "",
    cancel_event: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    poll_interval: float = 0.05,
) -> Tuple[int, str]:
    """Run ``argv`` and return its exit code and combined, bounded output.

    The process is terminated when ``cancel_event`` is set or ``timeout``
    seconds elapse; ``GenerationCancelled`` is raised in both cases. Output
    that is not valid UTF-8 is kept with the offending bytes replaced.
    """
    proc = subprocess.Popen(
        list(argv),
        cwd=str(cwd),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )
    capture = _BoundedCapture()

    def pump() -> None:
        assert proc.stdout is not None
        try:
            for line in proc.stdout:
                capture.add(line)
        finally:
            proc.stdout.close()

    reader = threading.Thread(target=pump, name=f"output-{label}", daemon=True)
    reader.start()
    deadline = time.monotonic() + timeout if timeout else None
    reason: Optional[str] = None
    try:
        while True:
            try:
                proc.wait(timeout=poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                reason = "cancelled"
            elif deadline is not None and time.monotonic() >= deadline:
                reason = f"timed out after {timeout:g}s"
            if reason:
                _stop_process(proc)
                break
    except KeyboardInterrupt:
        _stop_process(proc)
        raise
    reader.join(timeout=TERMINATE_GRACE_SECONDS)
    output = capture.text()
    if reason:
        raise GenerationCancelled(
            label,
            f"{label}: process {reason}",
            exit_code=proc.returncode,
            diagnostics=output,
        )
    return proc.returncode, output


Runner = Callable[..., Tuple[int, str]]


class GeneratorInvoker:
    """Executes the schema compiler at most once per unit and evaluation."""

    def __init__(self, project_dir: Path, *, runner: Runner = run_process) -> None:
        self.project_dir = Path(project_dir)
        self.runner = runner
        self._invoked: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def invoked(self) -> List[str]:
        with self._lock:
            return sorted(self._invoked)

    def command_for(self, unit: GenerationUnit, tools: ToolArtifactSet) -> List[str]:
        return [*tools.command_prefix(), *build_xjc_arguments(unit)]

    def _prepare_output(self, unit: GenerationUnit) -> Path:
        output = unit.output_path()
        try:
            if output.exists():
                shutil.rmtree(output)
            output.mkdir(parents=True)
        except OSError as exc:
            raise GenerationFailed(
                unit.name, f"unit {unit.name!r}: cannot prepare output directory {output}: {exc}"
            ) from exc
        return output

    def run(
        self,
        unit: GenerationUnit,
        tools: ToolArtifactSet,
        *,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        with self._lock:
            if unit.name in self._invoked:
                raise GenerationFailed(
                    unit.name, f"unit {unit.name!r} was already invoked in this evaluation"
                )
            self._invoked.add(unit.name)

        output = self._prepare_output(unit)
        argv = self.command_for(unit, tools)
        log(f"{unit.name}: exec {redact(format_cli_command(argv))}")
        started = time.monotonic()
        try:
            rc, diagnostics = self.runner(
                argv,
                cwd=self.project_dir,
                env=tools.environment(),
                label=unit.name,
                cancel_event=cancel_event,
                timeout=timeout,
            )
        except OSError as exc:
            raise GenerationFailed(
                unit.name, f"unit {unit.name!r}: failed to launch schema compiler: {exc}"
            ) from exc
        duration = time.monotonic() - started
        if rc != 0:
            raise GenerationFailed(
                unit.name,
                f"schema compiler failed for unit {unit.name!r} (exit code {rc})",
                exit_code=rc,
                diagnostics=diagnostics,
            )
        return GenerationResult(
            unit=unit.name,
            success=True,
            outputs=tuple(list_generated_files(output)),
            diagnostics=diagnostics,
            exit_code=rc,
            duration=duration,
        )
