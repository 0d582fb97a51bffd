"""A small in-process build graph: named steps, declared edges, parallel execution."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .console import log, log_error
from .errors import CLIError, ConfigurationError
from .fingerprint import expand_inputs, list_generated_files
from .utils import atomic_write_text, file_digest

SUCCESS = "success"
UP_TO_DATE = "up-to-date"
FAILED = "failed"
BLOCKED = "blocked"

_HOST_CACHE_FORMAT = 2


@dataclass
class StepContext:
    """Handed to a step action while it runs."""

    step: str
    cancel_event: threading.Event
    timeout: Optional[float] = None


@dataclass
class Step:
    name: str
    action: Callable[[StepContext], Any]
    depends_on: Tuple[str, ...] = ()
    inputs: Tuple[Path, ...] = ()
    properties: Dict[str, Any] = field(default_factory=dict)
    outputs: Tuple[Path, ...] = ()
    description: str = ""
    on_done: Optional[Callable[[str], None]] = None
    up_to_date_when: Optional[Callable[[], bool]] = None

    @property
    def cacheable(self) -> bool:
        return bool(self.inputs) and bool(self.outputs)

    def property_digest(self) -> str:
        encoded = json.dumps(self.properties, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()


@dataclass
class StepOutcome:
    name: str
    status: str
    duration: float = 0.0
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status in (SUCCESS, UP_TO_DATE)


class BuildGraph:
    """Named steps connected only by their declared ``depends_on`` edges."""

    def __init__(self) -> None:
        self._steps: Dict[str, Step] = {}

    def add_step(self, step: Step) -> Step:
        if step.name in self._steps:
            raise ConfigurationError(f"build step {step.name!r} is already defined")
        self._steps[step.name] = step
        return step

    def step(self, name: str) -> Step:
        try:
            return self._steps[name]
        except KeyError:
            raise ConfigurationError(f"unknown build step {name!r}") from None

    def steps(self) -> List[Step]:
        return list(self._steps.values())

    def names(self) -> List[str]:
        return list(self._steps)

    def edges(self) -> List[Tuple[str, str]]:
        return [(dep, step.name) for step in self._steps.values() for dep in step.depends_on]

    def dependents(self, name: str) -> List[str]:
        return [step.name for step in self._steps.values() if name in step.depends_on]

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def validate(self) -> None:
        for step in self._steps.values():
            for dep in step.depends_on:
                if dep not in self._steps:
                    raise ConfigurationError(
                        f"build step {step.name!r} depends on unknown step {dep!r}"
                    )
        self.topological_order()

    def topological_order(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """Dependency-first order; ties keep insertion order."""
        selected = set(self._steps) if names is None else set(names)
        remaining = {
            name: {dep for dep in self._steps[name].depends_on if dep in selected}
            for name in self._steps
            if name in selected
        }
        order: List[str] = []
        while remaining:
            ready = [name for name, deps in remaining.items() if not deps]
            if not ready:
                cycle = ", ".join(sorted(remaining))
                raise ConfigurationError(f"build graph contains a cycle among: {cycle}")
            for name in ready:
                order.append(name)
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def select(self, targets: Optional[Sequence[str]] = None) -> List[str]:
        """``targets`` plus everything they transitively depend on, in execution order."""
        if not targets:
            return self.topological_order()
        selected: Set[str] = set()
        stack = list(targets)
        while stack:
            name = stack.pop()
            if name in selected:
                continue
            stack.extend(self.step(name).depends_on)
            selected.add(name)
        return self.topological_order(selected)


class HostCache:
    """Coarse per-step up-to-date records kept by the executor."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    def _path(self, step: Step) -> Path:
        return self.state_dir / f"{step.name}.json"

    def snapshot(self, step: Step) -> Optional[Dict[str, Any]]:
        try:
            inputs = [
                [path.as_posix(), file_digest(path), path.stat().st_mtime_ns]
                for path in expand_inputs(step.inputs)
            ]
        except OSError:
            return None
        outputs = {
            path.as_posix(): list_generated_files(path) for path in sorted(step.outputs)
        }
        return {
            "format": _HOST_CACHE_FORMAT,
            "inputs": inputs,
            "properties": step.property_digest(),
            "outputs": outputs,
        }

    def is_current(self, step: Step) -> bool:
        current = self.snapshot(step)
        if current is None:
            return False
        try:
            stored = json.loads(self._path(step).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        return stored == current

    def store(self, step: Step) -> None:
        current = self.snapshot(step)
        if current is None:
            self.invalidate(step)
            return
        atomic_write_text(self._path(step), json.dumps(current, indent=2, sort_keys=True) + "\n")

    def invalidate(self, step: Step) -> None:
        self._path(step).unlink(missing_ok=True)


class GraphExecutor:
    """Runs the selected steps of a graph on a thread pool.

    A step starts once all its dependencies succeeded (or were up-to-date).
    A failed step blocks its dependents; independent steps keep running.
    """

    def __init__(
        self,
        graph: BuildGraph,
        *,
        parallel: int = 1,
        step_timeout: Optional[float] = None,
        state_dir: Optional[Path] = None,
    ) -> None:
        self.graph = graph
        self.parallel = max(1, int(parallel))
        self.step_timeout = step_timeout
        self.cache = HostCache(state_dir) if state_dir is not None else None
        self._events: Dict[str, threading.Event] = {}
        self._events_lock = threading.Lock()

    def cancel_all(self) -> None:
        with self._events_lock:
            for event in self._events.values():
                event.set()

    def _is_up_to_date(self, step: Step) -> bool:
        if self.cache is None or not step.cacheable or not self.cache.is_current(step):
            return False
        return step.up_to_date_when is None or step.up_to_date_when()

    def _run_step(self, step: Step) -> StepOutcome:
        started = time.monotonic()
        if self._is_up_to_date(step):
            log(f"{step.name}: up-to-date")
            if step.on_done is not None:
                step.on_done(UP_TO_DATE)
            return StepOutcome(step.name, UP_TO_DATE, time.monotonic() - started)

        event = threading.Event()
        with self._events_lock:
            self._events[step.name] = event
        timer: Optional[threading.Timer] = None
        if self.step_timeout:
            timer = threading.Timer(self.step_timeout, event.set)
            timer.daemon = True
            timer.start()
        try:
            result = step.action(StepContext(step.name, event, self.step_timeout))
        except (CLIError, OSError) as exc:
            if self.cache is not None and step.cacheable:
                self.cache.invalidate(step)
            return StepOutcome(step.name, FAILED, time.monotonic() - started, error=exc)
        finally:
            if timer is not None:
                timer.cancel()
            with self._events_lock:
                self._events.pop(step.name, None)

        if self.cache is not None and step.cacheable:
            self.cache.store(step)
        if step.on_done is not None:
            step.on_done(SUCCESS)
        return StepOutcome(step.name, SUCCESS, time.monotonic() - started, result=result)

    def execute(self, targets: Optional[Sequence[str]] = None) -> Dict[str, StepOutcome]:
        self.graph.validate()
        order = self.graph.select(targets)
        selected = set(order)
        outcomes: Dict[str, StepOutcome] = {}
        running: Dict[Future, str] = {}

        def ready(name: str) -> bool:
            return all(
                dep in outcomes and outcomes[dep].ok
                for dep in self.graph.step(name).depends_on
                if dep in selected
            )

        def block_dependents(name: str) -> None:
            for dependent in self.graph.dependents(name):
                if dependent in selected and dependent not in outcomes:
                    outcomes[dependent] = StepOutcome(dependent, BLOCKED)
                    log_error(f"{dependent}: not run because {name} did not succeed")
                    block_dependents(dependent)

        with ThreadPoolExecutor(max_workers=self.parallel) as pool:
            try:
                while len(outcomes) < len(order):
                    started = set(running.values())
                    for name in order:
                        if name not in outcomes and name not in started and ready(name):
                            running[pool.submit(self._run_step, self.graph.step(name))] = name
                    if not running:
                        break
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                    for future in done:
                        name = running.pop(future)
                        outcome = future.result()
                        outcomes[name] = outcome
                        if not outcome.ok:
                            log_error(f"{name}: {outcome.error}")
                            block_dependents(name)
            except KeyboardInterrupt:
                self.cancel_all()
                for future in running:
                    future.cancel()
                raise
        return {name: outcomes[name] for name in order if name in outcomes}
