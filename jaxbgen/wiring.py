"""Turns registered generation units into build-graph steps."""

from __future__ import annotations

import threading
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .console import log
from .constants import AGGREGATE_STEP, COMPILE_STEP, DEFAULT_SOURCE_SET, DISCOVER_STEP, GENERATE_STEP_PREFIX
from .errors import GenerationFailed
from .fingerprint import FingerprintTracker, expand_inputs
from .graph import BuildGraph, Step, StepContext
from .invoker import GenerationResult, GeneratorInvoker
from .outputs import OutputArtifactManager
from .tooling import ToolArtifactSet
from .units import GenerationUnit, UnitRegistry, check_output_overlap, validate_unit

CompileAction = Callable[[str, List[Path], StepContext], Any]


def generate_step_name(unit_name: str) -> str:
    return f"{GENERATE_STEP_PREFIX}{unit_name}"


def compile_step_name(source_set: str) -> str:
    if source_set == DEFAULT_SOURCE_SET:
        return COMPILE_STEP
    return f"{COMPILE_STEP}-{source_set}"


class TaskGraphBuilder:
    """Creates one generation step per unit between schema discovery and compilation.

    Generation steps depend only on the discovery step, never on each other,
    so the executor is free to run them concurrently.
    """

    def __init__(
        self,
        tracker: FingerprintTracker,
        invoker: GeneratorInvoker,
        outputs: OutputArtifactManager,
        *,
        compile_action: Optional[CompileAction] = None,
    ) -> None:
        self.tracker = tracker
        self.invoker = invoker
        self.outputs = outputs
        self.compile_action = compile_action
        self.discovered: Dict[str, List[Path]] = {}
        self.problems: Dict[str, str] = {}
        self._lock = threading.Lock()

    def wire(self, registry: UnitRegistry, tools: ToolArtifactSet) -> BuildGraph:
        units = registry.all()
        for index, unit in enumerate(units):
            validate_unit(unit)
            for other in units[:index]:
                check_output_overlap(other, unit)
        registry.freeze()

        graph = BuildGraph()
        graph.add_step(
            Step(
                name=DISCOVER_STEP,
                action=partial(self._discover, units),
                description="expand schema, binding and catalog inputs",
            )
        )
        generate_steps: List[str] = []
        for unit in units:
            step = graph.add_step(
                Step(
                    name=generate_step_name(unit.name),
                    action=partial(self._generate, unit, tools),
                    depends_on=(DISCOVER_STEP,),
                    inputs=tuple(unit.declared_inputs()),
                    properties={
                        "options": unit.options.as_dict(),
                        "package_name": unit.package_name,
                        "tool_version": tools.version,
                    },
                    outputs=(unit.output_path(),),
                    description=f"run the schema compiler for unit {unit.name}",
                    on_done=partial(self._publish, unit),
                    up_to_date_when=partial(self._has_record, unit),
                )
            )
            generate_steps.append(step.name)

        for source_set in registry.source_sets():
            graph.add_step(
                Step(
                    name=compile_step_name(source_set),
                    action=partial(self._compile, source_set),
                    depends_on=tuple(
                        generate_step_name(unit.name) for unit in registry.by_source_set(source_set)
                    ),
                    description=f"compile the {source_set} source set",
                )
            )
        graph.add_step(
            Step(
                name=AGGREGATE_STEP,
                action=lambda ctx: None,
                depends_on=tuple(generate_steps),
                description="generate all units",
            )
        )
        graph.validate()
        return graph

    def _discover(self, units: List[GenerationUnit], ctx: StepContext) -> Dict[str, List[Path]]:
        for unit in units:
            try:
                files = expand_inputs(unit.declared_inputs())
            except OSError as exc:
                with self._lock:
                    self.problems[unit.name] = f"unit {unit.name!r}: input not found: {exc.filename or exc}"
                continue
            with self._lock:
                self.discovered[unit.name] = files
        log(f"discovered {sum(len(files) for files in self.discovered.values())} input file(s)")
        return dict(self.discovered)

    def _generate(self, unit: GenerationUnit, tools: ToolArtifactSet, ctx: StepContext) -> GenerationResult:
        with self._lock:
            problem = self.problems.get(unit.name)
        if problem:
            raise GenerationFailed(unit.name, problem)
        check = self.tracker.check(unit, tools.version)
        if check.fingerprint is None:
            raise GenerationFailed(unit.name, f"unit {unit.name!r}: {check.reason}")
        if not check.dirty:
            log(f"{unit.name}: up-to-date")
            record = self.tracker.load_record(unit.name)
            return GenerationResult(
                unit=unit.name,
                success=True,
                outputs=record.outputs if record is not None else (),
                skipped=True,
            )
        log(f"{unit.name}: generating ({check.reason})")
        result = self.invoker.run(unit, tools, cancel_event=ctx.cancel_event)
        self.tracker.commit(unit, check.fingerprint, result.outputs)
        log(f"{unit.name}: generated {len(result.outputs)} file(s) in {result.duration:.1f}s")
        return result

    def _publish(self, unit: GenerationUnit, status: str) -> None:
        self.outputs.publish(unit)

    def _has_record(self, unit: GenerationUnit) -> bool:
        return self.tracker.load_record(unit.name) is not None

    def _compile(self, source_set: str, ctx: StepContext) -> Any:
        roots = self.outputs.source_roots(source_set)
        if self.compile_action is None:
            return roots
        return self.compile_action(source_set, roots, ctx)
