"""Two-phase project evaluation: configure the model, then resolve, wire and execute."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import ProjectConfig
from .console import emit_block, log
from .constants import SOURCE_ROOTS_ENV_VAR
from .errors import CLIError, ConfigurationError, GenerationFailed
from .fingerprint import FingerprintTracker
from .graph import BLOCKED, FAILED, UP_TO_DATE, BuildGraph, GraphExecutor, StepContext, StepOutcome
from .invoker import GenerationResult, GeneratorInvoker, Runner, run_process
from .outputs import OutputArtifactManager
from .tooling import ToolArtifactSet, ToolClasspathResolver
from .units import GenerationUnit, UnitRegistry
from .utils import format_cli_command, redact
from .wiring import CompileAction, TaskGraphBuilder, generate_step_name


@dataclass
class BuildReport:
    outcomes: Dict[str, StepOutcome]
    outputs: OutputArtifactManager
    tool_version: str
    results: List[GenerationResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes.values())

    @property
    def invoked(self) -> List[str]:
        return [result.unit for result in self.results if not result.skipped]

    @property
    def skipped(self) -> List[str]:
        return [result.unit for result in self.results if result.skipped]

    @property
    def failed(self) -> List[StepOutcome]:
        return [outcome for outcome in self.outcomes.values() if outcome.status == FAILED]

    @property
    def blocked(self) -> List[str]:
        return [name for name, outcome in self.outcomes.items() if outcome.status == BLOCKED]

    def summary(self) -> str:
        return (
            f"{len(self.invoked)} generated, {len(self.skipped)} up-to-date,"
            f" {len(self.failed)} failed, {len(self.blocked)} blocked"
        )


def _expand_placeholders(argv: Sequence[str], values: Dict[str, str]) -> List[str]:
    expanded: List[str] = []
    for part in argv:
        for key, value in values.items():
            part = part.replace("{" + key + "}", value)
        expanded.append(part)
    return expanded


class Project:
    """A configured set of generation units plus everything needed to build them.

    ``configure()`` only builds the in-memory model. ``evaluate()`` resolves the
    tool, wires the graph and runs it; nothing touches the filesystem before
    that.
    """

    def __init__(
        self,
        config: ProjectConfig,
        *,
        resolver: Optional[ToolClasspathResolver] = None,
        runner: Runner = run_process,
        compile_action: Optional[CompileAction] = None,
    ) -> None:
        self.config = config
        self.resolver = resolver or ToolClasspathResolver(config.tool)
        self.runner = runner
        self.compile_action = compile_action
        self.registry = UnitRegistry()
        self._configured = False

    @property
    def project_dir(self) -> Path:
        return self.config.project_dir

    def configure(self) -> UnitRegistry:
        if not self._configured:
            for unit in self.config.units:
                self.registry.register(unit)
            self._configured = True
        return self.registry

    def register(self, unit: GenerationUnit) -> GenerationUnit:
        self.configure()
        return self.registry.register(unit)

    def tracker(self) -> FingerprintTracker:
        return FingerprintTracker(self.config.fingerprint_dir)

    def _require_units(self, names: Optional[Sequence[str]] = None) -> List[str]:
        registry = self.configure()
        if not len(registry):
            raise ConfigurationError(
                "no generation units configured; add a [units.<name>] table to the config file"
            )
        targets: List[str] = []
        for name in names or []:
            registry.get(name)
            targets.append(generate_step_name(name))
        return targets

    def _run_compile(self, source_set: str, roots: List[Path], ctx: StepContext) -> Any:
        if self.compile_action is not None:
            return self.compile_action(source_set, roots, ctx)
        joined = os.pathsep.join(str(root) for root in roots)
        if not self.config.compile_command:
            log(f"{source_set}: {len(roots)} generated source root(s) ready")
            return roots
        argv = _expand_placeholders(
            self.config.compile_command, {"source_roots": joined, "source_set": source_set}
        )
        env = os.environ.copy()
        env[SOURCE_ROOTS_ENV_VAR] = joined
        log(f"{source_set}: exec {redact(format_cli_command(argv))}")
        rc, output = run_process(
            argv,
            cwd=self.project_dir,
            env=env,
            label=f"compile-{source_set}",
            cancel_event=ctx.cancel_event,
        )
        if rc != 0:
            emit_block(output)
            raise CLIError(f"compile command for source set {source_set!r} failed (exit code {rc})")
        return roots

    def _builder(self) -> TaskGraphBuilder:
        return TaskGraphBuilder(
            self.tracker(),
            GeneratorInvoker(self.project_dir, runner=self.runner),
            OutputArtifactManager(self.registry),
            compile_action=self._run_compile,
        )

    def wire(self, tools: ToolArtifactSet) -> Tuple[TaskGraphBuilder, BuildGraph]:
        builder = self._builder()
        return builder, builder.wire(self.registry, tools)

    def evaluate(
        self,
        units: Optional[Sequence[str]] = None,
        *,
        parallel: Optional[int] = None,
        force: bool = False,
    ) -> BuildReport:
        targets = self._require_units(units)
        tools = self.resolver.resolve()
        if force:
            self.forget(units)
        builder, graph = self.wire(tools)
        executor = GraphExecutor(
            graph,
            parallel=parallel or self.config.parallel,
            step_timeout=self.config.step_timeout,
            state_dir=self.config.host_cache_dir if self.config.host_cache else None,
        )
        outcomes = executor.execute(targets or None)
        report = BuildReport(outcomes=outcomes, outputs=builder.outputs, tool_version=tools.version)
        for unit in self.registry.all():
            outcome = outcomes.get(generate_step_name(unit.name))
            if outcome is None:
                continue
            if isinstance(outcome.result, GenerationResult):
                report.results.append(outcome.result)
            elif outcome.status == UP_TO_DATE:
                report.results.append(GenerationResult(unit=unit.name, success=True, skipped=True))
            elif outcome.status == FAILED and isinstance(outcome.error, GenerationFailed):
                emit_block(redact(outcome.error.diagnostics))
        log(report.summary())
        return report

    def forget(self, units: Optional[Sequence[str]] = None) -> List[str]:
        """Drop fingerprint and host-cache records so the next build regenerates."""
        tracker = self.tracker()
        if units:
            removed = [name for name in units if tracker.forget(name)]
            for name in units:
                (self.config.host_cache_dir / f"{generate_step_name(name)}.json").unlink(missing_ok=True)
            return removed
        removed = tracker.forget_all()
        if self.config.host_cache_dir.is_dir():
            shutil.rmtree(self.config.host_cache_dir)
        return removed

    def plan(self) -> Dict[str, Any]:
        self._require_units()
        tools = self.resolver.resolve()
        builder, graph = self.wire(tools)
        tracker = builder.tracker
        steps: List[Dict[str, Any]] = []
        for name in graph.topological_order():
            step = graph.step(name)
            entry: Dict[str, Any] = {
                "name": step.name,
                "depends_on": list(step.depends_on),
                "description": step.description,
            }
            steps.append(entry)
        units: List[Dict[str, Any]] = []
        for unit in self.registry.all():
            check = tracker.check(unit, tools.version)
            units.append(
                {
                    "name": unit.name,
                    "step": generate_step_name(unit.name),
                    "source_set": unit.source_set,
                    "output_dir": str(unit.output_path()),
                    "dirty": check.dirty,
                    "reason": check.reason,
                    "command": redact(format_cli_command(builder.invoker.command_for(unit, tools))),
                }
            )
        return {
            "tool_version": tools.version,
            "steps": steps,
            "edges": [list(edge) for edge in graph.edges()],
            "units": units,
        }

    def status(self) -> List[Dict[str, Any]]:
        self._require_units()
        tools = self.resolver.resolve()
        tracker = self.tracker()
        rows: List[Dict[str, Any]] = []
        for unit in self.registry.all():
            check = tracker.check(unit, tools.version)
            rows.append({"name": unit.name, "dirty": check.dirty, "reason": check.reason})
        return rows

    def outputs(self) -> OutputArtifactManager:
        """Output roots of units whose generated files are present."""
        self.configure()
        manager = OutputArtifactManager(self.registry)
        tracker = self.tracker()
        for unit in self.registry.all():
            if tracker.load_record(unit.name) is not None and unit.output_path().is_dir():
                manager.publish(unit)
        return manager

    def clean_targets(self, *, outputs: bool) -> List[Path]:
        self.configure()
        targets: List[Path] = []
        if self.config.state_path.exists():
            targets.append(self.config.state_path)
        if outputs:
            targets.extend(
                unit.output_path() for unit in self.registry.all() if unit.output_path().exists()
            )
        return targets

    def clean(self, *, outputs: bool) -> List[Path]:
        removed: List[Path] = []
        for target in self.clean_targets(outputs=outputs):
            try:
                shutil.rmtree(target)
            except OSError as exc:
                raise CLIError(f"failed to delete {target}: {exc}") from exc
            removed.append(target)
        return removed

