#!/usr/bin/env python3
"""jaxbgen CLI entry point."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Sequence

import typer

from .args import BuildArgs
from .config import ProjectConfig, effective_config, load_project_config, resolve_config_path, write_default_config
from .console import configure_console, log, log_error, suppress_logs
from .constants import EXIT_CODE_INTERRUPT, EXIT_CODE_SUBPROCESS, EXIT_CODE_USAGE, PACKAGE_NAME
from .errors import CLIError
from .project import Project
from .tooling import handle_tool_clean, handle_tool_paths, handle_tool_resolve, handle_tool_status
from .version import cli_version

app = typer.Typer(help="Incremental JAXB/XJC source generation for JVM builds")
tool_app = typer.Typer(help="Schema compiler resolution and cache")
config_app = typer.Typer(help="Project configuration helpers")
app.add_typer(tool_app, name="tool")
app.add_typer(config_app, name="config")


@dataclass
class CLIContext:
    project_dir: Path
    config: Optional[str] = None


def _load_config(ctx_obj: CLIContext) -> ProjectConfig:
    return load_project_config(ctx_obj.project_dir, ctx_obj.config)


def _render_plan_text(plan: Dict[str, Any]) -> str:
    lines: List[str] = [f"{PACKAGE_NAME} build plan"]
    lines.append(f"- tool: {plan.get('tool_version')}")
    lines.append("- steps:")
    for step in plan.get("steps") or []:
        deps = ", ".join(step.get("depends_on") or []) or "-"
        lines.append(f"  - {step.get('name')} (after: {deps})")
    lines.append("- units:")
    for unit in plan.get("units") or []:
        state = "dirty" if unit.get("dirty") else "clean"
        lines.append(f"  - {unit.get('name')}: {state} ({unit.get('reason')})")
        lines.append(f"    output: {unit.get('output_dir')}")
        lines.append(f"    command: {unit.get('command')}")
    return "\n".join(lines) + "\n"


def handle_build(args: BuildArgs) -> int:
    project = Project(args.config)
    if args.dry_run:
        print(_render_plan_text(project.plan()), end="")
        return 0
    try:
        report = project.evaluate(args.units or None, parallel=args.parallel, force=args.force)
    except KeyboardInterrupt:
        log_error("build interrupted")
        return EXIT_CODE_INTERRUPT
    if not report.ok:
        failed = ", ".join(outcome.name for outcome in report.failed)
        log_error(f"build failed: {failed}")
        return EXIT_CODE_SUBPROCESS
    return 0


def handle_plan(args: SimpleNamespace) -> int:
    if args.json:
        with suppress_logs():
            plan = Project(args.config).plan()
        print(json.dumps(plan, indent=2, sort_keys=True))
    else:
        print(_render_plan_text(Project(args.config).plan()), end="")
    return 0


def handle_status(args: SimpleNamespace) -> int:
    if args.json:
        with suppress_logs():
            rows = Project(args.config).status()
        print(json.dumps(rows, indent=2, sort_keys=True))
        return 0
    for row in Project(args.config).status():
        state = "dirty" if row["dirty"] else "clean"
        print(f"{row['name']}: {state} ({row['reason']})")
    return 0


def handle_outputs(args: SimpleNamespace) -> int:
    manifest = Project(args.config).outputs().manifest()
    if args.json:
        print(json.dumps(manifest, indent=2, sort_keys=True))
        return 0
    for source_set, roots in manifest["source_roots"].items():
        print(f"{source_set}:")
        for root in roots:
            print(f"  {root}")
    if manifest["lint_excluded"]:
        print("lint excluded:")
        for root in manifest["lint_excluded"]:
            print(f"  {root}")
    return 0


def handle_clean(args: SimpleNamespace) -> int:
    project = Project(args.config)
    if not args.force:
        targets = project.clean_targets(outputs=args.outputs)
        print("clean (dry-run):")
        if not targets:
            print("- nothing to delete")
        for target in targets:
            print(f"- would delete: {target}")
        print("re-run with --force to apply")
        return 0
    removed = project.clean(outputs=args.outputs)
    if not removed:
        print("nothing to delete")
    for target in removed:
        print(f"deleted: {target}")
    return 0


def handle_config_init(args: SimpleNamespace) -> int:
    path = write_default_config(args.path, force=args.force)
    log(f"wrote config template: {path}")
    return 0


def handle_config_show(args: SimpleNamespace) -> int:
    values, sources = effective_config(args.config)
    if args.json:
        print(json.dumps({"values": values, "sources": sources}, indent=2, sort_keys=True))
        return 0
    for key, value in values.items():
        print(f"{key} = {json.dumps(value)}  # {sources.get(key, 'default')}")
    return 0


def _run(handler: Any, args: Any) -> None:
    try:
        rc = handler(args)
    except CLIError as exc:
        log_error(f"error: {exc}")
        raise typer.Exit(code=EXIT_CODE_USAGE) from exc
    raise typer.Exit(code=rc)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"{PACKAGE_NAME} {cli_version()}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def cli_callback(
    ctx: typer.Context,
    project_dir: Path = typer.Option(
        Path("."), "--project-dir", "-C", help="project directory (default: current directory)"
    ),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="config file (default: <project-dir>/jaxbgen.toml)"
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="only print errors"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="show the version and exit",
    ),
) -> None:
    configure_console(quiet=quiet)
    ctx.obj = CLIContext(project_dir=project_dir, config=config)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=EXIT_CODE_USAGE)


def _config_or_exit(ctx: typer.Context) -> ProjectConfig:
    try:
        return _load_config(ctx.obj)
    except CLIError as exc:
        log_error(f"error: {exc}")
        raise typer.Exit(code=EXIT_CODE_USAGE) from exc


@app.command()
def build(
    ctx: typer.Context,
    units: List[str] = typer.Argument(None, help="units to generate (default: whole build)"),
    parallel: Optional[int] = typer.Option(
        None, "--parallel", "-j", min=1, help="maximum number of steps running at once"
    ),
    force: bool = typer.Option(False, "--force", help="forget fingerprints and regenerate"),
    dry_run: bool = typer.Option(False, "--dry-run", help="print the plan without running it"),
) -> None:
    """Generate sources for dirty units and run the compile step."""
    args = BuildArgs(
        config=_config_or_exit(ctx),
        units=list(units or []),
        parallel=parallel,
        force=force,
        dry_run=dry_run,
    )
    _run(handle_build, args)


@app.command()
def plan(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="print the plan as JSON"),
) -> None:
    """Show build steps, edges, commands and dirty state."""
    _run(handle_plan, SimpleNamespace(config=_config_or_exit(ctx), json=json_output))


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="print status as JSON"),
) -> None:
    """Show whether each unit would be regenerated, and why."""
    _run(handle_status, SimpleNamespace(config=_config_or_exit(ctx), json=json_output))


@app.command()
def outputs(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="print the manifest as JSON"),
) -> None:
    """List generated source roots and lint exclusions."""
    _run(handle_outputs, SimpleNamespace(config=_config_or_exit(ctx), json=json_output))


@app.command()
def clean(
    ctx: typer.Context,
    outputs_too: bool = typer.Option(False, "--outputs", help="also delete generated output directories"),
    force: bool = typer.Option(False, "--force", help="actually delete (default is a dry run)"),
) -> None:
    """Delete fingerprint records (and optionally generated outputs)."""
    _run(handle_clean, SimpleNamespace(config=_config_or_exit(ctx), outputs=outputs_too, force=force))


@tool_app.command("status")
def tool_status(ctx: typer.Context) -> None:
    _run(handle_tool_status, SimpleNamespace(tool=_config_or_exit(ctx).tool))


@tool_app.command("resolve")
def tool_resolve(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="print the artifact set as JSON"),
) -> None:
    """Download (if needed) and print the schema compiler classpath."""
    _run(handle_tool_resolve, SimpleNamespace(tool=_config_or_exit(ctx).tool, json=json_output))


@tool_app.command("paths")
def tool_paths(
    json_output: bool = typer.Option(False, "--json", help="print paths as JSON"),
) -> None:
    _run(handle_tool_paths, SimpleNamespace(json=json_output))


@tool_app.command("clean")
def tool_clean(
    force: bool = typer.Option(False, "--force", help="actually delete cached artifacts"),
) -> None:
    _run(handle_tool_clean, SimpleNamespace(force=force))


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="overwrite an existing config file"),
) -> None:
    """Write a commented config template."""
    path, _explicit = resolve_config_path(ctx.obj.project_dir, ctx.obj.config)
    _run(handle_config_init, SimpleNamespace(path=path, force=force))


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="print as JSON"),
) -> None:
    """Print the effective configuration and where each value came from."""
    _run(handle_config_show, SimpleNamespace(config=_config_or_exit(ctx), json=json_output))


def main(argv: Optional[Sequence[str]] = None) -> int:
    command = typer.main.get_command(app)
    try:
        rc = command.main(
            args=list(argv) if argv is not None else None,
            prog_name=PACKAGE_NAME,
            standalone_mode=False,
        )
    except SystemExit as exc:
        return int(exc.code or 0)
    except (KeyboardInterrupt, typer.Abort):
        log_error("interrupted")
        return EXIT_CODE_INTERRUPT
    except typer.Exit as exc:
        return int(exc.exit_code or 0)
    except CLIError as exc:
        log_error(f"error: {exc}")
        return EXIT_CODE_USAGE
    return rc if isinstance(rc, int) else 0


if __name__ == "__main__":
    sys.exit(main())
