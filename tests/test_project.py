import json
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict

import pytest

from jaxbgen.config import load_project_config
from jaxbgen.constants import AGGREGATE_STEP, COMPILE_STEP, DISCOVER_STEP
from jaxbgen.errors import ConfigurationError, GenerationCancelled
from jaxbgen.graph import BLOCKED, FAILED, SUCCESS
from jaxbgen.project import Project
from jaxbgen.tooling import ToolArtifactSet


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps(value)


def write_project(
    project_dir: Path,
    fake_xjc: Path,
    units: Dict[str, Dict[str, Any]],
    *,
    build: Dict[str, Any] = None,
    compile_command: Any = None,
) -> None:
    lines = [
        "[tool]",
        'engine = "system"',
        f"command = {_toml_value([sys.executable, str(fake_xjc)])}",
        "",
        "[build]",
    ]
    for key, value in (build or {}).items():
        lines.append(f"{key} = {_toml_value(value)}")
    if compile_command is not None:
        lines.extend(["", "[compile]", f"command = {_toml_value(compile_command)}"])
    for name, entry in units.items():
        lines.extend(["", f"[units.{name}]"])
        for key, value in entry.items():
            lines.append(f"{key} = {_toml_value(value)}")
    (project_dir / "jaxbgen.toml").write_text("\n".join(lines) + "\n", encoding="utf-8")


def write_schema(project_dir: Path, name: str, text: str = "<xs:schema/>") -> str:
    path = project_dir / "xsd" / f"{name}.xsd"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return f"xsd/{name}.xsd"


def build(project_dir: Path, **kwargs):
    project = Project(load_project_config(project_dir), **kwargs.pop("project_kwargs", {}))
    return project, project.evaluate(**kwargs)


@pytest.mark.parametrize("host_cache", [True, False])
def test_catalog_is_generated_once_until_its_schema_changes(
    project_dir, fake_xjc, xjc_log, host_cache
):
    schema = write_schema(project_dir, "catalog")
    write_project(
        project_dir,
        fake_xjc,
        {"catalog": {"schemas": [schema], "package": "com.example.catalog"}},
        build={"host_cache": host_cache},
    )

    project, report = build(project_dir)
    assert report.ok
    assert report.invoked == ["catalog"]
    assert len(xjc_log()) == 1
    generated = project_dir.resolve() / "build" / "generated" / "jaxb" / "catalog"
    assert (generated / "com" / "example" / "catalog" / "Catalog.java").is_file()
    first_digest = project.tracker().load_record("catalog").digest

    project, report = build(project_dir)
    assert report.ok
    assert report.invoked == []
    assert report.skipped == ["catalog"]
    assert len(xjc_log()) == 1
    assert report.outputs.source_roots("main") == [generated]

    (project_dir / schema).write_text("<xs:schema><!-- v2 --></xs:schema>", encoding="utf-8")
    project, report = build(project_dir)
    assert report.invoked == ["catalog"]
    assert len(xjc_log()) == 2
    assert project.tracker().load_record("catalog").digest != first_digest


def test_compile_step_sees_every_unit(project_dir, fake_xjc):
    write_project(
        project_dir,
        fake_xjc,
        {
            "a": {"schemas": [write_schema(project_dir, "a")], "package": "com.a"},
            "b": {"schemas": [write_schema(project_dir, "b")], "package": "com.b"},
        },
        build={"parallel": 2},
    )
    seen = {}

    def compile_action(source_set, roots, ctx):
        seen[source_set] = sorted(p.name for root in roots for p in root.rglob("*.java"))
        return roots

    _, report = build(project_dir, project_kwargs={"compile_action": compile_action})
    assert report.ok
    assert sorted(report.invoked) == ["a", "b"]
    assert seen == {"main": ["A.java", "B.java", "ObjectFactory.java", "ObjectFactory.java"]}
    assert report.outcomes[COMPILE_STEP].status == SUCCESS


def test_failed_unit_stays_dirty_and_blocks_compile(project_dir, fake_xjc, xjc_log):
    write_project(
        project_dir,
        fake_xjc,
        {
            "bad": {"schemas": [write_schema(project_dir, "bad", "FAIL")]},
            "good": {"schemas": [write_schema(project_dir, "good")]},
        },
    )
    project, report = build(project_dir)
    assert not report.ok
    assert [outcome.name for outcome in report.failed] == ["generate-bad"]
    assert report.outcomes[COMPILE_STEP].status == BLOCKED
    assert report.outcomes[AGGREGATE_STEP].status == BLOCKED
    assert report.invoked == ["good"]
    assert project.tracker().load_record("bad") is None

    _, report = build(project_dir)
    assert report.outcomes["generate-bad"].status == FAILED
    assert report.skipped == ["good"]
    assert len(xjc_log()) == 3


def test_deleted_output_file_triggers_regeneration(project_dir, fake_xjc, xjc_log):
    write_project(project_dir, fake_xjc, {"catalog": {"schemas": [write_schema(project_dir, "catalog")]}})
    build(project_dir)
    generated = project_dir / "build" / "generated" / "jaxb" / "catalog" / "generated"
    (generated / "ObjectFactory.java").unlink()

    project = Project(load_project_config(project_dir))
    rows = project.status()
    assert rows == [
        {"name": "catalog", "dirty": True, "reason": "generated file missing: generated/ObjectFactory.java"}
    ]
    report = project.evaluate()
    assert report.invoked == ["catalog"]
    assert (generated / "ObjectFactory.java").is_file()
    assert len(xjc_log()) == 2


def test_tool_version_change_regenerates(project_dir, fake_xjc, xjc_log):
    write_project(project_dir, fake_xjc, {"catalog": {"schemas": [write_schema(project_dir, "catalog")]}})
    build(project_dir)

    upgraded = ToolArtifactSet(
        version="system xjc 4.1.0-fake",
        engine="system",
        launcher=(sys.executable, str(fake_xjc)),
    )
    resolver = SimpleNamespace(resolve=lambda: upgraded)
    project = Project(load_project_config(project_dir), resolver=resolver)
    assert project.status()[0]["reason"].startswith("tool version changed")
    report = project.evaluate()
    assert report.invoked == ["catalog"]
    assert report.tool_version == "system xjc 4.1.0-fake"
    assert len(xjc_log()) == 2


def test_force_regenerates_clean_units(project_dir, fake_xjc, xjc_log):
    write_project(project_dir, fake_xjc, {"catalog": {"schemas": [write_schema(project_dir, "catalog")]}})
    build(project_dir)
    _, report = build(project_dir, force=True)
    assert report.invoked == ["catalog"]
    assert len(xjc_log()) == 2


def test_selected_units_only(project_dir, fake_xjc, xjc_log):
    write_project(
        project_dir,
        fake_xjc,
        {
            "a": {"schemas": [write_schema(project_dir, "a")]},
            "b": {"schemas": [write_schema(project_dir, "b")], "output_dir": "gen/b"},
        },
    )
    _, report = build(project_dir, units=["a"])
    assert report.invoked == ["a"]
    assert "generate-b" not in report.outcomes
    assert DISCOVER_STEP in report.outcomes
    assert len(xjc_log()) == 1

    with pytest.raises(ConfigurationError):
        build(project_dir, units=["missing"])


def test_no_units_is_a_configuration_error(project_dir, fake_xjc):
    write_project(project_dir, fake_xjc, {})
    with pytest.raises(ConfigurationError) as excinfo:
        Project(load_project_config(project_dir)).evaluate()
    assert "no generation units" in str(excinfo.value)


def test_compile_command_receives_source_roots(project_dir, fake_xjc):
    script = (
        "import os, sys, pathlib; "
        "pathlib.Path('compile.txt').write_text("
        "os.environ['JAXBGEN_SOURCE_ROOTS'] + '|' + sys.argv[1], encoding='utf-8')"
    )
    write_project(
        project_dir,
        fake_xjc,
        {"catalog": {"schemas": [write_schema(project_dir, "catalog")]}},
        compile_command=[sys.executable, "-c", script, "{source_roots}"],
    )
    _, report = build(project_dir)
    assert report.ok
    env_value, arg_value = (project_dir / "compile.txt").read_text(encoding="utf-8").split("|")
    expected = str(project_dir.resolve() / "build" / "generated" / "jaxb" / "catalog")
    assert env_value == expected
    assert arg_value == expected


def test_failing_compile_command_fails_the_build(project_dir, fake_xjc):
    write_project(
        project_dir,
        fake_xjc,
        {"catalog": {"schemas": [write_schema(project_dir, "catalog")]}},
        compile_command=[sys.executable, "-c", "import sys; sys.exit(4)"],
    )
    _, report = build(project_dir)
    assert not report.ok
    assert report.outcomes[COMPILE_STEP].status == FAILED
    assert "exit code 4" in str(report.outcomes[COMPILE_STEP].error)
    assert report.invoked == ["catalog"]


def test_plan_describes_graph_without_running(project_dir, fake_xjc, xjc_log):
    write_project(
        project_dir,
        fake_xjc,
        {"catalog": {"schemas": [write_schema(project_dir, "catalog")], "package": "com.example"}},
    )
    plan = Project(load_project_config(project_dir)).plan()
    assert plan["tool_version"] == "system xjc 4.0.5-fake"
    assert [step["name"] for step in plan["steps"]] == [
        DISCOVER_STEP,
        "generate-catalog",
        COMPILE_STEP,
        AGGREGATE_STEP,
    ]
    assert [DISCOVER_STEP, "generate-catalog"] in plan["edges"]
    (unit,) = plan["units"]
    assert unit["dirty"] is True
    assert unit["reason"] == "no previous record"
    assert "-p com.example" in unit["command"]
    assert xjc_log() == []


def test_outputs_and_clean(project_dir, fake_xjc):
    write_project(project_dir, fake_xjc, {"catalog": {"schemas": [write_schema(project_dir, "catalog")]}})
    project, _ = build(project_dir)
    output = project_dir.resolve() / "build" / "generated" / "jaxb" / "catalog"

    fresh = Project(load_project_config(project_dir))
    assert fresh.outputs().source_roots("main") == [output]
    assert fresh.clean_targets(outputs=False) == [fresh.config.state_path]

    removed = fresh.clean(outputs=True)
    assert removed == [fresh.config.state_path, output]
    assert not output.exists()
    assert fresh.outputs().all_outputs() == []


def test_deleting_fingerprint_records_forces_regeneration(project_dir, fake_xjc, xjc_log):
    write_project(project_dir, fake_xjc, {"catalog": {"schemas": [write_schema(project_dir, "catalog")]}})
    project, _ = build(project_dir)
    project.tracker().forget_all()

    _, report = build(project_dir)
    assert report.invoked == ["catalog"]
    assert len(xjc_log()) == 2


def test_timed_out_unit_is_not_committed(project_dir, fake_xjc):
    write_project(
        project_dir,
        fake_xjc,
        {"slow": {"schemas": [write_schema(project_dir, "slow", "SLEEP")]}},
        build={"step_timeout": 1},
    )
    project, report = build(project_dir)
    assert not report.ok
    outcome = report.outcomes["generate-slow"]
    assert outcome.status == FAILED
    assert isinstance(outcome.error, GenerationCancelled)
    assert report.outcomes[COMPILE_STEP].status == BLOCKED
    assert report.outcomes[AGGREGATE_STEP].status == BLOCKED
    assert project.tracker().load_record("slow") is None
    assert Project(load_project_config(project_dir)).status() == [
        {"name": "slow", "dirty": True, "reason": "no previous record"}
    ]
