from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Callable, List

import pytest

import jaxbgen.console as console
import jaxbgen.constants as constants
from jaxbgen.options import CompilerOptions
from jaxbgen.tooling import ToolArtifactSet
from jaxbgen.units import GenerationUnit

FAKE_XJC = textwrap.dedent(
    '''
    """Stand-in for the XJC launcher used by the test-suite."""
    import os
    import sys
    import time
    from pathlib import Path

    VALUE_FLAGS = {"-d", "-p", "-b", "-encoding", "-target", "-catalog"}


    def main(argv):
        if argv == ["-version"]:
            print("xjc 4.0.5-fake")
            return 0
        out = None
        package = "generated"
        schemas = []
        index = 0
        while index < len(argv):
            arg = argv[index]
            if arg in VALUE_FLAGS:
                value = argv[index + 1]
                if arg == "-d":
                    out = Path(value)
                elif arg == "-p":
                    package = value
                index += 2
                continue
            if not arg.startswith("-"):
                schemas.append(Path(arg))
            index += 1
        log = os.environ.get("FAKE_XJC_LOG")
        if log:
            with open(log, "a", encoding="utf-8") as handle:
                handle.write(" ".join(argv) + "\\n")
        if out is None or not out.is_dir():
            print("[ERROR] output directory does not exist", file=sys.stderr)
            return 2
        for schema in schemas:
            text = schema.read_text(encoding="utf-8")
            if "FAIL" in text:
                print(f"[ERROR] {schema.name}: cannot compile schema", file=sys.stderr)
                return 1
            if "SLEEP" in text:
                time.sleep(30)
        target = out.joinpath(*package.split("."))
        target.mkdir(parents=True, exist_ok=True)
        for schema in schemas:
            name = schema.stem.capitalize()
            (target / f"{name}.java").write_text(
                f"package {package};\\npublic class {name} {{}}\\n", encoding="utf-8"
            )
        (target / "ObjectFactory.java").write_text(
            f"package {package};\\npublic class ObjectFactory {{}}\\n", encoding="utf-8"
        )
        print(f"parsing {len(schemas)} schema(s)")
        return 0


    sys.exit(main(sys.argv[1:]))
    '''
).lstrip()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch) -> None:
    for name in (
        constants.CONFIG_ENV_VAR,
        constants.ENGINE_ENV_VAR,
        constants.TOOL_VERSION_ENV_VAR,
        constants.JAVA_OPTS_ENV_VAR,
        "FAKE_XJC_LOG",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv(constants.CACHE_ENV_VAR, str(tmp_path / "cache"))
    monkeypatch.setattr(console, "_LOG_SILENCED", False)


@pytest.fixture
def fake_xjc(tmp_path) -> Path:
    script = tmp_path / "fake_xjc.py"
    script.write_text(FAKE_XJC, encoding="utf-8")
    return script


@pytest.fixture
def fake_tools(fake_xjc) -> ToolArtifactSet:
    return ToolArtifactSet(
        version="system xjc 4.0.5-fake",
        engine="system",
        launcher=(sys.executable, str(fake_xjc)),
    )


@pytest.fixture
def xjc_log(tmp_path, monkeypatch) -> Callable[[], List[str]]:
    log_path = tmp_path / "xjc-invocations.log"
    monkeypatch.setenv("FAKE_XJC_LOG", str(log_path))

    def read() -> List[str]:
        if not log_path.exists():
            return []
        return log_path.read_text(encoding="utf-8").splitlines()

    return read


@pytest.fixture
def project_dir(tmp_path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def make_unit(project_dir) -> Callable[..., GenerationUnit]:
    def _make(
        name: str,
        *,
        schema_text: str = "<xs:schema/>",
        output_dir: str = "",
        **kwargs,
    ) -> GenerationUnit:
        schema = project_dir / "schemas" / f"{name}.xsd"
        schema.parent.mkdir(parents=True, exist_ok=True)
        if not schema.exists():
            schema.write_text(schema_text, encoding="utf-8")
        kwargs.setdefault("options", CompilerOptions())
        return GenerationUnit(
            name=name,
            schemas=[f"schemas/{name}.xsd"],
            output_dir=Path(output_dir or f"gen/{name}"),
            base_dir=project_dir,
            **kwargs,
        )

    return _make
