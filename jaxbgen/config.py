"""Project configuration file (``jaxbgen.toml``) support."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .constants import (
    CONFIG_ENV_VAR,
    CONFIG_FILENAME,
    DEFAULT_ENGINE,
    DEFAULT_JAVA_OPTS,
    DEFAULT_OUTPUT_ROOT,
    DEFAULT_RUNTIME_COORDINATES,
    DEFAULT_SOURCE_SET,
    DEFAULT_STATE_DIR,
    DEFAULT_TOOL_VERSION,
    ENGINE_ENV_VAR,
    ENGINES,
    JAVA_OPTS_ENV_VAR,
    MAVEN_CENTRAL,
    TOOL_VERSION_ENV_VAR,
)
from .errors import CLIError, ConfigurationError, InvalidUnitError
from .options import CompilerOptions
from .tooling import ToolConfig
from .units import GenerationUnit
from .utils import parse_duration_seconds, safe_int, safe_str

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover (py<311)
    import tomli as tomllib

_UNIT_KEYS = {
    "schemas",
    "bindings",
    "output_dir",
    "package",
    "generated",
    "source_set",
    "options",
}


@dataclass
class ProjectConfig:
    project_dir: Path
    path: Optional[Path] = None
    tool: ToolConfig = field(default_factory=ToolConfig)
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    parallel: int = 1
    step_timeout: Optional[float] = None
    host_cache: bool = True
    compile_command: List[str] = field(default_factory=list)
    units: List[GenerationUnit] = field(default_factory=list)
    sources: Dict[str, str] = field(default_factory=dict)

    @property
    def state_path(self) -> Path:
        path = self.state_dir.expanduser()
        return path if path.is_absolute() else self.project_dir / path

    @property
    def fingerprint_dir(self) -> Path:
        return self.state_path / "fingerprints"

    @property
    def host_cache_dir(self) -> Path:
        return self.state_path / "steps"


def resolve_config_path(project_dir: Path, explicit: Optional[str] = None) -> Tuple[Path, bool]:
    """Return the config path and whether it was requested explicitly."""
    if explicit:
        return Path(explicit).expanduser(), True
    env_value = (os.environ.get(CONFIG_ENV_VAR) or "").strip()
    if env_value:
        return Path(env_value).expanduser(), True
    return project_dir / CONFIG_FILENAME, False


def _safe_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    return None


def _safe_str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    result: List[str] = []
    for item in value:
        s = safe_str(item)
        if s:
            result.append(s)
    return result


def _safe_command(value: Any) -> List[str]:
    if isinstance(value, str):
        try:
            return shlex.split(value, posix=(os.name != "nt"))
        except ValueError as exc:
            raise ConfigurationError(f"invalid command {value!r}: {exc}") from exc
    return _safe_str_list(value)


def _table(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"config key {key!r} must be a table")
    return value


def load_raw_config(path: Path) -> Dict[str, Any]:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"failed to read config file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"failed to parse config file {path}: {exc}") from exc
    return dict(data)


def _tool_config(table: Dict[str, Any], sources: Dict[str, str]) -> ToolConfig:
    version_env = (os.environ.get(TOOL_VERSION_ENV_VAR) or "").strip()
    version = version_env or safe_str(table.get("version")) or DEFAULT_TOOL_VERSION
    sources["tool.version"] = "env" if version_env else ("config" if table.get("version") else "default")

    engine_env = (os.environ.get(ENGINE_ENV_VAR) or "").strip()
    engine = (engine_env or safe_str(table.get("engine")) or DEFAULT_ENGINE).lower()
    sources["tool.engine"] = "env" if engine_env else ("config" if table.get("engine") else "default")
    if engine not in ENGINES:
        raise ConfigurationError(
            f"unknown engine {engine!r} (expected one of {', '.join(ENGINES)})"
        )

    java_env = (os.environ.get(JAVA_OPTS_ENV_VAR) or "").strip()
    if java_env:
        java_opts = shlex.split(java_env)
        sources["tool.java_opts"] = "env"
    elif "java_opts" in table:
        java_opts = _safe_command(table.get("java_opts"))
        sources["tool.java_opts"] = "config"
    else:
        java_opts = list(DEFAULT_JAVA_OPTS)
        sources["tool.java_opts"] = "default"

    repositories = _safe_str_list(table.get("repositories")) or [MAVEN_CENTRAL]
    sources["tool.repositories"] = "config" if table.get("repositories") else "default"
    if "runtime" in table:
        runtime = _safe_str_list(table.get("runtime"))
        sources["tool.runtime"] = "config"
    else:
        runtime = list(DEFAULT_RUNTIME_COORDINATES)
        sources["tool.runtime"] = "default"
    command = _safe_command(table.get("command")) or ["xjc"]
    sources["tool.command"] = "config" if table.get("command") else "default"

    return ToolConfig(
        version=version,
        engine=engine,
        repositories=tuple(repositories),
        runtime=tuple(runtime),
        command=tuple(command),
        java_home=safe_str(table.get("java_home")),
        java_opts=tuple(java_opts),
        offline=bool(_safe_bool(table.get("offline"))),
    )


def parse_unit(name: str, entry: Any, project_dir: Path) -> GenerationUnit:
    if not isinstance(entry, dict):
        raise InvalidUnitError(f"unit {name!r} must be a table")
    unknown = sorted(set(entry) - _UNIT_KEYS)
    if unknown:
        raise InvalidUnitError(
            f"unit {name!r}: unknown key(s) {', '.join(unknown)}"
            f" (known: {', '.join(sorted(_UNIT_KEYS))})"
        )
    generated = entry.get("generated", True)
    if not isinstance(generated, bool):
        raise InvalidUnitError(f"unit {name!r}: 'generated' must be true or false")
    output_dir = safe_str(entry.get("output_dir")) or f"{DEFAULT_OUTPUT_ROOT}/{name}"
    return GenerationUnit(
        name=name,
        schemas=_safe_str_list(entry.get("schemas")),
        bindings=_safe_str_list(entry.get("bindings")),
        output_dir=Path(output_dir),
        options=CompilerOptions.from_mapping(entry.get("options"), unit=name),
        package_name=safe_str(entry.get("package")),
        generated=generated,
        source_set=safe_str(entry.get("source_set")) or DEFAULT_SOURCE_SET,
        base_dir=project_dir,
    )


def load_project_config(project_dir: Path, path: Optional[str] = None) -> ProjectConfig:
    project_dir = Path(project_dir).resolve()
    config_path, explicit = resolve_config_path(project_dir, path)
    if not config_path.exists():
        if explicit:
            raise ConfigurationError(f"config file not found: {config_path}")
        data: Dict[str, Any] = {}
        config_path_used: Optional[Path] = None
    else:
        data = load_raw_config(config_path)
        config_path_used = config_path

    sources: Dict[str, str] = {}
    tool = _tool_config(_table(data, "tool"), sources)

    build = _table(data, "build")
    state_dir = safe_str(build.get("state_dir")) or DEFAULT_STATE_DIR
    sources["build.state_dir"] = "config" if build.get("state_dir") else "default"
    parallel = safe_int(build.get("parallel"))
    if parallel is not None and parallel < 1:
        raise ConfigurationError("build.parallel must be at least 1")
    sources["build.parallel"] = "config" if parallel is not None else "default"
    step_timeout: Optional[float] = None
    raw_timeout = build.get("step_timeout")
    if raw_timeout is not None:
        try:
            step_timeout = parse_duration_seconds(str(raw_timeout))
        except CLIError as exc:
            raise ConfigurationError(f"build.step_timeout: {exc}") from exc
    sources["build.step_timeout"] = "config" if raw_timeout is not None else "default"
    host_cache = _safe_bool(build.get("host_cache"))
    sources["build.host_cache"] = "config" if host_cache is not None else "default"

    compile_table = _table(data, "compile")
    compile_command = _safe_command(compile_table.get("command"))
    sources["compile.command"] = "config" if compile_command else "default"

    units: List[GenerationUnit] = []
    for name, entry in _table(data, "units").items():
        units.append(parse_unit(str(name), entry, project_dir))

    return ProjectConfig(
        project_dir=project_dir,
        path=config_path_used,
        tool=tool,
        state_dir=Path(state_dir),
        parallel=parallel or 1,
        step_timeout=step_timeout,
        host_cache=True if host_cache is None else host_cache,
        compile_command=compile_command,
        units=units,
        sources=sources,
    )


def config_template() -> str:
    return (
        "# jaxbgen project configuration (TOML)\n"
        "#\n"
        "# Precedence (highest -> lowest):\n"
        "#   CLI flags > environment variables > this file > built-in defaults\n"
        "\n"
        "[tool]\n"
        f"# version = \"{DEFAULT_TOOL_VERSION}\"\n"
        "# engine = \"maven\"  # or \"system\" to run a local xjc command\n"
        f"# repositories = [\"{MAVEN_CENTRAL}\"]\n"
        "# command = [\"xjc\"]  # engine = \"system\" only\n"
        "# java_home = \"/usr/lib/jvm/java-17\"\n"
        "# java_opts = [\"-Xmx1g\"]\n"
        "# offline = false\n"
        "\n"
        "[build]\n"
        f"# state_dir = \"{DEFAULT_STATE_DIR}\"\n"
        "# parallel = 2\n"
        "# step_timeout = \"10m\"\n"
        "# host_cache = true\n"
        "\n"
        "# [compile]\n"
        "# command = \"javac -d build/classes @sources.txt\"\n"
        "# {source_roots} and $JAXBGEN_SOURCE_ROOTS hold the generated source roots\n"
        "\n"
        "# [units.catalog]\n"
        "# schemas = [\"src/main/xsd/catalog.xsd\"]\n"
        "# bindings = [\"src/main/xjb/catalog.xjb\"]\n"
        f"# output_dir = \"{DEFAULT_OUTPUT_ROOT}/catalog\"\n"
        "# package = \"com.example.catalog\"\n"
        "# source_set = \"main\"\n"
        "#\n"
        "# [units.catalog.options]\n"
        "# encoding = \"UTF-8\"\n"
        "# strict = true\n"
        "# extension = false\n"
        "# header = false\n"
        "# args = [\"-Xequals\"]\n"
    )


def write_default_config(path: Path, *, force: bool) -> Path:
    if path.exists() and not force:
        raise CLIError(f"config file already exists: {path} (use --force to overwrite)")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(config_template(), encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"failed to write config file {path}: {exc}") from exc
    return path


def effective_config(config: ProjectConfig) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    Compute the effective config for display (no CLI flags), with sources.

    Returns (values, sources) where sources map key -> one of
    "env", "config", "default".
    """
    tool = config.tool
    values: Dict[str, Any] = {
        "config_file": str(config.path) if config.path else None,
        "tool.version": tool.version,
        "tool.engine": tool.engine,
        "tool.repositories": list(tool.repositories),
        "tool.runtime": list(tool.runtime),
        "tool.command": list(tool.command),
        "tool.java_opts": list(tool.java_opts),
        "build.state_dir": str(config.state_path),
        "build.parallel": config.parallel,
        "build.step_timeout": config.step_timeout,
        "build.host_cache": config.host_cache,
        "compile.command": list(config.compile_command),
        "units": [unit.name for unit in config.units],
    }
    sources = dict(config.sources)
    sources["config_file"] = "config" if config.path else "default"
    sources["units"] = "config" if config.units else "default"
    return values, sources
