"""Schema-compiler resolution (XJC jars from Maven repositories, or a local command)."""

from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import httpx
import pooch
from platformdirs import PlatformDirs

from .console import log, log_error, suppress_logs
from .constants import (
    CACHE_ENV_VAR,
    CHECKSUM_ALGORITHMS,
    DEFAULT_CACHE_DIR_NAME,
    DEFAULT_ENGINE,
    DEFAULT_JAVA_OPTS,
    DEFAULT_RUNTIME_COORDINATES,
    DEFAULT_TOOL_VERSION,
    ENGINES,
    HTTP_TIMEOUT_SECONDS,
    MAVEN_CENTRAL,
    TOOL_GROUP,
    TOOL_MODULES,
    XJC_MAIN_CLASS,
)
from .errors import CLIError, ToolResolutionError
from .http import describe_http_error, http_timeout, request_headers
from .utils import file_digest, format_cli_command, redact


class HTTPXDownloader:
    """Pooch downloader that uses httpx for transfers."""

    def __init__(
        self,
        timeout: float,
        *,
        max_attempts: int = 4,
        backoff_initial: float = 0.5,
        backoff_max: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
        client_factory: Optional[Callable[[httpx.Timeout], httpx.Client]] = None,
    ) -> None:
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_initial = max(0.0, float(backoff_initial))
        self.backoff_max = max(self.backoff_initial, float(backoff_max))
        self.sleep = sleep
        self.client_factory = client_factory or self._default_client_factory

    def _default_client_factory(self, timeout: httpx.Timeout) -> httpx.Client:
        return httpx.Client(timeout=timeout, follow_redirects=True, headers=request_headers())

    def _retry_delay(self, attempt: int, exc: httpx.HTTPError) -> float:
        if isinstance(exc, httpx.HTTPStatusError):
            retry_after = exc.response.headers.get("Retry-After")
            if retry_after:
                try:
                    parsed = float(retry_after)
                except ValueError:
                    parsed = 0.0
                if parsed > 0:
                    return min(parsed, self.backoff_max)
        if attempt <= 0:
            return 0.0
        delay = self.backoff_initial * (2 ** (attempt - 1))
        return min(delay, self.backoff_max)

    def _should_retry(self, exc: httpx.HTTPError) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in {408, 429, 500, 502, 503, 504}
        return isinstance(exc, httpx.RequestError)

    def __call__(
        self,
        url: str,
        output_file: str,
        pooch_obj: Any,
        check_only: bool = False,
        **_: Any,
    ) -> None:
        _ = pooch_obj
        output_path = Path(output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = Path(f"{output_file}.part")

        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            try:
                with self.client_factory(http_timeout(self.timeout)) as client:
                    if check_only:
                        client.head(url).raise_for_status()
                        return
                    tmp_path.unlink(missing_ok=True)
                    with client.stream("GET", url) as response:
                        response.raise_for_status()
                        with tmp_path.open("wb") as fh:
                            for chunk in response.iter_bytes(chunk_size=1024 * 64):
                                fh.write(chunk)
                    os.replace(tmp_path, output_file)
                    return
            except httpx.HTTPError as exc:
                tmp_path.unlink(missing_ok=True)
                if attempt >= self.max_attempts or not self._should_retry(exc):
                    raise ToolResolutionError(
                        f"download failed for {url} after {attempt} attempt(s):"
                        f" {describe_http_error(exc)}"
                    ) from exc
                delay = self._retry_delay(attempt, exc)
                log_error(
                    f"download error for {url}: {describe_http_error(exc)};"
                    f" retrying in {delay:.1f}s ({attempt + 1}/{self.max_attempts})"
                )
                if delay > 0:
                    self.sleep(delay)
            except OSError as exc:
                raise ToolResolutionError(
                    f"failed to write download file {output_path}: {exc}"
                ) from exc


HTTPX_DOWNLOADER = HTTPXDownloader(timeout=HTTP_TIMEOUT_SECONDS)


def cache_root(*, create: bool = True) -> Path:
    explicit = os.environ.get(CACHE_ENV_VAR)
    if explicit:
        root = Path(explicit).expanduser()
    else:
        dirs = PlatformDirs(appname=DEFAULT_CACHE_DIR_NAME, appauthor=False)
        root = Path(dirs.user_cache_path)
    if create:
        root.mkdir(parents=True, exist_ok=True)
    return root


def artifact_cache_dir(*, create: bool = True) -> Path:
    path = cache_root(create=create) / "artifacts"
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


_CACHE_LOCK_FILENAME = ".jaxbgen_cache.lock"


def cache_lock_path() -> Path:
    return cache_root(create=True) / _CACHE_LOCK_FILENAME


@contextmanager
def cache_lock(*, timeout_seconds: float = 120.0, stale_after_seconds: float = 60.0 * 60.0) -> Iterator[None]:
    """
    Coarse inter-process lock for artifact downloads.

    Uses an atomic create (O_EXCL); a lock older than stale_after_seconds is
    considered abandoned and removed.
    """
    lock_path = cache_lock_path()
    started = time.monotonic()
    while True:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            break
        except FileExistsError:
            try:
                age = time.time() - lock_path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age >= stale_after_seconds:
                lock_path.unlink(missing_ok=True)
                continue
            if (time.monotonic() - started) >= timeout_seconds:
                raise ToolResolutionError(
                    f"timed out waiting for cache lock: {lock_path} (waited {timeout_seconds:.1f}s)"
                ) from None
            time.sleep(0.2)

    try:
        os.write(fd, f"pid={os.getpid()} started={time.time():.0f}\n".encode("utf-8"))
        yield
    finally:
        os.close(fd)
        lock_path.unlink(missing_ok=True)


@dataclass(frozen=True)
class MavenCoordinate:
    group: str
    artifact: str
    version: str
    classifier: Optional[str] = None
    extension: str = "jar"

    @classmethod
    def parse(cls, text: str) -> "MavenCoordinate":
        value = (text or "").strip()
        extension = "jar"
        if "@" in value:
            value, _, extension = value.partition("@")
        parts = value.split(":")
        if len(parts) not in (3, 4) or not all(part.strip() for part in parts):
            raise ToolResolutionError(
                f"invalid artifact coordinate {text!r}; expected group:artifact:version[:classifier][@ext]"
            )
        classifier = parts[3].strip() if len(parts) == 4 else None
        return cls(parts[0].strip(), parts[1].strip(), parts[2].strip(), classifier, extension.strip() or "jar")

    @property
    def filename(self) -> str:
        suffix = f"-{self.classifier}" if self.classifier else ""
        return f"{self.artifact}-{self.version}{suffix}.{self.extension}"

    @property
    def relative_path(self) -> str:
        return "/".join([*self.group.split("."), self.artifact, self.version, self.filename])

    def __str__(self) -> str:
        text = f"{self.group}:{self.artifact}:{self.version}"
        if self.classifier:
            text = f"{text}:{self.classifier}"
        if self.extension != "jar":
            text = f"{text}@{self.extension}"
        return text


@dataclass(frozen=True)
class ToolConfig:
    """Everything needed to locate the schema compiler."""

    version: str = DEFAULT_TOOL_VERSION
    engine: str = DEFAULT_ENGINE
    repositories: Tuple[str, ...] = (MAVEN_CENTRAL,)
    runtime: Tuple[str, ...] = DEFAULT_RUNTIME_COORDINATES
    command: Tuple[str, ...] = ("xjc",)
    java_home: Optional[str] = None
    java_opts: Tuple[str, ...] = tuple(DEFAULT_JAVA_OPTS)
    offline: bool = False

    def coordinates(self) -> List[MavenCoordinate]:
        coords = [MavenCoordinate(TOOL_GROUP, module, self.version) for module in TOOL_MODULES]
        coords.extend(MavenCoordinate.parse(item) for item in self.runtime)
        return coords


@dataclass(frozen=True)
class ResolvedArtifact:
    coordinate: str
    path: Path


@dataclass(frozen=True)
class ToolArtifactSet:
    """Resolved, read-only launch information for the schema compiler."""

    version: str
    engine: str
    launcher: Tuple[str, ...]
    artifacts: Tuple[ResolvedArtifact, ...] = ()
    java_home: Optional[Path] = None

    @property
    def classpath(self) -> str:
        return os.pathsep.join(str(item.path) for item in self.artifacts)

    def command_prefix(self) -> List[str]:
        if self.engine == "maven":
            return [*self.launcher, "-cp", self.classpath, XJC_MAIN_CLASS]
        return list(self.launcher)

    def environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.java_home is not None:
            env["JAVA_HOME"] = str(self.java_home)
        return env


def _parse_checksum_text(text: str, algorithm: str) -> str:
    lengths = {"sha1": 40, "sha256": 64, "sha512": 128}
    length = lengths.get((algorithm or "").lower().strip())
    if length is None:
        raise ToolResolutionError(f"unsupported checksum algorithm: {algorithm}")
    pattern = re.compile(rf"\b([A-Fa-f0-9]{{{length}}})\b")
    for raw in (text or "").splitlines():
        match = pattern.search(raw.strip())
        if match:
            return match.group(1).lower()
    raise ToolResolutionError(f"checksum text did not contain a valid {algorithm} digest")


def find_java(java_home: Optional[str]) -> Tuple[str, Optional[Path]]:
    binary = "java.exe" if os.name == "nt" else "java"
    for candidate_home in (java_home, os.environ.get("JAVA_HOME")):
        if not candidate_home:
            continue
        home = Path(candidate_home).expanduser()
        candidate = home / "bin" / binary
        if candidate.is_file():
            return str(candidate), home
        if candidate_home == java_home:
            raise ToolResolutionError(f"no java executable found under java_home {home}")
    found = shutil.which("java")
    if not found:
        raise ToolResolutionError(
            "java executable not found; set tool.java_home, JAVA_HOME or add java to PATH"
        )
    return found, None


class ToolClasspathResolver:
    """Resolves a ``ToolConfig`` once and hands out the same artifact set."""

    def __init__(
        self,
        config: ToolConfig,
        *,
        downloader: Callable[..., None] = HTTPX_DOWNLOADER,
        cache_dir: Optional[Path] = None,
    ) -> None:
        if config.engine not in ENGINES:
            raise ToolResolutionError(
                f"unknown engine {config.engine!r} (expected one of {', '.join(ENGINES)})"
            )
        self.config = config
        self.downloader = downloader
        self._cache_dir = cache_dir
        self._lock = threading.Lock()
        self._resolved: Optional[ToolArtifactSet] = None

    @property
    def cache_dir(self) -> Path:
        if self._cache_dir is None:
            self._cache_dir = artifact_cache_dir()
        return self._cache_dir

    def resolve(self) -> ToolArtifactSet:
        with self._lock:
            if self._resolved is None:
                if self.config.engine == "maven":
                    self._resolved = self._resolve_maven()
                else:
                    self._resolved = self._resolve_system()
            return self._resolved

    def _resolve_system(self) -> ToolArtifactSet:
        command = list(self.config.command)
        if not command:
            raise ToolResolutionError("tool.command is empty; configure the schema compiler command")
        executable = command[0]
        if not Path(executable).is_file():
            found = shutil.which(executable)
            if not found:
                raise ToolResolutionError(f"schema compiler command not found: {executable}")
            command[0] = found
        version = self._probe_version(command)
        log(f"using schema compiler {redact(format_cli_command(command))} ({version})")
        return ToolArtifactSet(version=version, engine="system", launcher=tuple(command))

    def _probe_version(self, command: Sequence[str]) -> str:
        argv = [*command, "-version"]
        try:
            proc = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=120,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ToolResolutionError(f"failed to run {format_cli_command(argv)}: {exc}") from exc
        lines = [line.strip() for line in (proc.stdout or "").splitlines() if line.strip()]
        if proc.returncode != 0 or not lines:
            raise ToolResolutionError(
                f"{format_cli_command(argv)} exited with {proc.returncode}; is it an XJC launcher?"
            )
        return f"system {lines[0]}"

    def _resolve_maven(self) -> ToolArtifactSet:
        java, java_home = find_java(self.config.java_home)
        coordinates = self.config.coordinates()
        artifacts: List[ResolvedArtifact] = []
        with cache_lock():
            for coordinate in coordinates:
                artifacts.append(ResolvedArtifact(str(coordinate), self.ensure_artifact(coordinate)))
        runtime = ",".join(sorted(str(item) for item in coordinates[len(TOOL_MODULES):]))
        version = f"{TOOL_GROUP} {self.config.version} [{runtime}]"
        log(f"resolved schema compiler {self.config.version} ({len(artifacts)} artifacts)")
        return ToolArtifactSet(
            version=version,
            engine="maven",
            launcher=(java, *self.config.java_opts),
            artifacts=tuple(artifacts),
            java_home=java_home,
        )

    def artifact_path(self, coordinate: MavenCoordinate) -> Path:
        return self.cache_dir / coordinate.relative_path

    def _fetch_checksum(self, url: str, target_dir: Path, filename: str) -> Tuple[str, str]:
        errors: List[str] = []
        for algorithm in CHECKSUM_ALGORITHMS:
            checksum_name = f"{filename}.{algorithm}"
            checksum_path = target_dir / checksum_name
            if self.config.offline and not checksum_path.exists():
                continue
            try:
                retrieved = Path(
                    pooch.retrieve(
                        url=f"{url}.{algorithm}",
                        path=target_dir,
                        fname=checksum_name,
                        known_hash=None,
                        downloader=self.downloader,
                    )
                )
                return algorithm, _parse_checksum_text(
                    retrieved.read_text(encoding="utf-8"), algorithm
                )
            except (CLIError, OSError, ValueError) as exc:
                errors.append(f"{algorithm}: {exc}")
        detail = "; ".join(errors) or "offline and no cached checksum"
        raise ToolResolutionError(f"no usable checksum for {url} ({detail})")

    def ensure_artifact(self, coordinate: MavenCoordinate) -> Path:
        target = self.artifact_path(coordinate)
        failures: List[str] = []
        for repository in self.config.repositories:
            url = f"{repository.rstrip('/')}/{coordinate.relative_path}"
            try:
                algorithm, digest = self._fetch_checksum(url, target.parent, target.name)
            except ToolResolutionError as exc:
                failures.append(f"{redact(repository)}: {exc}")
                continue
            if target.exists():
                if file_digest(target, algorithm) == digest:
                    return target
                log_error(f"cached {target.name} failed {algorithm} verification; downloading again")
                target.unlink()
            if self.config.offline:
                failures.append(f"{redact(repository)}: offline and {target.name} is not cached")
                continue
            try:
                return Path(
                    pooch.retrieve(
                        url=url,
                        path=target.parent,
                        fname=target.name,
                        known_hash=f"{algorithm}:{digest}",
                        downloader=self.downloader,
                    )
                )
            except (CLIError, OSError, ValueError) as exc:
                failures.append(f"{redact(repository)}: {exc}")
        raise ToolResolutionError(
            f"unable to resolve {coordinate}: " + (" | ".join(failures) or "no repositories configured")
        )


def list_cached_artifacts() -> List[str]:
    base = artifact_cache_dir(create=False)
    if not base.exists():
        return []
    return sorted(
        path.relative_to(base).as_posix() for path in base.rglob("*.jar") if path.is_file()
    )


def handle_tool_status(args: SimpleNamespace) -> int:
    config: ToolConfig = args.tool
    log("tool status")
    log(f"engine: {config.engine}")
    if config.engine == "system":
        log(f"command: {redact(format_cli_command(config.command))}")
    else:
        log(f"version: {config.version}")
        resolver = ToolClasspathResolver(config)
        for coordinate in config.coordinates():
            path = resolver.artifact_path(coordinate)
            state = "cached" if path.exists() else "missing"
            log(f"  - {coordinate}: {state}")
    log(f"artifact cache: {artifact_cache_dir(create=False)} ({len(list_cached_artifacts())} jar(s))")
    java = shutil.which("java")
    log(f"system java: {java if java else 'not found'}")
    return 0


def handle_tool_resolve(args: SimpleNamespace) -> int:
    if getattr(args, "json", False):
        with suppress_logs():
            tools = ToolClasspathResolver(args.tool).resolve()
        payload = {
            "version": tools.version,
            "engine": tools.engine,
            "command": tools.command_prefix(),
            "artifacts": [
                {"coordinate": item.coordinate, "path": str(item.path)} for item in tools.artifacts
            ],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    tools = ToolClasspathResolver(args.tool).resolve()
    for item in tools.artifacts:
        print(f"{item.coordinate} -> {item.path}")
    print(f"command: {redact(format_cli_command(tools.command_prefix()))}")
    return 0


def handle_tool_paths(args: SimpleNamespace) -> int:
    payload = {
        "cache_root": str(cache_root(create=False)),
        "artifact_cache_dir": str(artifact_cache_dir(create=False)),
    }
    if getattr(args, "json", False):
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    for key, value in payload.items():
        print(f"{key}: {value}")
    return 0


def handle_tool_clean(args: SimpleNamespace) -> int:
    target = artifact_cache_dir(create=False)
    if not getattr(args, "force", False):
        print("tool clean (dry-run):")
        print(f"- would delete: {target}")
        print("re-run with --force to apply")
        return 0
    if not target.exists():
        print(f"nothing to delete: {target}")
        return 0
    try:
        shutil.rmtree(target)
    except OSError as exc:
        log_error(f"failed to delete {target}: {exc}")
        return 1
    print(f"deleted: {target}")
    return 0

