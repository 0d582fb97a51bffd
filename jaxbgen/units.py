"""Generation units and the registry that holds them."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .constants import DEFAULT_SOURCE_SET
from .errors import (
    ConfigurationError,
    DuplicateUnitError,
    FrozenUnitError,
    InvalidUnitError,
    OverlappingOutputsError,
)
from .options import CompilerOptions
from .utils import is_within

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_PACKAGE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


def _as_paths(values: Any) -> Tuple[Path, ...]:
    if values is None:
        return ()
    if isinstance(values, (str, Path)):
        values = [values]
    return tuple(Path(value) for value in values if str(value).strip())


@dataclass(eq=False)
class GenerationUnit:
    """One independently configured schema-to-source generation task.

    Paths may be relative; they are interpreted against ``base_dir``. A unit
    can be edited freely during configuration and becomes read-only once its
    generation step is wired into a build graph.
    """

    name: str
    schemas: Tuple[Path, ...]
    output_dir: Path
    bindings: Tuple[Path, ...] = ()
    options: CompilerOptions = field(default_factory=CompilerOptions)
    package_name: Optional[str] = None
    generated: bool = True
    source_set: str = DEFAULT_SOURCE_SET
    base_dir: Path = field(default_factory=Path.cwd)
    _frozen: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self.schemas = _as_paths(self.schemas)
        self.bindings = _as_paths(self.bindings)
        self.output_dir = Path(self.output_dir) if str(self.output_dir).strip() else Path("")
        self.base_dir = Path(self.base_dir)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise FrozenUnitError(
                f"unit {self.name!r} is wired into the build graph and can no longer be changed"
            )
        if name in {"schemas", "bindings"}:
            value = _as_paths(value)
        object.__setattr__(self, name, value)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        object.__setattr__(self, "_frozen", True)

    def copy(self, **changes: Any) -> "GenerationUnit":
        """Return an unfrozen copy, optionally with some fields replaced."""
        return replace(self, **changes)

    def resolve(self, path: Path) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.base_dir / candidate
        return candidate.resolve()

    def schema_paths(self) -> List[Path]:
        return [self.resolve(path) for path in self.schemas]

    def binding_paths(self) -> List[Path]:
        return [self.resolve(path) for path in self.bindings]

    def catalog_path(self) -> Optional[Path]:
        catalog = self.options.catalog_path(self.base_dir)
        return catalog.resolve() if catalog is not None else None

    def declared_inputs(self) -> List[Path]:
        paths = self.schema_paths() + self.binding_paths()
        catalog = self.catalog_path()
        if catalog is not None:
            paths.append(catalog)
        return paths

    def output_path(self) -> Path:
        return self.resolve(self.output_dir)


def validate_unit(unit: GenerationUnit) -> None:
    name = unit.name if isinstance(unit.name, str) else ""
    if not name.strip():
        raise InvalidUnitError("generation unit name cannot be empty")
    if not _NAME_PATTERN.match(name):
        raise InvalidUnitError(
            f"invalid unit name {name!r}; use letters, digits, '.', '_' or '-'"
        )
    if not unit.schemas:
        raise InvalidUnitError(f"unit {name!r} declares no schema inputs")
    if not str(unit.output_dir).strip() or unit.output_dir == Path(""):
        raise InvalidUnitError(f"unit {name!r} declares no output directory")
    if not _NAME_PATTERN.match(unit.source_set or ""):
        raise InvalidUnitError(f"unit {name!r}: invalid source set {unit.source_set!r}")
    if unit.package_name is not None and not _PACKAGE_PATTERN.match(unit.package_name):
        raise InvalidUnitError(f"unit {name!r}: invalid package name {unit.package_name!r}")
    if not isinstance(unit.options, CompilerOptions):
        raise InvalidUnitError(f"unit {name!r}: options must be CompilerOptions")

    output = unit.output_path()
    base = unit.base_dir.resolve()
    if is_within(base, output):
        raise InvalidUnitError(
            f"unit {name!r}: output directory {output} would contain the project directory"
        )
    for path in unit.declared_inputs():
        if is_within(path, output):
            raise InvalidUnitError(
                f"unit {name!r}: input {path} lies inside its output directory {output}"
            )


def check_output_overlap(first: GenerationUnit, second: GenerationUnit) -> None:
    a = first.output_path()
    b = second.output_path()
    if a == b:
        raise OverlappingOutputsError(
            f"units {first.name!r} and {second.name!r} share the output directory {a}"
        )
    if is_within(a, b) or is_within(b, a):
        outer, inner = (first, second) if is_within(b, a) else (second, first)
        raise OverlappingOutputsError(
            f"output directory of unit {inner.name!r} ({inner.output_path()}) is nested"
            f" inside the output directory of unit {outer.name!r} ({outer.output_path()})"
        )


class UnitRegistry:
    """Declaration-ordered set of generation units."""

    def __init__(self, units: Sequence[GenerationUnit] = ()) -> None:
        self._units: Dict[str, GenerationUnit] = {}
        self._frozen = False
        for unit in units:
            self.register(unit)

    def register(self, unit: GenerationUnit) -> GenerationUnit:
        if self._frozen:
            raise FrozenUnitError(
                f"cannot register unit {unit.name!r}: the build graph is already wired"
            )
        validate_unit(unit)
        if unit.name in self._units:
            raise DuplicateUnitError(f"generation unit {unit.name!r} is already registered")
        for other in self._units.values():
            check_output_overlap(other, unit)
        self._units[unit.name] = unit
        return unit

    def all(self) -> List[GenerationUnit]:
        return list(self._units.values())

    def names(self) -> List[str]:
        return list(self._units)

    def get(self, name: str) -> GenerationUnit:
        try:
            return self._units[name]
        except KeyError:
            raise ConfigurationError(f"unknown generation unit {name!r}") from None

    def source_sets(self) -> List[str]:
        seen: List[str] = []
        for unit in self._units.values():
            if unit.source_set not in seen:
                seen.append(unit.source_set)
        return seen

    def by_source_set(self, source_set: str) -> List[GenerationUnit]:
        return [unit for unit in self._units.values() if unit.source_set == source_set]

    def freeze(self) -> None:
        self._frozen = True
        for unit in self._units.values():
            unit.freeze()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._units)

    def __iter__(self) -> Iterator[GenerationUnit]:
        return iter(self.all())

    def __contains__(self, name: object) -> bool:
        return name in self._units
