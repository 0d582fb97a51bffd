"""Validated schema-compiler options."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidUnitError

LANGUAGES = ("xmlschema", "relaxng", "relaxng-compact", "dtd", "wsdl")

# key -> (flag emitted when the value is true, flag emitted when false)
_SWITCHES: Dict[str, Tuple[Optional[str], Optional[str]]] = {
    "strict": (None, "-nv"),
    "extension": ("-extension", None),
    "header": (None, "-no-header"),
    "read_only": ("-readOnly", None),
    "npa": ("-npa", None),
    "no_imports": ("-noImports", None),
    "mark_generated": ("-mark-generated", None),
    "disable_xml_security": ("-disableXmlSecurity", None),
    "verbose": ("-verbose", None),
    "quiet": ("-quiet", None),
}


@dataclass(frozen=True)
class CompilerOptions:
    """Recognized XJC options for one generation unit.

    Every key has a fixed value type; ``args`` is the only free-form entry and
    is appended verbatim after the recognized flags (XJC plugin switches).
    """

    encoding: str = "UTF-8"
    strict: bool = True
    extension: bool = False
    header: bool = True
    target: Optional[str] = None
    language: str = "xmlschema"
    catalog: Optional[str] = None
    read_only: bool = False
    npa: bool = False
    no_imports: bool = False
    mark_generated: bool = False
    disable_xml_security: bool = False
    verbose: bool = False
    quiet: bool = False
    args: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def keys(cls) -> List[str]:
        return [item.name for item in fields(cls)]

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]], *, unit: str = "") -> "CompilerOptions":
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise InvalidUnitError(f"unit {unit!r}: options must be a table")
        known = set(cls.keys())
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            name = str(key).strip().replace("-", "_")
            if name not in known:
                raise InvalidUnitError(
                    f"unit {unit!r}: unknown compiler option {key!r}"
                    f" (known: {', '.join(sorted(known))})"
                )
            values[name] = _coerce(name, value, unit)
        return cls(**values)

    def catalog_path(self, base: Path) -> Optional[Path]:
        if not self.catalog:
            return None
        path = Path(self.catalog).expanduser()
        return path if path.is_absolute() else base / path

    def to_arguments(self, base: Path) -> List[str]:
        argv: List[str] = [f"-{self.language}"]
        if self.encoding:
            argv.extend(["-encoding", self.encoding])
        if self.target:
            argv.extend(["-target", self.target])
        catalog = self.catalog_path(base)
        if catalog is not None:
            argv.extend(["-catalog", str(catalog)])
        for key, (on_flag, off_flag) in _SWITCHES.items():
            flag = on_flag if getattr(self, key) else off_flag
            if flag:
                argv.append(flag)
        argv.extend(self.args)
        return argv

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["args"] = list(self.args)
        return payload

    def canonical(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, separators=(",", ":"))


def _coerce(name: str, value: Any, unit: str) -> Any:
    if name in _SWITCHES:
        if not isinstance(value, bool):
            raise InvalidUnitError(f"unit {unit!r}: option {name!r} must be true or false")
        return value
    if name == "args":
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            raise InvalidUnitError(f"unit {unit!r}: option 'args' must be a list of strings")
        return tuple(value)
    if name in {"target", "catalog"}:
        if value is None:
            return None
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise InvalidUnitError(f"unit {unit!r}: option {name!r} must be a string")
        text = str(value).strip()
        return text or None
    if name == "language":
        text = str(value).strip().lower() if isinstance(value, str) else ""
        if text not in LANGUAGES:
            raise InvalidUnitError(
                f"unit {unit!r}: unsupported schema language {value!r}"
                f" (expected one of {', '.join(LANGUAGES)})"
            )
        return text
    if not isinstance(value, str) or not value.strip():
        raise InvalidUnitError(f"unit {unit!r}: option {name!r} must be a non-empty string")
    return value.strip()
