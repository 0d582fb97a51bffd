"""Tracks generated output directories and exposes them as source roots."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, List

from .units import GenerationUnit, UnitRegistry


class OutputArtifactManager:
    """Published output roots, always reported in unit declaration order."""

    def __init__(self, registry: UnitRegistry) -> None:
        self.registry = registry
        self._published: Dict[str, Path] = {}
        self._lock = threading.Lock()

    def publish(self, unit: GenerationUnit) -> Path:
        root = unit.output_path()
        with self._lock:
            self._published[unit.name] = root
        return root

    def is_published(self, name: str) -> bool:
        with self._lock:
            return name in self._published

    def _ordered(self, units: List[GenerationUnit]) -> List[Path]:
        with self._lock:
            return [self._published[unit.name] for unit in units if unit.name in self._published]

    def source_roots(self, source_set: str) -> List[Path]:
        return self._ordered(self.registry.by_source_set(source_set))

    def all_outputs(self) -> List[Path]:
        return self._ordered(self.registry.all())

    def lint_excluded(self) -> List[Path]:
        """Output roots that style and lint checks should skip."""
        return self._ordered([unit for unit in self.registry.all() if unit.generated])

    def manifest(self) -> Dict[str, Any]:
        units = []
        for unit in self.registry.all():
            units.append(
                {
                    "name": unit.name,
                    "source_set": unit.source_set,
                    "output_dir": str(unit.output_path()),
                    "generated": unit.generated,
                    "published": self.is_published(unit.name),
                }
            )
        return {
            "units": units,
            "source_roots": {
                source_set: [str(path) for path in self.source_roots(source_set)]
                for source_set in self.registry.source_sets()
            },
            "lint_excluded": [str(path) for path in self.lint_excluded()],
        }
