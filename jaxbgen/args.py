"""Argument models shared across jaxbgen modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .config import ProjectConfig


@dataclass
class BuildArgs:
    """Arguments for `jaxbgen build`."""

    config: ProjectConfig
    units: List[str] = field(default_factory=list)
    parallel: Optional[int] = None
    force: bool = False
    dry_run: bool = False
