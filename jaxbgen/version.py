"""Version helpers for jaxbgen."""

from __future__ import annotations

from . import __version__
from .constants import DEFAULT_TOOL_VERSION, PACKAGE_NAME


def cli_version() -> str:
    return __version__


USER_AGENT = f"{PACKAGE_NAME}/{__version__} (jaxb-xjc/{DEFAULT_TOOL_VERSION})"
