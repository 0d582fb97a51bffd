"""Exception types for jaxbgen."""

from __future__ import annotations

from typing import Optional


class CLIError(Exception):
    """Raised for user-facing errors."""


class ConfigurationError(CLIError):
    """Invalid build configuration; aborts the evaluation before generation."""


class DuplicateUnitError(ConfigurationError):
    pass


class InvalidUnitError(ConfigurationError):
    pass


class FrozenUnitError(ConfigurationError):
    pass


class OverlappingOutputsError(InvalidUnitError):
    pass


class ToolResolutionError(ConfigurationError):
    pass


class GenerationFailed(CLIError):
    """The schema compiler failed for one unit."""

    def __init__(
        self,
        unit: str,
        message: str,
        *,
        exit_code: Optional[int] = None,
        diagnostics: str = "",
    ) -> None:
        super().__init__(message)
        self.unit = unit
        self.exit_code = exit_code
        self.diagnostics = diagnostics


class GenerationCancelled(GenerationFailed):
    pass
