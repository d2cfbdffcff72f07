"""Error taxonomy shared by the orchestration engine and its collaborators."""
from __future__ import annotations

from collections.abc import Mapping

from .exit_codes import ExitCode


class AddonctlError(RuntimeError):
    """Base class for addonctl failures."""

    exit_code: ExitCode = ExitCode.PROVIDER


class ValidationError(AddonctlError):
    """Raised when a pre-flight check fails before any side effect."""

    exit_code = ExitCode.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        """Record the offending *field* and an optional *suggestion*."""
        super().__init__(message)
        self.field = field
        self.suggestion = suggestion

    def __str__(self) -> str:
        """Render the message with the suggestion appended when present."""
        message = super().__str__()
        if self.suggestion:
            return f"{message} Suggestion: {self.suggestion}"
        return message


class ExecutionError(AddonctlError):
    """Raised when an external command exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Keep the captured command output alongside the message."""
        super().__init__(message)
        self.command = command
        self.returncode = exit_code
        self.stdout = stdout
        self.stderr = stderr


class VerificationError(AddonctlError):
    """Raised when a post-condition fails after an apparently good mutation."""

    exit_code = ExitCode.VERIFICATION

    def __init__(
        self,
        message: str,
        *,
        diagnostics: Mapping[str, object] | None = None,
    ) -> None:
        """Attach the most specific diagnostics gathered by the check."""
        super().__init__(message)
        self.diagnostics: dict[str, object] = dict(diagnostics or {})


class RegistryError(AddonctlError):
    """Raised when the instance registry cannot be read or mutated."""

    exit_code = ExitCode.ENVIRONMENT


class NotFoundError(AddonctlError):
    """Raised when an instance, backup or payload cannot be located."""

    exit_code = ExitCode.VALIDATION


__all__ = [
    "AddonctlError",
    "ExecutionError",
    "NotFoundError",
    "RegistryError",
    "ValidationError",
    "VerificationError",
]
