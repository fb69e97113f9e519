"""Error taxonomy shared by every instancectl component.

All errors are fatal to the current command. The CLI maps each kind to a
distinct exit status via :attr:`InstanceCtlError.exit_code`.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class InstanceCtlError(RuntimeError):
    """Base class for errors reported to the operator."""

    exit_code: ExitCode = ExitCode.CONFIGURATION
    label: str = "ERROR"


class ConfigurationError(InstanceCtlError):
    """Missing fleet root, malformed or legacy config, invalid image names."""

    exit_code = ExitCode.CONFIGURATION


class MalformedTemplateError(ConfigurationError):
    """Raised when a compose template cannot be rendered into an instance config."""


class NotFoundError(InstanceCtlError):
    """Raised when an instance directory required by an operation is absent."""

    exit_code = ExitCode.NOT_FOUND


class PreconditionError(InstanceCtlError):
    """Raised when a safety or input precondition does not hold."""

    exit_code = ExitCode.PRECONDITION


class ResourceExhaustedError(InstanceCtlError):
    """Raised when no free port remains in the reserved range."""

    exit_code = ExitCode.RESOURCE_EXHAUSTED


class ExternalToolError(InstanceCtlError):
    """Raised when a wrapped external command fails."""

    exit_code = ExitCode.EXTERNAL_TOOL

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] | None = None,
        returncode: int | None = None,
    ) -> None:
        """Store the failing command alongside the message."""
        super().__init__(message)
        self.command = list(command) if command is not None else None
        self.returncode = returncode


__all__ = [
    "ConfigurationError",
    "ExternalToolError",
    "InstanceCtlError",
    "MalformedTemplateError",
    "NotFoundError",
    "PreconditionError",
    "ResourceExhaustedError",
]
