"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    CONFIGURATION = 2
    PRECONDITION = 3
    EXTERNAL_TOOL = 4
    NOT_FOUND = 5
    RESOURCE_EXHAUSTED = 6
