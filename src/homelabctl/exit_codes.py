"""Enumerations for CLI exit codes shared by every command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    FAILURE = 1
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
