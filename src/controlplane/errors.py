"""
Exception hierarchy and process exit codes.

Every fatal condition is raised as a ``BootstrapError`` subclass carrying
the exit code the process terminates with. Only the CLI turns exceptions
into exit codes; no layer retries a failed stage in-process.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Optional

__all__ = [
    "ExitCode",
    "BootstrapError",
    "InvalidArguments",
    "ParameterFileMissing",
    "ParameterError",
    "DependencyError",
    "StoreError",
    "StageFailed",
    "ExternalToolError",
    "SecretRecoveryTimeout",
]


class ExitCode(IntEnum):
    """Process exit codes."""
    SUCCESS = 0
    INVALID_ARGUMENTS = 1
    MISSING_PARAMETER_FILE = 2
    DEPLOYER_BOOTSTRAP_FAILED = 10
    DEPLOYER_MIGRATION_FAILED = 11
    LIBRARY_BOOTSTRAP_FAILED = 20
    LIBRARY_MIGRATION_FAILED = 21
    DATA_ERROR = 65
    NOT_LOGGED_IN = 67
    STORE_IO_ERROR = 74
    TOOL_NOT_FOUND = 127


class BootstrapError(Exception):
    """Base class for all fatal bootstrap errors."""

    exit_code: int = ExitCode.INVALID_ARGUMENTS

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidArguments(BootstrapError):
    """Raised when required command line arguments are missing or invalid."""
    exit_code = ExitCode.INVALID_ARGUMENTS


class ParameterFileMissing(BootstrapError):
    """Raised when a deployer or library parameter file does not exist."""
    exit_code = ExitCode.MISSING_PARAMETER_FILE


class ParameterError(BootstrapError):
    """Raised when a parameter file lacks the environment or location."""
    exit_code = ExitCode.DATA_ERROR


class DependencyError(BootstrapError):
    """Raised when a required tool or environment setting is unavailable."""
    exit_code = ExitCode.DATA_ERROR


class StoreError(BootstrapError):
    """Raised when the config store cannot be created, read or written."""
    exit_code = ExitCode.STORE_IO_ERROR


class StageFailed(BootstrapError):
    """Raised when a stage handler fails; carries the stage's exit code."""

    def __init__(self, stage: str, message: str, exit_code: int):
        super().__init__(message, exit_code)
        self.stage = stage


class ExternalToolError(Exception):
    """Raised by collaborators when an external command fails.

    Stage handlers convert this into their own ``StageFailed``.
    """

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class SecretRecoveryTimeout(ExternalToolError):
    """Raised when a recovered secret does not become readable in time."""
