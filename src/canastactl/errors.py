"""Error taxonomy shared by every farm operation.

Each error class maps onto a CLI exit code so commands can surface failures
uniformly regardless of which backend raised them.
"""
from __future__ import annotations

from collections.abc import Sequence
from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit status of a CLI command.

    ``VALIDATION`` covers bad input and missing or conflicting objects,
    ``ENVIRONMENT`` an absent or unreachable backend and ``PROVIDER`` a
    backend command that ran and failed.
    """

    SUCCESS = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


class FarmError(RuntimeError):
    """Base class for farm lifecycle failures."""

    exit_code: ExitCode = ExitCode.PROVIDER


class DependencyMissing(FarmError):
    """Raised when a backend CLI is absent or unreachable."""

    exit_code = ExitCode.ENVIRONMENT


class ValidationFailed(FarmError):
    """Raised for bad identifiers, URLs, ports or keys before any mutation."""

    exit_code = ExitCode.VALIDATION


class NotFound(FarmError):
    """Raised when an installation, wiki, key or service does not exist."""

    exit_code = ExitCode.VALIDATION


class ServiceNotFound(NotFound):
    """Raised when no running container or pod backs a named service."""


class NotRunning(NotFound):
    """Raised when the primary service has no ready containers."""


class Conflict(FarmError):
    """Raised for duplicate identifiers or URLs."""

    exit_code = ExitCode.VALIDATION


class RemoveLast(Conflict):
    """Raised when removing a wiki would leave the farm empty."""


class CommandFailed(FarmError):
    """Raised when an external process exits non-zero.

    The captured output is kept verbatim so operators can diagnose the
    failure without re-running the command.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        """Record the failing command alongside its captured output."""
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.output = output


class BackupRepositoryMissing(CommandFailed):
    """Raised when restic reports that the repository was never initialised."""


class PartialFailure(FarmError):
    """Raised when a multi-step mutation stops partway through.

    Nothing is rolled back: files and containers are left as the last
    completed step produced them, and the message names the failing step.
    """

    def __init__(
        self,
        step: str,
        cause: BaseException,
        *,
        completed: Sequence[str] = (),
        guidance: str | None = None,
    ) -> None:
        """Describe which step failed and which ones had already completed."""
        self.step = step
        self.cause = cause
        self.completed = list(completed)
        self.guidance = guidance
        parts = [f"Step '{step}' failed: {cause}"]
        if self.completed:
            parts.append(f"Completed steps: {', '.join(self.completed)}.")
        parts.append(
            guidance
            or "Files and containers were left in place; fix the cause and re-run the command."
        )
        super().__init__(" ".join(parts))


def exit_code_for(exc: BaseException) -> int:
    """Return the CLI exit code that corresponds to *exc*."""
    if isinstance(exc, FarmError):
        return int(exc.exit_code)
    return int(ExitCode.PROVIDER)


__all__ = [
    "BackupRepositoryMissing",
    "CommandFailed",
    "Conflict",
    "DependencyMissing",
    "ExitCode",
    "FarmError",
    "NotFound",
    "NotRunning",
    "PartialFailure",
    "RemoveLast",
    "ServiceNotFound",
    "ValidationFailed",
    "exit_code_for",
]
