"""Recurring backups through the invoking user's crontab."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

from .errors import CommandFailed, DependencyMissing, ValidationFailed
from .state import Installation

CRON_FIELD_CHARS = frozenset("0123456789*,/-")
DEFAULT_SCHEDULE_LOG = Path("/var/log/canasta-backup.log")


def validate_cron(expression: str) -> str:
    """Return *expression* normalised to single spaces, or raise."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValidationFailed(
            f"invalid cron expression: expected 5 fields, got {len(fields)}"
        )
    for field in fields:
        for char in field:
            if char not in CRON_FIELD_CHARS:
                raise ValidationFailed(f"invalid character '{char}' in cron expression")
    return " ".join(fields)


def cron_from_line(line: str) -> str | None:
    """Return the schedule part of a crontab *line*."""
    fields = line.split()
    if len(fields) < 5:
        return None
    return " ".join(fields[:5])


class BackupSchedule:
    """Manage the crontab entry that backs up one installation."""

    def __init__(
        self,
        installation: Installation,
        executable: str,
        *,
        log_file: Path = DEFAULT_SCHEDULE_LOG,
        crontab_bin: str = "crontab",
    ) -> None:
        """Bind the schedule to an installation and the CLI executable."""
        self.installation = installation
        self.executable = executable
        self.log_file = Path(log_file)
        self.crontab_bin = crontab_bin

    @property
    def marker(self) -> str:
        return f"cd {self.installation.path} &&"

    def build_line(self, expression: str) -> str:
        """Return the crontab line that runs a tagged backup."""
        return (
            f"{validate_cron(expression)} {self.marker} {self.executable} backup create "
            f"--tag scheduled-$(date +\\%Y\\%m\\%d\\%H\\%M\\%S) >> {self.log_file} 2>&1"
        )

    def owns(self, line: str) -> bool:
        """Return whether *line* is this installation's backup job."""
        return self.marker in line and "backup create" in line

    def set(self, expression: str) -> bool:
        """Install or replace the job; returns ``True`` when one was replaced."""
        entry = self.build_line(expression)
        lines: list[str] = []
        replaced = False
        for line in self._read():
            if self.owns(line):
                if not replaced:
                    lines.append(entry)
                replaced = True
            else:
                lines.append(line)
        if not replaced:
            lines.append(entry)
        self._write(lines)
        return replaced

    def list(self) -> str | None:
        """Return the cron expression of the installed job, if any."""
        for line in self._read():
            if self.owns(line):
                return cron_from_line(line)
        return None

    def remove(self) -> bool:
        """Drop the job; returns whether one existed."""
        lines = self._read()
        remaining = [line for line in lines if not self.owns(line)]
        if len(remaining) == len(lines):
            return False
        self._write(remaining)
        return True

    # ------------------------------------------------------------------
    def _read(self) -> list[str]:
        result = self._run([self.crontab_bin, "-l"])
        # crontab exits 1 when the user has no crontab yet.
        if result.returncode == 1:
            return []
        if result.returncode != 0:
            raise CommandFailed(
                f"failed to read crontab (exit {result.returncode}): {result.stdout.strip()}",
                command=[self.crontab_bin, "-l"],
                returncode=result.returncode,
                output=result.stdout,
            )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def _write(self, lines: Sequence[str]) -> None:
        content = "\n".join(lines) + "\n" if lines else ""
        result = self._run([self.crontab_bin, "-"], input_text=content)
        if result.returncode != 0:
            raise CommandFailed(
                f"failed to update crontab (exit {result.returncode}): {result.stdout.strip()}",
                command=[self.crontab_bin, "-"],
                returncode=result.returncode,
                output=result.stdout,
            )

    def _run(
        self, args: Sequence[str], *, input_text: str | None = None
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603, S607
                list(args),
                input=input_text,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise DependencyMissing(f"{args[0]} not found: {exc}") from exc


__all__ = ["BackupSchedule", "cron_from_line", "validate_cron"]
