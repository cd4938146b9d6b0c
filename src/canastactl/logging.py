"""Structured operation logging for canastactl.

Every CLI operation appends one JSON record to ``operations.jsonl`` inside the
configured log directory. Records capture the arguments, the target
installation, the ordered list of steps performed and the final result so an
operator can reconstruct what a multi-step mutation did before it stopped.

Logging never breaks a command: when the directory cannot be created or a
write fails the logger disables itself and later operations become no-ops.
"""
from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

OPERATIONS_LOG_NAME = "operations.jsonl"

# Signature components use to report progress: (name, status=..., detail=...).
StepReporter = Callable[..., None]


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _sanitise_context(context: Mapping[str, object] | None) -> dict[str, object]:
    """Stringify context values that are not plain JSON scalars."""
    result: dict[str, object] = {}
    for key, value in (context or {}).items():
        if value is None or isinstance(value, (bool, int, float, str)):
            result[str(key)] = value
        elif isinstance(value, Mapping):
            result[str(key)] = _sanitise(value)
        else:
            result[str(key)] = str(value)
    return result


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the result of a single CLI operation."""

    logger: StructuredLogger
    op: str
    args: dict[str, object] = field(default_factory=dict)
    target: dict[str, object] = field(default_factory=dict)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None
    _started: float = field(default_factory=time.monotonic)

    # Context manager protocol ------------------------------------------
    def __enter__(self) -> OperationScope:
        """Return the scope so callers can record steps."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Flush the record, capturing unexpected exceptions as errors."""
        if self.result is None:
            if exc is not None and not _is_clean_exit(exc):
                self.error(str(exc) or exc.__class__.__name__, rc=4)
            else:
                self.success("Operation completed.", changed=0)
        self.logger.write_record(self._record())

    # Recording helpers ---------------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: object | None = None) -> None:
        """Record a named step and its outcome."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def step_reporter(self, prefix: str = "") -> StepReporter:
        """Return a callable components can use to report their own steps."""

        def report(name: str, status: str = "success", detail: object | None = None) -> None:
            self.add_step(f"{prefix}{name}", status=status, detail=detail)

        return report

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long lock acquisition took."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            rc=0,
            warnings=warnings,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            rc=0,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 2,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            rc=rc,
            errors=list(errors) if errors else [message],
            context=context,
        )

    # Internal helpers ---------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        rc: int,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": [str(item) for item in warnings or []],
            "errors": [str(item) for item in errors or []],
            "backups": [str(item) for item in backups or []],
            "context": _sanitise_context(context),
        }

    def _record(self) -> dict[str, object]:
        duration_ms = int((time.monotonic() - self._started) * 1000)
        return {
            "ts": _now_iso(),
            "pid": os.getpid(),
            "op": self.op,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": self.steps,
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": duration_ms,
            "result": self.result,
        }


def _is_clean_exit(exc: BaseException) -> bool:
    code = getattr(exc, "exit_code", None)
    if exc.__class__.__name__ == "Exit" and code in (0, None):
        return True
    return isinstance(exc, SystemExit) and exc.code in (0, None)


class StructuredLogger:
    """Append-only JSON lines logger for CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging if it is unusable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are currently being written."""
        return self._enabled

    @property
    def operations_log(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        op: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open a scope that records a single operation."""
        scope = OperationScope(
            logger=self,
            op=op,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        with scope:
            yield scope

    def write_record(self, record: Mapping[str, object]) -> None:
        """Append *record* to the operations log when logging is enabled."""
        if not self._enabled:
            return
        try:
            line = json.dumps(record, sort_keys=False)
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except (OSError, TypeError, ValueError):
            self._enabled = False


__all__ = ["OperationScope", "StepReporter", "StructuredLogger"]
