"""Structured operation logging for instancectl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects the individual steps performed (port allocation, proxy registration,
container commands, ...) and writes a single JSON line describing the whole
operation to ``<logs_dir>/operations.jsonl`` when the scope exits.

Logging must never be the reason a command fails: if the log directory cannot
be created or a write fails, the logger disables itself and the command
carries on.
"""
from __future__ import annotations

import json
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Accumulates steps and the final result of one operation."""

    def __init__(self, operation: str) -> None:
        """Initialise an empty scope for *operation*."""
        self.operation = operation
        self.op_id = secrets.token_hex(6)
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a single step performed by the operation."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self.result = {
            "status": "success",
            "message": message,
            "changed": changed,
            "context": _sanitize(dict(context or {})),
        }

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self.result = {
            "status": "warning",
            "message": message,
            "changed": changed,
            "warnings": list(warnings or [message]),
            "errors": list(errors or []),
            "context": _sanitize(dict(context or {})),
        }

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self.result = {
            "status": "error",
            "message": message,
            "errors": list(errors or [message]),
            "rc": rc,
            "context": _sanitize(dict(context or {})),
        }


class StructuredLogger:
    """Append JSON operation records to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when unavailable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run an operation scope and persist its record on exit."""
        scope = OperationScope(name)
        started_at = _now_iso()
        start = time.perf_counter()
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            record = {
                "op_id": scope.op_id,
                "operation": name,
                "started_at": started_at,
                "finished_at": _now_iso(),
                "duration_ms": int((time.perf_counter() - start) * 1000),
                "args": _sanitize(dict(args or {})),
                "target": _sanitize(dict(target or {})),
                "steps": scope.steps,
                "result": scope.result,
            }
            self._write(record)

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
