"""Structured operation logging for homelabctl commands.

Every CLI command wraps its work in :meth:`StructuredLogger.operation`. The
resulting scope collects steps and a final result, then appends one JSON
record per command to ``<logs_dir>/operations.jsonl``. Logging is best-effort:
when the directory cannot be created or a write fails, the logger disables
itself and commands continue unaffected.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


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
    """Mutable record for a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.operation_id = uuid.uuid4().hex[:12]
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now_iso()
        self._start = time.perf_counter()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None

    @property
    def finished(self) -> bool:
        """Return ``True`` once a result has been recorded."""
        return self.result is not None

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: object | None = None,
    ) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed with exit code *rc*."""
        self._set_result(
            "error",
            message,
            errors=errors if errors else [message],
            warnings=warnings,
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(dict(context))
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        record: dict[str, object] = {
            "ts": self.started_at,
            "op_id": self.operation_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "pid": os.getpid(),
            "steps": list(self.steps),
            "result": self.result,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append JSONL operation records under a logs directory."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it is unusable."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled (%s): %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def operations_log(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and persist its record on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if not scope.finished:
                scope.error(f"Unhandled error: {exc}", rc=1)
            raise
        finally:
            if not scope.finished:
                scope.success("Completed.", changed=0)
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning("Disabling structured logging after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "OPERATIONS_LOG_NAME"]
