"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from homelabctl.logging import OPERATIONS_LOG_NAME, StructuredLogger


def _records(logs_dir: Path) -> list[dict[str, object]]:
    path = logs_dir / OPERATIONS_LOG_NAME
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_writes_jsonl_record(tmp_path: Path) -> None:
    """A finished operation appends one JSON line with its result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "backup create",
        args={"skip_volumes": False},
        target={"kind": "backup", "path": tmp_path},
    ) as op:
        op.add_step("stage", detail={"files": ["traefik"]})
        op.success("Backup created.", changed=1, backups=["a.tar.gz"])

    (record,) = _records(tmp_path / "logs")
    assert record["command"] == "backup create"
    assert record["target"] == {"kind": "backup", "path": str(tmp_path)}
    assert record["steps"] == [
        {"name": "stage", "status": "success", "detail": {"files": ["traefik"]}}
    ]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 1
    assert result["backups"] == ["a.tar.gz"]


def test_unhandled_exception_recorded_as_error(tmp_path: Path) -> None:
    """Exceptions escaping the scope become error records and propagate."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("role install"):
            raise ValueError("boom")

    (record,) = _records(tmp_path / "logs")
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 1
    assert "boom" in str(result["message"])


def test_explicit_error_keeps_exit_code(tmp_path: Path) -> None:
    """An error set before the exception keeps its own exit code."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("dns get-ip") as op:
            op.error("No IP.", rc=4)
            raise RuntimeError("exit")

    (record,) = _records(tmp_path / "logs")
    result = record["result"]
    assert isinstance(result, dict)
    assert result["rc"] == 4
    assert result["errors"] == ["No IP."]


def test_lock_wait_is_recorded(tmp_path: Path) -> None:
    """Lock wait time is included when an operation waited for a lock."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("setup") as op:
        op.set_lock_wait_ms(12)

    (record,) = _records(tmp_path / "logs")
    assert record["lock_wait_ms"] == 12
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
