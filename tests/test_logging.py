"""Tests for the structured operation logger."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from instancectl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    return [json.loads(line) for line in logger.path.read_text(encoding="utf-8").splitlines()]


def test_operation_record_contains_steps_and_result(tmp_path: Path) -> None:
    """A completed scope writes one JSON line with its steps."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("add", args={"name": "demo.example.org"}, target={"port": 61001}) as op:
        op.add_step("ports.allocate", detail="61001")
        op.success("Instance created.", changed=1, context={"path": tmp_path})

    (record,) = _records(logger)
    assert record["operation"] == "add"
    assert record["args"] == {"name": "demo.example.org"}
    assert record["target"] == {"port": 61001}
    assert record["steps"][0]["name"] == "ports.allocate"  # type: ignore[index]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["context"] == {"path": str(tmp_path)}  # type: ignore[index]


def test_exception_marks_operation_failed(tmp_path: Path) -> None:
    """An exception escaping the scope is recorded and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("rm"):
            raise RuntimeError("boom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["message"] == "boom"  # type: ignore[index]


def test_scope_without_result_defaults_to_success(tmp_path: Path) -> None:
    """Scopes that never report a result are logged as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("ls"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_warning_result_lists_warnings(tmp_path: Path) -> None:
    """Warnings are kept alongside the message."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("update") as op:
        op.warning("Updated with warnings.", warnings=["volume busy"])

    (record,) = _records(logger)
    assert record["result"]["warnings"] == ["volume busy"]  # type: ignore[index]


def test_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The logger turns itself off when its directory cannot be created."""
    log_dir = tmp_path / "logs"
    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)

    with logger.operation("ls") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]
    assert not logger.path.exists()


def test_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed write disables later writes instead of failing the command."""
    logger = StructuredLogger(tmp_path / "logs")
    original_open = Path.open

    def failing_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == logger.path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", failing_open)

    with logger.operation("start") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("stop") as op:
        op.success("done")
