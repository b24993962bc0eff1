"""Tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from mongofleet.logging import StructuredLogger, sanitize


def _records(log_dir: Path) -> list[dict[str, object]]:
    lines = (log_dir / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_record_contains_steps_and_result(tmp_path: Path) -> None:
    """Each operation appends one JSON record with its steps and outcome."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "backup",
        args={"json": False},
        target={"kind": "environment", "name": "staging"},
    ) as op:
        op.add_step("node:db1", status="changed", detail="Created artifact.")
        op.set_lock_wait_ms(12)
        op.success("backup completed.", changed=1, backups=["staging_x.archive.gz"])

    (record,) = _records(tmp_path / "logs")
    assert record["command"] == "backup"
    assert record["target"] == {"kind": "environment", "name": "staging"}
    assert record["steps"][0]["name"] == "node:db1"  # type: ignore[index]
    assert record["lock_wait_ms"] == 12
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["backups"] == ["staging_x.archive.gz"]  # type: ignore[index]
    assert (tmp_path / "logs" / "mongofleet.log").exists()


def test_secret_looking_values_are_redacted(tmp_path: Path) -> None:
    """Arguments whose keys look like secrets never reach the log."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("restore", args={"confirm_token": "staging", "root_password": "hunter2"}):
        pass

    raw = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    assert "hunter2" not in raw
    (record,) = _records(tmp_path / "logs")
    assert record["args"] == {"confirm_token": "***", "root_password": "***"}


def test_sanitize_handles_nested_values() -> None:
    """sanitize() converts paths and nested containers to JSON-safe values."""
    cleaned = sanitize({"path": Path("/tmp/x"), "items": (1, {"secret": "s"}), "none": None})
    assert cleaned == {"path": "/tmp/x", "items": [1, {"secret": "***"}], "none": None}


def test_exception_marks_operation_as_error(tmp_path: Path) -> None:
    """An exception escaping the scope is recorded as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("deploy"):
            raise ValueError("bad input")

    (record,) = _records(tmp_path / "logs")
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert "bad input" in record["result"]["message"]  # type: ignore[index]


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
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
