"""Structured, operation-scoped logging for mongofleet.

Every CLI operation is wrapped in :meth:`StructuredLogger.operation`, which
appends a single JSON record to ``operations.jsonl`` describing the command,
its arguments, the steps taken and the final outcome. A conventional
human-readable log is written to ``mongofleet.log`` via the standard
:mod:`logging` module. Logging never fails an operation: if the log directory
cannot be prepared or a write fails, the logger disables itself.
"""
from __future__ import annotations

import getpass
import json
import logging
import logging.handlers
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

_HUMAN_LOG_NAME = "mongofleet.log"
_OPERATIONS_LOG_NAME = "operations.jsonl"
_REDACTED = "***"
_SENSITIVE_MARKERS = ("password", "secret", "token", "credential", "passphrase")

_module_logger = logging.getLogger("mongofleet")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


def sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value* with secret-looking keys redacted."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        cleaned: dict[str, object] = {}
        for key, item in value.items():
            name = str(key)
            cleaned[name] = _REDACTED if _is_sensitive(name) and item else sanitize(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Mutable record for a single logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.command = command
        self.op_id = uuid.uuid4().hex[:12]
        self.started_at = _now_iso()
        self._start = time.perf_counter()
        self._args = dict(args or {})
        self._target = dict(target or {})
        self._steps: list[dict[str, object]] = []
        self._lock_wait_ms: int | None = None
        self._result: dict[str, object] | None = None
        self.actor: Mapping[str, object] = _detect_actor()

    # Step tracking ---------------------------------------------------
    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record a named step within the operation."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self._steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self._lock_wait_ms = wait_ms

    # Outcomes --------------------------------------------------------
    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            backups=backups,
            context=context,
            warnings=list(warnings),
            errors=list(errors),
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            context=context,
            errors=list(errors) if errors else [message],
            rc=rc,
        )

    @property
    def has_result(self) -> bool:
        """Return ``True`` once an outcome has been recorded."""
        return self._result is not None

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message, "changed": changed}
        if warnings:
            result["warnings"] = warnings
        if errors:
            result["errors"] = errors
        if backups:
            result["backups"] = list(backups)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = sanitize(context)
        self._result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        record: dict[str, object] = {
            "op_id": self.op_id,
            "command": self.command,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "actor": dict(self.actor),
            "args": sanitize(self._args),
            "target": sanitize(self._target),
            "steps": list(self._steps),
            "result": self._result or {"status": "unknown", "message": ""},
        }
        if self._lock_wait_ms is not None:
            record["lock_wait_ms"] = self._lock_wait_ms
        return record


class StructuredLogger:
    """Write operation records and human logs beneath *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging if it is unavailable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / _OPERATIONS_LOG_NAME
        self._human_log_path = self._log_dir / _HUMAN_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_file_handler()

    def _attach_file_handler(self) -> None:
        target = str(self._human_log_path)
        for handler in _module_logger.handlers:
            if getattr(handler, "baseFilename", None) == target:
                return
        try:
            handler = logging.handlers.RotatingFileHandler(
                target,
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError:
            return
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        _module_logger.addHandler(handler)
        if _module_logger.level == logging.NOTSET:
            _module_logger.setLevel(logging.INFO)

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist its record on exit."""
        scope = OperationScope(command, args=args, target=target)
        _module_logger.info("operation %s started (%s)", command, scope.op_id)
        try:
            yield scope
        except BaseException as exc:
            if not scope.has_result:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        else:
            if not scope.has_result:
                scope.success("Completed.")
        finally:
            record = scope.to_record()
            result = record["result"]
            status = result.get("status") if isinstance(result, Mapping) else "unknown"
            _module_logger.info("operation %s finished: %s", command, status)
            self._write(record)

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


def _detect_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return {"user": user, "pid": os.getpid()}


def configure_console_logging(verbose: bool) -> None:
    """Route mongofleet log records to stderr (WARNING, or DEBUG when *verbose*)."""
    level = logging.DEBUG if verbose else logging.WARNING
    _module_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in _module_logger.handlers:
        if isinstance(handler, RichHandler):
            handler.setLevel(level)
            return
    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    _module_logger.addHandler(console_handler)


__all__ = ["OperationScope", "StructuredLogger", "configure_console_logging", "sanitize"]
