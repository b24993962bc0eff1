"""Execution context shared by the convergence, backup, restore and status engines."""
from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..backups import BackupStore, BackupStoreError
from ..config import AppConfig
from ..errors import FleetError, error_kind
from ..locking import LockManager
from ..models import Node, NodeResult, NodeStatus
from ..providers import ContainerRuntime, DatabaseClient, HostFiles, SecretsError
from ..templates import TemplateEngine, TemplateError
from ..workers import CancelToken

# Failures captured into a node result instead of aborting sibling nodes.
NODE_ERRORS: tuple[type[Exception], ...] = (
    FleetError,
    SecretsError,
    TemplateError,
    BackupStoreError,
    OSError,
    ValueError,
)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True, frozen=True)
class EngineContext:
    """Collaborators and settings available to every engine for one run."""

    config: AppConfig
    container: ContainerRuntime
    database: DatabaseClient
    host: HostFiles
    store: BackupStore
    locks: LockManager
    templates: TemplateEngine
    cancel: CancelToken = field(default_factory=CancelToken)
    clock: Callable[[], datetime] = _utcnow
    monotonic: Callable[[], float] = time.monotonic

    @property
    def max_concurrency(self) -> int:
        """Return the per-node worker pool cap."""
        return self.config.executor.max_concurrency

    def sleep(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking early when the run is cancelled."""
        self.cancel.wait(seconds)


def failed_result(node: Node, exc: BaseException, **detail: object) -> NodeResult:
    """Convert *exc* into a ``failed`` node result carrying its error kind."""
    payload: dict[str, object] = {"error": error_kind(exc)}
    payload.update(detail)
    return NodeResult(node=node.name, status=NodeStatus.FAILED, message=str(exc), detail=payload)


def skipped_result(node: Node, message: str, detail: Mapping[str, object] | None = None) -> NodeResult:
    """Return a ``skipped`` node result."""
    return NodeResult(node=node.name, status=NodeStatus.SKIPPED, message=message, detail=detail)


__all__ = ["EngineContext", "NODE_ERRORS", "failed_result", "skipped_result"]
