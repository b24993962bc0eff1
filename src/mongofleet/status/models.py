"""Data models for the maintenance/status checks."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..engines.base import EngineContext
    from ..models import BackupArtifact, Environment, Node


class CheckStatus(str, Enum):
    """Outcome of one check on one node."""

    OK = "ok"
    WARN = "warn"
    FAILED = "failed"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the check failed."""
        return self is CheckStatus.FAILED


CHECK_ORDER: Mapping[CheckStatus, int] = {
    CheckStatus.OK: 0,
    CheckStatus.WARN: 1,
    CheckStatus.FAILED: 2,
}


@dataclass(slots=True, frozen=True)
class CheckResult:
    """Result of running a check against a node."""

    id: str
    status: CheckStatus
    message: str
    data: Mapping[str, Any] | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"status": self.status.value, "message": self.message}
        if self.data:
            payload["data"] = dict(self.data)
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


@dataclass(slots=True, frozen=True)
class BackupInventory:
    """Artifacts available for an environment, computed once per report."""

    artifacts: tuple[BackupArtifact, ...]
    error: str | None = None

    @property
    def count(self) -> int:
        """Return the number of artifacts."""
        return len(self.artifacts)

    @property
    def newest(self) -> BackupArtifact | None:
        """Return the most recent artifact, if any."""
        return self.artifacts[-1] if self.artifacts else None


@dataclass(slots=True, frozen=True)
class CheckContext:
    """Everything a check needs for one node."""

    engine: EngineContext
    environment: Environment
    node: Node
    backups: BackupInventory


@dataclass(slots=True, frozen=True)
class CheckDefinition:
    """Identifier plus callable for a check."""

    id: str
    run: Callable[[CheckContext], CheckResult]


def worst_check(results: Iterable[CheckResult]) -> CheckStatus:
    """Return the worst status among *results* (``ok`` when empty)."""
    worst = CheckStatus.OK
    for result in results:
        if CHECK_ORDER[result.status] > CHECK_ORDER[worst]:
            worst = result.status
    return worst


__all__ = [
    "BackupInventory",
    "CHECK_ORDER",
    "CheckContext",
    "CheckDefinition",
    "CheckResult",
    "CheckStatus",
    "worst_check",
]
