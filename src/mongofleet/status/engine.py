"""Check execution harness for the maintenance/status report."""
from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from ..engines.base import NODE_ERRORS, EngineContext
from ..errors import error_kind
from ..models import (
    Environment,
    Node,
    NodeResult,
    NodeStatus,
    OperationKind,
    OperationResult,
    build_result,
)
from ..workers import run_per_node
from .models import (
    BackupInventory,
    CheckContext,
    CheckDefinition,
    CheckResult,
    CheckStatus,
    worst_check,
)
from .probes import collect_checks

logger = logging.getLogger(__name__)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _run_single_check(check: CheckDefinition, context: CheckContext) -> CheckResult:
    start = time.perf_counter()
    try:
        result = check.run(context)
    except NODE_ERRORS as exc:
        return CheckResult(
            id=check.id,
            status=CheckStatus.FAILED,
            message=str(exc),
            data={"error": error_kind(exc)},
            duration_ms=_duration_ms(start),
        )
    if result.duration_ms is None:
        return CheckResult(
            id=result.id,
            status=result.status,
            message=result.message,
            data=result.data,
            duration_ms=_duration_ms(start),
        )
    return result


class StatusEngine:
    """Run the read-only check battery across an environment."""

    def __init__(
        self,
        context: EngineContext,
        checks: Sequence[CheckDefinition] | None = None,
    ) -> None:
        """Store the context and the checks to run (defaults to the full battery)."""
        self._context = context
        self._checks = tuple(checks) if checks is not None else tuple(collect_checks())

    def report(self, environment: Environment) -> OperationResult:
        """Return a per-node status report; never mutates anything."""
        start = time.perf_counter()
        inventory = self._backup_inventory(environment)
        results = run_per_node(
            environment.nodes,
            lambda node: self._check_node(environment, node, inventory),
            max_concurrency=self._context.max_concurrency,
            cancel=self._context.cancel,
        )
        metadata = {
            "duration_ms": _duration_ms(start),
            "checks": [check.id for check in self._checks],
            "backups": {
                "count": inventory.count,
                "newest": inventory.newest.name if inventory.newest else None,
            },
        }
        return build_result(
            environment.name,
            OperationKind.MAINTENANCE,
            results,
            metadata=metadata,
        )

    def _backup_inventory(self, environment: Environment) -> BackupInventory:
        try:
            artifacts = self._context.store.list_artifacts(environment.name)
        except NODE_ERRORS as exc:
            logger.warning("unable to list backups for %s: %s", environment.name, exc)
            return BackupInventory(artifacts=(), error=str(exc))
        return BackupInventory(artifacts=tuple(artifacts))

    def _check_node(
        self,
        environment: Environment,
        node: Node,
        inventory: BackupInventory,
    ) -> NodeResult:
        context = CheckContext(
            engine=self._context,
            environment=environment,
            node=node,
            backups=inventory,
        )
        checks = [_run_single_check(check, context) for check in self._checks]
        worst = worst_check(checks)
        failed = [check.id for check in checks if check.status.is_failure]
        warned = [check.id for check in checks if check.status is CheckStatus.WARN]
        detail: dict[str, object] = {
            "checks": {check.id: check.to_dict() for check in checks},
        }
        detail.update(_summary_fields(checks))
        if worst is CheckStatus.FAILED:
            return NodeResult(
                node=node.name,
                status=NodeStatus.FAILED,
                message=f"Failed checks: {', '.join(failed)}.",
                detail=detail,
            )
        message = "All checks passed."
        if warned:
            message = f"Warnings: {', '.join(warned)}."
        return NodeResult(node=node.name, status=NodeStatus.OK, message=message, detail=detail)


def _summary_fields(checks: Sequence[CheckResult]) -> dict[str, object]:
    """Lift the headline values of each check into the node detail."""
    by_id = {check.id: check for check in checks}
    fields: dict[str, object] = {}
    reach = by_id.get("reachability")
    if reach is not None:
        fields["reachable"] = (reach.data or {}).get("error") != "unreachable"
    container = by_id.get("container")
    if container is not None:
        fields["container_health"] = container.status.value
    disk = by_id.get("disk")
    if disk is not None and disk.data:
        fields["disk_usage_percent"] = disk.data.get("used_percent")
    replica = by_id.get("replica")
    if replica is not None and replica.data:
        fields["replica_role"] = replica.data.get("role")
        fields["replica_lag_seconds"] = replica.data.get("lag_seconds")
    backups = by_id.get("backups")
    if backups is not None and backups.data:
        fields["backup_count"] = backups.data.get("count")
        fields["newest_backup_age_days"] = backups.data.get("newest_age_days")
    return fields


__all__ = ["StatusEngine"]
