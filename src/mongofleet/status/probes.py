"""Read-only checks run by the maintenance/status engine."""
from __future__ import annotations

from collections.abc import Callable, Sequence

from ..models import NodeRole
from .models import CheckContext, CheckDefinition, CheckResult, CheckStatus

DISK_WARN_PERCENT = 90.0
DISK_FAIL_PERCENT = 95.0
REPLICA_LAG_WARN_SECONDS = 60.0


def collect_checks() -> Sequence[CheckDefinition]:
    """Return the fixed battery of per-node checks, in reporting order."""
    return (
        _make_check("reachability", _check_reachability),
        _make_check("container", _check_container),
        _make_check("disk", _check_disk),
        _make_check("replica", _check_replica),
        _make_check("backups", _check_backups),
    )


def _make_check(check_id: str, handler: Callable[[CheckContext], CheckResult]) -> CheckDefinition:
    return CheckDefinition(id=check_id, run=handler)


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


def _check_reachability(context: CheckContext) -> CheckResult:
    healthy = context.engine.database.ping(context.node)
    if not healthy:
        return CheckResult(
            id="reachability",
            status=CheckStatus.FAILED,
            message="Database is not answering ping.",
            data={"reachable": True, "healthy": False},
        )
    return CheckResult(
        id="reachability",
        status=CheckStatus.OK,
        message="Database answered ping.",
        data={"reachable": True, "healthy": True},
    )


def _check_container(context: CheckContext) -> CheckResult:
    info = context.engine.container.inspect(context.node)
    desired = context.environment.desired_for(context.node)
    data = {"running": info.running, "image": info.image, "expected_image": desired.image_ref}
    if not info.exists:
        return CheckResult(
            id="container",
            status=CheckStatus.FAILED,
            message="Database container does not exist.",
            data=data,
        )
    if not info.running:
        return CheckResult(
            id="container",
            status=CheckStatus.FAILED,
            message="Database container is not running.",
            data=data,
        )
    if info.image != desired.image_ref:
        return CheckResult(
            id="container",
            status=CheckStatus.WARN,
            message=f"Container runs {info.image}; desired {desired.image_ref}.",
            data=data,
        )
    return CheckResult(
        id="container",
        status=CheckStatus.OK,
        message=f"Container running {info.image}.",
        data=data,
    )


# ---------------------------------------------------------------------------
# Disk
# ---------------------------------------------------------------------------


def _check_disk(context: CheckContext) -> CheckResult:
    path = context.engine.config.container.data_dir
    percent = context.engine.host.disk_usage_percent(context.node, path)
    data = {"path": path, "used_percent": round(percent, 2)}
    if percent >= DISK_FAIL_PERCENT:
        return CheckResult(
            id="disk",
            status=CheckStatus.FAILED,
            message=f"Disk usage {percent:.0f}% exceeds {DISK_FAIL_PERCENT:.0f}%.",
            data=data,
        )
    if percent >= DISK_WARN_PERCENT:
        return CheckResult(
            id="disk",
            status=CheckStatus.WARN,
            message=f"Disk usage {percent:.0f}% exceeds {DISK_WARN_PERCENT:.0f}%.",
            data=data,
        )
    return CheckResult(
        id="disk",
        status=CheckStatus.OK,
        message=f"Disk usage {percent:.0f}%.",
        data=data,
    )


# ---------------------------------------------------------------------------
# Replication
# ---------------------------------------------------------------------------

_EXPECTED_ROLE = {
    NodeRole.PRIMARY: "PRIMARY",
    NodeRole.SECONDARY: "SECONDARY",
    NodeRole.ARBITER: "ARBITER",
}


def _check_replica(context: CheckContext) -> CheckResult:
    node = context.node
    if not node.role.is_replica_member:
        return CheckResult(
            id="replica",
            status=CheckStatus.OK,
            message="Standalone node; no replica set.",
            data={"role": None, "lag_seconds": None},
        )
    status = context.engine.database.replica_status(node)
    data = {"role": status.role, "lag_seconds": status.lag_seconds, "set": status.set_name}
    if not status.member:
        return CheckResult(
            id="replica",
            status=CheckStatus.FAILED,
            message="Node is not a member of a replica set.",
            data=data,
        )
    expected = _EXPECTED_ROLE[node.role]
    if status.role != expected:
        return CheckResult(
            id="replica",
            status=CheckStatus.WARN,
            message=f"Replica role is {status.role or 'unknown'}; declared {expected}.",
            data=data,
        )
    if status.lag_seconds is not None and status.lag_seconds > REPLICA_LAG_WARN_SECONDS:
        return CheckResult(
            id="replica",
            status=CheckStatus.WARN,
            message=f"Replication lag {status.lag_seconds:.0f}s.",
            data=data,
        )
    return CheckResult(
        id="replica",
        status=CheckStatus.OK,
        message=f"Replica {status.role}.",
        data=data,
    )


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def _check_backups(context: CheckContext) -> CheckResult:
    if not context.node.role.is_data_bearing:
        return CheckResult(
            id="backups",
            status=CheckStatus.OK,
            message="Arbiter holds no data.",
            data={"count": 0},
        )
    inventory = context.backups
    if inventory.error is not None:
        return CheckResult(
            id="backups",
            status=CheckStatus.FAILED,
            message=f"Unable to read backup store: {inventory.error}",
        )
    newest = inventory.newest
    if newest is None:
        return CheckResult(
            id="backups",
            status=CheckStatus.WARN,
            message="No backup artifacts available.",
            data={"count": 0, "newest": None, "newest_age_days": None},
        )
    age = newest.age_days(context.engine.clock())
    data = {
        "count": inventory.count,
        "newest": newest.name,
        "newest_age_days": round(age, 2),
        "oldest_age_days": round(inventory.artifacts[0].age_days(context.engine.clock()), 2),
    }
    retention = context.environment.desired_for(context.node).backup.retention_days
    if age > retention:
        return CheckResult(
            id="backups",
            status=CheckStatus.WARN,
            message=f"Newest backup is {age:.1f} days old (retention {retention} days).",
            data=data,
        )
    return CheckResult(
        id="backups",
        status=CheckStatus.OK,
        message=f"{inventory.count} backup(s); newest {age:.1f} days old.",
        data=data,
    )


__all__ = ["DISK_FAIL_PERCENT", "DISK_WARN_PERCENT", "REPLICA_LAG_WARN_SECONDS", "collect_checks"]
