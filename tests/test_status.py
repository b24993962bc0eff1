"""Tests for the maintenance/status report."""
from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from conftest import FIXED_NOW

from mongofleet.engines import EngineContext
from mongofleet.models import Environment, NodeStatus
from mongofleet.status import StatusEngine
from mongofleet.status.models import CheckContext, CheckDefinition, CheckResult, CheckStatus

if TYPE_CHECKING:
    from conftest import FakeCluster


def test_healthy_environment_with_fresh_backup(
    staging: Environment,
    cluster: FakeCluster,
    context: EngineContext,
    artifact_writer: Callable[..., Path],
) -> None:
    """A converged fleet with a recent backup passes every check."""
    cluster.start_all(staging)
    artifact_writer(context.store, "staging", FIXED_NOW - timedelta(days=2))

    result = StatusEngine(context).report(staging)

    assert result.status is NodeStatus.OK
    primary = result.node("db1")
    assert primary.message == "All checks passed."
    assert primary.detail["reachable"] is True
    assert primary.detail["container_health"] == "ok"
    assert primary.detail["disk_usage_percent"] == 40.0
    assert primary.detail["replica_role"] == "PRIMARY"
    assert primary.detail["backup_count"] == 1
    assert primary.detail["newest_backup_age_days"] == 2.0
    assert result.metadata["backups"]["count"] == 1
    assert cluster.mutations == []


def test_unreachable_node_does_not_hide_others(
    staging: Environment, cluster: FakeCluster, context: EngineContext
) -> None:
    """One unreachable node fails while its siblings still report."""
    cluster.start_all(staging)
    cluster.state("db2").reachable = False

    result = StatusEngine(context).report(staging)

    assert result.status is NodeStatus.FAILED
    healthy = result.node("db1")
    assert healthy.status is NodeStatus.OK
    assert healthy.message == "Warnings: backups."
    assert set(healthy.detail["checks"]) == {"reachability", "container", "disk", "replica", "backups"}

    down = result.node("db2")
    assert down.status is NodeStatus.FAILED
    assert down.detail["reachable"] is False
    assert down.detail["checks"]["reachability"]["data"] == {"error": "unreachable"}
    assert down.message.startswith("Failed checks: reachability, container")


def test_disk_thresholds(
    staging: Environment, cluster: FakeCluster, context: EngineContext
) -> None:
    """Disk usage warns at 90% and fails at 95%."""
    cluster.start_all(staging)
    cluster.state("db1").disk_percent = 92.0
    cluster.state("db2").disk_percent = 96.5

    result = StatusEngine(context).report(staging)

    assert result.node("db1").detail["checks"]["disk"]["status"] == "warn"
    assert result.node("db1").status is NodeStatus.OK
    assert result.node("db2").detail["checks"]["disk"]["status"] == "failed"
    assert result.node("db2").status is NodeStatus.FAILED


def test_replica_lag_and_role_mismatch_warn(
    staging: Environment, cluster: FakeCluster, context: EngineContext
) -> None:
    """Lagging secondaries and unexpected roles are warnings."""
    cluster.start_all(staging)
    cluster.state("db1").replica_role = "SECONDARY"
    cluster.state("db2").lag_seconds = 120.0

    result = StatusEngine(context).report(staging)

    assert result.node("db1").detail["checks"]["replica"]["status"] == "warn"
    lagging = result.node("db2")
    assert lagging.detail["checks"]["replica"]["status"] == "warn"
    assert lagging.detail["replica_lag_seconds"] == 120.0


def test_stale_backup_warns(
    staging: Environment,
    cluster: FakeCluster,
    context: EngineContext,
    artifact_writer: Callable[..., Path],
) -> None:
    """A newest backup older than the retention window is flagged."""
    cluster.start_all(staging)
    artifact_writer(context.store, "staging", FIXED_NOW - timedelta(days=10))

    result = StatusEngine(context).report(staging)

    backups = result.node("db1").detail["checks"]["backups"]
    assert backups["status"] == "warn"
    assert backups["data"]["newest_age_days"] == 10.0


def test_stopped_container_fails(
    staging: Environment, cluster: FakeCluster, context: EngineContext
) -> None:
    """A stopped container fails the container and reachability checks."""
    cluster.start_all(staging)
    cluster.state("db2").running = False

    result = StatusEngine(context).report(staging)

    down = result.node("db2")
    assert down.status is NodeStatus.FAILED
    assert down.detail["container_health"] == "failed"
    assert down.detail["reachable"] is True


def test_custom_check_battery(staging: Environment, context: EngineContext) -> None:
    """Callers can supply their own checks."""

    def always_ok(check_context: CheckContext) -> CheckResult:
        return CheckResult(id="noop", status=CheckStatus.OK, message=check_context.node.name)

    engine = StatusEngine(context, checks=[CheckDefinition(id="noop", run=always_ok)])

    result = engine.report(staging)

    assert result.metadata["checks"] == ["noop"]
    assert result.node("db2").detail["checks"]["noop"]["message"] == "db2"
    assert result.node("db2").detail["checks"]["noop"]["duration_ms"] >= 0
