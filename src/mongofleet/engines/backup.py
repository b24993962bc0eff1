"""Backup engine: dump, compress, transfer and rotate artifacts for an environment.

One run walks ``idle -> dumping -> compressing -> transferring ->
rotating_retention -> done``; any failure before rotation moves the run to
``failed``, removes partial output and skips rotation. The whole run holds
the environment lock so a concurrent restore or backup cannot observe the
artifact list mid-change.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from enum import Enum
from pathlib import PurePosixPath

from ..backups import BackupStoreError, artifact_name
from ..errors import FleetError, PreconditionFailedError
from ..models import (
    BackupArtifact,
    BackupPolicy,
    Environment,
    Node,
    NodeResult,
    NodeRole,
    NodeStatus,
    OperationKind,
    OperationResult,
    build_result,
)
from ..providers import SYSTEM_DATABASES
from ..workers import cancelled_result
from .base import NODE_ERRORS, EngineContext, failed_result, skipped_result

logger = logging.getLogger(__name__)


class BackupPhase(str, Enum):
    """States of a single backup run."""

    IDLE = "idle"
    DUMPING = "dumping"
    COMPRESSING = "compressing"
    TRANSFERRING = "transferring"
    ROTATING_RETENTION = "rotating_retention"
    DONE = "done"
    FAILED = "failed"


def select_source(environment: Environment) -> Node:
    """Return the node to dump: the primary, else the first data-bearing node."""
    primary = environment.primary
    if primary is not None:
        return primary
    if environment.data_nodes:
        return environment.data_nodes[0]
    raise PreconditionFailedError(
        f"Environment '{environment.name}' has no data-bearing node to back up."
    )


def covered_nodes(environment: Environment, source: Node) -> tuple[Node, ...]:
    """Return nodes whose data is represented by a dump of *source*."""
    if not source.role.is_replica_member:
        return (source,)
    return tuple(
        node
        for node in environment.nodes
        if node.role.is_replica_member and node.role.is_data_bearing
    )


class BackupEngine:
    """Produce one :class:`BackupArtifact` per run and apply retention."""

    def __init__(self, context: EngineContext) -> None:
        """Store the engine context."""
        self._context = context
        self.phase = BackupPhase.IDLE

    def backup(self, environment: Environment, policy: BackupPolicy | None = None) -> OperationResult:
        """Back up *environment* according to *policy* (defaults to its declared policy)."""
        context = self._context
        effective = policy or environment.desired.backup
        if context.cancel.cancelled:
            return build_result(
                environment.name,
                OperationKind.BACKUP,
                [cancelled_result(node) for node in environment.nodes],
            )

        try:
            source = select_source(environment)
        except PreconditionFailedError as exc:
            logger.warning("backup of %s refused: %s", environment.name, exc)
            return build_result(
                environment.name,
                OperationKind.BACKUP,
                [failed_result(node, exc, phase=BackupPhase.IDLE.value) for node in environment.nodes],
                metadata={"phase": BackupPhase.FAILED.value},
            )
        covered = covered_nodes(environment, source)
        with context.locks.environment_lock(environment.name) as handle:
            self.phase = BackupPhase.IDLE
            metadata: dict[str, object] = {
                "source": source.name,
                "lock_wait_ms": handle.wait_ms,
                "retention_days": effective.retention_days,
            }
            try:
                artifact = self._run(environment, source, covered, effective)
            except NODE_ERRORS as exc:
                failed_phase = self.phase
                self.phase = BackupPhase.FAILED
                logger.warning("backup of %s failed during %s: %s", environment.name, failed_phase.value, exc)
                metadata["phase"] = BackupPhase.FAILED.value
                results = self._node_results(
                    environment,
                    source,
                    covered,
                    failed_result(source, exc, phase=failed_phase.value),
                    aborted=True,
                )
                return build_result(
                    environment.name, OperationKind.BACKUP, results, metadata=metadata
                )

            self.phase = BackupPhase.ROTATING_RETENTION
            deleted, warnings = self.rotate(
                environment.name,
                effective.retention_days,
                keep=artifact.name,
            )
            self.phase = BackupPhase.DONE
            metadata["phase"] = BackupPhase.DONE.value
            metadata["rotated"] = deleted

        source_result = NodeResult(
            node=source.name,
            status=NodeStatus.CHANGED,
            message=f"Created {artifact.name}.",
            detail={
                "artifact": artifact.name,
                "checksum": artifact.checksum,
                "size_bytes": artifact.size_bytes,
                "phase": BackupPhase.DONE.value,
            },
        )
        results = self._node_results(environment, source, covered, source_result, aborted=False)
        return build_result(
            environment.name,
            OperationKind.BACKUP,
            results,
            artifact=artifact,
            warnings=warnings,
            metadata=metadata,
        )

    # State machine ---------------------------------------------------------
    def _run(
        self,
        environment: Environment,
        source: Node,
        covered: Sequence[Node],
        policy: BackupPolicy,
    ) -> BackupArtifact:
        context = self._context
        store = context.store
        started = store.next_timestamp(environment.name, context.clock())
        final_name = artifact_name(environment.name, started, compressed=policy.compression)
        remote_dir = PurePosixPath(context.config.backups.remote_dir)
        remote_path = str(remote_dir / artifact_name(environment.name, started, compressed=False))
        remote_files = [remote_path]
        timeout = context.config.backups.dump_timeout

        try:
            self.phase = BackupPhase.DUMPING
            if policy.databases:
                databases = list(policy.databases)
            else:
                databases = [
                    name
                    for name in context.database.list_databases(source)
                    if name not in SYSTEM_DATABASES
                ]
            # A point-in-time oplog only applies to full dumps of replica members.
            oplog = source.role.is_replica_member and not policy.databases
            context.database.dump(
                source,
                remote_path,
                databases=policy.databases,
                oplog=oplog,
                timeout=timeout,
            )

            self.phase = BackupPhase.COMPRESSING
            if policy.compression:
                remote_path = context.host.compress(source, remote_path)
                remote_files.append(remote_path)

            self.phase = BackupPhase.TRANSFERRING
            store.ensure_environment_dir(environment.name)
            partial = store.partial_path(environment.name, final_name)
            try:
                context.host.fetch(source, remote_path, partial, timeout=timeout)
                return store.commit(
                    environment.name,
                    partial,
                    timestamp=started,
                    nodes=[node.name for node in covered],
                    compressed=policy.compression,
                    databases=databases,
                    oplog=oplog,
                )
            except BaseException:
                store.discard(partial)
                raise
        finally:
            self._cleanup(source, remote_files)

    def _cleanup(self, source: Node, remote_files: Sequence[str]) -> None:
        for path in remote_files:
            try:
                self._context.host.remove(source, path)
            except FleetError as exc:
                logger.warning("%s: unable to remove %s: %s", source.name, path, exc)

    # Retention -----------------------------------------------------------------
    def rotate(
        self,
        environment: str,
        retention_days: int,
        *,
        keep: str | None = None,
        now: datetime | None = None,
    ) -> tuple[list[str], list[str]]:
        """Delete artifacts older than *retention_days*, oldest first.

        Stops at the first deletion failure. Returns the deleted artifact
        names and any warnings; failures here never fail the backup.
        """
        store = self._context.store
        reference = now or self._context.clock()
        cutoff = reference - timedelta(days=retention_days)
        deleted: list[str] = []
        warnings: list[str] = []
        try:
            artifacts = store.list_artifacts(environment)
        except BackupStoreError as exc:
            return deleted, [f"Retention skipped: {exc}"]
        for artifact in artifacts:
            if artifact.name == keep or artifact.timestamp >= cutoff:
                continue
            try:
                store.delete(artifact)
            except BackupStoreError as exc:
                warnings.append(f"Retention stopped at {artifact.name}: {exc}")
                break
            logger.info("retention removed %s", artifact.name)
            deleted.append(artifact.name)
        return deleted, warnings

    # Results ---------------------------------------------------------------------
    def _node_results(
        self,
        environment: Environment,
        source: Node,
        covered: Sequence[Node],
        source_result: NodeResult,
        *,
        aborted: bool,
    ) -> list[NodeResult]:
        covered_names = {node.name for node in covered}
        results: list[NodeResult] = []
        for node in environment.nodes:
            if node.name == source.name:
                results.append(source_result)
            elif aborted:
                results.append(skipped_result(node, "Backup aborted."))
            elif node.name in covered_names:
                results.append(
                    NodeResult(
                        node=node.name,
                        status=NodeStatus.OK,
                        message=f"Covered by dump from {source.name}.",
                    )
                )
            elif node.role is NodeRole.ARBITER:
                results.append(skipped_result(node, "Arbiter holds no data."))
            else:
                results.append(skipped_result(node, "Not selected as backup source."))
        return results


__all__ = ["BackupEngine", "BackupPhase", "covered_nodes", "select_source"]
