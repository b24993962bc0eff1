"""Restore engine: gated, validated restore of a backup artifact.

Preconditions are checked before any side effect:

1. ``drop_existing`` requires an explicit confirmation token equal to the
   environment name (:class:`ConfirmationRequiredError` otherwise).
2. The artifact must exist, match its recorded checksum and carry the
   expected file magic (:class:`ArtifactInvalidError` otherwise).

Execution then runs ``transfer -> drop -> restore -> verify`` on each target
node, one node at a time. There is no rollback: a failure during ``drop`` or
``restore`` leaves the node as it is, and the result names the failed phase.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from pathlib import PurePosixPath

from ..errors import ConfirmationRequiredError, FleetError
from ..models import (
    BackupArtifact,
    Environment,
    Node,
    NodeResult,
    NodeRole,
    NodeStatus,
    OperationKind,
    OperationResult,
    RestoreOptions,
    build_result,
)
from ..providers import SYSTEM_DATABASES
from ..workers import run_serial
from .base import NODE_ERRORS, EngineContext, failed_result, skipped_result

logger = logging.getLogger(__name__)

NO_ROLLBACK_WARNING = (
    "Restore is not transactional and has no automatic rollback; a failed drop or "
    "restore can leave the target with partially restored data."
)


class RestorePhase(str, Enum):
    """Phases executed on each restore target."""

    TRANSFER = "transfer"
    DROP = "drop"
    RESTORE = "restore"
    VERIFY = "verify"


class VerificationError(FleetError):
    """Raised when post-restore verification does not find the expected data."""

    kind = "verification_failed"


def check_confirmation(environment: Environment, options: RestoreOptions) -> None:
    """Enforce the explicit confirmation gate for destructive restores."""
    if not options.drop_existing:
        return
    token = options.confirmation_token
    if token is None or not token.strip():
        raise ConfirmationRequiredError(
            "Restore with drop_existing requires an explicit confirmation token "
            f"(pass the environment name '{environment.name}')."
        )
    if token.strip() != environment.name:
        raise ConfirmationRequiredError(
            f"Confirmation token does not match environment '{environment.name}'."
        )


def restore_targets(environment: Environment) -> tuple[Node, ...]:
    """Return the nodes a restore is applied to."""
    primary = environment.primary
    if primary is not None:
        standalone = tuple(
            node for node in environment.nodes if node.role is NodeRole.STANDALONE
        )
        return (primary, *standalone)
    return environment.data_nodes


class RestoreEngine:
    """Validate and restore artifacts onto an environment."""

    def __init__(self, context: EngineContext) -> None:
        """Store the engine context."""
        self._context = context

    def restore(self, environment: Environment, options: RestoreOptions) -> OperationResult:
        """Restore *options.artifact* onto *environment*.

        Raises :class:`ConfirmationRequiredError` or
        :class:`ArtifactInvalidError` before touching any node.
        """
        context = self._context
        check_confirmation(environment, options)
        with context.locks.environment_lock(environment.name) as handle:
            artifact = context.store.resolve(environment.name, options.artifact)
            context.store.validate(artifact)

            targets = restore_targets(environment)
            target_names = {node.name for node in targets}
            logger.info(
                "restoring %s onto %s (database=%s, drop=%s)",
                artifact.name,
                ", ".join(sorted(target_names)),
                options.database_filter or "*",
                options.drop_existing,
            )
            restored = run_serial(
                targets,
                lambda node: self._restore_node(node, artifact, options),
                cancel=context.cancel,
            )

        by_name = {result.node: result for result in restored}
        results: list[NodeResult] = []
        for node in environment.nodes:
            if node.name in by_name:
                results.append(by_name[node.name])
            elif node.role is NodeRole.ARBITER:
                results.append(skipped_result(node, "Arbiter holds no data."))
            else:
                results.append(skipped_result(node, "Receives restored data via replication."))

        warnings: list[str] = []
        if any(result.is_failure for result in restored):
            warnings.append(NO_ROLLBACK_WARNING)
        return build_result(
            environment.name,
            OperationKind.RESTORE,
            results,
            artifact=artifact,
            warnings=warnings,
            metadata={
                "database_filter": options.database_filter,
                "drop_existing": options.drop_existing,
                "lock_wait_ms": handle.wait_ms,
                "rollback": "none",
            },
        )

    # Per-node phases -------------------------------------------------------
    def _restore_node(
        self,
        node: Node,
        artifact: BackupArtifact,
        options: RestoreOptions,
    ) -> NodeResult:
        context = self._context
        remote_path = str(PurePosixPath(context.config.backups.remote_dir) / artifact.name)
        timeout = context.config.backups.dump_timeout
        phase = RestorePhase.TRANSFER
        transferred = False
        try:
            context.host.upload(node, artifact.path, remote_path, timeout=timeout)
            transferred = True

            dropped: list[str] = []
            if options.drop_existing:
                phase = RestorePhase.DROP
                for name in self._databases_to_drop(node, artifact, options):
                    context.database.drop_database(node, name)
                    dropped.append(name)

            phase = RestorePhase.RESTORE
            context.database.restore(
                node,
                remote_path,
                database_filter=options.database_filter,
                compressed=artifact.compressed,
                oplog_replay=artifact.oplog and not options.database_filter,
                timeout=timeout,
            )

            phase = RestorePhase.VERIFY
            verification = self._verify(node, artifact, options)
        except NODE_ERRORS as exc:
            logger.warning("%s: restore failed during %s: %s", node.name, phase.value, exc)
            detail: dict[str, object] = {"phase": phase.value, "artifact": artifact.name}
            if phase in (RestorePhase.DROP, RestorePhase.RESTORE):
                detail["risk"] = NO_ROLLBACK_WARNING
            return failed_result(node, exc, **detail)
        finally:
            if transferred:
                self._cleanup(node, remote_path)

        return NodeResult(
            node=node.name,
            status=NodeStatus.CHANGED,
            message=f"Restored {artifact.name}.",
            detail={
                "artifact": artifact.name,
                "phase": RestorePhase.VERIFY.value,
                "dropped": dropped,
                "verification": verification,
            },
        )

    def _databases_to_drop(
        self,
        node: Node,
        artifact: BackupArtifact,
        options: RestoreOptions,
    ) -> Sequence[str]:
        if options.database_filter:
            return [options.database_filter]
        if artifact.databases:
            return [name for name in artifact.databases if name not in SYSTEM_DATABASES]
        return [
            name
            for name in self._context.database.list_databases(node)
            if name not in SYSTEM_DATABASES
        ]

    def _verify(
        self,
        node: Node,
        artifact: BackupArtifact,
        options: RestoreOptions,
    ) -> dict[str, object]:
        database = self._context.database
        if not database.ping(node):
            raise VerificationError(f"{node.name} is not answering after restore.")
        if options.database_filter:
            expected = [options.database_filter]
        else:
            expected = [name for name in artifact.databases if name not in SYSTEM_DATABASES]
        present = set(database.list_databases(node))
        missing = [name for name in expected if name not in present]
        if missing:
            raise VerificationError(
                f"{node.name} is missing restored database(s): {', '.join(missing)}."
            )
        return {name: database.database_stats(node, name) for name in expected}

    def _cleanup(self, node: Node, remote_path: str) -> None:
        try:
            self._context.host.remove(node, remote_path)
        except FleetError as exc:
            logger.warning("%s: unable to remove %s: %s", node.name, remote_path, exc)


__all__ = [
    "NO_ROLLBACK_WARNING",
    "RestoreEngine",
    "RestorePhase",
    "VerificationError",
    "check_confirmation",
    "restore_targets",
]
