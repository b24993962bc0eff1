"""Convergence engine: reconcile observed node state with the desired configuration.

For each node the engine probes a fresh :class:`ObservedState`, derives an
ordered action list with :func:`plan_actions` and applies it. Nodes converge
in parallel on a bounded worker pool; the only cross-node dependency is the
replica-set barrier: a secondary or arbiter join waits until the primary has
finished converging and reports itself healthy and writable.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import Enum

from packaging.version import InvalidVersion, Version

from ..errors import (
    CancelledError,
    OperationTimeoutError,
    PreconditionFailedError,
    UnreachableError,
)
from ..models import (
    DesiredConfig,
    Environment,
    Node,
    NodeResult,
    NodeRole,
    NodeStatus,
    ObservedState,
    OperationKind,
    OperationResult,
    build_result,
)
from ..providers import ReplicaStatus
from ..templates import RenderedFile
from ..workers import CancelToken, run_per_node
from .base import NODE_ERRORS, EngineContext, failed_result

logger = logging.getLogger(__name__)

CONFIG_TEMPLATE = "mongod.conf.j2"
_RELEASE_PATTERN = re.compile(r"^v?(\d+(?:\.\d+)*)(?:[-_+].*)?$")


class ActionKind(str, Enum):
    """Reconciliation steps, declared in the order they are applied."""

    CONTAINER = "container"
    CONFIG = "config"
    RESTART = "restart"
    AUTH = "auth"
    REPLICA_INITIATE = "replica_initiate"
    REPLICA_JOIN = "replica_join"


@dataclass(slots=True, frozen=True)
class Action:
    """One planned reconciliation step for a node."""

    kind: ActionKind
    description: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"action": self.kind.value, "description": self.description}


def parse_version(value: str, *, label: str) -> Version:
    """Parse *value* as a server version, mapping errors to a precondition failure.

    Image tags such as ``7.0.5-jammy`` are compared on their release segment.
    """
    match = _RELEASE_PATTERN.match(value.strip())
    try:
        return Version(match.group(1) if match else value)
    except InvalidVersion as exc:
        raise PreconditionFailedError(f"Invalid {label} version '{value}'.") from exc


def plan_actions(
    node: Node,
    desired: DesiredConfig,
    observed: ObservedState,
    rendered: RenderedFile,
) -> list[Action]:
    """Return the ordered actions needed to bring *observed* to *desired*.

    Raises :class:`PreconditionFailedError` for unsupported transitions such
    as a version downgrade.
    """
    if observed.version is not None:
        target = parse_version(desired.version, label="desired")
        current = parse_version(observed.version, label="observed")
        if target < current:
            raise PreconditionFailedError(
                f"Downgrade from {current} to {target} is not supported."
            )

    actions: list[Action] = []
    container_changed = not observed.container_running or observed.image != desired.image_ref
    if container_changed:
        actions.append(
            Action(ActionKind.CONTAINER, f"run {desired.image_ref} (observed {observed.image or 'none'})")
        )

    config_changed = observed.config_checksum != rendered.checksum
    if config_changed:
        actions.append(Action(ActionKind.CONFIG, f"write {rendered.template}"))

    if config_changed or container_changed:
        actions.append(Action(ActionKind.RESTART, "restart database service"))

    if (
        desired.auth.enabled
        and node.role in (NodeRole.PRIMARY, NodeRole.STANDALONE)
        and not observed.root_user_present
    ):
        actions.append(Action(ActionKind.AUTH, f"create root user {desired.auth.root_user}"))

    if node.role.is_replica_member:
        if not desired.replica_set:
            raise PreconditionFailedError(
                f"Role '{node.role.value}' requires a replica_set in the desired configuration."
            )
        if not observed.replica_member:
            if node.role is NodeRole.PRIMARY:
                actions.append(
                    Action(ActionKind.REPLICA_INITIATE, f"initiate replica set {desired.replica_set}")
                )
            else:
                actions.append(
                    Action(ActionKind.REPLICA_JOIN, f"join replica set {desired.replica_set}")
                )
    return actions


class PrimaryBarrier:
    """Signal from the primary's worker to workers waiting to join the replica set."""

    def __init__(self, primary: Node | None) -> None:
        """Track completion for *primary* (``None`` when no primary is declared)."""
        self.primary = primary
        self._done = threading.Event()
        self._succeeded = False

    def release(self, *, succeeded: bool) -> None:
        """Mark the primary's convergence as finished."""
        self._succeeded = succeeded
        self._done.set()

    def wait_done(
        self,
        timeout: float,
        cancel: CancelToken | None = None,
        *,
        interval: float = 0.05,
    ) -> bool:
        """Wait up to *timeout* seconds for :meth:`release`.

        Returns ``False`` early once *cancel* fires; a primary that was never
        dispatched never releases the barrier.
        """
        deadline = time.monotonic() + max(0.0, timeout)
        while not self._done.is_set():
            if cancel is not None and cancel.cancelled:
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._done.wait(min(interval, remaining))
        return True

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the primary converged without failure."""
        return self._succeeded


class ConvergenceEngine:
    """Compute and apply the actions that converge an environment."""

    def __init__(self, context: EngineContext) -> None:
        """Store the engine context."""
        self._context = context

    def converge(
        self,
        environment: Environment,
        desired: DesiredConfig | None = None,
        *,
        dry_run: bool = False,
    ) -> OperationResult:
        """Converge every node of *environment*.

        *desired* overrides the per-node desired configuration when given;
        it is bound onto every node so providers see the same credentials.
        """
        context = self._context
        if desired is not None:
            environment = replace(
                environment,
                nodes=tuple(replace(node, desired=desired) for node in environment.nodes),
                desired=desired,
            )
        barrier = PrimaryBarrier(environment.primary)
        # Dispatch the primary first so a small pool never blocks on waiting joins.
        dispatch = sorted(environment.nodes, key=lambda node: node.role is not NodeRole.PRIMARY)

        def task(node: Node) -> NodeResult:
            return self._converge_node(
                environment,
                node,
                environment.desired_for(node),
                barrier,
                dry_run=dry_run,
            )

        results = run_per_node(
            dispatch,
            task,
            max_concurrency=context.max_concurrency,
            cancel=context.cancel,
        )
        by_name = {result.node: result for result in results}
        ordered = [by_name[node.name] for node in environment.nodes]
        return build_result(
            environment.name,
            OperationKind.DEPLOY,
            ordered,
            metadata={"dry_run": dry_run},
        )

    # Probing -------------------------------------------------------------
    def observe(self, node: Node, desired: DesiredConfig) -> ObservedState:
        """Probe a fresh :class:`ObservedState` for *node*."""
        context = self._context
        info = context.container.inspect(node)
        checksum = context.host.checksum(node, context.config.container.config_path)
        healthy = info.running and context.database.ping(node)
        auth_ok: bool | None = None
        if healthy and desired.auth.enabled:
            auth_ok = context.database.authenticate(node)
        replica = ReplicaStatus()
        if healthy and auth_ok is not False:
            replica = context.database.replica_status(node)
        return ObservedState(
            node=node.name,
            reachable=True,
            container_running=info.running,
            image=info.image,
            version=info.version,
            config_checksum=checksum,
            replica_role=replica.role,
            replica_member=replica.member,
            replica_lag_seconds=replica.lag_seconds,
            auth_reachable=auth_ok,
            root_user_present=auth_ok if desired.auth.enabled else None,
            probed_at=context.clock(),
        )

    def render_config(self, environment: Environment, node: Node, desired: DesiredConfig) -> RenderedFile:
        """Render ``mongod.conf`` for *node*."""
        return self._context.templates.render(
            CONFIG_TEMPLATE,
            {
                "environment": environment.name,
                "node_name": node.name,
                "storage": desired.storage,
                "auth": desired.auth,
                "replica_set": desired.replica_set if node.role.is_replica_member else None,
                "port": self._context.config.database.port,
                "bind_ip": desired.bind_ip,
            },
        )

    # Per-node work ------------------------------------------------------
    def _converge_node(
        self,
        environment: Environment,
        node: Node,
        desired: DesiredConfig,
        barrier: PrimaryBarrier,
        *,
        dry_run: bool,
    ) -> NodeResult:
        is_primary = barrier.primary is not None and node.name == barrier.primary.name
        result: NodeResult | None = None
        try:
            result = self._plan_and_apply(environment, node, desired, barrier, dry_run=dry_run)
            return result
        finally:
            if is_primary:
                barrier.release(succeeded=result is not None and not result.is_failure)

    def _plan_and_apply(
        self,
        environment: Environment,
        node: Node,
        desired: DesiredConfig,
        barrier: PrimaryBarrier,
        *,
        dry_run: bool,
    ) -> NodeResult:
        try:
            rendered = self.render_config(environment, node, desired)
            observed = self.observe(node, desired)
            actions = plan_actions(node, desired, observed, rendered)
        except NODE_ERRORS as exc:
            return failed_result(node, exc, phase="plan")

        planned = [action.to_dict() for action in actions]
        if not actions:
            return NodeResult(
                node=node.name,
                status=NodeStatus.OK,
                message="Converged; no changes needed.",
                detail={"actions": []},
            )
        if dry_run:
            return NodeResult(
                node=node.name,
                status=NodeStatus.SKIPPED,
                message=f"Dry-run: {len(actions)} action(s) planned.",
                detail={"actions": planned, "would_change": True},
            )

        applied: list[str] = []
        for action in actions:
            if self._context.cancel.cancelled:
                return _cancelled(node, f"Cancelled before {action.kind.value}.", applied, planned)
            try:
                self._apply(node, desired, action, rendered, barrier)
            except CancelledError as exc:
                return _cancelled(node, str(exc), applied, planned)
            except NODE_ERRORS as exc:
                logger.warning("%s: %s failed: %s", node.name, action.kind.value, exc)
                return failed_result(
                    node,
                    exc,
                    phase=action.kind.value,
                    applied=applied,
                    actions=planned,
                )
            applied.append(action.kind.value)
        return NodeResult(
            node=node.name,
            status=NodeStatus.CHANGED,
            message=f"Applied {len(applied)} action(s): {', '.join(applied)}.",
            detail={"actions": planned, "applied": applied},
        )

    def _apply(
        self,
        node: Node,
        desired: DesiredConfig,
        action: Action,
        rendered: RenderedFile,
        barrier: PrimaryBarrier,
    ) -> None:
        context = self._context
        config_path = context.config.container.config_path
        port = context.config.database.port
        logger.debug("%s: applying %s", node.name, action.description)
        if action.kind is ActionKind.CONTAINER:
            context.container.ensure_running(node, desired.image_ref, config_path)
        elif action.kind is ActionKind.CONFIG:
            context.host.write_config(node, rendered, config_path)
        elif action.kind is ActionKind.RESTART:
            context.container.restart(node)
        elif action.kind is ActionKind.AUTH:
            context.database.create_root_user(node, desired.auth)
        elif action.kind is ActionKind.REPLICA_INITIATE:
            context.database.replica_initiate(
                node, desired.replica_set or "", node.member_address(port)
            )
        elif action.kind is ActionKind.REPLICA_JOIN:
            primary = self._wait_for_primary(node, barrier)
            context.database.replica_add(
                primary, node.member_address(port), arbiter=node.role is NodeRole.ARBITER
            )

    def _wait_for_primary(self, node: Node, barrier: PrimaryBarrier) -> Node:
        """Block until the primary converged and reports healthy, or time out."""
        context = self._context
        primary = barrier.primary
        if primary is None:
            raise PreconditionFailedError(
                f"{node.name} must join a replica set but the environment declares no primary."
            )
        timeout = context.config.replica.bootstrap_timeout
        interval = context.config.replica.poll_interval
        deadline = context.monotonic() + timeout
        logger.debug("%s: waiting for primary %s", node.name, primary.name)
        if not barrier.wait_done(deadline - context.monotonic(), context.cancel):
            if context.cancel.cancelled:
                raise CancelledError(f"Cancelled while waiting for primary {primary.name}.")
            raise OperationTimeoutError(
                f"Primary {primary.name} did not finish converging within {timeout:g}s."
            )
        if not barrier.succeeded:
            raise PreconditionFailedError(
                f"Primary {primary.name} failed to converge; not joining the replica set."
            )
        while True:
            if self._primary_healthy(primary):
                return primary
            if context.cancel.cancelled:
                raise CancelledError(f"Cancelled while waiting for primary {primary.name}.")
            remaining = deadline - context.monotonic()
            if remaining <= 0:
                raise OperationTimeoutError(
                    f"Primary {primary.name} not healthy after {timeout:g}s."
                )
            context.sleep(min(interval, remaining))

    def _primary_healthy(self, primary: Node) -> bool:
        database = self._context.database
        try:
            return database.ping(primary) and database.replica_status(primary).is_primary
        except UnreachableError:
            return False


def _cancelled(
    node: Node, message: str, applied: list[str], planned: list[dict[str, str]]
) -> NodeResult:
    """Stop *node* on cancellation; already applied actions make it a failure."""
    return NodeResult(
        node=node.name,
        status=NodeStatus.FAILED if applied else NodeStatus.SKIPPED,
        message=message,
        detail={"error": "cancelled", "applied": applied, "actions": planned},
    )


def summarize_actions(results: Sequence[NodeResult]) -> int:
    """Return how many actions were applied across *results*."""
    total = 0
    for result in results:
        applied = (result.detail or {}).get("applied")
        if isinstance(applied, list):
            total += len(applied)
    return total


__all__ = [
    "Action",
    "ActionKind",
    "ConvergenceEngine",
    "PrimaryBarrier",
    "plan_actions",
    "summarize_actions",
]
