"""Data model shared by the inventory, engines and orchestrator."""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


class NodeRole(str, Enum):
    """Role a node plays in its environment."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    ARBITER = "arbiter"
    STANDALONE = "standalone"

    @property
    def is_data_bearing(self) -> bool:
        """Return ``True`` when the node stores data (i.e. is not an arbiter)."""
        return self is not NodeRole.ARBITER

    @property
    def is_replica_member(self) -> bool:
        """Return ``True`` when the role implies replica-set membership."""
        return self is not NodeRole.STANDALONE


@dataclass(slots=True, frozen=True)
class AuthPolicy:
    """Authentication settings for the database fleet."""

    enabled: bool = False
    root_user: str = "admin"
    root_password_ref: str | None = None
    key_file: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (credential references only)."""
        return {
            "enabled": self.enabled,
            "root_user": self.root_user,
            "root_password_ref": self.root_password_ref,
            "key_file": self.key_file,
        }


@dataclass(slots=True, frozen=True)
class StorageConfig:
    """Storage engine parameters rendered into ``mongod.conf``."""

    engine: str = "wiredTiger"
    cache_size_gb: float | None = None
    directory_per_db: bool = False
    oplog_size_mb: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "engine": self.engine,
            "cache_size_gb": self.cache_size_gb,
            "directory_per_db": self.directory_per_db,
            "oplog_size_mb": self.oplog_size_mb,
        }


@dataclass(slots=True, frozen=True)
class BackupPolicy:
    """How and how long backups are kept for an environment."""

    schedule: str | None = None
    retention_days: int = 7
    compression: bool = True
    databases: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "schedule": self.schedule,
            "retention_days": self.retention_days,
            "compression": self.compression,
            "databases": list(self.databases),
        }


@dataclass(slots=True, frozen=True)
class DesiredConfig:
    """Declared target configuration for every node in an environment."""

    version: str
    image: str = "mongo"
    auth: AuthPolicy = field(default_factory=AuthPolicy)
    storage: StorageConfig = field(default_factory=StorageConfig)
    replica_set: str | None = None
    backup: BackupPolicy = field(default_factory=BackupPolicy)
    bind_ip: str = "0.0.0.0"

    @property
    def image_ref(self) -> str:
        """Return the container image reference for the desired version."""
        return f"{self.image}:{self.version}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "image": self.image,
            "auth": self.auth.to_dict(),
            "storage": self.storage.to_dict(),
            "replica_set": self.replica_set,
            "backup": self.backup.to_dict(),
            "bind_ip": self.bind_ip,
        }


@dataclass(slots=True, frozen=True)
class Node:
    """A single member of a database fleet."""

    name: str
    host: str
    role: NodeRole = NodeRole.STANDALONE
    ssh_port: int = 22
    ssh_user: str | None = None
    ssh_key: str | None = None
    credentials_ref: str | None = None
    desired: DesiredConfig | None = None

    @property
    def id(self) -> str:
        """Return the identifier used in operation results."""
        return self.name

    def member_address(self, port: int) -> str:
        """Return ``host:port`` as used in replica-set configuration."""
        return f"{self.host}:{port}"


@dataclass(slots=True, frozen=True)
class Environment:
    """Named, ordered set of fleet nodes sharing one desired configuration."""

    name: str
    nodes: tuple[Node, ...]
    desired: DesiredConfig

    def __post_init__(self) -> None:
        """Reject empty environments."""
        if not self.nodes:
            raise ValueError(f"Environment '{self.name}' must contain at least one node.")

    @property
    def primary(self) -> Node | None:
        """Return the declared replica-set primary, if any."""
        for node in self.nodes:
            if node.role is NodeRole.PRIMARY:
                return node
        return None

    @property
    def data_nodes(self) -> tuple[Node, ...]:
        """Return the data-bearing nodes in inventory order."""
        return tuple(node for node in self.nodes if node.role.is_data_bearing)

    def desired_for(self, node: Node) -> DesiredConfig:
        """Return the desired config for *node* (node snapshot wins)."""
        return node.desired or self.desired


@dataclass(slots=True, frozen=True)
class ObservedState:
    """Point-in-time snapshot of a node produced by probes."""

    node: str
    reachable: bool
    container_running: bool = False
    image: str | None = None
    version: str | None = None
    config_checksum: str | None = None
    replica_role: str | None = None
    replica_member: bool = False
    replica_lag_seconds: float | None = None
    disk_usage_percent: float | None = None
    auth_reachable: bool | None = None
    root_user_present: bool | None = None
    probed_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "node": self.node,
            "reachable": self.reachable,
            "container_running": self.container_running,
            "image": self.image,
            "version": self.version,
            "config_checksum": self.config_checksum,
            "replica_role": self.replica_role,
            "replica_member": self.replica_member,
            "replica_lag_seconds": self.replica_lag_seconds,
            "disk_usage_percent": self.disk_usage_percent,
            "auth_reachable": self.auth_reachable,
            "root_user_present": self.root_user_present,
            "probed_at": format_timestamp(self.probed_at),
        }


@dataclass(slots=True, frozen=True)
class BackupArtifact:
    """Immutable backup output file plus its metadata."""

    environment: str
    timestamp: datetime
    nodes: tuple[str, ...]
    path: Path
    size_bytes: int
    compressed: bool
    checksum: str
    databases: tuple[str, ...] = ()
    oplog: bool = False

    @property
    def name(self) -> str:
        """Return the artifact file name."""
        return self.path.name

    def age_days(self, now: datetime | None = None) -> float:
        """Return the artifact age in days relative to *now*."""
        reference = now or datetime.now(tz=UTC)
        return (reference - self.timestamp).total_seconds() / 86400

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "environment": self.environment,
            "timestamp": format_timestamp(self.timestamp),
            "nodes": list(self.nodes),
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "compressed": self.compressed,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "databases": list(self.databases),
            "oplog": self.oplog,
        }


class OperationKind(str, Enum):
    """Operations the orchestrator can run against an environment."""

    DEPLOY = "deploy"
    BACKUP = "backup"
    RESTORE = "restore"
    MAINTENANCE = "maintenance"

    @classmethod
    def parse(cls, value: str) -> OperationKind:
        """Return the kind named by *value* (``status`` aliases maintenance)."""
        normalised = value.strip().lower()
        if normalised == "status":
            return cls.MAINTENANCE
        try:
            return cls(normalised)
        except ValueError:
            allowed = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Invalid operation '{value}'. Valid options: {allowed}.") from None


@dataclass(slots=True, frozen=True)
class DeployOptions:
    """Options accepted by the deploy operation."""

    dry_run: bool = False


@dataclass(slots=True, frozen=True)
class RestoreOptions:
    """Options accepted by the restore operation.

    ``confirmation_token`` must be supplied explicitly by the caller whenever
    ``drop_existing`` is set; it is never defaulted.
    """

    artifact: str
    database_filter: str | None = None
    drop_existing: bool = False
    confirmation_token: str | None = None


@dataclass(slots=True, frozen=True)
class OperationRequest:
    """A single request handed to the orchestrator."""

    environment: str
    kind: OperationKind
    options: DeployOptions | RestoreOptions | None = None


class NodeStatus(str, Enum):
    """Per-node outcome of an operation."""

    OK = "ok"
    CHANGED = "changed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def severity(self) -> int:
        """Return the rank used to compute the worst-of status."""
        return STATUS_ORDER[self]


STATUS_ORDER: Mapping[NodeStatus, int] = {
    NodeStatus.OK: 0,
    NodeStatus.SKIPPED: 1,
    NodeStatus.CHANGED: 2,
    NodeStatus.FAILED: 3,
}


@dataclass(slots=True, frozen=True)
class NodeResult:
    """Outcome for one node."""

    node: str
    status: NodeStatus
    message: str
    detail: Mapping[str, Any] | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the node failed."""
        return self.status is NodeStatus.FAILED

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "node": self.node,
            "status": self.status.value,
            "message": self.message,
        }
        if self.detail:
            payload["detail"] = _sanitize_payload(self.detail)
        return payload


def aggregate_status(results: Iterable[NodeResult]) -> NodeStatus:
    """Return the worst status found in *results* (``ok`` when empty)."""
    worst = NodeStatus.OK
    for result in results:
        if result.status.severity > worst.severity:
            worst = result.status
    return worst


@dataclass(slots=True, frozen=True)
class OperationResult:
    """Aggregated per-node outcomes for one operation request."""

    environment: str
    kind: OperationKind
    nodes: tuple[NodeResult, ...]
    status: NodeStatus
    artifact: BackupArtifact | None = None
    warnings: tuple[str, ...] = ()
    metadata: Mapping[str, Any] | None = None

    @property
    def failed(self) -> bool:
        """Return ``True`` when any node failed."""
        return self.status is NodeStatus.FAILED

    def node(self, name: str) -> NodeResult:
        """Return the result recorded for node *name*."""
        for result in self.nodes:
            if result.node == name:
                return result
        raise KeyError(name)

    def totals(self) -> dict[str, int]:
        """Return the number of nodes per status."""
        counts = {status.value: 0 for status in NodeStatus}
        for result in self.nodes:
            counts[result.status.value] += 1
        return counts

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable mapping of the result."""
        payload: dict[str, object] = {
            "environment": self.environment,
            "operation": self.kind.value,
            "status": self.status.value,
            "totals": self.totals(),
            "nodes": [result.to_dict() for result in self.nodes],
        }
        if self.artifact is not None:
            payload["artifact"] = self.artifact.to_dict()
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        if self.metadata:
            payload["metadata"] = _sanitize_payload(self.metadata)
        return payload


def build_result(
    environment: str,
    kind: OperationKind,
    results: Sequence[NodeResult],
    *,
    artifact: BackupArtifact | None = None,
    warnings: Iterable[str] = (),
    metadata: Mapping[str, Any] | None = None,
) -> OperationResult:
    """Create an :class:`OperationResult` with the worst-of overall status."""
    return OperationResult(
        environment=environment,
        kind=kind,
        nodes=tuple(results),
        status=aggregate_status(results),
        artifact=artifact,
        warnings=tuple(warnings),
        metadata=metadata,
    )


def format_timestamp(value: datetime) -> str:
    """Render *value* as an ISO-8601 UTC timestamp with a ``Z`` suffix."""
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp produced by :func:`format_timestamp`."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


__all__ = [
    "AuthPolicy",
    "BackupArtifact",
    "BackupPolicy",
    "DeployOptions",
    "DesiredConfig",
    "Environment",
    "Node",
    "NodeResult",
    "NodeRole",
    "NodeStatus",
    "ObservedState",
    "OperationKind",
    "OperationRequest",
    "OperationResult",
    "RestoreOptions",
    "STATUS_ORDER",
    "StorageConfig",
    "aggregate_status",
    "build_result",
    "format_timestamp",
    "parse_timestamp",
]
