"""Pytest configuration helpers and an in-memory database fleet for the test suite."""

from __future__ import annotations

import gzip
import hashlib
import json
import os
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest

from mongofleet.backups import ARCHIVE_MAGIC, BackupStore
from mongofleet.config import AppConfig, load_config
from mongofleet.engines import EngineContext
from mongofleet.errors import RemoteError, UnreachableError
from mongofleet.locking import LockManager
from mongofleet.models import (
    AuthPolicy,
    BackupPolicy,
    DesiredConfig,
    Environment,
    Node,
    NodeRole,
)
from mongofleet.providers import ContainerInfo, ReplicaStatus, SYSTEM_DATABASES
from mongofleet.templates import RenderedFile, TemplateEngine
from mongofleet.workers import CancelToken

FIXED_NOW = datetime(2024, 1, 1, 2, 0, 0, tzinfo=UTC)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip slow barrier/lock tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


# ---------------------------------------------------------------------------
# In-memory fleet
# ---------------------------------------------------------------------------


@dataclass
class FakeNodeState:
    """Everything the fake providers know about one node."""

    host: str
    container_exists: bool = False
    running: bool = False
    image: str | None = None
    files: dict[str, bytes] = field(default_factory=dict)
    replica_set: str | None = None
    replica_role: str | None = None
    initiated_role: str = "PRIMARY"
    lag_seconds: float | None = None
    users: set[str] = field(default_factory=set)
    databases: dict[str, dict[str, int]] = field(default_factory=dict)
    disk_percent: float = 40.0
    reachable: bool = True

    def snapshot(self) -> dict[str, object]:
        """Return a comparable copy of the observable state."""
        return {
            "container_exists": self.container_exists,
            "running": self.running,
            "image": self.image,
            "files": {path: hashlib.sha256(data).hexdigest() for path, data in self.files.items()},
            "replica_set": self.replica_set,
            "replica_role": self.replica_role,
            "users": sorted(self.users),
            "databases": {name: dict(stats) for name, stats in self.databases.items()},
        }


class FakeCluster:
    """Container runtime, database client and host files backed by dictionaries."""

    def __init__(self, environment: Environment) -> None:
        self.nodes = {node.name: FakeNodeState(host=node.host) for node in environment.nodes}
        self._by_host = {node.host: node.name for node in environment.nodes}
        self.calls: list[tuple[str, str]] = []
        self.mutations: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.dump_args: list[dict[str, object]] = []
        self.restore_args: list[dict[str, object]] = []
        self._lock = threading.Lock()

    # Helpers -----------------------------------------------------------
    def state(self, node: Node | str) -> FakeNodeState:
        name = node if isinstance(node, str) else node.name
        return self.nodes[name]

    def start_all(self, environment: Environment) -> None:
        """Mark every node as already deployed and joined as declared."""
        for node in environment.nodes:
            desired = environment.desired_for(node)
            state = self.state(node)
            state.container_exists = True
            state.running = True
            state.image = desired.image_ref
            if node.role.is_replica_member and desired.replica_set:
                state.replica_set = desired.replica_set
                state.replica_role = node.role.value.upper()

    def seed(self, node: str, databases: Mapping[str, Mapping[str, int]]) -> None:
        self.state(node).databases.update({name: dict(stats) for name, stats in databases.items()})

    def fail(self, method: str, node: str, exc: Exception) -> None:
        self.failures[(method, node)] = exc

    def snapshot(self) -> dict[str, dict[str, object]]:
        return {name: state.snapshot() for name, state in self.nodes.items()}

    def _touch(self, method: str, node: Node, *, mutating: bool = False) -> FakeNodeState:
        state = self.state(node)
        with self._lock:
            self.calls.append((method, node.name))
            if mutating:
                self.mutations.append((method, node.name))
        if not state.reachable:
            raise UnreachableError(f"{node.name}: connection refused")
        failure = self.failures.get((method, node.name))
        if failure is not None:
            raise failure
        return state

    # ContainerRuntime --------------------------------------------------
    def inspect(self, node: Node) -> ContainerInfo:
        state = self._touch("inspect", node)
        if not state.container_exists:
            return ContainerInfo(exists=False)
        return ContainerInfo(exists=True, running=state.running, image=state.image)

    def ensure_running(self, node: Node, image_ref: str, config_path: str) -> bool:
        state = self._touch("ensure_running", node, mutating=True)
        changed = not (state.running and state.image == image_ref)
        state.container_exists = True
        state.running = True
        state.image = image_ref
        return changed

    def restart(self, node: Node) -> None:
        state = self._touch("restart", node, mutating=True)
        state.running = True

    def stop(self, node: Node) -> None:
        state = self._touch("stop", node, mutating=True)
        state.running = False

    # DatabaseClient ----------------------------------------------------
    def ping(self, node: Node) -> bool:
        return self._touch("ping", node).running

    def authenticate(self, node: Node) -> bool:
        return bool(self._touch("authenticate", node).users)

    def replica_status(self, node: Node) -> ReplicaStatus:
        state = self._touch("replica_status", node)
        return ReplicaStatus(
            role=state.replica_role,
            member=state.replica_set is not None,
            set_name=state.replica_set,
            lag_seconds=state.lag_seconds,
        )

    def create_root_user(self, node: Node, auth: AuthPolicy) -> None:
        self._touch("create_root_user", node, mutating=True).users.add(auth.root_user)

    def replica_initiate(self, node: Node, replica_set: str, member_address: str) -> None:
        state = self._touch("replica_initiate", node, mutating=True)
        state.replica_set = replica_set
        state.replica_role = state.initiated_role

    def replica_add(self, primary: Node, member_address: str, *, arbiter: bool) -> None:
        source = self._touch("replica_add", primary, mutating=True)
        host = member_address.rsplit(":", 1)[0]
        member = self.nodes[self._by_host[host]]
        member.replica_set = source.replica_set
        member.replica_role = "ARBITER" if arbiter else "SECONDARY"

    def dump(
        self,
        node: Node,
        remote_path: str,
        *,
        databases: Iterable[str],
        oplog: bool,
        timeout: float,
    ) -> None:
        state = self._touch("dump", node, mutating=True)
        wanted = list(databases)
        self.dump_args.append({"node": node.name, "databases": wanted, "oplog": oplog})
        content = {
            name: stats
            for name, stats in state.databases.items()
            if not wanted or name in wanted
        }
        state.files[remote_path] = ARCHIVE_MAGIC + json.dumps(content, sort_keys=True).encode()

    def restore(
        self,
        node: Node,
        remote_path: str,
        *,
        database_filter: str | None,
        compressed: bool,
        timeout: float,
        oplog_replay: bool = False,
    ) -> None:
        state = self._touch("restore", node, mutating=True)
        self.restore_args.append(
            {"node": node.name, "database_filter": database_filter, "oplog_replay": oplog_replay}
        )
        data = state.files[remote_path]
        if compressed:
            data = gzip.decompress(data)
        content = json.loads(data[len(ARCHIVE_MAGIC) :].decode())
        for name, stats in content.items():
            if database_filter and name != database_filter:
                continue
            state.databases[name] = dict(stats)

    def drop_database(self, node: Node, name: str) -> None:
        self._touch("drop_database", node, mutating=True).databases.pop(name, None)

    def list_databases(self, node: Node) -> list[str]:
        state = self._touch("list_databases", node)
        return sorted(SYSTEM_DATABASES - {"config"}) + sorted(state.databases)

    def database_stats(self, node: Node, name: str) -> dict[str, int]:
        state = self._touch("database_stats", node)
        return dict(state.databases.get(name, {"collections": 0, "objects": 0}))

    # HostFiles -----------------------------------------------------------
    def checksum(self, node: Node, path: str) -> str | None:
        data = self._touch("checksum", node).files.get(path)
        return hashlib.sha256(data).hexdigest() if data is not None else None

    def write_config(self, node: Node, rendered: RenderedFile, path: str) -> None:
        self._touch("write_config", node, mutating=True).files[path] = rendered.content.encode()

    def compress(self, node: Node, path: str) -> str:
        state = self._touch("compress", node, mutating=True)
        state.files[f"{path}.gz"] = gzip.compress(state.files.pop(path), mtime=0)
        return f"{path}.gz"

    def fetch(self, node: Node, remote_path: str, local_path: Path, *, timeout: float) -> None:
        state = self._touch("fetch", node, mutating=True)
        if remote_path not in state.files:
            raise RemoteError(1, f"scp: {remote_path}: No such file or directory")
        local_path.write_bytes(state.files[remote_path])

    def upload(self, node: Node, local_path: Path, remote_path: str, *, timeout: float) -> None:
        self._touch("upload", node, mutating=True).files[remote_path] = local_path.read_bytes()

    def remove(self, node: Node, path: str) -> None:
        self._touch("remove", node, mutating=True).files.pop(path, None)

    def disk_usage_percent(self, node: Node, path: str) -> float:
        return self._touch("disk_usage_percent", node).disk_percent


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_environment(
    name: str = "staging",
    roles: Iterable[NodeRole] = (NodeRole.PRIMARY, NodeRole.SECONDARY),
    *,
    version: str = "7.0.5",
    replica_set: str | None = "rs0",
    auth: AuthPolicy | None = None,
    backup: BackupPolicy | None = None,
) -> Environment:
    """Build an environment of ``db1..dbN`` nodes sharing one desired config."""
    desired = DesiredConfig(
        version=version,
        auth=auth or AuthPolicy(),
        replica_set=replica_set,
        backup=backup or BackupPolicy(retention_days=7, compression=True),
    )
    nodes = tuple(
        Node(name=f"db{index}", host=f"db{index}.internal", role=role, desired=desired)
        for index, role in enumerate(roles, start=1)
    )
    return Environment(name=name, nodes=nodes, desired=desired)


@pytest.fixture
def environment_factory() -> Callable[..., Environment]:
    """Return :func:`make_environment` for tests needing custom topologies."""
    return make_environment


@pytest.fixture
def staging() -> Environment:
    """Two-node ``staging`` replica set (primary + secondary)."""
    return make_environment()


@pytest.fixture
def cluster(staging: Environment) -> FakeCluster:
    """Fresh in-memory fleet matching the ``staging`` environment."""
    return FakeCluster(staging)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in *tmp_path* with fast barrier polling and no retry sleeps."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "inventory_dir": str(tmp_path / "inventories"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 2.0,
            "replica": {"bootstrap_timeout": 2.0, "poll_interval": 0.01},
            "executor": {"backoff": 0.0},
            "backups": {"root": str(tmp_path / "backups")},
        },
    )


@pytest.fixture
def context_factory(app_config: AppConfig) -> Callable[..., EngineContext]:
    """Return a builder for engine contexts wired to a fake cluster."""

    def build(
        cluster: FakeCluster,
        *,
        config: AppConfig | None = None,
        cancel: CancelToken | None = None,
        clock: Callable[[], datetime] = lambda: FIXED_NOW,
    ) -> EngineContext:
        effective = config or app_config
        return EngineContext(
            config=effective,
            container=cluster,
            database=cluster,
            host=cluster,
            store=BackupStore(effective.backups.root),
            locks=LockManager(effective.runtime_dir, effective.lock_timeout),
            templates=TemplateEngine.with_overrides(None),
            cancel=cancel or CancelToken(),
            clock=clock,
        )

    return build


@pytest.fixture
def context(context_factory: Callable[..., EngineContext], cluster: FakeCluster) -> EngineContext:
    """Engine context for the ``staging`` fake cluster at :data:`FIXED_NOW`."""
    return context_factory(cluster)


def write_artifact(
    store: BackupStore,
    environment: str,
    timestamp: datetime,
    databases: Mapping[str, Mapping[str, int]] | None = None,
    *,
    compressed: bool = True,
    oplog: bool = False,
) -> Path:
    """Commit a well-formed artifact into *store* and return its path."""
    payload = ARCHIVE_MAGIC + json.dumps(dict(databases or {}), sort_keys=True).encode()
    if compressed:
        payload = gzip.compress(payload, mtime=0)
    store.ensure_environment_dir(environment)
    partial = store.environment_dir(environment) / ".seed.partial"
    partial.write_bytes(payload)
    artifact = store.commit(
        environment,
        partial,
        timestamp=timestamp,
        nodes=["db1"],
        compressed=compressed,
        databases=list((databases or {}).keys()),
        oplog=oplog,
    )
    return artifact.path


@pytest.fixture
def artifact_writer() -> Callable[..., Path]:
    """Return :func:`write_artifact`."""
    return write_artifact


__all__ = ["FIXED_NOW", "FakeCluster", "FakeNodeState", "make_environment", "write_artifact"]
