"""Database client provider: ``mongosh``, ``mongodump`` and ``mongorestore``.

All commands run inside the managed container via ``docker exec`` on the
node. Credentials are resolved through :class:`SecretsResolver` immediately
before use and handed to the tools on standard input, so they never appear
in argv (and therefore never in debug logs or process listings).
"""
from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Protocol

from ..config import ContainerConfig, DatabaseConfig
from ..errors import AuthFailedError, RemoteError
from ..executor import Command, NodeExecutor
from ..models import AuthPolicy, Node
from .secrets import SecretsError, SecretsResolver

logger = logging.getLogger(__name__)

SYSTEM_DATABASES = frozenset({"admin", "config", "local"})
_CONTAINER_STAGING_DIR = "/tmp"


@dataclass(slots=True, frozen=True)
class ReplicaStatus:
    """Replica-set view reported by a node."""

    role: str | None = None
    member: bool = False
    set_name: str | None = None
    lag_seconds: float | None = None

    @property
    def is_primary(self) -> bool:
        """Return ``True`` when the node reports itself as writable primary."""
        return self.role == "PRIMARY"


class DatabaseClient(Protocol):
    """Operations the engines need from the database wire-protocol client."""

    def ping(self, node: Node) -> bool:
        """Return ``True`` when the server answers ``ping``."""

    def authenticate(self, node: Node) -> bool:
        """Return ``True`` when the configured root credentials are accepted."""

    def replica_status(self, node: Node) -> ReplicaStatus:
        """Return the node's replica-set role and lag."""

    def create_root_user(self, node: Node, auth: AuthPolicy) -> None:
        """Create the root user described by *auth*."""

    def replica_initiate(self, node: Node, replica_set: str, member_address: str) -> None:
        """Initiate *replica_set* with *node* as its first member."""

    def replica_add(self, primary: Node, member_address: str, *, arbiter: bool) -> None:
        """Add *member_address* to the replica set through *primary*."""

    def dump(
        self,
        node: Node,
        remote_path: str,
        *,
        databases: Sequence[str],
        oplog: bool,
        timeout: float,
    ) -> None:
        """Write a consistent archive dump to *remote_path* on the node."""

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
        """Restore the archive at *remote_path*, optionally scoped to one database.

        *oplog_replay* applies the oplog captured by a point-in-time dump.
        """

    def drop_database(self, node: Node, name: str) -> None:
        """Drop database *name*."""

    def list_databases(self, node: Node) -> list[str]:
        """Return the database names present on the node."""

    def database_stats(self, node: Node, name: str) -> dict[str, int]:
        """Return collection and document counts for *name*."""


@dataclass(slots=True)
class MongoShellClient:
    """:class:`DatabaseClient` that shells out to the MongoDB tools in the container."""

    executor: NodeExecutor
    config: DatabaseConfig
    container: ContainerConfig
    secrets: SecretsResolver

    # Read-only ---------------------------------------------------------
    def ping(self, node: Node) -> bool:
        """Run ``ping`` without credentials; a failed command reports unhealthy."""
        try:
            reply = self._eval(
                node,
                "print(JSON.stringify(db.adminCommand({ping: 1})));",
                description="ping",
                authenticate=False,
            )
        except RemoteError:
            return False
        return isinstance(reply, dict) and reply.get("ok") == 1

    def authenticate(self, node: Node) -> bool:
        """Try the root credentials; ``False`` when they are rejected."""
        if self._credentials(node) is None:
            return True
        try:
            self._eval(node, "print(JSON.stringify({ok: 1}));", description="authenticate")
        except AuthFailedError:
            return False
        return True

    def replica_status(self, node: Node) -> ReplicaStatus:
        """Read ``hello`` (and ``rs.status`` lag on secondaries)."""
        script = "\n".join(
            [
                "const hello = db.adminCommand({hello: 1});",
                "let lag = null;",
                "if (hello.secondary) { try { const st = rs.status();"
                " const p = st.members.find(m => m.stateStr === 'PRIMARY');"
                " const me = st.members.find(m => m.self);"
                " if (p && me) { lag = (p.optimeDate - me.optimeDate) / 1000; } }"
                " catch (e) { lag = null; } }",
                "print(JSON.stringify({setName: hello.setName || null,"
                " primary: !!hello.isWritablePrimary, secondary: !!hello.secondary,"
                " arbiter: !!hello.arbiterOnly, lag: lag}));",
            ]
        )
        reply = self._eval(node, script, description="replica status")
        if not isinstance(reply, dict):
            return ReplicaStatus()
        role = None
        if reply.get("primary"):
            role = "PRIMARY"
        elif reply.get("secondary"):
            role = "SECONDARY"
        elif reply.get("arbiter"):
            role = "ARBITER"
        set_name = reply.get("setName")
        lag = reply.get("lag")
        return ReplicaStatus(
            role=role,
            member=bool(set_name),
            set_name=set_name if isinstance(set_name, str) else None,
            lag_seconds=float(lag) if isinstance(lag, (int, float)) else None,
        )

    def list_databases(self, node: Node) -> list[str]:
        """Return database names reported by ``listDatabases``."""
        reply = self._eval(
            node,
            "print(JSON.stringify(db.adminCommand({listDatabases: 1, nameOnly: true})"
            ".databases.map(d => d.name)));",
            description="list databases",
        )
        if not isinstance(reply, list):
            return []
        return [str(name) for name in reply]

    def database_stats(self, node: Node, name: str) -> dict[str, int]:
        """Return ``{"collections": n, "objects": n}`` for database *name*."""
        reply = self._eval(
            node,
            f"const s = db.getSiblingDB({json.dumps(name)}).stats();"
            " print(JSON.stringify({collections: s.collections, objects: s.objects}));",
            description=f"stats {name}",
        )
        if not isinstance(reply, dict):
            return {"collections": 0, "objects": 0}
        return {
            "collections": int(reply.get("collections") or 0),
            "objects": int(reply.get("objects") or 0),
        }

    # Mutating ----------------------------------------------------------
    def create_root_user(self, node: Node, auth: AuthPolicy) -> None:
        """Create the root user; relies on the localhost exception (no credentials)."""
        if not auth.root_password_ref and not node.credentials_ref:
            raise SecretsError(f"{node.name}: no credential reference for '{auth.root_user}'.")
        password = self.secrets.resolve(node.credentials_ref or auth.root_password_ref or "")
        spec = {
            "user": auth.root_user,
            "pwd": password,
            "roles": [{"role": "root", "db": self.config.auth_database}],
        }
        self._eval(
            node,
            f"db.getSiblingDB({json.dumps(self.config.auth_database)})"
            f".createUser({json.dumps(spec)}); print(JSON.stringify({{ok: 1}}));",
            description=f"create user {auth.root_user}",
            mutating=True,
            authenticate=False,
        )

    def replica_initiate(self, node: Node, replica_set: str, member_address: str) -> None:
        """Run ``rs.initiate`` with a single-member configuration."""
        config = {"_id": replica_set, "members": [{"_id": 0, "host": member_address}]}
        self._eval(
            node,
            f"print(JSON.stringify(rs.initiate({json.dumps(config)})));",
            description=f"initiate replica set {replica_set}",
            mutating=True,
        )

    def replica_add(self, primary: Node, member_address: str, *, arbiter: bool) -> None:
        """Run ``rs.add`` (or ``rs.addArb``) on the primary."""
        function = "rs.addArb" if arbiter else "rs.add"
        self._eval(
            primary,
            f"print(JSON.stringify({function}({json.dumps(member_address)})));",
            description=f"{function} {member_address}",
            mutating=True,
        )

    def drop_database(self, node: Node, name: str) -> None:
        """Drop database *name*."""
        self._eval(
            node,
            f"print(JSON.stringify(db.getSiblingDB({json.dumps(name)}).dropDatabase()));",
            description=f"drop database {name}",
            mutating=True,
        )

    def dump(
        self,
        node: Node,
        remote_path: str,
        *,
        databases: Sequence[str],
        oplog: bool,
        timeout: float,
    ) -> None:
        """Dump with ``mongodump --archive`` (``--oplog`` for point-in-time consistency)."""
        staged = self._container_path(remote_path)
        argv = [
            *self._exec_prefix(),
            self.config.dump_bin,
            "--port",
            str(self.config.port),
            f"--archive={staged}",
        ]
        if oplog and not databases:
            argv.append("--oplog")
        for name in databases:
            argv.append(f"--nsInclude={name}.*")
        self._run_tool(node, argv, description=f"mongodump -> {remote_path}", timeout=timeout)
        self._docker_cp(node, f"{self.container.name}:{staged}", remote_path, timeout=timeout)
        self._remove_in_container(node, staged)

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
        """Restore with ``mongorestore --archive``, scoped by ``--nsInclude`` when filtered.

        ``--oplogReplay`` is only valid for a full restore, so a database
        filter disables it.
        """
        staged = self._container_path(remote_path)
        self._docker_cp(node, remote_path, f"{self.container.name}:{staged}", timeout=timeout)
        argv = [
            *self._exec_prefix(),
            self.config.restore_bin,
            "--port",
            str(self.config.port),
            f"--archive={staged}",
        ]
        if compressed:
            argv.append("--gzip")
        if database_filter:
            argv.append(f"--nsInclude={database_filter}.*")
        elif oplog_replay:
            argv.append("--oplogReplay")
        try:
            self._run_tool(
                node, argv, description=f"mongorestore <- {remote_path}", timeout=timeout
            )
        finally:
            self._remove_in_container(node, staged)

    # Internals -----------------------------------------------------------
    def _credentials(self, node: Node) -> tuple[str, str] | None:
        desired = node.desired
        if desired is None or not desired.auth.enabled:
            return None
        reference = node.credentials_ref or desired.auth.root_password_ref
        if reference is None:
            return None
        return desired.auth.root_user, self.secrets.resolve(reference)

    def _exec_prefix(self) -> list[str]:
        return [self.container.runtime_bin, "exec", "-i", self.container.name]

    def _container_path(self, remote_path: str) -> str:
        return f"{_CONTAINER_STAGING_DIR}/{PurePosixPath(remote_path).name}"

    def _eval(
        self,
        node: Node,
        script: str,
        *,
        description: str,
        mutating: bool = False,
        authenticate: bool = True,
    ) -> object:
        lines: list[str] = []
        credentials = self._credentials(node) if authenticate else None
        if credentials is not None:
            user, password = credentials
            lines.append(
                f"const __mf = db.getSiblingDB({json.dumps(self.config.auth_database)})"
                f".auth({json.dumps(user)}, {json.dumps(password)});"
            )
        lines.append(script)
        unit = Command(
            argv=(
                *self._exec_prefix(),
                self.config.shell_bin,
                "--quiet",
                "--norc",
                "--port",
                str(self.config.port),
            ),
            description=description,
            mutating=mutating,
            stdin=("\n".join(lines) + "\n").encode("utf-8"),
        )
        result = self.executor.execute(node, unit)
        if result.dry_run:
            return None
        return _parse_last_json(result.stdout)

    def _run_tool(
        self,
        node: Node,
        argv: list[str],
        *,
        description: str,
        timeout: float,
    ) -> None:
        stdin = None
        credentials = self._credentials(node)
        if credentials is not None:
            user, password = credentials
            argv.extend(
                ["--username", user, "--authenticationDatabase", self.config.auth_database]
            )
            stdin = f"{password}\n".encode("utf-8")
        self.executor.execute(
            node,
            Command(argv=tuple(argv), description=description, stdin=stdin),
            timeout=timeout,
        )

    def _docker_cp(self, node: Node, source: str, target: str, *, timeout: float) -> None:
        self.executor.execute(
            node,
            Command(
                argv=(self.container.runtime_bin, "cp", source, target),
                description=f"copy {source} -> {target}",
            ),
            timeout=timeout,
        )

    def _remove_in_container(self, node: Node, path: str) -> None:
        self.executor.execute(
            node,
            Command(
                argv=(*self._exec_prefix(), "rm", "-f", path),
                description=f"remove {path} in container",
            ),
        )


def _parse_last_json(stdout: str) -> object:
    for line in reversed(stdout.splitlines()):
        text = line.strip()
        if not text or text[0] not in "[{":
            continue
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.debug("ignoring non-JSON shell output: %s", text[:200])
            continue
    return None


__all__ = ["DatabaseClient", "MongoShellClient", "ReplicaStatus", "SYSTEM_DATABASES"]
