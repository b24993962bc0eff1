"""Inventory resolution: environment name -> typed, ordered node list.

Inventories live under ``<inventory_dir>/<environment>/hosts.yml``. Two
layouts are accepted:

* the native layout with top-level ``desired`` and ``nodes`` keys, and
* an Ansible-style ``all: {vars: ..., hosts: ..., children: ...}`` tree, where
  ``mongodb_role`` selects the node role and ``ansible_host`` / ``ansible_user``
  / ``ansible_port`` / ``ansible_ssh_private_key_file`` provide connection
  parameters.

Resolution never caches: each call re-reads the source so a new run observes
inventory changes.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

import yaml

from .errors import NotFoundError
from .models import (
    AuthPolicy,
    BackupPolicy,
    DesiredConfig,
    Environment,
    Node,
    NodeRole,
    StorageConfig,
)

INVENTORY_FILE = "hosts.yml"


class InventoryError(RuntimeError):
    """Raised when an inventory file is malformed."""


class EnvironmentNotFoundError(NotFoundError):
    """Raised when an environment is unknown or declares no nodes."""


class InventorySource(Protocol):
    """Anything that can hand back the raw mapping for an environment."""

    def load(self, environment: str) -> Mapping[str, object] | None:
        """Return the raw inventory mapping, or ``None`` when unknown."""

    def names(self) -> list[str]:
        """Return the environment names this source knows about."""


class YamlInventorySource:
    """Read ``hosts.yml`` files from one directory per environment."""

    def __init__(self, root: Path) -> None:
        """Store the inventory root directory."""
        self.root = Path(root).expanduser()

    def path_for(self, environment: str) -> Path:
        """Return the inventory file path for *environment*."""
        return self.root / environment / INVENTORY_FILE

    def load(self, environment: str) -> Mapping[str, object] | None:
        """Return the parsed inventory for *environment* (``None`` if missing)."""
        if not environment or "/" in environment or environment.startswith("."):
            return None
        path = self.path_for(environment)
        if not path.is_file():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise InventoryError(f"Failed to parse inventory {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise InventoryError(f"Inventory {path} must contain a mapping at the top level.")
        return data

    def names(self) -> list[str]:
        """Return every environment directory that carries an inventory file."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.root.iterdir() if (entry / INVENTORY_FILE).is_file()
        )


class InventoryResolver:
    """Resolve environment names into :class:`Environment` objects."""

    def __init__(self, source: InventorySource, *, default_retention_days: int = 7) -> None:
        """Wrap *source*; *default_retention_days* applies when none is declared."""
        self._source = source
        self._default_retention_days = default_retention_days

    def available(self) -> list[str]:
        """Return the environment names known to the source."""
        return self._source.names()

    def resolve(self, environment: str) -> Environment:
        """Return the environment named *environment*.

        Raises :class:`EnvironmentNotFoundError` when the environment is
        unknown or has zero nodes.
        """
        raw = self._source.load(environment)
        if raw is None:
            available = ", ".join(self._source.names()) or "none"
            raise EnvironmentNotFoundError(
                f"Environment '{environment}' not found (available: {available})."
            )
        if "all" in raw and "nodes" not in raw:
            desired_raw, node_entries = _flatten_ansible(_as_dict(raw["all"], "all"))
        else:
            desired_raw = _as_dict(raw.get("desired"), "desired")
            node_entries = [
                _as_dict(entry, f"nodes[{index}]")
                for index, entry in enumerate(_as_list(raw.get("nodes"), "nodes"))
            ]
        if not node_entries:
            raise EnvironmentNotFoundError(f"Environment '{environment}' declares no nodes.")

        desired = self._build_desired(desired_raw, label=f"{environment}.desired")
        nodes: list[Node] = []
        seen: set[str] = set()
        for index, entry in enumerate(node_entries):
            node = self._build_node(entry, desired_raw, label=f"{environment}.nodes[{index}]")
            if node.name in seen:
                raise InventoryError(f"Duplicate node name '{node.name}' in {environment}.")
            seen.add(node.name)
            nodes.append(node)

        primaries = [node.name for node in nodes if node.role is NodeRole.PRIMARY]
        if len(primaries) > 1:
            raise InventoryError(
                f"Environment '{environment}' declares more than one primary: "
                f"{', '.join(primaries)}."
            )
        return Environment(name=environment, nodes=tuple(nodes), desired=desired)

    # ------------------------------------------------------------------
    def _build_node(
        self,
        entry: Mapping[str, object],
        environment_desired: Mapping[str, object],
        *,
        label: str,
    ) -> Node:
        name = _expect_str(entry.get("name"), f"{label}.name")
        host = _expect_str(entry.get("host", name), f"{label}.host")
        role_value = str(entry.get("role", NodeRole.STANDALONE.value)).strip().lower()
        try:
            role = NodeRole(role_value)
        except ValueError:
            allowed = ", ".join(role.value for role in NodeRole)
            raise InventoryError(
                f"{label}.role '{role_value}' is not one of: {allowed}."
            ) from None

        overrides = _as_dict(entry.get("desired"), f"{label}.desired")
        merged = dict(environment_desired)
        for key, value in overrides.items():
            existing = merged.get(key)
            if isinstance(existing, Mapping) and isinstance(value, Mapping):
                merged[key] = {**existing, **value}
            else:
                merged[key] = value

        return Node(
            name=name,
            host=host,
            role=role,
            ssh_port=_expect_int(entry.get("ssh_port"), f"{label}.ssh_port", default=22),
            ssh_user=_optional_str(entry.get("ssh_user")),
            ssh_key=_optional_str(entry.get("ssh_key")),
            credentials_ref=_optional_str(entry.get("credentials_ref")),
            desired=self._build_desired(merged, label=f"{label}.desired"),
        )

    def _build_desired(self, raw: Mapping[str, object], *, label: str) -> DesiredConfig:
        version = _expect_str(raw.get("version"), f"{label}.version")
        auth_raw = _as_dict(raw.get("auth"), f"{label}.auth")
        storage_raw = _as_dict(raw.get("storage"), f"{label}.storage")
        backup_raw = _as_dict(raw.get("backup"), f"{label}.backup")

        cache_size = storage_raw.get("cache_size_gb")
        oplog_size = storage_raw.get("oplog_size_mb")
        return DesiredConfig(
            version=version,
            image=str(raw.get("image", "mongo")),
            auth=AuthPolicy(
                enabled=bool(auth_raw.get("enabled", False)),
                root_user=str(auth_raw.get("root_user", "admin")),
                root_password_ref=_optional_str(auth_raw.get("root_password_ref")),
                key_file=_optional_str(auth_raw.get("key_file")),
            ),
            storage=StorageConfig(
                engine=str(storage_raw.get("engine", "wiredTiger")),
                cache_size_gb=float(cache_size) if cache_size is not None else None,
                directory_per_db=bool(storage_raw.get("directory_per_db", False)),
                oplog_size_mb=(
                    _expect_int(oplog_size, f"{label}.storage.oplog_size_mb", default=0)
                    if oplog_size is not None
                    else None
                ),
            ),
            replica_set=_optional_str(raw.get("replica_set")),
            backup=BackupPolicy(
                schedule=_optional_str(backup_raw.get("schedule")),
                retention_days=_expect_int(
                    backup_raw.get("retention_days"),
                    f"{label}.backup.retention_days",
                    default=self._default_retention_days,
                ),
                compression=bool(backup_raw.get("compression", True)),
                databases=tuple(
                    str(item)
                    for item in _as_list(backup_raw.get("databases"), f"{label}.backup.databases")
                ),
            ),
            bind_ip=str(raw.get("bind_ip", "0.0.0.0")),
        )


# ---------------------------------------------------------------------------
# Ansible-style layout
# ---------------------------------------------------------------------------

_ANSIBLE_NODE_KEYS = {
    "ansible_host": "host",
    "ansible_user": "ssh_user",
    "ansible_port": "ssh_port",
    "ansible_ssh_private_key_file": "ssh_key",
    "mongodb_role": "role",
    "mongodb_credentials_ref": "credentials_ref",
}


def _flatten_ansible(
    group: Mapping[str, object],
    inherited: Mapping[str, object] | None = None,
) -> tuple[dict[str, object], list[dict[str, object]]]:
    group_vars = dict(inherited or {})
    group_vars.update(_as_dict(group.get("vars"), "vars"))
    nodes: list[dict[str, object]] = []
    for name, host_vars_raw in _as_dict(group.get("hosts"), "hosts").items():
        host_vars = _as_dict(host_vars_raw, f"hosts.{name}")
        entry: dict[str, object] = {"name": name}
        for ansible_key, native_key in _ANSIBLE_NODE_KEYS.items():
            if ansible_key in host_vars:
                entry[native_key] = host_vars[ansible_key]
        if "desired" in host_vars:
            entry["desired"] = host_vars["desired"]
        nodes.append(entry)
    desired = _as_dict(group_vars.get("desired"), "vars.desired")
    for child_name, child in _as_dict(group.get("children"), "children").items():
        child_desired, child_nodes = _flatten_ansible(
            _as_dict(child, f"children.{child_name}"),
            group_vars,
        )
        if child_desired and not desired:
            desired = child_desired
        nodes.extend(child_nodes)
    return desired, nodes


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InventoryError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return {str(key): item for key, item in value.items()}


def _as_list(value: object | None, label: str) -> list[object]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise InventoryError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    return list(value)


def _expect_str(value: object | None, label: str) -> str:
    if value is None:
        raise InventoryError(f"{label} is required.")
    text = str(value).strip()
    if not text:
        raise InventoryError(f"{label} must be a non-empty string.")
    return text


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise InventoryError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise InventoryError(f"Invalid integer for {label}: {value!r}.") from exc
    raise InventoryError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


__all__ = [
    "EnvironmentNotFoundError",
    "InventoryError",
    "InventoryResolver",
    "InventorySource",
    "YamlInventorySource",
]
