"""Configuration loader for mongofleet.

Configuration values are merged from several sources, lowest priority first:

1. Built-in defaults.
2. ``/etc/mongofleet/config.yml`` (or an override path).
3. Environment variables prefixed with ``MONGOFLEET_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MONGOFLEET_EXECUTOR__MAX_CONCURRENCY=4
    export MONGOFLEET_BACKUPS__COMPRESSION=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "MONGOFLEET_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ExecutorConfig:
    """Worker pool, timeout and retry defaults for remote units of work."""

    max_concurrency: int = 8
    timeout: float = 60.0
    retries: int = 3
    backoff: float = 1.0
    backoff_factor: float = 2.0
    transient_codes: tuple[int, ...] = (6, 7, 89, 91, 189)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_concurrency": self.max_concurrency,
            "timeout": self.timeout,
            "retries": self.retries,
            "backoff": self.backoff,
            "backoff_factor": self.backoff_factor,
            "transient_codes": list(self.transient_codes),
        }


@dataclass(frozen=True)
class ReplicaConfig:
    """Replica-set bootstrap barrier settings."""

    bootstrap_timeout: float = 120.0
    poll_interval: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bootstrap_timeout": self.bootstrap_timeout,
            "poll_interval": self.poll_interval,
        }


@dataclass(frozen=True)
class BackupStoreConfig:
    """Backup store location and defaults."""

    root: Path
    remote_dir: str = "/tmp/mongofleet"
    retention_days: int = 7
    compression: bool = True
    dump_timeout: float = 3600.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "remote_dir": str(self.remote_dir),
            "retention_days": self.retention_days,
            "compression": self.compression,
            "dump_timeout": self.dump_timeout,
        }


@dataclass(frozen=True)
class SshConfig:
    """SSH/SCP transport settings."""

    ssh_bin: str = "ssh"
    scp_bin: str = "scp"
    user: str = "root"
    connect_timeout: int = 10
    options: tuple[str, ...] = (
        "StrictHostKeyChecking=accept-new",
        "BatchMode=yes",
        "LogLevel=ERROR",
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ssh_bin": self.ssh_bin,
            "scp_bin": self.scp_bin,
            "user": self.user,
            "connect_timeout": self.connect_timeout,
            "options": list(self.options),
        }


@dataclass(frozen=True)
class ContainerConfig:
    """Container runtime settings on the target nodes."""

    runtime_bin: str = "docker"
    name: str = "mongodb"
    image: str = "mongo"
    data_dir: str = "/var/lib/mongodb"
    config_path: str = "/etc/mongod/mongod.conf"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "runtime_bin": self.runtime_bin,
            "name": self.name,
            "image": self.image,
            "data_dir": str(self.data_dir),
            "config_path": str(self.config_path),
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Database client tooling available inside the container."""

    shell_bin: str = "mongosh"
    dump_bin: str = "mongodump"
    restore_bin: str = "mongorestore"
    port: int = 27017
    auth_database: str = "admin"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "shell_bin": self.shell_bin,
            "dump_bin": self.dump_bin,
            "restore_bin": self.restore_bin,
            "port": self.port,
            "auth_database": self.auth_database,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mongofleet."""

    config_file: Path
    inventory_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    executor: ExecutorConfig
    replica: ReplicaConfig
    backups: BackupStoreConfig
    ssh: SshConfig
    container: ContainerConfig
    database: DatabaseConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "inventory_dir": str(self.inventory_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "executor": self.executor.to_dict(),
            "replica": self.replica.to_dict(),
            "backups": self.backups.to_dict(),
            "ssh": self.ssh.to_dict(),
            "container": self.container.to_dict(),
            "database": self.database.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/mongofleet/config.yml",
    "inventory_dir": "/etc/mongofleet/inventories",
    "logs_dir": "/var/log/mongofleet",
    "runtime_dir": "/run/mongofleet",
    "templates_dir": "/etc/mongofleet/templates",
    "lock_timeout": 30.0,
    "executor": {
        "max_concurrency": 8,
        "timeout": 60.0,
        "retries": 3,
        "backoff": 1.0,
        "backoff_factor": 2.0,
        "transient_codes": [6, 7, 89, 91, 189],
    },
    "replica": {
        "bootstrap_timeout": 120.0,
        "poll_interval": 2.0,
    },
    "backups": {
        "root": "/var/backups/mongofleet",
        "remote_dir": "/tmp/mongofleet",
        "retention_days": 7,
        "compression": True,
        "dump_timeout": 3600.0,
    },
    "ssh": {
        "ssh_bin": "ssh",
        "scp_bin": "scp",
        "user": "root",
        "connect_timeout": 10,
        "options": [
            "StrictHostKeyChecking=accept-new",
            "BatchMode=yes",
            "LogLevel=ERROR",
        ],
    },
    "container": {
        "runtime_bin": "docker",
        "name": "mongodb",
        "image": "mongo",
        "data_dir": "/var/lib/mongodb",
        "config_path": "/etc/mongod/mongod.conf",
    },
    "database": {
        "shell_bin": "mongosh",
        "dump_bin": "mongodump",
        "restore_bin": "mongorestore",
        "port": 27017,
        "auth_database": "admin",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    name: set(cast(Mapping[str, object], value).keys())
    for name, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    executor = _as_dict(raw.get("executor"), "executor")
    concurrency = _expect_int(executor.get("max_concurrency"), "executor.max_concurrency", default=8)
    if concurrency < 1:
        raise ConfigError("executor.max_concurrency must be at least 1.")
    retries = _expect_int(executor.get("retries"), "executor.retries", default=3)
    if retries < 1:
        raise ConfigError("executor.retries must be at least 1 (the first attempt counts).")

    backups = _as_dict(raw.get("backups"), "backups")
    retention = _expect_int(backups.get("retention_days"), "backups.retention_days", default=7)
    if retention < 0:
        raise ConfigError("backups.retention_days must be non-negative.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    executor_map = _as_dict(raw.get("executor"), "executor")
    executor = ExecutorConfig(
        max_concurrency=_expect_int(
            executor_map.get("max_concurrency"), "executor.max_concurrency", default=8
        ),
        timeout=_expect_positive_float(executor_map.get("timeout"), "executor.timeout", default=60.0),
        retries=_expect_int(executor_map.get("retries"), "executor.retries", default=3),
        backoff=_expect_non_negative_float(
            executor_map.get("backoff"), "executor.backoff", default=1.0
        ),
        backoff_factor=_expect_positive_float(
            executor_map.get("backoff_factor"), "executor.backoff_factor", default=2.0
        ),
        transient_codes=tuple(
            _expect_int(item, "executor.transient_codes[]", default=0)
            for item in _as_sequence(
                executor_map.get("transient_codes", []), "executor.transient_codes"
            )
        ),
    )

    replica_map = _as_dict(raw.get("replica"), "replica")
    replica = ReplicaConfig(
        bootstrap_timeout=_expect_positive_float(
            replica_map.get("bootstrap_timeout"), "replica.bootstrap_timeout", default=120.0
        ),
        poll_interval=_expect_positive_float(
            replica_map.get("poll_interval"), "replica.poll_interval", default=2.0
        ),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups = BackupStoreConfig(
        root=_to_path(backups_map.get("root", "/var/backups/mongofleet")),
        remote_dir=str(backups_map.get("remote_dir", "/tmp/mongofleet")),
        retention_days=_expect_int(
            backups_map.get("retention_days"), "backups.retention_days", default=7
        ),
        compression=_expect_bool(backups_map.get("compression"), "backups.compression", True),
        dump_timeout=_expect_positive_float(
            backups_map.get("dump_timeout"), "backups.dump_timeout", default=3600.0
        ),
    )

    ssh_map = _as_dict(raw.get("ssh"), "ssh")
    ssh = SshConfig(
        ssh_bin=str(ssh_map.get("ssh_bin", "ssh")),
        scp_bin=str(ssh_map.get("scp_bin", "scp")),
        user=str(ssh_map.get("user", "root")),
        connect_timeout=_expect_int(ssh_map.get("connect_timeout"), "ssh.connect_timeout", default=10),
        options=tuple(str(item) for item in _as_sequence(ssh_map.get("options", []), "ssh.options")),
    )

    container_map = _as_dict(raw.get("container"), "container")
    container = ContainerConfig(
        runtime_bin=str(container_map.get("runtime_bin", "docker")),
        name=str(container_map.get("name", "mongodb")),
        image=str(container_map.get("image", "mongo")),
        data_dir=str(container_map.get("data_dir", "/var/lib/mongodb")),
        config_path=str(container_map.get("config_path", "/etc/mongod/mongod.conf")),
    )

    database_map = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        shell_bin=str(database_map.get("shell_bin", "mongosh")),
        dump_bin=str(database_map.get("dump_bin", "mongodump")),
        restore_bin=str(database_map.get("restore_bin", "mongorestore")),
        port=_expect_int(database_map.get("port"), "database.port", default=27017),
        auth_database=str(database_map.get("auth_database", "admin")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        inventory_dir=_to_path(raw.get("inventory_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        executor=executor,
        replica=replica,
        backups=backups,
        ssh=ssh,
        container=container,
        database=database,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be zero or greater. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupStoreConfig",
    "ConfigError",
    "ContainerConfig",
    "DatabaseConfig",
    "ExecutorConfig",
    "ReplicaConfig",
    "SshConfig",
    "load_config",
]
