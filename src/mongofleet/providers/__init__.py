"""Provider interfaces and their node-executor backed implementations."""
from __future__ import annotations

from .container import ContainerInfo, ContainerRuntime, DockerRuntime
from .database import SYSTEM_DATABASES, DatabaseClient, MongoShellClient, ReplicaStatus
from .host import HostFiles, ShellHostFiles
from .secrets import SecretsError, SecretsResolver

__all__ = [
    "ContainerInfo",
    "ContainerRuntime",
    "DatabaseClient",
    "DockerRuntime",
    "HostFiles",
    "MongoShellClient",
    "ReplicaStatus",
    "SYSTEM_DATABASES",
    "SecretsError",
    "SecretsResolver",
    "ShellHostFiles",
]
