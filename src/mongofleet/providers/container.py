"""Container lifecycle provider backed by the Docker CLI on each node."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Protocol

from ..config import ContainerConfig
from ..executor import Command, NodeExecutor, StatusProbe
from ..models import Node

logger = logging.getLogger(__name__)

_CONTAINER_CONFIG_DIR = "/etc/mongod"
_CONTAINER_DATA_DIR = "/data/db"


@dataclass(slots=True, frozen=True)
class ContainerInfo:
    """Observed container state on a node."""

    exists: bool
    running: bool = False
    image: str | None = None

    @property
    def version(self) -> str | None:
        """Return the image tag, which mongofleet treats as the server version."""
        if not self.image or ":" not in self.image:
            return None
        return self.image.rsplit(":", 1)[1] or None


class ContainerRuntime(Protocol):
    """Start, stop and inspect the database container on a node."""

    def inspect(self, node: Node) -> ContainerInfo:
        """Return the container state on *node*."""

    def ensure_running(self, node: Node, image_ref: str, config_path: str) -> bool:
        """Make sure *image_ref* is running with *config_path*; return ``True`` if changed."""

    def restart(self, node: Node) -> None:
        """Restart the container."""

    def stop(self, node: Node) -> None:
        """Stop the container."""


@dataclass(slots=True)
class DockerRuntime:
    """:class:`ContainerRuntime` that drives ``docker`` over the node executor."""

    executor: NodeExecutor
    config: ContainerConfig
    port: int = 27017

    def inspect(self, node: Node) -> ContainerInfo:
        """Return running flag and image reference of the managed container."""
        probe = StatusProbe(
            argv=(
                self.config.runtime_bin,
                "inspect",
                "--format",
                "{{.State.Running}} {{.Config.Image}}",
                self.config.name,
            ),
            description=f"inspect container {self.config.name}",
            accept_codes=frozenset({0, 1}),
        )
        result = self.executor.execute(node, probe)
        if result.exit_code != 0:
            return ContainerInfo(exists=False)
        running_text, _, image = result.stdout.strip().partition(" ")
        return ContainerInfo(
            exists=True,
            running=running_text.strip().lower() == "true",
            image=image.strip() or None,
        )

    def ensure_running(self, node: Node, image_ref: str, config_path: str) -> bool:
        """(Re)create the container when it is absent, stopped or on another image."""
        current = self.inspect(node)
        if current.running and current.image == image_ref:
            return False
        if current.exists:
            self.executor.execute(
                node,
                Command(
                    argv=(self.config.runtime_bin, "rm", "-f", self.config.name),
                    description=f"remove container {self.config.name}",
                ),
            )
        config_file = PurePosixPath(config_path)
        self.executor.execute(
            node,
            Command(
                argv=(
                    self.config.runtime_bin,
                    "run",
                    "-d",
                    "--name",
                    self.config.name,
                    "--restart",
                    "unless-stopped",
                    "-p",
                    f"{self.port}:{self.port}",
                    "-v",
                    f"{self.config.data_dir}:{_CONTAINER_DATA_DIR}",
                    "-v",
                    f"{config_file.parent}:{_CONTAINER_CONFIG_DIR}:ro",
                    image_ref,
                    "--config",
                    f"{_CONTAINER_CONFIG_DIR}/{config_file.name}",
                ),
                description=f"run {image_ref} as {self.config.name}",
            ),
        )
        logger.info("%s: container %s started from %s", node.name, self.config.name, image_ref)
        return True

    def restart(self, node: Node) -> None:
        """Restart the managed container."""
        self.executor.execute(
            node,
            Command(
                argv=(self.config.runtime_bin, "restart", self.config.name),
                description=f"restart container {self.config.name}",
            ),
        )

    def stop(self, node: Node) -> None:
        """Stop the managed container."""
        self.executor.execute(
            node,
            Command(
                argv=(self.config.runtime_bin, "stop", self.config.name),
                description=f"stop container {self.config.name}",
            ),
        )


__all__ = ["ContainerInfo", "ContainerRuntime", "DockerRuntime"]
