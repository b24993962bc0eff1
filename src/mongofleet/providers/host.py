"""File operations on fleet nodes: checksums, compression, transfer, disk usage."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..executor import Command, FilePull, FilePush, NodeExecutor, StatusProbe
from ..models import Node
from ..templates import RenderedFile


class HostFiles(Protocol):
    """Node-local file operations used by the engines."""

    def checksum(self, node: Node, path: str) -> str | None:
        """Return the SHA-256 of *path* on *node*, or ``None`` when absent."""

    def write_config(self, node: Node, rendered: RenderedFile, path: str) -> None:
        """Push rendered configuration content to *path*."""

    def compress(self, node: Node, path: str) -> str:
        """Gzip *path* in place and return the new path."""

    def fetch(self, node: Node, remote_path: str, local_path: Path, *, timeout: float) -> None:
        """Copy *remote_path* from *node* to *local_path*."""

    def upload(self, node: Node, local_path: Path, remote_path: str, *, timeout: float) -> None:
        """Copy *local_path* to *remote_path* on *node*."""

    def remove(self, node: Node, path: str) -> None:
        """Delete *path* on *node* (missing files are ignored)."""

    def disk_usage_percent(self, node: Node, path: str) -> float:
        """Return the used percentage of the filesystem holding *path*."""


@dataclass(slots=True)
class ShellHostFiles:
    """:class:`HostFiles` implemented with coreutils over the node executor."""

    executor: NodeExecutor

    def checksum(self, node: Node, path: str) -> str | None:
        """Return ``sha256sum`` of *path* (``None`` when the file is missing)."""
        result = self.executor.execute(
            node,
            StatusProbe(
                argv=("sha256sum", path),
                description=f"checksum {path}",
                accept_codes=frozenset({0, 1}),
            ),
        )
        if result.exit_code != 0 or not result.stdout.strip():
            return None
        return result.stdout.split()[0]

    def write_config(self, node: Node, rendered: RenderedFile, path: str) -> None:
        """Push *rendered* to *path* with mode 0644."""
        self.executor.execute(node, FilePush.from_rendered(rendered, path))

    def compress(self, node: Node, path: str) -> str:
        """Gzip *path*, replacing it with ``<path>.gz``."""
        self.executor.execute(
            node,
            Command(argv=("gzip", "-f", path), description=f"compress {path}"),
        )
        return f"{path}.gz"

    def fetch(self, node: Node, remote_path: str, local_path: Path, *, timeout: float) -> None:
        """Pull *remote_path* into *local_path*."""
        self.executor.execute(
            node,
            FilePull(
                remote_path=remote_path,
                local_path=local_path,
                description=f"fetch {remote_path}",
            ),
            timeout=timeout,
        )

    def upload(self, node: Node, local_path: Path, remote_path: str, *, timeout: float) -> None:
        """Push the bytes of *local_path* to *remote_path* with mode 0600."""
        self.executor.execute(
            node,
            FilePush(
                remote_path=remote_path,
                content=local_path.read_bytes(),
                description=f"upload {local_path.name} -> {remote_path}",
                mode=0o600,
            ),
            timeout=timeout,
        )

    def remove(self, node: Node, path: str) -> None:
        """Remove *path* with ``rm -f``."""
        self.executor.execute(
            node,
            Command(argv=("rm", "-f", path), description=f"remove {path}"),
        )

    def disk_usage_percent(self, node: Node, path: str) -> float:
        """Return the ``df`` used percentage for the filesystem holding *path*."""
        result = self.executor.execute(
            node,
            StatusProbe(argv=("df", "-P", path), description=f"disk usage {path}"),
        )
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if len(lines) < 2:
            raise ValueError(f"Unexpected df output for {path}: {result.stdout!r}")
        columns = lines[-1].split()
        percent = next((column for column in columns if column.endswith("%")), None)
        if percent is None:
            raise ValueError(f"Unexpected df output for {path}: {result.stdout!r}")
        return float(percent.rstrip("%"))


__all__ = ["HostFiles", "ShellHostFiles"]
