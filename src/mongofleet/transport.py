"""Remote-exec collaborator: run commands and move files on fleet nodes."""
from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

from .config import SshConfig
from .errors import AuthFailedError, RemoteError, UnreachableError
from .models import Node

logger = logging.getLogger(__name__)

SSH_CONNECTION_FAILURE = 255
_AUTH_MARKERS = ("permission denied", "authentication failed", "too many authentication failures")


@dataclass(slots=True, frozen=True)
class CommandOutput:
    """Captured output of a remote command."""

    stdout: str
    stderr: str
    exit_code: int


class RemoteExec(Protocol):
    """Transport used by the node executor to reach fleet nodes."""

    def run(
        self,
        node: Node,
        argv: Sequence[str],
        *,
        timeout: float,
        stdin: bytes | None = None,
    ) -> CommandOutput:
        """Run *argv* on *node*; raise :class:`UnreachableError` on transport failure."""

    def push(
        self,
        node: Node,
        content: bytes,
        remote_path: str,
        *,
        mode: int,
        timeout: float,
    ) -> None:
        """Write *content* to *remote_path* on *node* atomically."""

    def pull(self, node: Node, remote_path: str, local_path: Path, *, timeout: float) -> None:
        """Copy *remote_path* from *node* to *local_path*."""


class SshTransport:
    """:class:`RemoteExec` implementation backed by the ``ssh``/``scp`` binaries."""

    def __init__(self, config: SshConfig) -> None:
        """Store SSH settings."""
        self.config = config

    # Public API -------------------------------------------------------
    def run(
        self,
        node: Node,
        argv: Sequence[str],
        *,
        timeout: float,
        stdin: bytes | None = None,
    ) -> CommandOutput:
        """Run *argv* on *node* over SSH."""
        remote_command = shlex.join(argv)
        command = [*self._ssh_base(node), self._destination(node), remote_command]
        return self._invoke(node, command, timeout=timeout, stdin=stdin)

    def push(
        self,
        node: Node,
        content: bytes,
        remote_path: str,
        *,
        mode: int,
        timeout: float,
    ) -> None:
        """Stream *content* into *remote_path* via a temporary file and rename."""
        target = PurePosixPath(remote_path)
        staging = f"{target}.mongofleet-tmp"
        script = (
            f"mkdir -p {shlex.quote(str(target.parent))} && "
            f"cat > {shlex.quote(staging)} && "
            f"chmod {mode:o} {shlex.quote(staging)} && "
            f"mv -f {shlex.quote(staging)} {shlex.quote(str(target))}"
        )
        output = self.run(node, ["sh", "-c", script], timeout=timeout, stdin=content)
        if output.exit_code != 0:
            raise RemoteError(output.exit_code, output.stderr, command=f"push {remote_path}")

    def pull(self, node: Node, remote_path: str, local_path: Path, *, timeout: float) -> None:
        """Copy *remote_path* from *node* with ``scp``."""
        command = [self.config.scp_bin, "-q", "-P", str(node.ssh_port)]
        for option in self.config.options:
            command.extend(["-o", option])
        command.extend(["-o", f"ConnectTimeout={self.config.connect_timeout}"])
        if node.ssh_key:
            command.extend(["-i", node.ssh_key])
        command.extend([f"{self._destination(node)}:{remote_path}", str(local_path)])
        output = self._invoke(node, command, timeout=timeout)
        if output.exit_code != 0:
            raise RemoteError(output.exit_code, output.stderr, command=f"pull {remote_path}")

    # Internals ---------------------------------------------------------
    def _destination(self, node: Node) -> str:
        return f"{node.ssh_user or self.config.user}@{node.host}"

    def _ssh_base(self, node: Node) -> list[str]:
        command = [self.config.ssh_bin, "-p", str(node.ssh_port)]
        for option in self.config.options:
            command.extend(["-o", option])
        command.extend(["-o", f"ConnectTimeout={self.config.connect_timeout}"])
        if node.ssh_key:
            command.extend(["-i", node.ssh_key])
        return command

    def _invoke(
        self,
        node: Node,
        command: Sequence[str],
        *,
        timeout: float,
        stdin: bytes | None = None,
    ) -> CommandOutput:
        logger.debug("%s: %s", node.name, shlex.join(command))
        try:
            result = subprocess.run(  # noqa: S603 - argv built from config
                list(command),
                input=stdin,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise UnreachableError(
                f"{node.name}: command timed out after {timeout:g}s."
            ) from exc
        except FileNotFoundError as exc:
            raise RemoteError(127, str(exc), command=command[0]) from exc

        stdout = result.stdout.decode("utf-8", errors="replace")
        stderr = result.stderr.decode("utf-8", errors="replace")
        if result.returncode == SSH_CONNECTION_FAILURE:
            lowered = stderr.lower()
            if any(marker in lowered for marker in _AUTH_MARKERS):
                raise AuthFailedError(f"{node.name}: SSH authentication failed: {stderr.strip()}")
            raise UnreachableError(f"{node.name}: SSH connection failed: {stderr.strip()}")
        return CommandOutput(stdout=stdout, stderr=stderr, exit_code=result.returncode)


__all__ = ["CommandOutput", "RemoteExec", "SshTransport"]
