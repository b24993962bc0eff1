"""Node executor: run one unit of work on one node with retry and dry-run.

Every remote side effect in mongofleet flows through :class:`NodeExecutor`.
Each call carries its own :class:`RetryPolicy` (falling back to the policy the
executor was built with); there is no process-wide retry state.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path

from .config import ExecutorConfig
from .errors import AuthFailedError, FleetError, RemoteError, UnreachableError
from .models import Node
from .templates import RenderedFile
from .transport import CommandOutput, RemoteExec

logger = logging.getLogger(__name__)

_AUTH_FAILURE_MARKERS = ("authentication failed", "auth failed", "not authorized")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for transient failures."""

    attempts: int = 3
    backoff: float = 1.0
    factor: float = 2.0
    transient_codes: frozenset[int] = frozenset()

    @classmethod
    def from_config(cls, config: ExecutorConfig) -> RetryPolicy:
        """Build a policy from executor configuration."""
        return cls(
            attempts=max(1, config.retries),
            backoff=config.backoff,
            factor=config.backoff_factor,
            transient_codes=frozenset(config.transient_codes),
        )

    def delay(self, attempt: int) -> float:
        """Return the sleep before retry number *attempt* (1-based)."""
        return self.backoff * (self.factor ** (attempt - 1))

    def should_retry(self, exc: BaseException) -> bool:
        """Return ``True`` when *exc* belongs to a transient failure class."""
        if isinstance(exc, UnreachableError):
            return True
        if isinstance(exc, RemoteError):
            return exc.code in self.transient_codes
        return False


NO_RETRY = RetryPolicy(attempts=1, backoff=0.0)


@dataclass(slots=True, frozen=True)
class Command:
    """A remote command. Mutating unless stated otherwise."""

    argv: tuple[str, ...]
    description: str
    mutating: bool = True
    accept_codes: frozenset[int] = frozenset({0})
    stdin: bytes | None = None


@dataclass(slots=True, frozen=True)
class StatusProbe:
    """A read-only remote command used to observe node state."""

    argv: tuple[str, ...]
    description: str
    accept_codes: frozenset[int] = frozenset({0})
    mutating: bool = field(default=False, init=False)


@dataclass(slots=True, frozen=True)
class FilePush:
    """Write content (usually a rendered template) to a remote path."""

    remote_path: str
    content: bytes
    description: str
    mode: int = 0o644
    mutating: bool = field(default=True, init=False)

    @classmethod
    def from_rendered(cls, rendered: RenderedFile, remote_path: str, *, mode: int = 0o644) -> FilePush:
        """Build a push unit from a rendered template."""
        return cls(
            remote_path=remote_path,
            content=rendered.content.encode("utf-8"),
            description=f"render {rendered.template} -> {remote_path}",
            mode=mode,
        )


@dataclass(slots=True, frozen=True)
class FilePull:
    """Copy a remote file to the local filesystem."""

    remote_path: str
    local_path: Path
    description: str
    mutating: bool = field(default=True, init=False)


UnitOfWork = Command | StatusProbe | FilePush | FilePull


@dataclass(slots=True, frozen=True)
class ExecResult:
    """Structured outcome of a unit of work."""

    node: str
    description: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    changed: bool = False
    would_change: bool = False
    dry_run: bool = False
    attempts: int = 1


class NodeExecutor:
    """Execute units of work on nodes through a :class:`RemoteExec` transport."""

    def __init__(
        self,
        transport: RemoteExec,
        *,
        retry: RetryPolicy | None = None,
        timeout: float = 60.0,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Bind the transport and per-executor defaults."""
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.dry_run = dry_run
        self._sleep = sleep

    def with_dry_run(self, dry_run: bool) -> NodeExecutor:
        """Return an executor sharing this transport with *dry_run* toggled."""
        return NodeExecutor(
            self.transport,
            retry=self.retry,
            timeout=self.timeout,
            dry_run=dry_run,
            sleep=self._sleep,
        )

    def execute(
        self,
        node: Node,
        unit: UnitOfWork,
        *,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ) -> ExecResult:
        """Run *unit* on *node*.

        In dry-run mode mutating units are not performed; the returned result
        is tagged ``would_change=True``. Read-only units always run.
        """
        if self.dry_run and unit.mutating:
            logger.debug("%s: dry-run, would %s", node.name, unit.description)
            return ExecResult(
                node=node.name,
                description=unit.description,
                would_change=True,
                dry_run=True,
                attempts=0,
            )

        policy = retry or self.retry
        effective_timeout = timeout if timeout is not None else self.timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._perform(node, unit, effective_timeout)
            except FleetError as exc:
                if attempt >= policy.attempts or not policy.should_retry(exc):
                    raise
                delay = policy.delay(attempt)
                logger.debug(
                    "%s: %s failed (%s); retry %d/%d in %.2fs",
                    node.name,
                    unit.description,
                    exc,
                    attempt,
                    policy.attempts - 1,
                    delay,
                )
                self._sleep(delay)
                continue
            return replace(result, attempts=attempt)

    # ------------------------------------------------------------------
    def _perform(self, node: Node, unit: UnitOfWork, timeout: float) -> ExecResult:
        if isinstance(unit, (Command, StatusProbe)):
            stdin = unit.stdin if isinstance(unit, Command) else None
            output = self.transport.run(node, unit.argv, timeout=timeout, stdin=stdin)
            if output.exit_code not in unit.accept_codes:
                raise self._classify_failure(node, unit.description, output)
            return ExecResult(
                node=node.name,
                description=unit.description,
                stdout=output.stdout,
                stderr=output.stderr,
                exit_code=output.exit_code,
                changed=unit.mutating,
            )
        if isinstance(unit, FilePush):
            self.transport.push(
                node, unit.content, unit.remote_path, mode=unit.mode, timeout=timeout
            )
            return ExecResult(node=node.name, description=unit.description, changed=True)
        if isinstance(unit, FilePull):
            unit.local_path.parent.mkdir(parents=True, exist_ok=True)
            self.transport.pull(node, unit.remote_path, unit.local_path, timeout=timeout)
            return ExecResult(node=node.name, description=unit.description, changed=True)
        raise TypeError(f"Unsupported unit of work: {type(unit).__name__}")

    def _classify_failure(
        self,
        node: Node,
        description: str,
        output: CommandOutput,
    ) -> FleetError:
        text = f"{output.stderr}\n{output.stdout}".lower()
        if any(marker in text for marker in _AUTH_FAILURE_MARKERS):
            return AuthFailedError(f"{node.name}: {description}: {output.stderr.strip()}")
        code = _extract_server_code(output) or output.exit_code
        return RemoteError(
            code,
            output.stderr or output.stdout,
            command=f"{node.name}: {description}",
            transient=code in self.retry.transient_codes,
        )


def _extract_server_code(output: CommandOutput) -> int | None:
    """Return a MongoDB server error code embedded in command output, if any."""
    for line in _iter_lines(output.stderr, output.stdout):
        marker = "code:"
        lowered = line.lower()
        if marker in lowered:
            tail = lowered.split(marker, 1)[1].strip().lstrip('"').split()[0].rstrip(",}")
            if tail.isdigit():
                return int(tail)
    return None


def _iter_lines(*chunks: str) -> Iterable[str]:
    for chunk in chunks:
        yield from chunk.splitlines()


__all__ = [
    "Command",
    "ExecResult",
    "FilePull",
    "FilePush",
    "NO_RETRY",
    "NodeExecutor",
    "RetryPolicy",
    "StatusProbe",
    "UnitOfWork",
]
