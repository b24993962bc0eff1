"""Tests for the executor-backed providers and the SSH transport."""
from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from mongofleet.config import ContainerConfig, DatabaseConfig, SshConfig
from mongofleet.errors import AuthFailedError, RemoteError, UnreachableError
from mongofleet.executor import NO_RETRY, NodeExecutor
from mongofleet.models import AuthPolicy, DesiredConfig, Node, NodeRole
from mongofleet.providers import (
    DockerRuntime,
    MongoShellClient,
    SecretsError,
    SecretsResolver,
    ShellHostFiles,
)
from mongofleet.templates import RenderedFile
from mongofleet.transport import CommandOutput, SshTransport

SECRET = "s3cr3t-pw"

Responder = Callable[[Sequence[str]], CommandOutput]


class RecordingRemote:
    """Transport double that records every call and replies via a responder."""

    def __init__(self, responder: Responder | None = None) -> None:
        self.responder = responder or (lambda argv: CommandOutput("", "", 0))
        self.runs: list[tuple[tuple[str, ...], bytes | None]] = []
        self.pushes: list[tuple[str, bytes, int]] = []
        self.pulls: list[tuple[str, Path]] = []

    def run(
        self,
        node: Node,
        argv: Sequence[str],
        *,
        timeout: float,
        stdin: bytes | None = None,
    ) -> CommandOutput:
        self.runs.append((tuple(argv), stdin))
        return self.responder(argv)

    def push(self, node: Node, content: bytes, remote_path: str, *, mode: int, timeout: float) -> None:
        self.pushes.append((remote_path, content, mode))

    def pull(self, node: Node, remote_path: str, local_path: Path, *, timeout: float) -> None:
        self.pulls.append((remote_path, local_path))
        local_path.write_bytes(b"pulled")


def _node(*, auth: bool = False) -> Node:
    desired = DesiredConfig(
        version="7.0.5",
        auth=AuthPolicy(enabled=auth, root_password_ref="env:MONGO_ROOT"),
        replica_set="rs0",
    )
    return Node(name="db1", host="db1.internal", role=NodeRole.PRIMARY, desired=desired)


def _executor(remote: RecordingRemote, *, dry_run: bool = False) -> NodeExecutor:
    return NodeExecutor(remote, retry=NO_RETRY, timeout=5.0, dry_run=dry_run)


def _client(remote: RecordingRemote, *, dry_run: bool = False) -> MongoShellClient:
    return MongoShellClient(
        _executor(remote, dry_run=dry_run),
        DatabaseConfig(),
        ContainerConfig(),
        SecretsResolver({"MONGO_ROOT": SECRET}),
    )


# ---------------------------------------------------------------------------
# Container runtime
# ---------------------------------------------------------------------------


def test_inspect_parses_running_and_image() -> None:
    """docker inspect output maps onto ContainerInfo."""
    remote = RecordingRemote(lambda argv: CommandOutput("true mongo:7.0.5\n", "", 0))
    runtime = DockerRuntime(_executor(remote), ContainerConfig())

    info = runtime.inspect(_node())

    assert (info.exists, info.running, info.image, info.version) == (True, True, "mongo:7.0.5", "7.0.5")
    assert remote.runs[0][0][:2] == ("docker", "inspect")


def test_inspect_missing_container() -> None:
    """Exit code 1 from docker inspect means no container."""
    remote = RecordingRemote(lambda argv: CommandOutput("", "Error: No such object", 1))

    info = DockerRuntime(_executor(remote), ContainerConfig()).inspect(_node())

    assert info.exists is False


def test_ensure_running_replaces_container_on_other_image() -> None:
    """A container on another image is removed and re-run with the config mount."""

    def responder(argv: Sequence[str]) -> CommandOutput:
        if argv[1] == "inspect":
            return CommandOutput("true mongo:6.0.12\n", "", 0)
        return CommandOutput("", "", 0)

    remote = RecordingRemote(responder)
    runtime = DockerRuntime(_executor(remote), ContainerConfig(), port=27017)

    changed = runtime.ensure_running(_node(), "mongo:7.0.5", "/etc/mongod/mongod.conf")

    assert changed is True
    commands = [argv for argv, _ in remote.runs]
    assert commands[1] == ("docker", "rm", "-f", "mongodb")
    run = commands[2]
    assert run[:6] == ("docker", "run", "-d", "--name", "mongodb", "--restart")
    assert "/var/lib/mongodb:/data/db" in run
    assert "/etc/mongod:/etc/mongod:ro" in run
    assert run[-3:] == ("mongo:7.0.5", "--config", "/etc/mongod/mongod.conf")


def test_ensure_running_is_noop_when_current() -> None:
    """A running container on the desired image is left alone."""
    remote = RecordingRemote(lambda argv: CommandOutput("true mongo:7.0.5", "", 0))

    changed = DockerRuntime(_executor(remote), ContainerConfig()).ensure_running(
        _node(), "mongo:7.0.5", "/etc/mongod/mongod.conf"
    )

    assert changed is False
    assert len(remote.runs) == 1


def test_dry_run_restart_is_not_sent() -> None:
    """Mutating container commands are skipped in dry-run mode."""
    remote = RecordingRemote()

    DockerRuntime(_executor(remote, dry_run=True), ContainerConfig()).restart(_node())

    assert remote.runs == []


# ---------------------------------------------------------------------------
# Database client
# ---------------------------------------------------------------------------


def test_ping_sends_script_on_stdin_without_credentials() -> None:
    """ping runs mongosh in the container and never authenticates."""
    remote = RecordingRemote(lambda argv: CommandOutput('{"ok":1}\n', "", 0))

    assert _client(remote).ping(_node(auth=True)) is True

    argv, stdin = remote.runs[0]
    assert argv == (
        "docker",
        "exec",
        "-i",
        "mongodb",
        "mongosh",
        "--quiet",
        "--norc",
        "--port",
        "27017",
    )
    assert stdin is not None and b"ping" in stdin
    assert SECRET.encode() not in stdin


def test_ping_failure_reports_unhealthy() -> None:
    """A failing shell command makes ping return False."""
    remote = RecordingRemote(lambda argv: CommandOutput("", "MongoNetworkError: connect ECONNREFUSED", 1))

    assert _client(remote).ping(_node()) is False


def test_authenticated_eval_keeps_password_out_of_argv() -> None:
    """Credentials travel in the stdin script only."""
    remote = RecordingRemote(lambda argv: CommandOutput('["admin","appdb","local"]\n', "", 0))

    names = _client(remote).list_databases(_node(auth=True))

    assert names == ["admin", "appdb", "local"]
    argv, stdin = remote.runs[0]
    assert all(SECRET not in part for part in argv)
    assert stdin is not None and SECRET.encode() in stdin


def test_authenticate_detects_rejected_credentials() -> None:
    """Authentication failures in shell output map to False."""
    remote = RecordingRemote(
        lambda argv: CommandOutput("", "MongoServerError: Authentication failed.", 1)
    )

    assert _client(remote).authenticate(_node(auth=True)) is False


def test_replica_status_parses_hello_reply() -> None:
    """Secondary replies carry role, set name and lag."""
    reply = '{"setName":"rs0","primary":false,"secondary":true,"arbiter":false,"lag":4.5}\n'
    remote = RecordingRemote(lambda argv: CommandOutput(f"noise\n{reply}", "", 0))

    status = _client(remote).replica_status(_node())

    assert (status.role, status.member, status.set_name, status.lag_seconds) == (
        "SECONDARY",
        True,
        "rs0",
        4.5,
    )


def test_dump_passes_password_on_stdin() -> None:
    """mongodump receives the username in argv and the password on stdin."""
    remote = RecordingRemote()

    _client(remote).dump(
        _node(auth=True),
        "/tmp/mongofleet/staging.archive",
        databases=(),
        oplog=True,
        timeout=30.0,
    )

    dump_argv, dump_stdin = remote.runs[0]
    assert dump_argv[4] == "mongodump"
    assert "--archive=/tmp/staging.archive" in dump_argv
    assert "--oplog" in dump_argv
    assert dump_argv[-4:] == ("--username", "admin", "--authenticationDatabase", "admin")
    assert all(SECRET not in part for part in dump_argv)
    assert dump_stdin == f"{SECRET}\n".encode()
    assert remote.runs[1][0] == (
        "docker",
        "cp",
        "mongodb:/tmp/staging.archive",
        "/tmp/mongofleet/staging.archive",
    )
    assert remote.runs[2][0][-3:] == ("rm", "-f", "/tmp/staging.archive")


def test_dump_with_database_filter_omits_oplog() -> None:
    """Oplog capture is incompatible with namespace filters."""
    remote = RecordingRemote()

    _client(remote).dump(
        _node(), "/tmp/mongofleet/x.archive", databases=("appdb",), oplog=True, timeout=30.0
    )

    dump_argv = remote.runs[0][0]
    assert "--oplog" not in dump_argv
    assert "--nsInclude=appdb.*" in dump_argv


def test_restore_adds_gzip_and_filter() -> None:
    """mongorestore gets --gzip and --nsInclude as requested."""
    remote = RecordingRemote()

    _client(remote).restore(
        _node(),
        "/tmp/mongofleet/x.archive.gz",
        database_filter="appdb",
        compressed=True,
        timeout=30.0,
    )

    copy_argv, restore_argv, cleanup_argv = (argv for argv, _ in remote.runs)
    assert copy_argv == ("docker", "cp", "/tmp/mongofleet/x.archive.gz", "mongodb:/tmp/x.archive.gz")
    assert restore_argv[4] == "mongorestore"
    assert "--gzip" in restore_argv
    assert "--nsInclude=appdb.*" in restore_argv
    assert cleanup_argv[-1] == "/tmp/x.archive.gz"
    assert "--oplogReplay" not in restore_argv


def test_full_restore_replays_oplog() -> None:
    """An unfiltered restore of a point-in-time dump adds --oplogReplay."""
    remote = RecordingRemote()

    _client(remote).restore(
        _node(),
        "/tmp/mongofleet/x.archive",
        database_filter=None,
        compressed=False,
        timeout=30.0,
        oplog_replay=True,
    )

    restore_argv = remote.runs[1][0]
    assert "--oplogReplay" in restore_argv
    assert not any(arg.startswith("--nsInclude") for arg in restore_argv)


def test_filtered_restore_never_replays_oplog() -> None:
    """--oplogReplay is dropped when a database filter is given."""
    remote = RecordingRemote()

    _client(remote).restore(
        _node(),
        "/tmp/mongofleet/x.archive",
        database_filter="appdb",
        compressed=False,
        timeout=30.0,
        oplog_replay=True,
    )

    restore_argv = remote.runs[1][0]
    assert "--oplogReplay" not in restore_argv
    assert "--nsInclude=appdb.*" in restore_argv


def test_create_root_user_requires_credential_reference() -> None:
    """Creating the root user without a password reference is an error."""
    remote = RecordingRemote()

    with pytest.raises(SecretsError):
        _client(remote).create_root_user(_node(), AuthPolicy(enabled=True))

    assert remote.runs == []


# ---------------------------------------------------------------------------
# Host files
# ---------------------------------------------------------------------------


def test_checksum_missing_file_is_none() -> None:
    """sha256sum exit 1 means the file does not exist."""
    remote = RecordingRemote(lambda argv: CommandOutput("", "No such file", 1))

    assert ShellHostFiles(_executor(remote)).checksum(_node(), "/etc/mongod/mongod.conf") is None


def test_checksum_reads_digest() -> None:
    """The first column of sha256sum output is the digest."""
    remote = RecordingRemote(lambda argv: CommandOutput("abc123  /etc/mongod/mongod.conf\n", "", 0))

    assert ShellHostFiles(_executor(remote)).checksum(_node(), "/etc/mongod/mongod.conf") == "abc123"


def test_disk_usage_parses_df_output() -> None:
    """The capacity column of df -P is parsed as a percentage."""
    output = (
        "Filesystem 1024-blocks Used Available Capacity Mounted on\n"
        "/dev/sda1 1000 870 130 87% /var/lib/mongodb\n"
    )
    remote = RecordingRemote(lambda argv: CommandOutput(output, "", 0))

    assert ShellHostFiles(_executor(remote)).disk_usage_percent(_node(), "/var/lib/mongodb") == 87.0


def test_write_config_and_upload_push_content(tmp_path: Path) -> None:
    """Config writes and uploads use push with the expected modes."""
    remote = RecordingRemote()
    files = ShellHostFiles(_executor(remote))
    local = tmp_path / "artifact.archive.gz"
    local.write_bytes(b"\x1f\x8bdata")

    files.write_config(_node(), RenderedFile("mongod.conf.j2", "net: {}\n"), "/etc/mongod/mongod.conf")
    files.upload(_node(), local, "/tmp/mongofleet/artifact.archive.gz", timeout=10.0)
    files.fetch(_node(), "/tmp/mongofleet/other.gz", tmp_path / "pulled.gz", timeout=10.0)

    assert remote.pushes == [
        ("/etc/mongod/mongod.conf", b"net: {}\n", 0o644),
        ("/tmp/mongofleet/artifact.archive.gz", b"\x1f\x8bdata", 0o600),
    ]
    assert (tmp_path / "pulled.gz").read_bytes() == b"pulled"


# ---------------------------------------------------------------------------
# SSH transport and secrets
# ---------------------------------------------------------------------------


def _completed(returncode: int, stderr: bytes = b"") -> subprocess.CompletedProcess[bytes]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=b"", stderr=stderr)


def test_ssh_connection_failure_is_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    """Exit status 255 maps to UnreachableError."""
    monkeypatch.setattr(subprocess, "run", lambda *args, **kwargs: _completed(255, b"Connection refused"))

    with pytest.raises(UnreachableError):
        SshTransport(SshConfig()).run(_node(), ["true"], timeout=1.0)


def test_ssh_auth_failure_is_not_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    """Exit status 255 with a permission error maps to AuthFailedError."""
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda *args, **kwargs: _completed(255, b"root@db1: Permission denied (publickey)."),
    )

    with pytest.raises(AuthFailedError):
        SshTransport(SshConfig()).run(_node(), ["true"], timeout=1.0)


def test_ssh_timeout_is_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    """Subprocess timeouts map to UnreachableError."""

    def timeout(*args: object, **kwargs: object) -> None:
        raise subprocess.TimeoutExpired(cmd="ssh", timeout=1.0)

    monkeypatch.setattr(subprocess, "run", timeout)

    with pytest.raises(UnreachableError, match="timed out"):
        SshTransport(SshConfig()).run(_node(), ["true"], timeout=1.0)


def test_ssh_command_is_quoted(monkeypatch: pytest.MonkeyPatch) -> None:
    """The remote command is shell-quoted and sent to user@host."""
    captured: list[list[str]] = []

    def fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[bytes]:
        captured.append(command)
        return subprocess.CompletedProcess(args=command, returncode=0, stdout=b"ok\n", stderr=b"")

    monkeypatch.setattr(subprocess, "run", fake_run)

    output = SshTransport(SshConfig(user="ops")).run(_node(), ["echo", "a b"], timeout=1.0)

    assert output.stdout == "ok\n"
    assert captured[0][0] == "ssh"
    assert captured[0][-2:] == ["ops@db1.internal", "echo 'a b'"]


def test_missing_ssh_binary_is_remote_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing ssh binary is reported as exit 127."""

    def missing(*args: object, **kwargs: object) -> None:
        raise FileNotFoundError("ssh")

    monkeypatch.setattr(subprocess, "run", missing)

    with pytest.raises(RemoteError) as excinfo:
        SshTransport(SshConfig()).run(_node(), ["true"], timeout=1.0)
    assert excinfo.value.code == 127


def test_secrets_resolver_env_and_file(tmp_path: Path) -> None:
    """env: and file: references resolve; unknown schemes fail."""
    secret_file = tmp_path / "pw"
    secret_file.write_text("from-file\n", encoding="utf-8")
    resolver = SecretsResolver({"PW": "from-env"})

    assert resolver.resolve("env:PW") == "from-env"
    assert resolver.resolve(f"file:{secret_file}") == "from-file"
    with pytest.raises(SecretsError):
        resolver.resolve("env:MISSING")
    with pytest.raises(SecretsError):
        resolver.resolve("vault:secret/db")
