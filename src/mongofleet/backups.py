"""Backup store: per-environment artifact directories, checksums and metadata index.

Artifacts live at ``<root>/<environment>/<environment>_<timestamp>.archive[.gz]``
with a ``sha256sum``-style sidecar next to each file and an ``index.json``
recording metadata per artifact. Files are written as hidden ``.partial``
files and only renamed into place once complete, so an interrupted transfer
never leaves an artifact that looks finished.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .errors import ArtifactInvalidError
from .models import BackupArtifact, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".archive"
GZIP_SUFFIX = ".gz"
CHECKSUM_SUFFIX = ".sha256"
PARTIAL_SUFFIX = ".partial"
INDEX_NAME = "index.json"
GZIP_MAGIC = b"\x1f\x8b"
ARCHIVE_MAGIC = b"\x6d\xe2\x99\x81"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_NAME_PATTERN = re.compile(
    r"^(?P<environment>.+)_(?P<timestamp>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z)"
    r"\.archive(?P<gzip>\.gz)?$"
)
_CHUNK_SIZE = 1024 * 1024


class BackupStoreError(RuntimeError):
    """Raised when the backup store cannot be read or written."""


def artifact_name(environment: str, timestamp: datetime, *, compressed: bool) -> str:
    """Return the canonical file name for an artifact."""
    stamp = timestamp.astimezone(UTC).strftime(TIMESTAMP_FORMAT)
    suffix = ARCHIVE_SUFFIX + (GZIP_SUFFIX if compressed else "")
    return f"{environment}_{stamp}{suffix}"


def parse_artifact_name(name: str) -> tuple[str, datetime, bool] | None:
    """Return ``(environment, timestamp, compressed)`` for a canonical name."""
    match = _NAME_PATTERN.match(name)
    if match is None:
        return None
    timestamp = datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    return match.group("environment"), timestamp, match.group("gzip") is not None


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 digest of *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def sidecar_path(path: Path) -> Path:
    """Return the checksum sidecar path for *path*."""
    return path.with_name(path.name + CHECKSUM_SUFFIX)


def read_sidecar(path: Path) -> str | None:
    """Return the checksum recorded next to *path*, if any."""
    sidecar = sidecar_path(path)
    try:
        text = sidecar.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise BackupStoreError(f"Unable to read checksum file {sidecar}: {exc}") from exc
    return text.split()[0] if text else None


def write_sidecar(path: Path, checksum: str) -> Path:
    """Write a ``sha256sum``-compatible sidecar for *path*."""
    sidecar = sidecar_path(path)
    sidecar.write_text(f"{checksum}  {path.name}\n", encoding="utf-8")
    return sidecar


@dataclass(slots=True)
class BackupStore:
    """Manage artifacts and the metadata index beneath *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path."""
        self.root = Path(self.root).expanduser()

    # Layout --------------------------------------------------------
    def environment_dir(self, environment: str) -> Path:
        """Return the artifact directory for *environment*."""
        return self.root / environment

    def index_path(self, environment: str) -> Path:
        """Return the metadata index path for *environment*."""
        return self.environment_dir(environment) / INDEX_NAME

    def ensure_environment_dir(self, environment: str) -> Path:
        """Create the artifact directory for *environment* with safe permissions."""
        directory = self.environment_dir(environment)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            os.chmod(directory, 0o750)
        except OSError as exc:
            raise BackupStoreError(f"Failed to prepare backup directory {directory}: {exc}") from exc
        return directory

    def partial_path(self, environment: str, name: str) -> Path:
        """Return the hidden staging path used while *name* is transferred."""
        return self.environment_dir(environment) / f".{name}{PARTIAL_SUFFIX}"

    # Naming --------------------------------------------------------
    def next_timestamp(self, environment: str, now: datetime) -> datetime:
        """Return a start timestamp strictly newer than every existing artifact."""
        candidate = now.astimezone(UTC).replace(microsecond=0)
        existing = self.list_artifacts(environment)
        if existing:
            latest = existing[-1].timestamp
            if candidate <= latest:
                candidate = latest + timedelta(seconds=1)
        return candidate

    # Enumeration ---------------------------------------------------
    def list_artifacts(self, environment: str) -> list[BackupArtifact]:
        """Return complete artifacts for *environment*, oldest first.

        Raises :class:`BackupStoreError` when the directory cannot be read.
        """
        directory = self.environment_dir(environment)
        artifacts: list[BackupArtifact] = []
        try:
            if not directory.is_dir():
                return []
            index = self._read_index(environment)
            for path in directory.iterdir():
                if not path.is_file():
                    continue
                parsed = parse_artifact_name(path.name)
                if parsed is None or parsed[0] != environment:
                    continue
                artifacts.append(self._artifact_from_path(path, parsed, index.get(path.name)))
        except OSError as exc:
            raise BackupStoreError(f"Unable to read backup directory {directory}: {exc}") from exc
        artifacts.sort(key=lambda artifact: artifact.timestamp)
        return artifacts

    def resolve(self, environment: str, reference: str) -> BackupArtifact:
        """Resolve *reference* (artifact name or file path) to an artifact.

        Raises :class:`ArtifactInvalidError` when nothing exists at the
        reference.
        """
        candidate = Path(reference).expanduser()
        if candidate.is_absolute() or "/" in reference:
            path = candidate
        else:
            path = self.environment_dir(environment) / reference
        if not path.is_file():
            raise ArtifactInvalidError(f"Backup artifact '{reference}' does not exist.")
        parsed = parse_artifact_name(path.name)
        entry = None
        if path.parent == self.environment_dir(environment):
            entry = self._read_index(environment).get(path.name)
        if parsed is None:
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC).replace(microsecond=0)
            parsed = (environment, modified, path.name.endswith(GZIP_SUFFIX))
        return self._artifact_from_path(path, parsed, entry)

    # Mutation --------------------------------------------------------
    def commit(
        self,
        environment: str,
        partial: Path,
        *,
        timestamp: datetime,
        nodes: Iterable[str],
        compressed: bool,
        databases: Iterable[str] = (),
        oplog: bool = False,
    ) -> BackupArtifact:
        """Checksum *partial*, record its metadata and move it into place.

        The sidecar and index entry are written before the rename; if any
        step fails they are removed again so no half-recorded artifact is
        left behind.
        """
        name = artifact_name(environment, timestamp, compressed=compressed)
        final = self.environment_dir(environment) / name
        try:
            checksum = compute_checksum(partial)
            size = partial.stat().st_size
        except OSError as exc:
            raise BackupStoreError(f"Failed to read staged artifact {partial}: {exc}") from exc
        artifact = BackupArtifact(
            environment=environment,
            timestamp=timestamp,
            nodes=tuple(nodes),
            path=final,
            size_bytes=size,
            compressed=compressed,
            checksum=checksum,
            databases=tuple(databases),
            oplog=oplog,
        )
        entry = artifact.to_dict()
        entry["created_at"] = format_timestamp(datetime.now(tz=UTC))
        try:
            write_sidecar(final, checksum)
            index = self._read_index(environment)
            index[name] = entry
            self._write_index(environment, index)
            os.replace(partial, final)
            os.chmod(final, 0o640)
        except (OSError, BackupStoreError) as exc:
            self._rollback(environment, final)
            if isinstance(exc, BackupStoreError):
                raise
            raise BackupStoreError(f"Failed to store artifact {final}: {exc}") from exc
        logger.info("stored artifact %s (%d bytes)", final, size)
        return artifact

    def _rollback(self, environment: str, final: Path) -> None:
        """Remove *final*, its sidecar and its index entry after a failed commit."""
        try:
            final.unlink(missing_ok=True)
            sidecar_path(final).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("unable to remove %s after failed commit: %s", final, exc)
        try:
            index = self._read_index(environment)
            if index.pop(final.name, None) is not None:
                self._write_index(environment, index)
        except BackupStoreError as exc:
            logger.warning("unable to drop index entry for %s: %s", final.name, exc)

    def discard(self, partial: Path) -> None:
        """Remove a partially transferred file."""
        try:
            partial.unlink(missing_ok=True)
        except OSError as exc:
            raise BackupStoreError(f"Failed to remove partial artifact {partial}: {exc}") from exc

    def delete(self, artifact: BackupArtifact) -> None:
        """Delete *artifact*, its sidecar and its index entry."""
        try:
            artifact.path.unlink(missing_ok=True)
            sidecar_path(artifact.path).unlink(missing_ok=True)
        except OSError as exc:
            raise BackupStoreError(f"Failed to delete artifact {artifact.path}: {exc}") from exc
        index = self._read_index(artifact.environment)
        if index.pop(artifact.name, None) is not None:
            self._write_index(artifact.environment, index)

    # Validation -------------------------------------------------------
    def validate(self, artifact: BackupArtifact) -> None:
        """Check existence, recorded checksum and format magic of *artifact*."""
        path = artifact.path
        if not path.is_file():
            raise ArtifactInvalidError(f"Backup artifact {path} does not exist.")
        if not artifact.checksum:
            raise ArtifactInvalidError(
                f"No recorded checksum for {path.name}; expected {sidecar_path(path).name}."
            )
        actual = compute_checksum(path)
        if actual != artifact.checksum:
            raise ArtifactInvalidError(
                f"Checksum mismatch for {path.name}: expected {artifact.checksum}, got {actual}."
            )
        expected_magic = GZIP_MAGIC if artifact.compressed else ARCHIVE_MAGIC
        with path.open("rb") as handle:
            header = handle.read(len(expected_magic))
        if header != expected_magic:
            kind = "gzip" if artifact.compressed else "MongoDB archive"
            raise ArtifactInvalidError(f"{path.name} is not a {kind} file.")

    # Index helpers ----------------------------------------------------
    def _artifact_from_path(
        self,
        path: Path,
        parsed: tuple[str, datetime, bool],
        entry: Mapping[str, object] | None,
    ) -> BackupArtifact:
        environment, timestamp, compressed = parsed
        checksum = read_sidecar(path)
        nodes: tuple[str, ...] = ()
        databases: tuple[str, ...] = ()
        oplog = False
        if entry is not None:
            oplog = entry.get("oplog") is True
            if checksum is None:
                recorded = entry.get("checksum")
                if isinstance(recorded, Mapping):
                    checksum = str(recorded.get("value") or "") or None
            raw_nodes = entry.get("nodes")
            if isinstance(raw_nodes, list):
                nodes = tuple(str(item) for item in raw_nodes)
            raw_databases = entry.get("databases")
            if isinstance(raw_databases, list):
                databases = tuple(str(item) for item in raw_databases)
            raw_timestamp = entry.get("timestamp")
            if isinstance(raw_timestamp, str):
                try:
                    timestamp = parse_timestamp(raw_timestamp)
                except ValueError:
                    logger.warning("ignoring malformed timestamp in index for %s", path.name)
        return BackupArtifact(
            environment=environment,
            timestamp=timestamp,
            nodes=nodes,
            path=path,
            size_bytes=path.stat().st_size,
            compressed=compressed,
            checksum=checksum or "",
            databases=databases,
            oplog=oplog,
        )

    def _read_index(self, environment: str) -> dict[str, dict[str, object]]:
        path = self.index_path(environment)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            raise BackupStoreError(f"Backup index corrupted ({path}): {exc}") from exc
        except OSError as exc:
            raise BackupStoreError(f"Unable to read backup index {path}: {exc}") from exc
        artifacts = data.get("artifacts") if isinstance(data, Mapping) else None
        if not isinstance(artifacts, list):
            raise BackupStoreError(f"Backup index must hold an 'artifacts' list ({path}).")
        index: dict[str, dict[str, object]] = {}
        for item in artifacts:
            if isinstance(item, Mapping) and isinstance(item.get("name"), str):
                index[str(item["name"])] = dict(item)
        return index

    def _write_index(self, environment: str, index: Mapping[str, Mapping[str, object]]) -> None:
        path = self.index_path(environment)
        self.ensure_environment_dir(environment)
        entries = sorted(index.values(), key=lambda entry: str(entry.get("timestamp", "")))
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump({"artifacts": list(entries)}, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise BackupStoreError(f"Failed to write backup index {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "ARCHIVE_MAGIC",
    "BackupStore",
    "BackupStoreError",
    "GZIP_MAGIC",
    "artifact_name",
    "compute_checksum",
    "parse_artifact_name",
    "read_sidecar",
    "sidecar_path",
    "write_sidecar",
]
