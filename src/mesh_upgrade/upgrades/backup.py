"""
Pre-upgrade snapshots of the service's data.

A snapshot is a ``backup-<upgradeId>-<timestamp>.tar.gz`` artifact in the
backup directory containing:
- data/<member>: each configured source (SQLite databases are copied with the
  online backup API, other files and directories as-is)
- manifest.json: per-file SHA-256 digests and the original source paths

Next to it, ``<artifact>.sha256`` holds the digest of the whole archive.

Write order:
1. Build the archive under a temp name and fsync it
2. Write the .sha256 marker
3. Rename the archive to its final name

A crash at any point leaves nothing that passes verify().
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import sqlite3
import tarfile
import tempfile
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mesh_upgrade.errors import BackupIntegrityError, RollbackError
from mesh_upgrade.logging import get_logger
from mesh_upgrade.upgrades.operations import (
    atomic_write_text,
    ensure_directory,
    fsync_directory,
    safe_remove,
    sha256_file,
)

logger = get_logger(__name__)

MANIFEST_NAME = "manifest.json"
DATA_PREFIX = "data"
MARKER_SUFFIX = ".sha256"
BACKUP_PREFIX = "backup-"
BACKUP_SUFFIX = ".tar.gz"

_SQLITE_HEADER = b"SQLite format 3\x00"
_MANIFEST_VERSION = 1


def is_sqlite_database(path: Path) -> bool:
    """Check the SQLite file header."""
    try:
        with open(path, "rb") as f:
            return f.read(len(_SQLITE_HEADER)) == _SQLITE_HEADER
    except OSError:
        return False


def _copy_sqlite(source: Path, dest: Path) -> None:
    src = sqlite3.connect(str(source), timeout=30.0)
    try:
        dst = sqlite3.connect(str(dest))
        try:
            src.backup(dst)
        finally:
            dst.close()
    finally:
        src.close()


class BackupManager:
    """
    Creates, verifies, restores and prunes snapshots.

    Sources are paths relative to ``data_dir`` or absolute paths. A source
    that does not exist at snapshot time is recorded as absent and left
    untouched on restore.

    Example:
        >>> manager = BackupManager("/data/backups", "/data", ["meshmonitor.db"])
        >>> path = manager.snapshot("5b1c...")
        >>> manager.verify(path)
        True
        >>> manager.restore(path)
    """

    def __init__(
        self,
        backup_dir: str | Path,
        data_dir: str | Path,
        sources: list[str],
        *,
        retention_count: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.data_dir = Path(data_dir)
        self.sources = list(sources)
        self.retention_count = retention_count
        self._clock = clock

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def resolve_source(self, source: str) -> Path:
        path = Path(source)
        return path if path.is_absolute() else self.data_dir / path

    def _member_name(self, source: str) -> str:
        path = Path(source)
        if not path.is_absolute():
            return path.as_posix()
        try:
            return path.relative_to(self.data_dir).as_posix()
        except ValueError:
            return "abs/" + path.as_posix().lstrip("/")

    @staticmethod
    def marker_path(artifact: Path) -> Path:
        return artifact.with_name(artifact.name + MARKER_SUFFIX)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def snapshot(self, upgrade_id: str) -> Path:
        """
        Capture all sources into a new verified artifact.

        Args:
            upgrade_id: Upgrade the snapshot belongs to.

        Returns:
            Path of the final artifact.

        Raises:
            FailedPreconditionError: If the backup directory cannot be created.
            OSError, sqlite3.Error: If a source cannot be copied.
        """
        ensure_directory(self.backup_dir)
        created_at = self._clock()
        stamp = datetime.fromtimestamp(created_at, UTC).strftime("%Y%m%dT%H%M%SZ")
        artifact = self.backup_dir / f"{BACKUP_PREFIX}{upgrade_id}-{stamp}{BACKUP_SUFFIX}"

        staging = Path(tempfile.mkdtemp(prefix=".snapshot-", dir=self.backup_dir))
        partial = self.backup_dir / f".{artifact.name}.partial"
        try:
            data_root = staging / DATA_PREFIX
            data_root.mkdir()
            entries = [self._capture(source, data_root) for source in self.sources]

            files: dict[str, str] = {}
            for path in sorted(data_root.rglob("*")):
                if path.is_file() and not path.is_symlink():
                    files[path.relative_to(staging).as_posix()] = sha256_file(path)

            manifest = {
                "version": _MANIFEST_VERSION,
                "upgrade_id": upgrade_id,
                "created_at": created_at,
                "sources": entries,
                "files": files,
            }
            (staging / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2))

            with tarfile.open(partial, "w:gz") as tar:
                tar.add(staging / MANIFEST_NAME, arcname=MANIFEST_NAME)
                tar.add(data_root, arcname=DATA_PREFIX)
            with open(partial, "rb") as f:
                os.fsync(f.fileno())

            digest = sha256_file(partial)
            atomic_write_text(self.marker_path(artifact), f"{digest}  {artifact.name}\n")
            os.replace(partial, artifact)
            fsync_directory(self.backup_dir)
        except BaseException:
            safe_remove(partial)
            raise
        finally:
            safe_remove(staging)

        logger.info(
            "Backup created",
            extra={
                "upgrade_id": upgrade_id,
                "backup_path": str(artifact),
                "file_count": len(files),
            },
        )
        return artifact

    def _capture(self, source: str, data_root: Path) -> dict[str, Any]:
        path = self.resolve_source(source)
        name = self._member_name(source)
        dest = data_root / name
        entry: dict[str, Any] = {"name": name, "path": str(path)}

        if not path.exists():
            logger.warning("Backup source missing, skipping", extra={"path": str(path)})
            entry["kind"] = "absent"
            return entry

        dest.parent.mkdir(parents=True, exist_ok=True)
        if path.is_dir():
            shutil.copytree(path, dest, symlinks=True)
            entry["kind"] = "directory"
        elif is_sqlite_database(path):
            _copy_sqlite(path, dest)
            entry["kind"] = "sqlite"
        else:
            shutil.copy2(path, dest)
            entry["kind"] = "file"
        return entry

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def _load_verified_manifest(self, artifact: Path) -> dict[str, Any]:
        details = {"backup_path": str(artifact)}

        if not artifact.is_file():
            raise BackupIntegrityError("Backup artifact not found", details=details)

        marker = self.marker_path(artifact)
        try:
            expected = marker.read_text().split()[0]
        except (OSError, IndexError) as e:
            raise BackupIntegrityError(
                "Backup integrity marker missing or empty", details=details
            ) from e

        if sha256_file(artifact) != expected:
            raise BackupIntegrityError(
                "Backup checksum does not match integrity marker", details=details
            )

        try:
            with tarfile.open(artifact, "r:gz") as tar:
                manifest_file = tar.extractfile(MANIFEST_NAME)
                if manifest_file is None:
                    raise BackupIntegrityError("Backup manifest missing", details=details)
                manifest = json.loads(manifest_file.read())

                for member_name, digest in manifest.get("files", {}).items():
                    member = tar.extractfile(member_name)
                    if member is None:
                        raise BackupIntegrityError(
                            f"Backup member missing: {member_name}", details=details
                        )
                    if _sha256_stream(member) != digest:
                        raise BackupIntegrityError(
                            f"Backup member corrupt: {member_name}", details=details
                        )
        except (tarfile.TarError, KeyError, OSError, ValueError) as e:
            raise BackupIntegrityError(
                f"Backup archive unreadable: {e}", details=details
            ) from e

        return manifest

    def verify(self, artifact: str | Path) -> bool:
        """Return True if the artifact, its marker and every manifest digest check out."""
        try:
            self._load_verified_manifest(Path(artifact))
        except BackupIntegrityError as e:
            logger.warning(
                "Backup verification failed",
                extra={"backup_path": str(artifact), "error": e.message},
            )
            return False
        return True

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(self, artifact: str | Path) -> None:
        """
        Restore every captured source from an artifact.

        The artifact is fully verified before anything is touched. Each
        source is staged next to its destination and swapped in with
        os.replace.

        Raises:
            BackupIntegrityError: If the artifact is missing or corrupt.
            RollbackError: If a verified artifact cannot be applied.
        """
        artifact = Path(artifact)
        manifest = self._load_verified_manifest(artifact)

        staging = Path(tempfile.mkdtemp(prefix=".restore-", dir=self.backup_dir))
        try:
            with tarfile.open(artifact, "r:gz") as tar:
                tar.extractall(staging, filter="data")

            for entry in manifest.get("sources", []):
                if entry.get("kind") == "absent":
                    continue
                self._swap_in(
                    staging / DATA_PREFIX / entry["name"],
                    Path(entry["path"]),
                    entry["kind"],
                )
        except (OSError, tarfile.TarError) as e:
            logger.critical(
                "Restore from backup failed",
                extra={"backup_path": str(artifact), "error": str(e)},
            )
            raise RollbackError(
                f"Failed to restore backup: {e}",
                details={"backup_path": str(artifact)},
            ) from e
        finally:
            safe_remove(staging)

        logger.info("Backup restored", extra={"backup_path": str(artifact)})

    @staticmethod
    def _swap_in(staged: Path, target: Path, kind: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_name(f".{target.name}.restore-tmp")
        safe_remove(temp)

        if kind == "directory":
            shutil.copytree(staged, temp, symlinks=True)
            previous = target.with_name(f".{target.name}.pre-restore")
            safe_remove(previous)
            if target.exists():
                os.replace(target, previous)
            os.replace(temp, target)
            safe_remove(previous)
        else:
            shutil.copy2(staged, temp)
            with open(temp, "rb") as f:
                os.fsync(f.fileno())
            if kind == "sqlite":
                for suffix in ("-wal", "-shm"):
                    safe_remove(target.with_name(target.name + suffix))
            os.replace(temp, target)

        fsync_directory(target.parent)

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def list_backups(self) -> list[Path]:
        """Return finished artifacts, newest first."""
        if not self.backup_dir.is_dir():
            return []
        artifacts = [
            p
            for p in self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}")
            if p.is_file()
        ]
        artifacts.sort(key=lambda p: (p.stat().st_mtime, p.name), reverse=True)
        return artifacts

    def prune(self, keep: int | None = None, *, protect: Path | None = None) -> list[Path]:
        """
        Delete all but the newest ``keep`` artifacts and their markers.

        Args:
            keep: Number of artifacts to keep (defaults to retention_count).
            protect: Artifact that is never deleted.

        Returns:
            Deleted artifact paths.
        """
        keep = self.retention_count if keep is None else max(0, keep)
        removed = []
        for artifact in self.list_backups()[keep:]:
            if protect is not None and artifact == Path(protect):
                continue
            safe_remove(artifact)
            safe_remove(self.marker_path(artifact))
            removed.append(artifact)

        if removed:
            logger.info("Pruned old backups", extra={"removed": [str(p) for p in removed]})
        return removed


def _sha256_stream(stream: Any) -> str:
    digest = hashlib.sha256()
    for chunk in iter(lambda: stream.read(1024 * 1024), b""):
        digest.update(chunk)
    return digest.hexdigest()
