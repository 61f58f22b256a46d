"""
Atomic filesystem operations used by the upgrade components.

Every file another process may read (watchdog status, sidecar trigger,
backup artifacts) is written with the same pattern:
1. Write to a temp file in the destination directory
2. fsync the temp file
3. os.replace(temp, final)
4. fsync the directory

A crash at any point leaves either the old file or the new one, never a
partial write.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

from mesh_upgrade.errors import FailedPreconditionError, InternalError
from mesh_upgrade.logging import get_logger

logger = get_logger(__name__)

_HASH_CHUNK_SIZE = 1024 * 1024


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        FailedPreconditionError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def safe_remove(path: Path) -> bool:
    """
    Remove a file or directory tree if it exists.

    Returns:
        True if something was removed.
    """
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif os.path.lexists(path):
            path.unlink()
        else:
            return False
    except OSError as e:
        logger.warning(
            "Failed to remove path",
            extra={"path": str(path), "error": str(e)},
        )
        return False

    logger.debug("Removed path", extra={"path": str(path)})
    return True


def fsync_directory(path: Path) -> None:
    """fsync a directory so that a completed rename survives power loss."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int = 0o644) -> None:
    """
    Atomically replace ``path`` with ``data``.

    Raises:
        InternalError: If the write or rename fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except OSError as e:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise InternalError(
            f"Failed to write file atomically: {e}",
            details={"path": str(path), "error": str(e)},
        ) from e

    fsync_directory(path.parent)


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    """Atomically write a JSON document."""
    atomic_write_bytes(path, json.dumps(payload, indent=2).encode("utf-8"))


def read_json(path: Path) -> dict[str, Any] | None:
    """
    Read a JSON object from disk.

    Returns:
        The parsed object, or None if the file is missing, unreadable,
        or does not contain a JSON object.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(
            "Failed to read JSON file",
            extra={"path": str(path), "error": str(e)},
        )
        return None

    if not isinstance(data, dict):
        return None
    return data


def sha256_file(path: Path) -> str:
    """Return the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def directory_access(path: Path) -> tuple[bool, str]:
    """
    Check that a directory exists and is readable and writable.

    Writability is checked by creating and removing a probe file.

    Returns:
        Tuple of (ok, message).
    """
    if not path.exists():
        return False, f"Directory does not exist: {path}"
    if not path.is_dir():
        return False, f"Not a directory: {path}"
    if not os.access(path, os.R_OK):
        return False, f"Directory is not readable: {path}"

    try:
        with tempfile.NamedTemporaryFile(dir=path, prefix=".write-probe-") as f:
            f.write(b"ok")
            f.flush()
    except OSError as e:
        return False, f"Directory is not writable: {path} ({e})"

    return True, f"Directory is readable and writable: {path}"
