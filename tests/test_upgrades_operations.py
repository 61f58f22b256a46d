"""
Tests for atomic filesystem operations.

Tests cover:
- Directory creation and removal helpers
- Atomic writes (no temp files left, replace semantics)
- JSON reads of missing or malformed files
- Directory access probes
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from mesh_upgrade.errors import FailedPreconditionError, InternalError
from mesh_upgrade.upgrades.operations import (
    atomic_write_bytes,
    atomic_write_json,
    atomic_write_text,
    directory_access,
    ensure_directory,
    read_json,
    safe_remove,
    sha256_file,
)

# =============================================================================
# Directory Helpers
# =============================================================================


class TestEnsureDirectory:
    """Tests for ensure_directory."""

    def test_creates_nested(self, tmp_path: Path) -> None:
        target = tmp_path / "a" / "b"
        assert ensure_directory(target) == target
        assert target.is_dir()

    def test_existing_file_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")

        with pytest.raises(FailedPreconditionError):
            ensure_directory(blocker / "child")


class TestSafeRemove:
    """Tests for safe_remove."""

    def test_remove_file(self, tmp_path: Path) -> None:
        target = tmp_path / "f"
        target.write_text("x")

        assert safe_remove(target) is True
        assert not target.exists()

    def test_remove_tree(self, tmp_path: Path) -> None:
        tree = tmp_path / "tree"
        (tree / "sub").mkdir(parents=True)
        (tree / "sub" / "f").write_text("x")

        assert safe_remove(tree) is True
        assert not tree.exists()

    def test_missing_returns_false(self, tmp_path: Path) -> None:
        assert safe_remove(tmp_path / "missing") is False


# =============================================================================
# Atomic Writes
# =============================================================================


class TestAtomicWrite:
    """Tests for atomic writes."""

    def test_write_and_replace(self, tmp_path: Path) -> None:
        target = tmp_path / "status.json"

        atomic_write_text(target, "first")
        atomic_write_text(target, "second")

        assert target.read_text() == "second"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["status.json"]

    def test_creates_parent(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "trigger"

        atomic_write_json(target, {"upgradeId": "abc"})

        assert json.loads(target.read_text()) == {"upgradeId": "abc"}

    def test_failed_replace_keeps_old_file(self, tmp_path: Path) -> None:
        target = tmp_path / "status.json"
        atomic_write_bytes(target, b"old")

        with patch("mesh_upgrade.upgrades.operations.os.replace", side_effect=OSError("disk")):
            with pytest.raises(InternalError):
                atomic_write_bytes(target, b"new")

        assert target.read_bytes() == b"old"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["status.json"]


class TestReadJson:
    """Tests for read_json."""

    def test_missing(self, tmp_path: Path) -> None:
        assert read_json(tmp_path / "missing.json") is None

    def test_malformed(self, tmp_path: Path) -> None:
        target = tmp_path / "bad.json"
        target.write_text("{not json")
        assert read_json(target) is None

    def test_non_object(self, tmp_path: Path) -> None:
        target = tmp_path / "list.json"
        target.write_text("[1, 2]")
        assert read_json(target) is None

    def test_object(self, tmp_path: Path) -> None:
        target = tmp_path / "ok.json"
        target.write_text('{"status": "ready"}')
        assert read_json(target) == {"status": "ready"}


def test_sha256_file(tmp_path: Path) -> None:
    target = tmp_path / "artifact"
    target.write_bytes(b"mesh" * 1000)

    assert sha256_file(target) == hashlib.sha256(b"mesh" * 1000).hexdigest()


# =============================================================================
# Directory Access
# =============================================================================


class TestDirectoryAccess:
    """Tests for directory_access."""

    def test_writable_directory(self, tmp_path: Path) -> None:
        ok, message = directory_access(tmp_path)

        assert ok is True
        assert "readable and writable" in message
        assert list(tmp_path.iterdir()) == []

    def test_missing_directory(self, tmp_path: Path) -> None:
        ok, message = directory_access(tmp_path / "missing")

        assert ok is False
        assert message.startswith("Directory does not exist")

    def test_file_is_not_directory(self, tmp_path: Path) -> None:
        target = tmp_path / "file"
        target.write_text("x")

        ok, message = directory_access(target)

        assert ok is False
        assert message.startswith("Not a directory")

    @pytest.mark.skipif(os.geteuid() == 0, reason="root bypasses permission bits")
    def test_read_only_directory(self, tmp_path: Path) -> None:
        target = tmp_path / "ro"
        target.mkdir()
        target.chmod(0o555)
        try:
            ok, message = directory_access(target)
        finally:
            target.chmod(0o755)

        assert ok is False
        assert "not writable" in message
