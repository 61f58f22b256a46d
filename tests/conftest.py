"""
Pytest configuration for the mesh-upgrade tests.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from mesh_upgrade.config import AppConfig
from mesh_upgrade.errors import UnavailableError
from mesh_upgrade.upgrades.controller import UpgradeController
from mesh_upgrade.upgrades.drivers import DeploymentDriver, PreparedDeployment
from mesh_upgrade.upgrades.version import VersionSource

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class FakeClock:
    """Manually advanced clock for timeout tests."""

    def __init__(self, start: float = 1_760_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDriver(DeploymentDriver):
    """Deployment driver that records calls instead of touching anything."""

    method = "manual"

    def __init__(
        self,
        *,
        download_error: Exception | None = None,
        restart_error: Exception | None = None,
    ) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.download_error = download_error
        self.restart_error = restart_error
        self.download_gate: Any = None

    async def download(self, upgrade_id: str, target_version: str) -> PreparedDeployment:
        self.calls.append(("download", target_version))
        if self.download_gate is not None:
            await self.download_gate.wait()
        if self.download_error is not None:
            raise self.download_error
        return PreparedDeployment(upgrade_id=upgrade_id, target_version=target_version)

    async def restart(self, prepared: PreparedDeployment) -> None:
        self.calls.append(("restart", prepared.target_version))
        if self.restart_error is not None:
            raise self.restart_error

    async def rollback(self, upgrade_id: str, previous_version: str) -> None:
        self.calls.append(("rollback", previous_version))

    async def cleanup(self, prepared: PreparedDeployment | None = None) -> None:
        self.calls.append(("cleanup", prepared))

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


_RealAsyncClient = httpx.AsyncClient


def mock_async_client(handler: Callable[[httpx.Request], httpx.Response]) -> Callable[..., Any]:
    """
    Build a replacement for httpx.AsyncClient that answers through ``handler``.

    Usage:
        with patch("httpx.AsyncClient", mock_async_client(handler)):
            ...
    """

    def factory(*args: Any, **kwargs: Any) -> httpx.AsyncClient:
        kwargs.pop("transport", None)
        return _RealAsyncClient(*args, transport=httpx.MockTransport(handler), **kwargs)

    return factory


def make_service_db(path: Path, rows: list[str]) -> None:
    """Create a small SQLite database standing in for the service database."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE IF NOT EXISTS nodes (name TEXT)")
        conn.execute("DELETE FROM nodes")
        conn.executemany("INSERT INTO nodes (name) VALUES (?)", [(r,) for r in rows])
        conn.commit()
    finally:
        conn.close()


def read_service_db(path: Path) -> list[str]:
    conn = sqlite3.connect(path)
    try:
        return [row[0] for row in conn.execute("SELECT name FROM nodes ORDER BY name")]
    finally:
        conn.close()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def app_config(data_dir: Path) -> AppConfig:
    """Configuration for an enabled manual deployment rooted in a temp directory."""
    return AppConfig(
        server={"health_url": ""},
        upgrade={
            "enabled": True,
            "deployment_method": "manual",
            "data_dir": str(data_dir),
            "current_version": "2.14.0",
            "min_free_disk_mb": 0,
            "health_check_retries": 1,
            "health_check_delay_seconds": 0,
        },
        backup={
            "backup_dir": str(data_dir / "backups"),
            "sources": ["meshmonitor.db"],
            "retention_count": 3,
        },
        docker={
            "poll_interval_seconds": 0.01,
            "socket_test_timeout_seconds": 0.2,
            "pull_timeout_seconds": 0.2,
            "restart_grace_seconds": 0.1,
        },
        manual={"staging_dir": str(data_dir / "staging")},
    )


class StaticVersionSource(VersionSource):
    """Version source with a fixed latest release; None simulates an outage."""

    def __init__(self, latest: str | None = "2.15.0") -> None:
        super().__init__("https://releases.invalid/latest")
        self.latest = latest

    async def fetch_latest_version(self) -> str:
        if self.latest is None:
            raise UnavailableError("Release API unreachable")
        return self.latest


@pytest.fixture
def build_controller(app_config: AppConfig, fake_clock: FakeClock) -> Callable[..., UpgradeController]:
    """Factory for controllers sharing the temp data directory and clock."""

    def _build(config: AppConfig | None = None, **kwargs: Any) -> UpgradeController:
        kwargs.setdefault("version_source", StaticVersionSource())
        kwargs.setdefault("driver", RecordingDriver())
        kwargs.setdefault("clock", fake_clock)
        return UpgradeController(config or app_config, **kwargs)

    return _build
