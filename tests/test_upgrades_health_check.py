"""
Tests for readiness checks.

Tests cover:
- HTTP health endpoint checks (mocked transport)
- SQLite database checks
- Retry behaviour of wait_until_ready
- wait_for_http_healthy timeout
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import make_service_db, mock_async_client

from mesh_upgrade.upgrades.health_check import (
    HealthChecker,
    HealthCheckResult,
    wait_for_http_healthy,
)

HEALTH_URL = "http://meshmonitor.test/api/health"


def _respond(status_code: int):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"status": "ok"})

    return handler


class TestHealthCheckResult:
    """Tests for HealthCheckResult."""

    def test_to_dict(self) -> None:
        result = HealthCheckResult("http_health", True, "ok", {"status_code": 200})

        assert result.to_dict() == {
            "name": "http_health",
            "passed": True,
            "message": "ok",
            "details": {"status_code": 200},
        }


# =============================================================================
# HTTP Checks
# =============================================================================


class TestHttpHealth:
    """Tests for check_http_health."""

    @pytest.mark.asyncio
    async def test_no_url_skips(self) -> None:
        result = await HealthChecker(health_url="").check_http_health()

        assert result.passed is True
        assert "skipping" in result.message

    @pytest.mark.asyncio
    async def test_200_passes(self) -> None:
        with patch("httpx.AsyncClient", mock_async_client(_respond(200))):
            result = await HealthChecker(health_url=HEALTH_URL).check_http_health()

        assert result.passed is True
        assert result.details["status_code"] == 200

    @pytest.mark.asyncio
    async def test_503_fails(self) -> None:
        with patch("httpx.AsyncClient", mock_async_client(_respond(503))):
            result = await HealthChecker(health_url=HEALTH_URL).check_http_health()

        assert result.passed is False
        assert result.message == "HTTP health check returned 503"

    @pytest.mark.asyncio
    async def test_connection_error_fails(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with patch("httpx.AsyncClient", mock_async_client(handler)):
            result = await HealthChecker(health_url=HEALTH_URL).check_http_health()

        assert result.passed is False
        assert "refused" in result.message


# =============================================================================
# Database Checks
# =============================================================================


class TestDatabaseCheck:
    """Tests for check_database."""

    @pytest.mark.asyncio
    async def test_healthy_database(self, tmp_path: Path) -> None:
        db = tmp_path / "meshmonitor.db"
        make_service_db(db, ["alpha"])

        result = await HealthChecker().check_database(db)

        assert result.passed is True
        assert result.name == "database_meshmonitor.db"

    @pytest.mark.asyncio
    async def test_missing_database(self, tmp_path: Path) -> None:
        result = await HealthChecker().check_database(tmp_path / "missing.db")

        assert result.passed is False
        assert result.message.startswith("Database not found")

    @pytest.mark.asyncio
    async def test_garbage_file(self, tmp_path: Path) -> None:
        db = tmp_path / "meshmonitor.db"
        db.write_bytes(b"not a database at all" * 100)

        result = await HealthChecker().check_database(db)

        assert result.passed is False


# =============================================================================
# Retries
# =============================================================================


class TestWaitUntilReady:
    """Tests for wait_until_ready."""

    @pytest.mark.asyncio
    async def test_passes_after_retry(self) -> None:
        checker = HealthChecker()
        failing = [HealthCheckResult("http_health", False, "down")]
        passing = [HealthCheckResult("http_health", True, "up")]

        with patch.object(
            checker, "run_all_checks", AsyncMock(side_effect=[failing, passing])
        ) as run_all:
            ok, results = await checker.wait_until_ready(retries=3, delay_seconds=0)

        assert ok is True
        assert results == passing
        assert run_all.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self) -> None:
        checker = HealthChecker()
        failing = [HealthCheckResult("http_health", False, "down")]

        with patch.object(
            checker, "run_all_checks", AsyncMock(return_value=failing)
        ) as run_all:
            ok, results = await checker.wait_until_ready(retries=2, delay_seconds=0)

        assert ok is False
        assert results == failing
        assert run_all.await_count == 2

    @pytest.mark.asyncio
    async def test_run_all_checks_includes_databases(self, tmp_path: Path) -> None:
        db = tmp_path / "meshmonitor.db"
        make_service_db(db, ["alpha"])

        results = await HealthChecker(database_paths=[db]).run_all_checks()

        assert [r.name for r in results] == ["http_health", "database_meshmonitor.db"]
        assert all(r.passed for r in results)


class TestWaitForHttpHealthy:
    """Tests for wait_for_http_healthy."""

    @pytest.mark.asyncio
    async def test_healthy(self) -> None:
        with patch("httpx.AsyncClient", mock_async_client(_respond(200))):
            assert await wait_for_http_healthy(HEALTH_URL, 1, 0.01) is True

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        with patch("httpx.AsyncClient", mock_async_client(_respond(500))):
            assert await wait_for_http_healthy(HEALTH_URL, 0.05, 0.01) is False
