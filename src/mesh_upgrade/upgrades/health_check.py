"""
Readiness checks for a freshly upgraded service.

Health checks include:
- HTTP health endpoint check (if configured)
- Database open check (each configured SQLite database answers a query)

The upgrade is only finalized as complete after the checks pass; otherwise
the controller rolls back.
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

import httpx

from mesh_upgrade.logging import get_logger

logger = get_logger(__name__)


class HealthCheckResult:
    """Result of a health check."""

    def __init__(
        self,
        name: str,
        passed: bool,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.passed = passed
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"HealthCheckResult(name={self.name!r}, passed={self.passed!r})"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
        }


class HealthChecker:
    """
    Performs readiness checks after a restart.

    Individual checks never raise; failures are reported as results with
    ``passed=False``.
    """

    DEFAULT_TIMEOUT_SECONDS = 5.0

    def __init__(
        self,
        health_url: str | None = None,
        database_paths: list[Path | str] | None = None,
        timeout: float | None = None,
    ) -> None:
        """
        Initialize the health checker.

        Args:
            health_url: HTTP endpoint expected to answer 200. None skips the check.
            database_paths: SQLite databases that must open and answer a query.
            timeout: Per-check timeout in seconds.
        """
        self.health_url = health_url or None
        self.database_paths = [Path(p) for p in database_paths or []]
        self.timeout = timeout or self.DEFAULT_TIMEOUT_SECONDS

    async def check_http_health(self, url: str | None = None) -> HealthCheckResult:
        """
        Check an HTTP health endpoint.

        Args:
            url: Endpoint to probe. Defaults to the configured health_url.
        """
        url = url or self.health_url
        if not url:
            return HealthCheckResult(
                name="http_health",
                passed=True,
                message="No health endpoint configured (skipping)",
            )

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            return HealthCheckResult(
                name="http_health",
                passed=False,
                message=f"HTTP health check failed: {e}",
                details={"url": url},
            )

        if response.status_code == 200:
            return HealthCheckResult(
                name="http_health",
                passed=True,
                message=f"HTTP health check passed at {url}",
                details={"status_code": response.status_code},
            )
        return HealthCheckResult(
            name="http_health",
            passed=False,
            message=f"HTTP health check returned {response.status_code}",
            details={"status_code": response.status_code, "url": url},
        )

    async def check_database(self, path: Path) -> HealthCheckResult:
        """Check that a SQLite database opens and passes a quick check."""
        name = f"database_{path.name}"
        if not path.exists():
            return HealthCheckResult(
                name=name,
                passed=False,
                message=f"Database not found: {path}",
            )

        def _query() -> str:
            conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True, timeout=self.timeout)
            try:
                row = conn.execute("PRAGMA quick_check").fetchone()
                return row[0] if row else "no result"
            finally:
                conn.close()

        try:
            outcome = await asyncio.get_event_loop().run_in_executor(None, _query)
        except sqlite3.Error as e:
            return HealthCheckResult(
                name=name,
                passed=False,
                message=f"Database check failed: {e}",
            )

        return HealthCheckResult(
            name=name,
            passed=outcome == "ok",
            message=f"Database quick_check: {outcome}",
            details={"path": str(path)},
        )

    async def run_all_checks(self) -> list[HealthCheckResult]:
        """Run the HTTP check followed by every database check."""
        results = [await self.check_http_health()]
        for path in self.database_paths:
            results.append(await self.check_database(path))
        return results

    async def wait_until_ready(
        self,
        retries: int = 3,
        delay_seconds: float = 5.0,
    ) -> tuple[bool, list[HealthCheckResult]]:
        """
        Run all checks until they pass or the attempts run out.

        Returns:
            Tuple of (passed, results of the last attempt).
        """
        results: list[HealthCheckResult] = []
        for attempt in range(1, max(1, retries) + 1):
            results = await self.run_all_checks()
            failed = [r for r in results if not r.passed]
            if not failed:
                logger.info("Readiness checks passed", extra={"attempt": attempt})
                return True, results

            logger.warning(
                "Readiness checks failed",
                extra={
                    "attempt": attempt,
                    "failed_checks": [r.to_dict() for r in failed],
                },
            )
            if attempt < retries:
                await asyncio.sleep(delay_seconds)

        return False, results


async def wait_for_http_healthy(
    url: str,
    timeout_seconds: float = 120.0,
    check_interval_seconds: float = 2.0,
) -> bool:
    """
    Wait for an HTTP health endpoint to answer 200.

    Returns:
        True if the endpoint became healthy, False on timeout.
    """
    checker = HealthChecker(health_url=url)
    start_time = asyncio.get_event_loop().time()

    while True:
        result = await checker.check_http_health()
        if result.passed:
            return True

        elapsed = asyncio.get_event_loop().time() - start_time
        if elapsed >= timeout_seconds:
            logger.warning(
                "Timeout waiting for health endpoint",
                extra={"url": url, "timeout_seconds": timeout_seconds},
            )
            return False

        await asyncio.sleep(check_interval_seconds)
