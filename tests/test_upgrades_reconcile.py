"""
Tests for reconciliation after a restart.

Each test first drives an upgrade to ``restarting`` with one controller, then
builds a second controller standing in for the process that starts after the
restart.

Tests cover:
- Successful verification and completion
- A restart that never finished (timeout) with backup restore
- Failed health checks: rolling_back, restore and driver rollback
- Failure reported by the upgrader sidecar
- Jobs interrupted before the restart
- Rollback refused for a corrupt backup
- A new trigger finalizing a stuck post-restart job first
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeClock, RecordingDriver, make_service_db, read_service_db

from mesh_upgrade.upgrades.controller import UpgradeController
from mesh_upgrade.upgrades.health_check import HealthCheckResult
from mesh_upgrade.upgrades.history import UpgradeHistoryStore
from mesh_upgrade.upgrades.models import UpgradeJob, UpgradeStatus
from mesh_upgrade.upgrades.watchdog_status import WatchdogStatusStore

ControllerFactory = Callable[..., UpgradeController]


@pytest.fixture(autouse=True)
def service_db(data_dir: Path) -> Path:
    path = data_dir / "meshmonitor.db"
    make_service_db(path, ["alpha", "bravo"])
    return path


async def _upgrade_to_restarting(
    build_controller: ControllerFactory, *, backup: bool = True
) -> UpgradeJob:
    controller = build_controller()
    result = await controller.trigger_upgrade(
        {"targetVersion": "v2.15.0", "backup": backup}
    )
    await controller.wait_for_background()
    job = await controller.get_upgrade_status(result.upgrade_id)
    assert job.status == UpgradeStatus.RESTARTING
    return job


def _failing_health_checker() -> MagicMock:
    checker = MagicMock()
    checker.wait_until_ready = AsyncMock(
        return_value=(
            False,
            [HealthCheckResult("http_health", False, "HTTP health check returned 503")],
        )
    )
    return checker


# =============================================================================
# Nothing to do
# =============================================================================


class TestNoActiveUpgrade:
    """Tests for reconcile without an active job."""

    @pytest.mark.asyncio
    async def test_returns_none(self, build_controller: ControllerFactory) -> None:
        assert await build_controller().reconcile() is None

    @pytest.mark.asyncio
    async def test_own_running_task_is_left_alone(
        self, build_controller: ControllerFactory
    ) -> None:
        driver = RecordingDriver()
        driver.download_gate = asyncio.Event()
        controller = build_controller(driver=driver)
        result = await controller.trigger_upgrade({"targetVersion": "v2.15.0"})

        job = await controller.reconcile()

        assert job.id == result.upgrade_id
        assert job.is_active
        driver.download_gate.set()
        await controller.wait_for_background()


# =============================================================================
# Success
# =============================================================================


class TestSuccessfulRestart:
    """Tests for the happy path after a restart."""

    @pytest.mark.asyncio
    async def test_completes_when_new_version_is_healthy(
        self, build_controller: ControllerFactory
    ) -> None:
        job = await _upgrade_to_restarting(build_controller)
        driver = RecordingDriver()

        reconciled = await build_controller(driver=driver).reconcile(current_version="2.15.0")

        assert reconciled.status == UpgradeStatus.COMPLETE
        assert reconciled.progress == 100
        assert reconciled.completed_at is not None
        assert reconciled.error_message is None
        assert reconciled.logs[-1].endswith("Upgrade to 2.15.0 complete")
        assert any("Verifying service health" in line for line in reconciled.logs)
        assert driver.call_names() == ["cleanup"]
        assert Path(job.backup_path).is_file()

    @pytest.mark.asyncio
    async def test_watchdog_shows_complete(
        self, build_controller: ControllerFactory
    ) -> None:
        await _upgrade_to_restarting(build_controller)
        controller = build_controller()

        await controller.reconcile(current_version="v2.15.0")

        assert controller.get_latest_upgrade_status().status == "complete"
        assert await controller.get_active_upgrade() is None

    @pytest.mark.asyncio
    async def test_old_version_still_running_waits(
        self, build_controller: ControllerFactory, fake_clock: FakeClock
    ) -> None:
        job = await _upgrade_to_restarting(build_controller)
        fake_clock.advance(30)

        reconciled = await build_controller().reconcile(current_version="2.14.0")

        assert reconciled.id == job.id
        assert reconciled.status == UpgradeStatus.RESTARTING


# =============================================================================
# Timeout
# =============================================================================


class TestRestartTimeout:
    """Tests for a restart that never came back."""

    @pytest.mark.asyncio
    async def test_timeout_fails_and_restores_backup(
        self,
        build_controller: ControllerFactory,
        fake_clock: FakeClock,
        service_db: Path,
    ) -> None:
        job = await _upgrade_to_restarting(build_controller)
        make_service_db(service_db, ["migrated-by-new-version"])
        fake_clock.advance(601)
        driver = RecordingDriver()

        reconciled = await build_controller(driver=driver).reconcile()

        assert reconciled.status == UpgradeStatus.FAILED
        assert reconciled.error_message == (
            "Upgrade timed out after 600s in status restarting; rolled back to 2.14.0"
        )
        assert reconciled.rollback_available is False
        assert reconciled.completed_at == fake_clock.now
        assert read_service_db(service_db) == ["alpha", "bravo"]
        # the old version is already running, so no restart is requested
        assert "rollback" not in driver.call_names()
        assert reconciled.id == job.id

    @pytest.mark.asyncio
    async def test_timeout_without_backup(
        self, build_controller: ControllerFactory, fake_clock: FakeClock
    ) -> None:
        await _upgrade_to_restarting(build_controller, backup=False)
        fake_clock.advance(601)

        reconciled = await build_controller().reconcile()

        assert reconciled.status == UpgradeStatus.FAILED
        assert reconciled.error_message == (
            "Upgrade timed out after 600s in status restarting"
        )

    @pytest.mark.asyncio
    async def test_recent_watchdog_record_extends_deadline(
        self,
        build_controller: ControllerFactory,
        fake_clock: FakeClock,
        data_dir: Path,
    ) -> None:
        job = await _upgrade_to_restarting(build_controller)
        fake_clock.advance(500)
        WatchdogStatusStore(data_dir / ".upgrade-status", clock=fake_clock).write(
            "health_check", upgrade_id=job.id, message="Waiting for container health"
        )
        fake_clock.advance(200)

        reconciled = await build_controller().reconcile(current_version="2.14.0")

        assert reconciled.status == UpgradeStatus.RESTARTING


# =============================================================================
# Health Check Failure
# =============================================================================


class TestHealthCheckFailure:
    """Tests for a new version that fails its readiness checks."""

    @pytest.mark.asyncio
    async def test_rolls_back_through_rolling_back(
        self, build_controller: ControllerFactory, service_db: Path
    ) -> None:
        await _upgrade_to_restarting(build_controller)
        make_service_db(service_db, ["migrated-by-new-version"])
        driver = RecordingDriver()

        reconciled = await build_controller(
            driver=driver, health_checker=_failing_health_checker()
        ).reconcile(current_version="2.15.0")

        assert reconciled.status == UpgradeStatus.FAILED
        assert reconciled.error_message == (
            "Health check failed: http_health: HTTP health check returned 503; "
            "rolled back to 2.14.0"
        )
        assert any("Rolling back to 2.14.0" in line for line in reconciled.logs)
        assert read_service_db(service_db) == ["alpha", "bravo"]
        assert ("rollback", "2.14.0") in driver.calls

    @pytest.mark.asyncio
    async def test_version_mismatch_after_health_check(
        self,
        build_controller: ControllerFactory,
        data_dir: Path,
        fake_clock: FakeClock,
    ) -> None:
        job = await _upgrade_to_restarting(build_controller)
        history = UpgradeHistoryStore(data_dir / "upgrade_history.db", clock=fake_clock)
        await history.transition(job.id, UpgradeStatus.RESTARTING, UpgradeStatus.HEALTH_CHECK)

        reconciled = await build_controller().reconcile(current_version="2.14.1")

        assert reconciled.status == UpgradeStatus.FAILED
        assert reconciled.error_message.startswith(
            "Running version 2.14.1 does not match target 2.15.0"
        )

    @pytest.mark.asyncio
    async def test_corrupt_backup_reports_rollback_failure(
        self, build_controller: ControllerFactory
    ) -> None:
        job = await _upgrade_to_restarting(build_controller)
        Path(job.backup_path).write_bytes(b"corrupted")

        reconciled = await build_controller(
            health_checker=_failing_health_checker()
        ).reconcile(current_version="2.15.0")

        assert reconciled.status == UpgradeStatus.FAILED
        assert "rollback failed: Backup checksum does not match integrity marker" in (
            reconciled.error_message
        )
        assert reconciled.rollback_available is False


# =============================================================================
# Sidecar Failure
# =============================================================================


class TestSidecarReportedFailure:
    """Tests for a failure recorded in the watchdog file."""

    @pytest.mark.asyncio
    async def test_failed_record_triggers_rollback(
        self,
        build_controller: ControllerFactory,
        fake_clock: FakeClock,
        data_dir: Path,
    ) -> None:
        job = await _upgrade_to_restarting(build_controller)
        WatchdogStatusStore(data_dir / ".upgrade-status", clock=fake_clock).write(
            "failed", upgrade_id=job.id, message="Container failed to become healthy"
        )

        reconciled = await build_controller().reconcile()

        assert reconciled.status == UpgradeStatus.FAILED
        assert reconciled.error_message == (
            "Container failed to become healthy; rolled back to 2.14.0"
        )

    @pytest.mark.asyncio
    async def test_record_of_other_upgrade_is_ignored(
        self,
        build_controller: ControllerFactory,
        fake_clock: FakeClock,
        data_dir: Path,
    ) -> None:
        await _upgrade_to_restarting(build_controller)
        WatchdogStatusStore(data_dir / ".upgrade-status", clock=fake_clock).write(
            "failed", upgrade_id="some-older-upgrade", message="old failure"
        )

        reconciled = await build_controller().reconcile(current_version="2.15.0")

        assert reconciled.status == UpgradeStatus.COMPLETE


# =============================================================================
# Interrupted Before Restart
# =============================================================================


class TestInterruptedBeforeRestart:
    """Tests for jobs left in a pre-restart status by a crash."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "path",
        [
            [],
            [UpgradeStatus.BACKING_UP],
            [UpgradeStatus.BACKING_UP, UpgradeStatus.DOWNLOADING],
        ],
    )
    async def test_interrupted_job_fails_without_rollback(
        self,
        build_controller: ControllerFactory,
        data_dir: Path,
        fake_clock: FakeClock,
        path: list[UpgradeStatus],
    ) -> None:
        history = UpgradeHistoryStore(data_dir / "upgrade_history.db", clock=fake_clock)
        job = await history.reserve(
            UpgradeJob(
                id=str(uuid.uuid4()),
                from_version="2.14.0",
                to_version="2.15.0",
                deployment_method="manual",
                started_at=fake_clock.now,
                updated_at=fake_clock.now,
            )
        )
        status = UpgradeStatus.PENDING
        for target in path:
            await history.transition(job.id, status, target)
            status = target
        driver = RecordingDriver()

        reconciled = await build_controller(driver=driver).reconcile()

        assert reconciled.status == UpgradeStatus.FAILED
        assert reconciled.current_step == "Interrupted"
        assert reconciled.error_message == (
            f"Upgrade interrupted during {status.value}; the service was not changed"
        )
        assert driver.calls == []


# =============================================================================
# Trigger After A Stuck Restart
# =============================================================================


class TestTriggerAfterStuckRestart:
    """Tests for a new trigger while a post-restart job is overdue."""

    @pytest.mark.asyncio
    async def test_stale_health_check_is_rolled_back_before_reserving(
        self,
        build_controller: ControllerFactory,
        data_dir: Path,
        fake_clock: FakeClock,
        service_db: Path,
    ) -> None:
        stuck = await _upgrade_to_restarting(build_controller)
        history = UpgradeHistoryStore(data_dir / "upgrade_history.db", clock=fake_clock)
        await history.transition(stuck.id, UpgradeStatus.RESTARTING, UpgradeStatus.HEALTH_CHECK)
        make_service_db(service_db, ["migrated-by-new-version"])
        fake_clock.advance(31 * 60)
        controller = build_controller()

        result = await controller.trigger_upgrade({"targetVersion": "v2.15.0"})
        await controller.wait_for_background()

        assert result.success is True
        assert result.upgrade_id != stuck.id
        finished = await controller.get_upgrade_status(stuck.id)
        assert finished.status == UpgradeStatus.FAILED
        assert finished.error_message == (
            "Upgrade timed out after 600s in status health_check; rolled back to 2.14.0"
        )
        assert finished.rollback_available is False
        assert any("Rolling back to 2.14.0" in line for line in finished.logs)
        assert read_service_db(service_db) == ["alpha", "bravo"]

    @pytest.mark.asyncio
    async def test_restart_in_progress_still_conflicts(
        self, build_controller: ControllerFactory, fake_clock: FakeClock
    ) -> None:
        stuck = await _upgrade_to_restarting(build_controller)
        fake_clock.advance(60)

        result = await build_controller().trigger_upgrade({"targetVersion": "v2.16.0"})

        assert result.success is False
        assert result.message == "An upgrade is already in progress"
        assert (await build_controller().get_active_upgrade()).id == stuck.id
