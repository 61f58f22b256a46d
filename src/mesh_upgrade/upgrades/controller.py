"""
Upgrade controller.

This module implements the UpgradeController class that orchestrates a
self-upgrade across the restart of the process running it:

1. trigger_upgrade: validate, reserve the single active slot, run preflight
   checks and start the background executor
2. background executor: backup → download → restart, persisting each step to
   the history store and the watchdog file before performing it
3. reconcile: run by the next process (or the CLI) to verify health and
   finalize the job, rolling back on failure

The executor never lets an exception escape: failures end up in the job's
error_message. trigger_upgrade and cancel_upgrade return result objects
instead of raising.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
import uuid
from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import Any

from mesh_upgrade.config import AppConfig
from mesh_upgrade.errors import (
    BackupIntegrityError,
    ConflictError,
    FailedPreconditionError,
    InvalidArgumentError,
    RollbackError,
    StepFailedError,
    UpgradeError,
)
from mesh_upgrade.logging import get_logger
from mesh_upgrade.upgrades.backup import BackupManager
from mesh_upgrade.upgrades.drivers import (
    DeploymentDriver,
    DockerSidecarDriver,
    PreparedDeployment,
    create_driver,
)
from mesh_upgrade.upgrades.health_check import HealthChecker
from mesh_upgrade.upgrades.history import UpgradeHistoryStore
from mesh_upgrade.upgrades.models import (
    POST_RESTART_STATUSES,
    PRE_RESTART_STATUSES,
    STATUS_PROGRESS,
    CancelResult,
    ConfigurationTestResult,
    DeploymentMethod,
    TriggerOptions,
    TriggerResult,
    UpgradeJob,
    UpgradeStatus,
    WatchdogStatusRecord,
)
from mesh_upgrade.upgrades.state_machine import validate_transition
from mesh_upgrade.upgrades.validator import ConfigurationValidator
from mesh_upgrade.upgrades.version import (
    LATEST,
    VersionSource,
    get_current_version,
    normalize_version,
    validate_target_version,
    versions_equal,
)
from mesh_upgrade.upgrades.watchdog_status import WatchdogStatusStore

logger = get_logger(__name__)

_SQLITE_SUFFIXES = {".db", ".sqlite", ".sqlite3"}


def _coerce_flag(value: Any, name: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise InvalidArgumentError(
        f"{name} must be a boolean",
        details={name: repr(value)},
    )


class UpgradeController:
    """
    Orchestrates upgrade jobs.

    Collaborators default to instances built from the configuration and can
    be injected for testing.

    Example:
        >>> controller = UpgradeController(load_config())
        >>> await controller.initialize()
        >>> await controller.reconcile()
        >>> result = await controller.trigger_upgrade({"targetVersion": "v2.15.0"})
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        history: UpgradeHistoryStore | None = None,
        watchdog: WatchdogStatusStore | None = None,
        backup: BackupManager | None = None,
        version_source: VersionSource | None = None,
        validator: ConfigurationValidator | None = None,
        driver: DeploymentDriver | None = None,
        health_checker: HealthChecker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        upgrade = config.upgrade
        self.config = config
        self._clock = clock

        self._history = history or UpgradeHistoryStore(
            upgrade.data_path(upgrade.history_db_file), clock=clock
        )
        self._watchdog = watchdog or WatchdogStatusStore(
            upgrade.data_path(upgrade.status_file), clock=clock
        )
        self._backup = backup or BackupManager(
            config.backup.backup_dir,
            upgrade.data_dir,
            config.backup.sources,
            retention_count=config.backup.retention_count,
            clock=clock,
        )
        self._version_source = version_source or VersionSource(
            config.version_source.releases_url,
            timeout=config.version_source.timeout_seconds,
        )
        self._validator = validator or ConfigurationValidator(
            config,
            version_source=self._version_source,
            watchdog=self._watchdog,
            socket_tester=DockerSidecarDriver(
                upgrade.data_dir,
                config.docker,
                trigger_file=upgrade.trigger_file,
                watchdog=self._watchdog,
                clock=clock,
            ),
        )
        self._driver = driver
        self._health_checker = health_checker or HealthChecker(
            health_url=config.server.health_url,
            database_paths=[
                self._backup.resolve_source(s)
                for s in config.backup.sources
                if Path(s).suffix in _SQLITE_SUFFIXES
            ],
        )
        self._task: asyncio.Task[None] | None = None

    async def initialize(self) -> None:
        """Prepare the history database."""
        await self._history.initialize()

    # -------------------------------------------------------------------------
    # Simple queries
    # -------------------------------------------------------------------------

    def is_enabled(self) -> bool:
        return self.config.upgrade.enabled

    def get_deployment_method(self) -> str | None:
        """Resolved deployment method, or None when the environment is unsupported."""
        method, _ = self._validator.resolve_deployment_method()
        return method

    async def get_upgrade_status(self, upgrade_id: str) -> UpgradeJob | None:
        return await self._history.get(upgrade_id)

    async def get_active_upgrade(self) -> UpgradeJob | None:
        return await self._history.get_active()

    async def get_upgrade_history(self, limit: Any = 10) -> list[UpgradeJob]:
        return await self._history.list_history(limit)

    def get_latest_upgrade_status(self) -> WatchdogStatusRecord | None:
        return self._watchdog.read()

    async def test_configuration(self) -> ConfigurationTestResult:
        return await self._validator.test_configuration()

    def _current_version(self, current_version: str | None) -> str:
        if current_version:
            return normalize_version(current_version)
        return get_current_version(self.config.upgrade.current_version)

    def _driver_for(self, method: DeploymentMethod | None) -> DeploymentDriver:
        if self._driver is not None:
            return self._driver
        if method is None:
            raise FailedPreconditionError(
                "Self-upgrade is not supported in this environment"
            )
        return create_driver(self.config, method.value, watchdog=self._watchdog)

    # -------------------------------------------------------------------------
    # Trigger
    # -------------------------------------------------------------------------

    async def trigger_upgrade(
        self,
        options: TriggerOptions | dict[str, Any] | None = None,
        current_version: str | None = None,
        initiated_by: str = "system",
    ) -> TriggerResult:
        """
        Start an upgrade in the background.

        Args:
            options: targetVersion ("latest" or vX.Y.Z), force, backup.
            current_version: Running version; defaults to the configured or
                installed version.
            initiated_by: User or subsystem requesting the upgrade.

        Returns:
            TriggerResult. success with no upgrade_id means nothing to do.
        """
        if not self.is_enabled():
            return TriggerResult(success=False, message="Auto-upgrade is not enabled")

        try:
            if not isinstance(options, TriggerOptions):
                options = TriggerOptions.model_validate(options or {})
            target = validate_target_version(options.target_version)
            force = _coerce_flag(options.force, "force", False)
            backup_enabled = _coerce_flag(options.backup, "backup", True)
        except InvalidArgumentError as e:
            return TriggerResult(success=False, message=e.message)

        current = self._current_version(current_version)
        resolved = await self._version_source.resolve(target)
        if resolved != LATEST:
            resolved = normalize_version(resolved)

        if not force and versions_equal(resolved, current):
            return TriggerResult(
                success=True,
                message=f"Already running version {current}; nothing to do",
            )

        method = self.get_deployment_method()
        now = self._clock()
        job = UpgradeJob(
            id=str(uuid.uuid4()),
            from_version=current,
            to_version=resolved,
            deployment_method=method,
            status=UpgradeStatus.PENDING,
            progress=STATUS_PROGRESS[UpgradeStatus.PENDING],
            current_step="Queued",
            logs=[],
            started_at=now,
            updated_at=now,
            initiated_by=initiated_by,
        )

        # A job stuck after the restart is finalized (and rolled back) here,
        # not by the stale expiry in reserve().
        active = await self._history.get_active()
        if active is not None and active.status in POST_RESTART_STATUSES:
            await self.reconcile(current)

        try:
            job = await self._history.reserve(
                job, stale_timeout_seconds=self.config.upgrade.stale_timeout_seconds
            )
        except ConflictError as e:
            logger.info(
                "Upgrade trigger rejected: another upgrade is active",
                extra={"active_upgrade_id": e.details.get("active_upgrade_id")},
            )
            return TriggerResult(success=False, message="An upgrade is already in progress")
        except UpgradeError as e:
            return TriggerResult(success=False, message=e.message)

        try:
            self._record(job, "Upgrade queued")
        except OSError as e:
            message = f"Failed to write watchdog status: {e}"
            await self._fail(job, message)
            return TriggerResult(success=False, upgrade_id=job.id, message=message)

        issues = await self._validator.run_preflight()
        if issues:
            message = "Preflight checks failed: " + "; ".join(issues)
            await self._fail(job, message, current_step="Preflight failed")
            return TriggerResult(
                success=False,
                upgrade_id=job.id,
                message="Pre-flight checks failed",
                issues=issues,
            )

        try:
            driver = self._driver_for(job.deployment_method)
        except UpgradeError as e:
            await self._fail(job, e.message)
            return TriggerResult(success=False, upgrade_id=job.id, message=e.message)

        self._task = asyncio.create_task(self._execute(job, driver, backup_enabled))

        logger.info(
            "Upgrade started",
            extra={
                "upgrade_id": job.id,
                "from_version": job.from_version,
                "to_version": job.to_version,
                "deployment_method": job.deployment_method,
                "initiated_by": initiated_by,
            },
        )
        return TriggerResult(
            success=True,
            upgrade_id=job.id,
            message=f"Upgrade to {job.to_version} started",
        )

    async def wait_for_background(self) -> None:
        """Wait for the background executor of this process, if any."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Step helpers
    # -------------------------------------------------------------------------

    def _record(self, job: UpgradeJob, message: str) -> None:
        self._watchdog.write(
            job.status.value,
            upgrade_id=job.id,
            target_version=job.to_version,
            message=message,
        )

    def _try_record(self, job: UpgradeJob, message: str) -> bool:
        """Like _record, but log a failed write instead of raising."""
        try:
            self._record(job, message)
        except OSError as e:
            logger.error(
                "Failed to write watchdog status",
                extra={
                    "upgrade_id": job.id,
                    "status": job.status.value,
                    "path": str(self._watchdog.path),
                    "error": str(e),
                },
            )
            return False
        return True

    async def _advance(
        self,
        job: UpgradeJob,
        target: UpgradeStatus,
        step: str,
        *,
        log: str | None = None,
        **fields: Any,
    ) -> UpgradeJob | None:
        """
        Persist "about to perform ``step``" and move to ``target``.

        Returns:
            The updated job, or None if the job left its status meanwhile
            (for example it was cancelled).
        """
        validate_transition(
            job.status,
            target,
            rollback_available=fields.get("rollback_available", job.rollback_available),
        )
        updated = await self._history.transition(
            job.id,
            job.status,
            target,
            progress=STATUS_PROGRESS.get(target, job.progress),
            current_step=step,
            log=log or step,
            **fields,
        )
        if updated is None:
            logger.info(
                "Upgrade left expected status, stopping",
                extra={"upgrade_id": job.id, "expected": job.status.value},
            )
            return None

        if target is UpgradeStatus.RESTARTING:
            # restart() must not run before this record is on disk
            try:
                self._record(updated, step)
            except OSError as e:
                raise StepFailedError(
                    f"Failed to write watchdog status: {e}",
                    step=target.value,
                ) from e
        else:
            self._try_record(updated, step)
        logger.info(
            "Upgrade status changed",
            extra={
                "upgrade_id": job.id,
                "from_status": job.status.value,
                "status": target.value,
            },
        )
        return updated

    async def _fail(
        self,
        job: UpgradeJob,
        message: str,
        *,
        current_step: str = "Failed",
        **fields: Any,
    ) -> UpgradeJob | None:
        failed = await self._history.finalize(
            job.id,
            UpgradeStatus.FAILED,
            log=message,
            error_message=message,
            current_step=current_step,
            **fields,
        )
        if failed is not None:
            self._try_record(failed, message)
            logger.error(
                "Upgrade failed",
                extra={"upgrade_id": job.id, "status": job.status.value, "error": message},
            )
        return failed

    async def _in_executor(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.get_event_loop().run_in_executor(
            None, partial(fn, *args, **kwargs)
        )

    # -------------------------------------------------------------------------
    # Background executor
    # -------------------------------------------------------------------------

    async def _execute(
        self,
        job: UpgradeJob,
        driver: DeploymentDriver,
        backup_enabled: bool,
    ) -> None:
        current: UpgradeJob | None = job
        prepared: PreparedDeployment | None = None
        try:
            current = await self._advance(current, UpgradeStatus.BACKING_UP, "Creating backup")
            if current is None:
                return

            backup_fields: dict[str, Any] = {}
            if backup_enabled:
                try:
                    path = await self._in_executor(self._backup.snapshot, current.id)
                except (OSError, sqlite3.Error) as e:
                    raise StepFailedError(
                        f"Backup failed: {e}",
                        step=UpgradeStatus.BACKING_UP.value,
                    ) from e
                if not await self._in_executor(self._backup.verify, path):
                    raise StepFailedError(
                        "Backup verification failed",
                        details={"backup_path": str(path)},
                        step=UpgradeStatus.BACKING_UP.value,
                    )
                backup_fields = {"backup_path": str(path), "rollback_available": True}
                backup_log = f"Backup created: {path}"
            else:
                backup_log = "Backup disabled - skipping"

            step = f"Downloading version {current.to_version}"
            current = await self._advance(
                current,
                UpgradeStatus.DOWNLOADING,
                step,
                log=f"{backup_log}. {step}",
                **backup_fields,
            )
            if current is None:
                return

            prepared = await driver.download(current.id, current.to_version)
            prepared.metadata["backup_path"] = current.backup_path

            current = await self._advance(current, UpgradeStatus.RESTARTING, "Restarting service")
            if current is None:
                await driver.cleanup(prepared)
                return

            await driver.restart(prepared)

            await self._history.append_log(
                current.id, "Restart handed off; awaiting verification after restart"
            )
        except asyncio.CancelledError:
            raise
        except UpgradeError as e:
            if current is not None:
                await self._fail(current, e.message)
            if prepared is not None:
                await driver.cleanup(prepared)
        except Exception as e:
            logger.exception("Unexpected error during upgrade", extra={"upgrade_id": job.id})
            if current is not None:
                await self._fail(current, f"Unexpected error: {e}")

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    async def cancel_upgrade(self, upgrade_id: str) -> CancelResult:
        """
        Cancel an upgrade that has not reached the restart yet.

        An in-flight backup or download finishes first; the executor then
        notices the cancellation and stops without restarting.
        """
        job = await self._history.get(upgrade_id)
        if job is None:
            return CancelResult(success=False, message="Upgrade not found")
        if job.status.is_terminal:
            return CancelResult(
                success=False,
                message=f"Upgrade already finished with status {job.status.value}",
            )

        cancelled = await self._history.cancel(
            upgrade_id, PRE_RESTART_STATUSES, "Upgrade cancelled by user"
        )
        if cancelled is None:
            latest = await self._history.get(upgrade_id)
            status = latest.status.value if latest else job.status.value
            return CancelResult(
                success=False,
                message=f"Cannot cancel upgrade in status {status}; the restart has already begun",
            )

        self._try_record(cancelled, "Upgrade cancelled by user")
        logger.info("Upgrade cancelled", extra={"upgrade_id": upgrade_id})
        return CancelResult(success=True, message="Upgrade cancelled")

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile(self, current_version: str | None = None) -> UpgradeJob | None:
        """
        Finalize an upgrade left active by a previous process.

        Args:
            current_version: Version of the running process.

        Returns:
            The job after reconciliation, or None if nothing was active.
        """
        job = await self._history.get_active()
        if job is None:
            return None

        if self._task is not None and not self._task.done():
            return job

        running = self._current_version(current_version)
        log_extra = {"upgrade_id": job.id, "status": job.status.value}

        if job.status in PRE_RESTART_STATUSES:
            logger.warning("Upgrade interrupted before restart", extra=log_extra)
            return await self._fail(
                job,
                f"Upgrade interrupted during {job.status.value}; the service was not changed",
                current_step="Interrupted",
            )

        record = self._watchdog.read()
        if record is not None and record.upgrade_id != job.id:
            record = None

        last_change = max(job.updated_at, record.timestamp if record else 0.0)
        timeout = self.config.upgrade.restart_timeout_seconds
        if self._clock() - last_change > timeout:
            return await self._fail_and_roll_back(
                job,
                f"Upgrade timed out after {int(timeout)}s in status {job.status.value}",
                running,
            )

        if record is not None and record.status == UpgradeStatus.FAILED.value:
            return await self._fail_and_roll_back(
                job, record.message or "Upgrader reported a failure", running
            )

        if job.status is UpgradeStatus.ROLLING_BACK:
            return await self._fail_and_roll_back(
                job, job.error_message or "Rollback interrupted", running
            )

        if job.status is UpgradeStatus.RESTARTING:
            if job.to_version != LATEST and not versions_equal(running, job.to_version):
                logger.info(
                    "Restart still in progress",
                    extra={**log_extra, "running_version": running},
                )
                return job
            job = await self._advance(job, UpgradeStatus.HEALTH_CHECK, "Verifying service health")
            if job is None:
                return await self._history.get_active()

        if job.status is UpgradeStatus.HEALTH_CHECK:
            problem = await self._verify(job, running)
            if problem is not None:
                return await self._fail_and_roll_back(job, problem, running)
            job = await self._advance(job, UpgradeStatus.CLEANUP, "Cleaning up")
            if job is None:
                return await self._history.get_active()

        return await self._complete(job)

    async def _verify(self, job: UpgradeJob, running: str) -> str | None:
        passed, results = await self._health_checker.wait_until_ready(
            retries=self.config.upgrade.health_check_retries,
            delay_seconds=self.config.upgrade.health_check_delay_seconds,
        )
        if not passed:
            failed = [f"{r.name}: {r.message}" for r in results if not r.passed]
            return "Health check failed: " + "; ".join(failed)
        if job.to_version != LATEST and not versions_equal(running, job.to_version):
            return f"Running version {running} does not match target {job.to_version}"
        return None

    async def _complete(self, job: UpgradeJob) -> UpgradeJob | None:
        try:
            await self._driver_for(job.deployment_method).cleanup()
        except UpgradeError as e:
            logger.warning("Cleanup failed", extra={"upgrade_id": job.id, "error": e.message})
        protect = Path(job.backup_path) if job.backup_path else None
        await self._in_executor(self._backup.prune, protect=protect)

        completed = await self._advance(
            job,
            UpgradeStatus.COMPLETE,
            "Upgrade complete",
            log=f"Upgrade to {job.to_version} complete",
        )
        if completed is not None:
            logger.info(
                "Upgrade complete",
                extra={"upgrade_id": job.id, "to_version": job.to_version},
            )
        return completed

    async def _fail_and_roll_back(
        self, job: UpgradeJob, reason: str, running: str
    ) -> UpgradeJob | None:
        """
        Finalize ``job`` as failed, restoring its backup when one is available.

        A rolled-back upgrade ends in ``failed`` with the rollback noted in
        error_message.
        """
        if not (job.rollback_available and job.backup_path):
            return await self._fail(job, reason)

        if job.status is UpgradeStatus.HEALTH_CHECK:
            rolling = await self._advance(
                job,
                UpgradeStatus.ROLLING_BACK,
                f"Rolling back to {job.from_version}",
                log=f"{reason}. Rolling back to {job.from_version}",
            )
            job = rolling or job

        try:
            await self._in_executor(self._backup.restore, job.backup_path)
        except (BackupIntegrityError, RollbackError) as e:
            logger.critical(
                "Rollback failed; manual intervention required",
                extra={"upgrade_id": job.id, "error": e.message},
            )
            return await self._fail(
                job,
                f"{reason}; rollback failed: {e.message}",
                rollback_available=False,
            )

        failed = await self._fail(
            job,
            f"{reason}; rolled back to {job.from_version}",
            rollback_available=False,
        )

        if not versions_equal(running, job.from_version):
            try:
                await self._driver_for(job.deployment_method).rollback(
                    job.id, job.from_version
                )
            except UpgradeError as e:
                logger.critical(
                    "Failed to restart previous version",
                    extra={"upgrade_id": job.id, "error": e.message},
                )
                await self._history.append_log(
                    job.id, f"Failed to restart previous version: {e.message}"
                )
        return failed
