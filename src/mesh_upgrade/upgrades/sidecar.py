"""
Upgrader sidecar.

Runs in a separate container with access to the docker socket and the shared
data directory. It answers requests written by the service:

- socket test request → result text starting with PASS, WARN or FAIL
- pull request → ``docker pull`` and a JSON result
- upgrade trigger → retag the image, recreate the service container through
  docker compose, wait for the health endpoint and report the outcome in the
  watchdog status file

The service container is stopped by the recreate, so the service process
never sees the end of its own restart; the watchdog file is how the outcome
reaches the next process.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from mesh_upgrade.errors import UnavailableError
from mesh_upgrade.logging import get_logger
from mesh_upgrade.upgrades.drivers import (
    ACTION_ROLLBACK,
    RESULT_FAIL,
    RESULT_PASS,
    RESULT_WARN,
)
from mesh_upgrade.upgrades.health_check import wait_for_http_healthy
from mesh_upgrade.upgrades.models import UpgradeStatus
from mesh_upgrade.upgrades.operations import (
    atomic_write_json,
    atomic_write_text,
    read_json,
    safe_remove,
)
from mesh_upgrade.upgrades.watchdog_status import READY_STATUS, WatchdogStatusStore

if TYPE_CHECKING:
    from mesh_upgrade.config import AppConfig

logger = get_logger(__name__)

# Records the sidecar may overwrite with its idle heartbeat
_IDLE_STATUSES = {READY_STATUS, UpgradeStatus.COMPLETE.value}

_FINAL_STATUSES = {UpgradeStatus.COMPLETE.value, UpgradeStatus.FAILED.value}


async def _run_docker(
    docker_bin: str,
    *args: str,
    timeout: float = 60.0,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """
    Run a docker CLI command.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If the docker CLI is missing or the command times out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            docker_bin,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
        )
    except FileNotFoundError as exc:
        raise UnavailableError(
            "docker CLI not available",
            details={"docker_bin": docker_bin},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise UnavailableError(
            f"docker command timed out after {timeout}s",
            details={"args": args},
        ) from exc

    return (
        proc.returncode or 0,
        stdout.decode() if stdout else "",
        stderr.decode() if stderr else "",
    )


class UpgradeSidecar:
    """
    The upgrader process.

    Example:
        >>> sidecar = UpgradeSidecar(load_config())
        >>> await sidecar.run()
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        watchdog: WatchdogStatusStore | None = None,
    ) -> None:
        upgrade = config.upgrade
        docker = config.docker
        self.config = config
        self.docker = docker
        self.trigger_path = upgrade.data_path(upgrade.trigger_file)
        self.pull_request_path = upgrade.data_path(docker.pull_request_file)
        self.pull_result_path = upgrade.data_path(docker.pull_result_file)
        self.socket_request_path = upgrade.data_path(docker.socket_test_request_file)
        self.socket_result_path = upgrade.data_path(docker.socket_test_result_file)
        self._watchdog = watchdog or WatchdogStatusStore(upgrade.data_path(upgrade.status_file))
        self._stop = asyncio.Event()

    async def _docker(self, *args: str, timeout: float = 60.0) -> tuple[int, str, str]:
        return await _run_docker(self.docker.docker_bin, *args, timeout=timeout)

    def _compose_args(self, *args: str) -> list[str]:
        compose = ["compose", "--project-directory", self.docker.compose_project_dir]
        if self.docker.compose_project_name:
            compose += ["-p", self.docker.compose_project_name]
        return [*compose, *args]

    def stop(self) -> None:
        self._stop.set()

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def heartbeat(self) -> None:
        """
        Write a ready record unless the file holds an upgrade in progress or a failure.

        An in-progress record older than the restart timeout is abandoned and
        gets replaced too. Failed records are always kept.
        """
        record = self._watchdog.read()
        if record is not None and record.status not in _IDLE_STATUSES:
            if record.status == UpgradeStatus.FAILED.value:
                return
            age = self._watchdog.age_seconds()
            if age is None or age <= self.config.upgrade.restart_timeout_seconds:
                return
            logger.info(
                "Replacing abandoned watchdog record",
                extra={
                    "upgrade_id": record.upgrade_id,
                    "status": record.status,
                    "age_seconds": int(age),
                },
            )
        self._watchdog.write(READY_STATUS, message="Upgrader sidecar ready")

    def _finished_by_service(self, upgrade_id: str | None) -> bool:
        record = self._watchdog.read()
        return (
            record is not None
            and record.upgrade_id == upgrade_id
            and record.status in _FINAL_STATUSES
        )

    async def run_once(self) -> None:
        """Handle every pending request once."""
        if self.socket_request_path.exists():
            await self.handle_socket_test()
        if self.pull_request_path.exists():
            await self.handle_pull_request()
        if self.trigger_path.exists():
            await self.handle_trigger()
        self.heartbeat()

    async def run(self) -> None:
        """Poll for requests until stop() is called."""
        logger.info(
            "Upgrader sidecar started",
            extra={"data_dir": self.config.upgrade.data_dir},
        )
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Upgrader sidecar iteration failed")
            try:
                await asyncio.wait_for(
                    self._stop.wait(), timeout=self.docker.sidecar_check_interval_seconds
                )
            except TimeoutError:
                pass
        logger.info("Upgrader sidecar stopped")

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def handle_socket_test(self) -> str:
        """Check docker access and write the socket test result."""
        safe_remove(self.socket_request_path)
        try:
            code, stdout, stderr = await self._docker(
                "info", "--format", "{{.ServerVersion}}", timeout=15.0
            )
        except UnavailableError as e:
            result = f"{RESULT_FAIL}: {e.message}"
        else:
            if code == 0:
                result = f"{RESULT_PASS}: Docker socket accessible (engine {stdout.strip()})"
            elif "permission denied" in stderr.lower():
                result = f"{RESULT_FAIL}: Permission denied on docker socket"
            elif stdout.strip():
                result = f"{RESULT_WARN}: Docker responded with errors: {stderr.strip()}"
            else:
                result = f"{RESULT_FAIL}: {stderr.strip() or 'docker info failed'}"

        atomic_write_text(self.socket_result_path, result + "\n")
        logger.info("Socket test answered", extra={"result": result})
        return result

    async def handle_pull_request(self) -> dict[str, Any] | None:
        """Pull the requested image and write the pull result."""
        request = read_json(self.pull_request_path)
        safe_remove(self.pull_request_path)
        if request is None or not request.get("image"):
            logger.warning("Ignoring malformed pull request")
            return None

        image = request["image"]
        try:
            code, _, stderr = await self._docker(
                "pull", image, timeout=self.docker.pull_timeout_seconds
            )
        except UnavailableError as e:
            code, stderr = 1, e.message

        result = {
            "upgradeId": request.get("upgradeId"),
            "image": image,
            "result": RESULT_PASS if code == 0 else RESULT_FAIL,
            "message": "Image pulled" if code == 0 else stderr.strip(),
        }
        atomic_write_json(self.pull_result_path, result)
        logger.info(
            "Pull request answered",
            extra={"upgrade_id": result["upgradeId"], "image": image, "result": result["result"]},
        )
        return result

    async def handle_trigger(self) -> bool:
        """
        Recreate the service container for an upgrade or rollback trigger.

        Returns:
            True if the recreated container became healthy.
        """
        trigger = read_json(self.trigger_path)
        safe_remove(self.trigger_path)
        if trigger is None or not trigger.get("version"):
            logger.warning("Ignoring malformed upgrade trigger")
            return False

        upgrade_id = trigger.get("upgradeId")
        version = str(trigger["version"])
        rollback = trigger.get("action") == ACTION_ROLLBACK
        image = f"{self.docker.image_name}:{version}"
        log_extra = {"upgrade_id": upgrade_id, "image": image, "rollback": rollback}

        def report(status: str, message: str, *, after_recreate: bool = True) -> None:
            # The new service process may have finalized this upgrade already
            if after_recreate and self._finished_by_service(upgrade_id):
                logger.info(
                    "Upgrade already finalized by the service; not reporting",
                    extra={**log_extra, "status": status},
                )
                return
            self._watchdog.write(
                status, upgrade_id=upgrade_id, target_version=version, message=message
            )

        logger.info("Processing upgrade trigger", extra=log_extra)
        report(
            UpgradeStatus.ROLLING_BACK.value if rollback else UpgradeStatus.RESTARTING.value,
            f"Recreating {self.docker.container_name} with {image}",
            after_recreate=False,
        )

        try:
            await self._recreate(image)
        except UnavailableError as e:
            logger.error("Container recreate failed", extra={**log_extra, "error": e.message})
            report(UpgradeStatus.FAILED.value, f"Container recreate failed: {e.message}")
            return False

        report(
            UpgradeStatus.HEALTH_CHECK.value,
            f"Waiting for {self.docker.health_url}",
        )
        healthy = await wait_for_http_healthy(
            self.docker.health_url,
            timeout_seconds=self.docker.health_timeout_seconds,
        )
        if not healthy:
            report(
                UpgradeStatus.FAILED.value,
                f"Health endpoint did not respond within "
                f"{int(self.docker.health_timeout_seconds)}s",
            )
            return False

        if rollback:
            report(READY_STATUS, f"Rolled back to {version}")
        else:
            report(UpgradeStatus.HEALTH_CHECK.value, "Container healthy; awaiting verification")

        await self._prune_images()
        return True

    async def _recreate(self, image: str) -> None:
        latest = f"{self.docker.image_name}:latest"

        code, _, _ = await self._docker("image", "inspect", image, timeout=30.0)
        if code != 0:
            code, _, stderr = await self._docker(
                "pull", image, timeout=self.docker.pull_timeout_seconds
            )
            if code != 0:
                raise UnavailableError(f"Image pull failed: {stderr.strip()}")

        if image != latest:
            code, _, stderr = await self._docker("tag", image, latest, timeout=30.0)
            if code != 0:
                raise UnavailableError(f"Image tag failed: {stderr.strip()}")

        if not Path(self.docker.compose_project_dir).is_dir():
            raise UnavailableError(
                f"Compose directory not found: {self.docker.compose_project_dir}"
            )

        code, _, stderr = await self._docker(
            *self._compose_args(
                "up", "-d", "--no-deps", "--force-recreate", self.docker.container_name
            ),
            timeout=300.0,
        )
        if code != 0:
            raise UnavailableError(f"docker compose up failed: {stderr.strip()}")

    async def _prune_images(self) -> None:
        try:
            code, _, stderr = await self._docker("image", "prune", "-f", timeout=120.0)
        except UnavailableError as e:
            logger.warning("Image prune failed", extra={"error": e.message})
            return
        if code != 0:
            logger.warning("Image prune failed", extra={"error": stderr.strip()})
