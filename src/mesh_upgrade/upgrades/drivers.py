"""
Deployment drivers.

A driver knows how to obtain a new version of the service and how to swap
the running process for it. The controller only calls the abstract methods;
drivers never touch the history database.

Drivers:
- DockerSidecarDriver: talks to the upgrader sidecar through request/result
  files in the shared data directory; the sidecar owns the docker socket.
- ManualDriver: downloads a release artifact and hands installation to an
  external supervisor by exiting with a dedicated exit code.
"""

from __future__ import annotations

import asyncio
import hashlib
import shutil
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, Field

from mesh_upgrade.errors import DeploymentError, FailedPreconditionError
from mesh_upgrade.logging import get_logger
from mesh_upgrade.upgrades.models import DeploymentMethod, UpgradeStatus
from mesh_upgrade.upgrades.operations import (
    atomic_write_json,
    ensure_directory,
    read_json,
    safe_remove,
)
from mesh_upgrade.upgrades.version import LATEST, normalize_version

if TYPE_CHECKING:
    from mesh_upgrade.config import AppConfig, DockerConfig, ManualConfig
    from mesh_upgrade.upgrades.watchdog_status import WatchdogStatusStore

logger = get_logger(__name__)

RESULT_PASS = "PASS"
RESULT_WARN = "WARN"
RESULT_FAIL = "FAIL"

ACTION_UPGRADE = "upgrade"
ACTION_ROLLBACK = "rollback"


class PreparedDeployment(BaseModel):
    """
    A downloaded version ready to be switched to.

    Attributes:
        upgrade_id: Upgrade the download belongs to.
        target_version: Version that was downloaded.
        staging_path: Local artifact, if the driver stages one.
        metadata: Driver-specific data (image reference, checksum).
    """

    upgrade_id: str
    target_version: str
    staging_path: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeploymentDriver(ABC):
    """
    Abstract base class for deployment drivers.

    ``restart()`` either never returns (the process is replaced) or returns
    normally once the replacement has been handed off. In both cases the job
    is finalized by reconciliation in the next process. Any step failure is
    raised as DeploymentError.
    """

    method: str

    @abstractmethod
    async def download(self, upgrade_id: str, target_version: str) -> PreparedDeployment:
        """
        Fetch the target version.

        Raises:
            DeploymentError: If the version cannot be obtained.
        """

    @abstractmethod
    async def restart(self, prepared: PreparedDeployment) -> None:
        """
        Replace the running process with the prepared version.

        Raises:
            DeploymentError: If the replacement cannot be started.
        """

    @abstractmethod
    async def rollback(self, upgrade_id: str, previous_version: str) -> None:
        """
        Ask for the previous version to be started again.

        Raises:
            DeploymentError: If the request cannot be issued.
        """

    async def cleanup(self, prepared: PreparedDeployment | None = None) -> None:
        """Remove staged files. Safe to call more than once."""
        if prepared is not None and prepared.staging_path:
            safe_remove(Path(prepared.staging_path))


def _image_tag(version: str) -> str:
    return LATEST if version == LATEST else normalize_version(version)


# =============================================================================
# Docker sidecar
# =============================================================================


class DockerSidecarDriver(DeploymentDriver):
    """
    Drives the upgrader sidecar container.

    File protocol (all files live in the shared data directory):
    - pull request / pull result: image pull before the restart
    - trigger: recreate the service container with a given tag
    - socket test request / result: configuration check of the docker socket
    """

    method = DeploymentMethod.DOCKER_SIDECAR.value

    def __init__(
        self,
        data_dir: Path | str,
        config: DockerConfig,
        *,
        trigger_file: str = ".upgrade-trigger",
        watchdog: WatchdogStatusStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.config = config
        self.trigger_path = self.data_dir / trigger_file
        self.pull_request_path = self.data_dir / config.pull_request_file
        self.pull_result_path = self.data_dir / config.pull_result_file
        self.socket_request_path = self.data_dir / config.socket_test_request_file
        self.socket_result_path = self.data_dir / config.socket_test_result_file
        self._watchdog = watchdog
        self._clock = clock

    def image_ref(self, version: str) -> str:
        return f"{self.config.image_name}:{_image_tag(version)}"

    async def download(self, upgrade_id: str, target_version: str) -> PreparedDeployment:
        image = self.image_ref(target_version)
        safe_remove(self.pull_result_path)
        atomic_write_json(
            self.pull_request_path,
            {
                "upgradeId": upgrade_id,
                "image": image,
                "timestamp": self._clock(),
            },
        )
        logger.info(
            "Image pull requested",
            extra={"upgrade_id": upgrade_id, "image": image},
        )

        result = await self._wait_for_json(
            self.pull_result_path,
            lambda data: data.get("upgradeId") == upgrade_id,
            self.config.pull_timeout_seconds,
        )
        if result is None:
            safe_remove(self.pull_request_path)
            raise DeploymentError(
                f"Upgrader sidecar did not pull {image} within "
                f"{int(self.config.pull_timeout_seconds)}s",
                details={"image": image},
                step="downloading",
            )

        safe_remove(self.pull_result_path)
        if result.get("result") != RESULT_PASS:
            raise DeploymentError(
                f"Image pull failed: {result.get('message') or 'unknown error'}",
                details={"image": image},
                step="downloading",
            )

        return PreparedDeployment(
            upgrade_id=upgrade_id,
            target_version=target_version,
            metadata={"image": image},
        )

    def write_trigger(
        self,
        upgrade_id: str,
        version: str,
        *,
        action: str = ACTION_UPGRADE,
        backup_path: str | None = None,
    ) -> None:
        """Atomically write the trigger file the sidecar watches."""
        atomic_write_json(
            self.trigger_path,
            {
                "upgradeId": upgrade_id,
                "version": _image_tag(version),
                "action": action,
                "backup": backup_path,
                "timestamp": self._clock(),
            },
        )
        logger.info(
            "Upgrade trigger written",
            extra={"upgrade_id": upgrade_id, "version": version, "action": action},
        )

    async def restart(self, prepared: PreparedDeployment) -> None:
        self.write_trigger(
            prepared.upgrade_id,
            prepared.target_version,
            backup_path=prepared.metadata.get("backup_path"),
        )

        # The sidecar stops this container; surviving the grace period means it did not.
        deadline = asyncio.get_event_loop().time() + self.config.restart_grace_seconds
        while asyncio.get_event_loop().time() < deadline:
            record = self._watchdog.read() if self._watchdog else None
            if (
                record is not None
                and record.upgrade_id == prepared.upgrade_id
                and record.status == UpgradeStatus.FAILED.value
            ):
                raise DeploymentError(
                    f"Upgrader sidecar reported failure: {record.message}",
                    step="restarting",
                )
            await asyncio.sleep(self.config.poll_interval_seconds)

        raise DeploymentError(
            f"Container was not recreated within {int(self.config.restart_grace_seconds)}s",
            details={"trigger_file": str(self.trigger_path)},
            step="restarting",
        )

    async def rollback(self, upgrade_id: str, previous_version: str) -> None:
        self.write_trigger(upgrade_id, previous_version, action=ACTION_ROLLBACK)

    async def cleanup(self, prepared: PreparedDeployment | None = None) -> None:
        await super().cleanup(prepared)
        for path in (self.pull_request_path, self.pull_result_path, self.trigger_path):
            safe_remove(path)

    async def test_socket(self) -> tuple[str, str]:
        """
        Ask the sidecar to check its docker socket.

        Returns:
            Tuple of (verdict, message); verdict is PASS, WARN or FAIL.
        """
        safe_remove(self.socket_result_path)
        atomic_write_json(self.socket_request_path, {"timestamp": self._clock()})

        deadline = asyncio.get_event_loop().time() + self.config.socket_test_timeout_seconds
        while asyncio.get_event_loop().time() < deadline:
            try:
                text = self.socket_result_path.read_text().strip()
            except FileNotFoundError:
                text = ""
            if text:
                safe_remove(self.socket_result_path)
                verdict = text.split(":", 1)[0].strip().upper()
                if verdict not in (RESULT_PASS, RESULT_WARN, RESULT_FAIL):
                    return RESULT_FAIL, f"Unrecognized socket test result: {text}"
                return verdict, text
            await asyncio.sleep(min(0.5, self.config.poll_interval_seconds))

        safe_remove(self.socket_request_path)
        return (
            RESULT_FAIL,
            "Upgrader sidecar did not answer the socket test within "
            f"{int(self.config.socket_test_timeout_seconds)}s",
        )

    async def _wait_for_json(
        self,
        path: Path,
        accept: Callable[[dict[str, Any]], bool],
        timeout: float,
    ) -> dict[str, Any] | None:
        deadline = asyncio.get_event_loop().time() + timeout
        while True:
            data = read_json(path)
            if data is not None and accept(data):
                return data
            if asyncio.get_event_loop().time() >= deadline:
                return None
            await asyncio.sleep(self.config.poll_interval_seconds)


# =============================================================================
# Manual
# =============================================================================


class ManualDriver(DeploymentDriver):
    """
    Driver for installations managed by an external supervisor.

    ``restart()`` writes an instruction file and exits with ``exit_code``;
    the supervisor installs the staged artifact and starts the service again.
    """

    method = DeploymentMethod.MANUAL.value

    def __init__(
        self,
        data_dir: Path | str,
        config: ManualConfig,
        *,
        exit_func: Callable[[int], Any] = sys.exit,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.config = config
        self.staging_dir = Path(config.staging_dir)
        self.instruction_path = self.data_dir / config.instruction_file
        self._exit = exit_func
        self._clock = clock

    def artifact_url(self, version: str) -> str:
        return self.config.artifact_url_template.format(version=normalize_version(version))

    async def download(self, upgrade_id: str, target_version: str) -> PreparedDeployment:
        if target_version == LATEST:
            raise DeploymentError(
                "Manual deployments need a concrete target version",
                step="downloading",
            )

        url = self.artifact_url(target_version)
        checksum_url = url + self.config.checksum_suffix
        dest = ensure_directory(self.staging_dir) / Path(httpx.URL(url).path).name
        partial = dest.with_name(dest.name + ".partial")

        try:
            async with httpx.AsyncClient(
                timeout=self.config.download_timeout_seconds, follow_redirects=True
            ) as client:
                response = await client.get(checksum_url)
                response.raise_for_status()
                expected = response.text.split()[0].lower() if response.text.strip() else ""

                digest = hashlib.sha256()
                async with client.stream("GET", url) as stream:
                    stream.raise_for_status()
                    with open(partial, "wb") as f:
                        async for chunk in stream.aiter_bytes():
                            digest.update(chunk)
                            f.write(chunk)
        except (httpx.HTTPError, OSError) as e:
            safe_remove(partial)
            raise DeploymentError(
                f"Failed to download release artifact: {e}",
                details={"url": url},
                step="downloading",
            ) from e

        actual = digest.hexdigest()
        if not expected or actual != expected:
            safe_remove(partial)
            raise DeploymentError(
                "Release artifact checksum mismatch",
                details={"url": url, "expected": expected, "actual": actual},
                step="downloading",
            )

        shutil.move(partial, dest)
        logger.info(
            "Release artifact downloaded",
            extra={"upgrade_id": upgrade_id, "path": str(dest), "sha256": actual},
        )
        return PreparedDeployment(
            upgrade_id=upgrade_id,
            target_version=target_version,
            staging_path=str(dest),
            metadata={"sha256": actual, "url": url},
        )

    def _write_instructions(self, upgrade_id: str, action: str, **payload: Any) -> None:
        atomic_write_json(
            self.instruction_path,
            {
                "upgradeId": upgrade_id,
                "action": action,
                "timestamp": self._clock(),
                **payload,
            },
        )

    async def restart(self, prepared: PreparedDeployment) -> None:
        if not prepared.staging_path or not Path(prepared.staging_path).exists():
            raise DeploymentError(
                "Staged release artifact is missing",
                details={"staging_path": prepared.staging_path},
                step="restarting",
            )

        self._write_instructions(
            prepared.upgrade_id,
            ACTION_UPGRADE,
            version=normalize_version(prepared.target_version),
            artifact=prepared.staging_path,
            sha256=prepared.metadata.get("sha256"),
        )
        logger.info(
            "Exiting for supervisor-managed install",
            extra={"upgrade_id": prepared.upgrade_id, "exit_code": self.config.exit_code},
        )
        self._exit(self.config.exit_code)

    async def rollback(self, upgrade_id: str, previous_version: str) -> None:
        self._write_instructions(
            upgrade_id,
            ACTION_ROLLBACK,
            version=normalize_version(previous_version),
        )
        logger.warning(
            "Exiting for supervisor-managed rollback",
            extra={"upgrade_id": upgrade_id, "version": previous_version},
        )
        self._exit(self.config.exit_code)

    async def cleanup(self, prepared: PreparedDeployment | None = None) -> None:
        await super().cleanup(prepared)
        safe_remove(self.instruction_path)
        if self.staging_dir.is_dir():
            for leftover in self.staging_dir.iterdir():
                safe_remove(leftover)


def create_driver(
    config: AppConfig,
    method: str,
    *,
    watchdog: WatchdogStatusStore | None = None,
) -> DeploymentDriver:
    """
    Build the driver for a deployment method.

    Raises:
        FailedPreconditionError: If the method has no driver.
    """
    if method == DeploymentMethod.DOCKER_SIDECAR.value:
        return DockerSidecarDriver(
            config.upgrade.data_dir,
            config.docker,
            trigger_file=config.upgrade.trigger_file,
            watchdog=watchdog,
        )
    if method == DeploymentMethod.MANUAL.value:
        return ManualDriver(config.upgrade.data_dir, config.manual)

    raise FailedPreconditionError(
        f"Unsupported deployment method: {method}",
        details={"deployment_method": method},
    )
