"""
Configuration checks for self-upgrade.

Each probe is independent and side-effect free apart from the sidecar
socket-test handshake. Probes never raise: an unexpected exception becomes a
failing result carrying the error text.

Probes, in order:
1. enabled: the feature switch is on
2. deployment_method: a supported environment is configured or detected
3. data_directory: the shared data directory is readable and writable
4. backup_directory: snapshots can be written
5. version_source: the release API answers
6. docker_socket: the sidecar can reach the docker socket (docker only)
7. upgrader_sidecar: the sidecar has written a recent status (docker only)
8. disk_space: enough free space for a snapshot and an image
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from mesh_upgrade.logging import get_logger
from mesh_upgrade.upgrades.drivers import (
    RESULT_PASS,
    RESULT_WARN,
    DockerSidecarDriver,
)
from mesh_upgrade.upgrades.models import (
    ConfigurationCheckResult,
    ConfigurationTestResult,
    DeploymentMethod,
)
from mesh_upgrade.upgrades.operations import directory_access

if TYPE_CHECKING:
    from mesh_upgrade.config import AppConfig
    from mesh_upgrade.upgrades.version import VersionSource
    from mesh_upgrade.upgrades.watchdog_status import WatchdogStatusStore

logger = get_logger(__name__)

ENV_DOCKER = "docker"
ENV_KUBERNETES = "kubernetes"
ENV_LXC = "lxc"
ENV_MANUAL = "manual"

DOCKERENV_PATH = Path("/.dockerenv")
PROC1_ENVIRON_PATH = Path("/proc/1/environ")

ProbeFunc = Callable[[], Awaitable[ConfigurationCheckResult]]


def detect_environment(
    *,
    dockerenv_path: Path = DOCKERENV_PATH,
    proc1_environ_path: Path = PROC1_ENVIRON_PATH,
    environ: Mapping[str, str] | None = None,
) -> str:
    """
    Detect the container environment the process runs in.

    Returns:
        One of "docker", "kubernetes", "lxc" or "manual".
    """
    environ = os.environ if environ is None else environ

    if dockerenv_path.exists():
        return ENV_DOCKER
    if environ.get("KUBERNETES_SERVICE_HOST"):
        return ENV_KUBERNETES
    try:
        if b"container=lxc" in proc1_environ_path.read_bytes():
            return ENV_LXC
    except OSError:
        pass
    return ENV_MANUAL


class ConfigurationValidator:
    """Runs the self-upgrade configuration probes."""

    def __init__(
        self,
        config: AppConfig,
        *,
        version_source: VersionSource | None = None,
        watchdog: WatchdogStatusStore | None = None,
        socket_tester: DockerSidecarDriver | None = None,
        environment_detector: Callable[[], str] = detect_environment,
    ) -> None:
        self.config = config
        self._version_source = version_source
        self._watchdog = watchdog
        self._socket_tester = socket_tester
        self._detect = environment_detector

    # -------------------------------------------------------------------------
    # Deployment method
    # -------------------------------------------------------------------------

    def resolve_deployment_method(self) -> tuple[str | None, str]:
        """
        Work out the deployment method.

        Returns:
            Tuple of (method or None when unsupported, explanation).
        """
        configured = self.config.upgrade.deployment_method
        environment = self._detect()

        if configured != "auto":
            return configured, f"Configured as {configured} (detected {environment})"

        if environment == ENV_DOCKER:
            return DeploymentMethod.DOCKER_SIDECAR.value, "Detected Docker"
        if environment == ENV_MANUAL:
            return DeploymentMethod.MANUAL.value, "No container runtime detected"
        return None, f"Self-upgrade is not supported on {environment}"

    # -------------------------------------------------------------------------
    # Probes
    # -------------------------------------------------------------------------

    async def check_enabled(self) -> ConfigurationCheckResult:
        enabled = self.config.upgrade.enabled
        return ConfigurationCheckResult(
            check="enabled",
            passed=enabled,
            message=(
                "Auto-upgrade is enabled"
                if enabled
                else "Auto-upgrade is disabled (set upgrade.enabled: true)"
            ),
        )

    async def check_deployment_method(self) -> ConfigurationCheckResult:
        method, explanation = self.resolve_deployment_method()
        return ConfigurationCheckResult(
            check="deployment_method",
            passed=method is not None,
            message=explanation,
            details={"deployment_method": method},
        )

    async def check_data_directory(self) -> ConfigurationCheckResult:
        path = Path(self.config.upgrade.data_dir)
        ok, message = directory_access(path)
        return ConfigurationCheckResult(
            check="data_directory",
            passed=ok,
            message=message,
            details={"path": str(path)},
        )

    async def check_backup_directory(self) -> ConfigurationCheckResult:
        path = Path(self.config.backup.backup_dir)
        if not path.exists():
            parent_ok, parent_message = directory_access(path.parent)
            return ConfigurationCheckResult(
                check="backup_directory",
                passed=parent_ok,
                message=(
                    f"Backup directory will be created: {path}"
                    if parent_ok
                    else parent_message
                ),
                details={"path": str(path)},
            )

        ok, message = directory_access(path)
        return ConfigurationCheckResult(
            check="backup_directory",
            passed=ok,
            message=message,
            details={"path": str(path)},
        )

    async def check_version_source(self) -> ConfigurationCheckResult:
        if self._version_source is None:
            return ConfigurationCheckResult(
                check="version_source",
                passed=False,
                message="No version source configured",
            )

        version = await self._version_source.fetch_latest_version()
        return ConfigurationCheckResult(
            check="version_source",
            passed=True,
            message=f"Latest release: {version}",
            details={"url": self._version_source.releases_url},
        )

    async def check_docker_socket(self) -> ConfigurationCheckResult:
        method, _ = self.resolve_deployment_method()
        if method != DeploymentMethod.DOCKER_SIDECAR.value:
            return ConfigurationCheckResult(
                check="docker_socket",
                passed=True,
                message="Not applicable for this deployment method",
            )

        if self._socket_tester is None:
            return ConfigurationCheckResult(
                check="docker_socket",
                passed=False,
                message="No upgrader sidecar channel configured",
            )

        verdict, message = await self._socket_tester.test_socket()
        return ConfigurationCheckResult(
            check="docker_socket",
            passed=verdict in (RESULT_PASS, RESULT_WARN),
            message=message,
            details={"result": verdict},
        )

    async def check_upgrader_sidecar(self) -> ConfigurationCheckResult:
        method, _ = self.resolve_deployment_method()
        if method != DeploymentMethod.DOCKER_SIDECAR.value:
            return ConfigurationCheckResult(
                check="upgrader_sidecar",
                passed=True,
                message="Not applicable for this deployment method",
            )

        age = self._watchdog.age_seconds() if self._watchdog else None
        if age is None:
            return ConfigurationCheckResult(
                check="upgrader_sidecar",
                passed=False,
                message="Upgrader sidecar not detected (no watchdog status file)",
            )

        limit = self.config.docker.sidecar_stale_seconds
        return ConfigurationCheckResult(
            check="upgrader_sidecar",
            passed=age <= limit,
            message=(
                "Upgrader sidecar is running"
                if age <= limit
                else f"Upgrader sidecar status is stale ({int(age)}s old)"
            ),
            details={"age_seconds": round(age, 1)},
        )

    async def check_disk_space(self) -> ConfigurationCheckResult:
        path = self.config.upgrade.data_dir
        required_mb = self.config.upgrade.min_free_disk_mb
        free_mb = psutil.disk_usage(path).free // (1024 * 1024)
        return ConfigurationCheckResult(
            check="disk_space",
            passed=free_mb >= required_mb,
            message=(
                f"{free_mb} MB free"
                if free_mb >= required_mb
                else f"Insufficient disk space: {free_mb} MB free, {required_mb} MB required"
            ),
            details={"free_mb": free_mb, "required_mb": required_mb},
        )

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    async def _run_probe(self, name: str, probe: ProbeFunc) -> ConfigurationCheckResult:
        try:
            return await probe()
        except Exception as e:
            logger.warning(
                "Configuration probe raised",
                extra={"check": name, "error": str(e)},
            )
            return ConfigurationCheckResult(
                check=name,
                passed=False,
                message=f"Check failed: {e}",
                details={"error": str(e)},
            )

    async def _run(self, probes: list[tuple[str, ProbeFunc]]) -> list[ConfigurationCheckResult]:
        return [await self._run_probe(name, probe) for name, probe in probes]

    async def test_configuration(self) -> ConfigurationTestResult:
        """Run every probe. success is true only if all of them pass."""
        results = await self._run(
            [
                ("enabled", self.check_enabled),
                ("deployment_method", self.check_deployment_method),
                ("data_directory", self.check_data_directory),
                ("backup_directory", self.check_backup_directory),
                ("version_source", self.check_version_source),
                ("docker_socket", self.check_docker_socket),
                ("upgrader_sidecar", self.check_upgrader_sidecar),
                ("disk_space", self.check_disk_space),
            ]
        )
        failed = [r for r in results if not r.passed]
        if failed:
            overall = f"{len(failed)} of {len(results)} checks failed: " + ", ".join(
                r.check for r in failed
            )
        else:
            overall = "All configuration checks passed"

        return ConfigurationTestResult(
            success=not failed,
            results=results,
            overall_message=overall,
        )

    async def run_preflight(self) -> list[str]:
        """
        Run the checks a trigger depends on.

        Returns:
            Messages of the failing checks; empty when the upgrade may start.
        """
        results = await self._run(
            [
                ("enabled", self.check_enabled),
                ("deployment_method", self.check_deployment_method),
                ("data_directory", self.check_data_directory),
                ("backup_directory", self.check_backup_directory),
                ("disk_space", self.check_disk_space),
            ]
        )
        return [r.message for r in results if not r.passed]

