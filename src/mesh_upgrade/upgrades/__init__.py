"""
Self-upgrade of the running dashboard service.

This package implements the complete self-upgrade functionality:
- Upgrade history ledger with a single active slot (SQLite)
- Watchdog status file readable across restarts
- Pre-upgrade snapshots with integrity markers
- Deployment drivers (docker sidecar, manual supervisor)
- Controller for trigger, cancel and post-restart reconciliation
- Configuration checks and readiness probes
- The upgrader sidecar process
"""

from mesh_upgrade.upgrades.backup import BackupManager
from mesh_upgrade.upgrades.controller import UpgradeController
from mesh_upgrade.upgrades.drivers import (
    DeploymentDriver,
    DockerSidecarDriver,
    ManualDriver,
    PreparedDeployment,
    create_driver,
)
from mesh_upgrade.upgrades.health_check import HealthChecker, HealthCheckResult
from mesh_upgrade.upgrades.history import UpgradeHistoryStore
from mesh_upgrade.upgrades.models import (
    CancelResult,
    ConfigurationCheckResult,
    ConfigurationTestResult,
    DeploymentMethod,
    TriggerOptions,
    TriggerResult,
    UpgradeJob,
    UpgradeStatus,
    WatchdogStatusRecord,
)
from mesh_upgrade.upgrades.sidecar import UpgradeSidecar
from mesh_upgrade.upgrades.validator import ConfigurationValidator
from mesh_upgrade.upgrades.version import VersionSource, validate_target_version
from mesh_upgrade.upgrades.watchdog_status import WatchdogStatusStore

__all__ = [
    # Models
    "UpgradeJob",
    "UpgradeStatus",
    "DeploymentMethod",
    "WatchdogStatusRecord",
    "ConfigurationCheckResult",
    "ConfigurationTestResult",
    "TriggerOptions",
    "TriggerResult",
    "CancelResult",
    # Stores
    "UpgradeHistoryStore",
    "WatchdogStatusStore",
    # Backup
    "BackupManager",
    # Drivers
    "DeploymentDriver",
    "DockerSidecarDriver",
    "ManualDriver",
    "PreparedDeployment",
    "create_driver",
    # Checks
    "ConfigurationValidator",
    "HealthChecker",
    "HealthCheckResult",
    # Versions
    "VersionSource",
    "validate_target_version",
    # Orchestration
    "UpgradeController",
    "UpgradeSidecar",
]
