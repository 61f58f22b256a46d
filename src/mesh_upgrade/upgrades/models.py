"""
Data model of the self-upgrade orchestrator.

Attributes are snake_case; ``to_dict()`` produces the camelCase field names
consumed by the REST layer and the polling UI.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UpgradeStatus(str, Enum):
    """
    Status of an upgrade job.

    Forward path:
    pending → backing_up → downloading → restarting → health_check → cleanup → complete

    Any non-terminal status may move to failed. health_check may move to
    rolling_back when a verified backup exists; rolling_back always ends in failed.
    """

    PENDING = "pending"
    BACKING_UP = "backing_up"
    DOWNLOADING = "downloading"
    RESTARTING = "restarting"
    HEALTH_CHECK = "health_check"
    CLEANUP = "cleanup"
    COMPLETE = "complete"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({UpgradeStatus.COMPLETE, UpgradeStatus.FAILED})

# Statuses reached before the running service is touched
PRE_RESTART_STATUSES = frozenset(
    {UpgradeStatus.PENDING, UpgradeStatus.BACKING_UP, UpgradeStatus.DOWNLOADING}
)

# Statuses owned by whatever process is alive after the restart
POST_RESTART_STATUSES = frozenset(
    {
        UpgradeStatus.RESTARTING,
        UpgradeStatus.HEALTH_CHECK,
        UpgradeStatus.CLEANUP,
        UpgradeStatus.ROLLING_BACK,
    }
)

STATUS_PROGRESS: dict[UpgradeStatus, int] = {
    UpgradeStatus.PENDING: 0,
    UpgradeStatus.BACKING_UP: 10,
    UpgradeStatus.DOWNLOADING: 30,
    UpgradeStatus.RESTARTING: 60,
    UpgradeStatus.HEALTH_CHECK: 80,
    UpgradeStatus.CLEANUP: 90,
    UpgradeStatus.COMPLETE: 100,
}


class DeploymentMethod(str, Enum):
    """How the running service is replaced."""

    DOCKER_SIDECAR = "docker-sidecar"
    MANUAL = "manual"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        """Serialize using camelCase field names."""
        return self.model_dump(mode="json", by_alias=True)


class UpgradeJob(_CamelModel):
    """
    One upgrade attempt, as persisted in the history store.

    Timestamps are unix epoch seconds.
    """

    id: str = Field(description="UUIDv4 of the upgrade")
    from_version: str
    to_version: str
    deployment_method: DeploymentMethod | None = None
    status: UpgradeStatus = UpgradeStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = ""
    logs: list[str] = Field(default_factory=list)
    backup_path: str | None = None
    started_at: float
    updated_at: float
    completed_at: float | None = None
    initiated_by: str = "system"
    error_message: str | None = None
    rollback_available: bool = False

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


class WatchdogStatusRecord(_CamelModel):
    """Last known status, written to a file readable without the database."""

    upgrade_id: str | None = None
    status: str
    target_version: str | None = None
    message: str = ""
    timestamp: float


class ConfigurationCheckResult(_CamelModel):
    """Outcome of one configuration probe."""

    check: str
    passed: bool
    message: str
    details: dict[str, Any] | None = None


class ConfigurationTestResult(_CamelModel):
    """Aggregate of all configuration probes."""

    success: bool
    results: list[ConfigurationCheckResult] = Field(default_factory=list)
    overall_message: str = ""


class TriggerOptions(BaseModel):
    """
    Options accepted by trigger_upgrade.

    Values are left untyped so that malformed input from the REST layer is
    reported as a validation failure rather than a pydantic exception.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    target_version: Any = None
    force: Any = False
    backup: Any = True


class TriggerResult(_CamelModel):
    success: bool
    upgrade_id: str | None = None
    message: str
    issues: list[str] | None = None


class CancelResult(_CamelModel):
    success: bool
    message: str
