"""
Configuration management for the self-upgrade orchestrator.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/mesh-upgrade/config.yml or --config path)
3. Environment variables (MESH_UPGRADE_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/mesh-upgrade/config.yml")
DEFAULT_ENV_PREFIX = "MESH_UPGRADE_"

VALID_DEPLOYMENT_METHODS = {"auto", "docker-sidecar", "manual"}

# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """Settings of the dashboard service being upgraded.

    Attributes:
        log_level: Initial application log level.
        health_url: Readiness endpoint of this service, probed after restart.
    """

    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    health_url: str = Field(
        default="http://127.0.0.1:3001/api/health",
        description="Readiness endpoint probed by the restarted process",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON records instead of plain text.
        log_to_stdout: Whether to log to stdout.
        log_file: Optional rotating log file path.
        max_bytes: Rotation size for the log file.
        backup_count: Number of rotated files to keep.
    """

    level: str = Field(default="info", description="Log level")
    json_format: bool = Field(default=True, description="Emit JSON log records")
    log_to_stdout: bool = Field(default=True, description="Whether to log to stdout")
    log_file: str | None = Field(
        default=None,
        description="Optional log file path (rotated)",
    )
    max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=0,
        description="Maximum log file size in bytes before rotation",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of rotated log files to keep",
    )


# =============================================================================
# Upgrade Configuration
# =============================================================================


class UpgradeConfig(BaseModel):
    """Core self-upgrade settings.

    Attributes:
        enabled: Master switch for self-upgrade.
        deployment_method: 'auto', 'docker-sidecar' or 'manual'.
        data_dir: Data directory shared with the upgrader sidecar.
        history_db_file: SQLite file holding the upgrade ledger.
        status_file: Watchdog status file name.
        trigger_file: Sidecar trigger file name.
        current_version: Override for the running version.
        stale_timeout_seconds: Age after which an active job without progress expires.
        restart_timeout_seconds: Bound for a job stuck in restarting/health_check.
        min_free_disk_mb: Disk headroom required before upgrading.
        health_check_retries: Readiness probe attempts after restart.
        health_check_delay_seconds: Delay between readiness probe attempts.
    """

    enabled: bool = Field(
        default=False,
        description="Enable the self-upgrade feature",
    )
    deployment_method: str = Field(
        default="auto",
        description="Deployment method: 'auto', 'docker-sidecar', 'manual'",
    )
    data_dir: str = Field(
        default="/data",
        description="Data directory shared with the upgrader sidecar",
    )
    history_db_file: str = Field(
        default="upgrade_history.db",
        description="SQLite file (relative to data_dir) for the upgrade ledger",
    )
    status_file: str = Field(
        default=".upgrade-status",
        description="Watchdog status file (relative to data_dir)",
    )
    trigger_file: str = Field(
        default=".upgrade-trigger",
        description="Sidecar trigger file (relative to data_dir)",
    )
    current_version: str | None = Field(
        default=None,
        description="Running version; defaults to the installed package version",
    )
    stale_timeout_seconds: int = Field(
        default=30 * 60,
        ge=60,
        description="Expire active jobs that made no progress for this long",
    )
    restart_timeout_seconds: int = Field(
        default=10 * 60,
        ge=10,
        description="Fail jobs stuck in restarting/health_check for this long",
    )
    min_free_disk_mb: int = Field(
        default=500,
        ge=0,
        description="Free disk space required in data_dir",
    )
    health_check_retries: int = Field(
        default=3,
        ge=1,
        description="Readiness probe attempts after restart",
    )
    health_check_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Delay between readiness probe attempts",
    )

    @field_validator("deployment_method")
    @classmethod
    def validate_deployment_method(cls, v: str) -> str:
        """Validate deployment method."""
        v_lower = v.lower().replace("_", "-")
        if v_lower not in VALID_DEPLOYMENT_METHODS:
            raise ValueError(
                f"Invalid deployment method: {v}. Must be one of: "
                f"{', '.join(sorted(VALID_DEPLOYMENT_METHODS))}"
            )
        return v_lower

    def data_path(self, name: str) -> Path:
        """Resolve a file name relative to the data directory."""
        return Path(self.data_dir) / name


class BackupConfig(BaseModel):
    """Backup settings.

    Attributes:
        backup_dir: Directory holding snapshot artifacts.
        sources: Paths (relative to data_dir, or absolute) captured by a snapshot.
        retention_count: Number of snapshots kept after a successful upgrade.
    """

    backup_dir: str = Field(
        default="/data/backups",
        description="Directory holding snapshot artifacts",
    )
    sources: list[str] = Field(
        default_factory=lambda: ["meshmonitor.db"],
        description="Database files and configuration paths to snapshot",
    )
    retention_count: int = Field(
        default=5,
        ge=1,
        description="Number of snapshots to keep",
    )


class DockerConfig(BaseModel):
    """Docker sidecar deployment settings.

    Attributes:
        image_name: Image repository of the service.
        container_name: Name of the service container.
        compose_project_dir: Compose directory mounted into the sidecar.
        compose_project_name: Optional compose project name.
        docker_bin: Docker CLI executable used by the sidecar.
        pull_request_file: Request file for image pulls.
        pull_result_file: Result file for image pulls.
        socket_test_request_file: Request file for the socket test.
        socket_test_result_file: Result file for the socket test.
        pull_timeout_seconds: Bound on waiting for a pull result.
        socket_test_timeout_seconds: Bound on waiting for a socket test result.
        restart_grace_seconds: Time the sidecar gets to recreate the container.
        poll_interval_seconds: Polling interval for request/result files.
        sidecar_check_interval_seconds: Sidecar main loop interval.
        sidecar_stale_seconds: Age after which the sidecar heartbeat is stale.
        health_url: Service health endpoint as seen from the sidecar.
        health_timeout_seconds: Sidecar wait for the recreated container.
    """

    image_name: str = Field(default="ghcr.io/meshmonitor/meshmonitor")
    container_name: str = Field(default="meshmonitor")
    compose_project_dir: str = Field(default="/compose")
    compose_project_name: str | None = Field(default=None)
    docker_bin: str = Field(default="docker")
    pull_request_file: str = Field(default=".upgrade-pull-request")
    pull_result_file: str = Field(default=".upgrade-pull-result")
    socket_test_request_file: str = Field(default=".docker-socket-test-request")
    socket_test_result_file: str = Field(default=".docker-socket-test")
    pull_timeout_seconds: float = Field(default=900.0, gt=0)
    socket_test_timeout_seconds: float = Field(default=10.0, gt=0)
    restart_grace_seconds: float = Field(default=120.0, gt=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    sidecar_check_interval_seconds: float = Field(default=5.0, gt=0)
    sidecar_stale_seconds: float = Field(default=24 * 3600.0, gt=0)
    health_url: str = Field(default="http://meshmonitor:3001/api/health")
    health_timeout_seconds: float = Field(default=120.0, gt=0)


class ManualConfig(BaseModel):
    """Manual (supervisor-managed) deployment settings.

    Attributes:
        artifact_url_template: Release artifact URL with a {version} placeholder.
        checksum_suffix: Suffix of the published SHA-256 file.
        staging_dir: Download directory for release artifacts.
        instruction_file: File the external supervisor reads on exit.
        exit_code: Exit code that asks the supervisor to install and restart.
        download_timeout_seconds: HTTP timeout for artifact downloads.
    """

    artifact_url_template: str = Field(
        default="https://github.com/meshmonitor/meshmonitor/releases/download/v{version}/meshmonitor-{version}.tar.gz",
    )
    checksum_suffix: str = Field(default=".sha256")
    staging_dir: str = Field(default="/data/staging")
    instruction_file: str = Field(default=".upgrade-instructions")
    exit_code: int = Field(default=75, ge=1, le=255)
    download_timeout_seconds: float = Field(default=600.0, gt=0)


class VersionSourceConfig(BaseModel):
    """Release metadata source.

    Attributes:
        releases_url: API endpoint returning the latest release.
        timeout_seconds: HTTP timeout.
    """

    releases_url: str = Field(
        default="https://api.github.com/repos/meshmonitor/meshmonitor/releases/latest",
    )
    timeout_seconds: float = Field(default=10.0, gt=0)


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Built from defaults, YAML, MESH_UPGRADE_* environment variables and CLI
    arguments, in that order of precedence.
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    manual: ManualConfig = Field(default_factory=ManualConfig)
    version_source: VersionSourceConfig = Field(default_factory=VersionSourceConfig)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, for example
    ``MESH_UPGRADE_UPGRADE__ENABLED=true``.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse the configuration-related command-line arguments.

    Unknown arguments (subcommands and their options) are ignored so that the
    CLI can pass its full argument vector through.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed overrides.
    """
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--config", "-c", type=str)
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
    )
    parser.add_argument("--debug", action="store_true")

    parsed, _unknown = parser.parse_known_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["server"] = {"log_level": parsed.log_level}
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("server", {})["log_level"] = "debug"
        result.setdefault("logging", {})["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If a specified config file doesn't exist.
        pydantic.ValidationError: If the configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.upgrade.data_dir
        '/data'
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)
    cli_path = cli_config.pop("_config_path", None)

    if config_path is None:
        if cli_path is not None:
            config_path = Path(cli_path)
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
