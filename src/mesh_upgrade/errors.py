"""
Error types for the self-upgrade orchestrator.

This module defines the UpgradeError base class and the subclasses used across
the upgrade components. Synchronous entry points (trigger, cancel) convert these
into result objects; the background executor records them in the job's
error_message instead of letting them escape.
"""

from __future__ import annotations

from typing import Any


class UpgradeError(Exception):
    """
    Base exception class for upgrade errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "conflict", "failed_precondition", "unavailable", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., versions, paths).

    Example:
        >>> raise UpgradeError(
        ...     error_code="invalid_argument",
        ...     message="Invalid targetVersion format",
        ...     details={"target_version": "banana"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpgradeError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpgradeError):
    """
    Error raised for malformed input (bad version string, wrong option types).

    No job is created when this error is raised during a trigger.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class InvalidTransitionError(InvalidArgumentError):
    """Error raised when a status change is not in the transition table."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidTransitionError."""
        super().__init__(message=message, details=details)
        self.error_code = "invalid_transition"


class ConflictError(UpgradeError):
    """Error raised when an upgrade is already active."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ConflictError."""
        super().__init__(error_code="conflict", message=message, details=details)


class FailedPreconditionError(UpgradeError):
    """
    Error raised when a precondition for the operation is not met.

    Preflight failures, unwritable directories and missing collaborators
    map to this error.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class UnavailableError(UpgradeError):
    """Error raised when a remote resource (release API, registry, sidecar) is unreachable."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class InternalError(UpgradeError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


class StepFailedError(UpgradeError):
    """Error raised when a background upgrade step cannot complete."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        step: str | None = None,
    ) -> None:
        """Initialize a StepFailedError."""
        super().__init__(error_code="step_failed", message=message, details=details)
        self.step = step


class DeploymentError(StepFailedError):
    """Error raised by a deployment driver (download, restart, rollback)."""


class BackupIntegrityError(UpgradeError):
    """
    Error raised when a backup artifact is missing or fails verification.

    Restoring from such an artifact is refused; this is always fatal for the
    rollback that needed it.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a BackupIntegrityError."""
        super().__init__(
            error_code="backup_corrupt", message=message, details=details
        )


class RollbackError(UpgradeError):
    """Error raised when a rollback cannot be completed. Requires operator intervention."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RollbackError."""
        super().__init__(
            error_code="rollback_failed", message=message, details=details
        )
