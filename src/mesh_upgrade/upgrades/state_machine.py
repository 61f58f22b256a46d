"""
Transition table for upgrade jobs.

State transitions:
- pending → backing_up
- backing_up → downloading
- downloading → restarting
- restarting → health_check
- health_check → cleanup
- health_check → rolling_back (only with a verified backup)
- cleanup → complete
- any non-terminal → failed
- rolling_back → failed

complete and failed are terminal. The table is the single source of truth:
the controller checks every status change against it before writing.
"""

from __future__ import annotations

from mesh_upgrade.errors import InvalidTransitionError
from mesh_upgrade.upgrades.models import UpgradeStatus

_VALID_TRANSITIONS: dict[UpgradeStatus, set[UpgradeStatus]] = {
    UpgradeStatus.PENDING: {UpgradeStatus.BACKING_UP, UpgradeStatus.FAILED},
    UpgradeStatus.BACKING_UP: {UpgradeStatus.DOWNLOADING, UpgradeStatus.FAILED},
    UpgradeStatus.DOWNLOADING: {UpgradeStatus.RESTARTING, UpgradeStatus.FAILED},
    UpgradeStatus.RESTARTING: {UpgradeStatus.HEALTH_CHECK, UpgradeStatus.FAILED},
    UpgradeStatus.HEALTH_CHECK: {
        UpgradeStatus.CLEANUP,
        UpgradeStatus.ROLLING_BACK,
        UpgradeStatus.FAILED,
    },
    UpgradeStatus.CLEANUP: {UpgradeStatus.COMPLETE, UpgradeStatus.FAILED},
    UpgradeStatus.ROLLING_BACK: {UpgradeStatus.FAILED},
    UpgradeStatus.COMPLETE: set(),
    UpgradeStatus.FAILED: set(),
}


def allowed_targets(status: UpgradeStatus | str) -> frozenset[UpgradeStatus]:
    """Return the statuses reachable from ``status`` in one step."""
    return frozenset(_VALID_TRANSITIONS[UpgradeStatus(status)])


def is_valid_transition(
    current: UpgradeStatus | str,
    target: UpgradeStatus | str,
    *,
    rollback_available: bool = False,
) -> bool:
    """
    Check whether moving from ``current`` to ``target`` is legal.

    Args:
        current: Status the job is in.
        target: Requested status.
        rollback_available: Whether a verified backup exists. Required for
            health_check → rolling_back.

    Returns:
        True if the edge exists in the table and its guard holds.
    """
    current = UpgradeStatus(current)
    target = UpgradeStatus(target)

    if target not in _VALID_TRANSITIONS[current]:
        return False
    if target is UpgradeStatus.ROLLING_BACK and not rollback_available:
        return False
    return True


def validate_transition(
    current: UpgradeStatus | str,
    target: UpgradeStatus | str,
    *,
    rollback_available: bool = False,
) -> None:
    """
    Raise if the transition is not legal.

    Raises:
        InvalidTransitionError: If the edge is missing or its guard fails.
    """
    if is_valid_transition(current, target, rollback_available=rollback_available):
        return

    current = UpgradeStatus(current)
    target = UpgradeStatus(target)
    details = {
        "from_status": current.value,
        "to_status": target.value,
        "valid_transitions": sorted(s.value for s in _VALID_TRANSITIONS[current]),
    }
    if target is UpgradeStatus.ROLLING_BACK and target in _VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(
            "Cannot roll back without a verified backup",
            details=details,
        )
    raise InvalidTransitionError(
        f"Invalid status transition: {current.value} → {target.value}",
        details=details,
    )
