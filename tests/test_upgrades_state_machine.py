"""
Tests for the upgrade job transition table.

Tests cover:
- UpgradeStatus enum values and terminal flags
- The complete (status, target) matrix
- The rollback guard on health_check → rolling_back
- validate_transition error messages
"""

from __future__ import annotations

import itertools

import pytest

from mesh_upgrade.errors import InvalidArgumentError, InvalidTransitionError
from mesh_upgrade.upgrades.models import STATUS_PROGRESS, UpgradeStatus
from mesh_upgrade.upgrades.state_machine import (
    _VALID_TRANSITIONS,
    allowed_targets,
    is_valid_transition,
    validate_transition,
)

S = UpgradeStatus

# Every legal edge, with the rollback guard satisfied
EXPECTED_EDGES = {
    (S.PENDING, S.BACKING_UP),
    (S.BACKING_UP, S.DOWNLOADING),
    (S.DOWNLOADING, S.RESTARTING),
    (S.RESTARTING, S.HEALTH_CHECK),
    (S.HEALTH_CHECK, S.CLEANUP),
    (S.HEALTH_CHECK, S.ROLLING_BACK),
    (S.CLEANUP, S.COMPLETE),
    (S.PENDING, S.FAILED),
    (S.BACKING_UP, S.FAILED),
    (S.DOWNLOADING, S.FAILED),
    (S.RESTARTING, S.FAILED),
    (S.HEALTH_CHECK, S.FAILED),
    (S.CLEANUP, S.FAILED),
    (S.ROLLING_BACK, S.FAILED),
}

# =============================================================================
# UpgradeStatus Tests
# =============================================================================


class TestUpgradeStatus:
    """Tests for UpgradeStatus enum."""

    def test_status_values(self) -> None:
        """Test that statuses serialize to their wire names."""
        assert S.PENDING.value == "pending"
        assert S.BACKING_UP.value == "backing_up"
        assert S.HEALTH_CHECK.value == "health_check"
        assert S.ROLLING_BACK.value == "rolling_back"

    def test_terminal_statuses(self) -> None:
        terminal = {status for status in S if status.is_terminal}
        assert terminal == {S.COMPLETE, S.FAILED}

    def test_progress_is_monotonic_along_forward_path(self) -> None:
        path = [
            S.PENDING,
            S.BACKING_UP,
            S.DOWNLOADING,
            S.RESTARTING,
            S.HEALTH_CHECK,
            S.CLEANUP,
            S.COMPLETE,
        ]
        values = [STATUS_PROGRESS[status] for status in path]

        assert values == sorted(values)
        assert values[0] == 0
        assert values[-1] == 100


# =============================================================================
# Transition Matrix Tests
# =============================================================================


class TestTransitionMatrix:
    """Tests for the full transition matrix."""

    def test_table_covers_every_status(self) -> None:
        assert set(_VALID_TRANSITIONS) == set(S)

    @pytest.mark.parametrize(("current", "target"), list(itertools.product(S, S)))
    def test_matrix(self, current: UpgradeStatus, target: UpgradeStatus) -> None:
        """Test each pair against the expected edge set."""
        expected = (current, target) in EXPECTED_EDGES
        assert is_valid_transition(current, target, rollback_available=True) is expected

    @pytest.mark.parametrize("terminal", [S.COMPLETE, S.FAILED])
    def test_terminal_has_no_exits(self, terminal: UpgradeStatus) -> None:
        assert allowed_targets(terminal) == frozenset()

    def test_accepts_string_statuses(self) -> None:
        assert is_valid_transition("pending", "backing_up")
        assert not is_valid_transition("pending", "complete")

    def test_self_transition_rejected(self) -> None:
        for status in S:
            assert not is_valid_transition(status, status, rollback_available=True)


class TestRollbackGuard:
    """Tests for the rollback_available guard."""

    def test_rolling_back_requires_backup(self) -> None:
        assert not is_valid_transition(S.HEALTH_CHECK, S.ROLLING_BACK)
        assert is_valid_transition(S.HEALTH_CHECK, S.ROLLING_BACK, rollback_available=True)

    def test_rolling_back_only_from_health_check(self) -> None:
        for status in S:
            if status is S.HEALTH_CHECK:
                continue
            assert not is_valid_transition(status, S.ROLLING_BACK, rollback_available=True)


# =============================================================================
# validate_transition Tests
# =============================================================================


class TestValidateTransition:
    """Tests for validate_transition."""

    def test_valid_transition_returns_none(self) -> None:
        assert validate_transition(S.DOWNLOADING, S.RESTARTING) is None

    def test_invalid_transition_raises(self) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition(S.COMPLETE, S.PENDING)

        error = exc_info.value
        assert "complete → pending" in error.message
        assert error.details["valid_transitions"] == []
        assert isinstance(error, InvalidArgumentError)

    def test_rollback_without_backup_message(self) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition(S.HEALTH_CHECK, S.ROLLING_BACK)

        assert exc_info.value.message == "Cannot roll back without a verified backup"
        assert exc_info.value.details["valid_transitions"] == [
            "cleanup",
            "failed",
            "rolling_back",
        ]
