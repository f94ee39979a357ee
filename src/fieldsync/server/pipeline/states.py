"""Import package state machine.

States:
    PENDING -> VALIDATING -> STAGING -> REVIEWING_CONFLICTS -> READY_TO_COMMIT
                          -> VALIDATION_FAILED          \\-> READY_TO_COMMIT
    READY_TO_COMMIT -> COMMITTING -> COMPLETED | PARTIALLY_COMPLETED | FAILED

QUARANTINED is reachable from every non-terminal state except COMMITTING.
CANCELLED is reachable from every non-terminal state. COMMITTING may be
reset to READY_TO_COMMIT after an interrupted commit.

All state transitions are validated.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from fieldsync.core.types import PackageStatus

if TYPE_CHECKING:
    from fieldsync.server.models import ImportPackage

logger = logging.getLogger(__name__)

TERMINAL_STATUSES: frozenset[PackageStatus] = frozenset(
    {
        PackageStatus.COMPLETED,
        PackageStatus.PARTIALLY_COMPLETED,
        PackageStatus.FAILED,
        PackageStatus.CANCELLED,
    }
)

# Valid state transitions
VALID_TRANSITIONS: dict[PackageStatus, set[PackageStatus]] = {
    PackageStatus.PENDING: {
        PackageStatus.VALIDATING,
        PackageStatus.QUARANTINED,
        PackageStatus.CANCELLED,
    },
    PackageStatus.VALIDATING: {
        PackageStatus.VALIDATION_FAILED,
        PackageStatus.STAGING,
        PackageStatus.QUARANTINED,
        PackageStatus.CANCELLED,
    },
    PackageStatus.VALIDATION_FAILED: {PackageStatus.QUARANTINED, PackageStatus.CANCELLED},
    PackageStatus.STAGING: {
        PackageStatus.REVIEWING_CONFLICTS,
        PackageStatus.READY_TO_COMMIT,
        PackageStatus.QUARANTINED,
        PackageStatus.CANCELLED,
    },
    PackageStatus.QUARANTINED: {PackageStatus.CANCELLED},
    PackageStatus.REVIEWING_CONFLICTS: {
        PackageStatus.READY_TO_COMMIT,
        PackageStatus.QUARANTINED,
        PackageStatus.CANCELLED,
    },
    PackageStatus.READY_TO_COMMIT: {
        PackageStatus.COMMITTING,
        PackageStatus.QUARANTINED,
        PackageStatus.CANCELLED,
    },
    PackageStatus.COMMITTING: {
        PackageStatus.COMPLETED,
        PackageStatus.PARTIALLY_COMPLETED,
        PackageStatus.FAILED,
        PackageStatus.READY_TO_COMMIT,
        PackageStatus.CANCELLED,
    },
    PackageStatus.COMPLETED: set(),  # Terminal
    PackageStatus.PARTIALLY_COMPLETED: set(),  # Terminal
    PackageStatus.FAILED: set(),  # Terminal
    PackageStatus.CANCELLED: set(),  # Terminal
}


class InvalidTransitionError(Exception):
    """Raised when attempting invalid state transition."""


def can_transition(current: PackageStatus, target: PackageStatus) -> bool:
    return target in VALID_TRANSITIONS[current]


def transition(current: PackageStatus, target: PackageStatus) -> PackageStatus:
    """Validate a transition and return the new status.

    Raises:
        InvalidTransitionError: If ``target`` is not reachable from ``current``.
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot transition from {current.value} to {target.value}")
    return target


def is_terminal(status: PackageStatus) -> bool:
    return status in TERMINAL_STATUSES


def move_package(package: ImportPackage, target: PackageStatus, note: str | None = None) -> None:
    """Move an ORM package to ``target`` and stamp the matching timestamp.

    Raises:
        InvalidTransitionError: If the move is not allowed.
    """
    current = PackageStatus(package.status)
    package.status = transition(current, target).value
    now = datetime.now(UTC)
    if target == PackageStatus.VALIDATING:
        package.validation_started_at = now
    elif target == PackageStatus.COMMITTING:
        package.committed_at = now
    elif is_terminal(target):
        package.completed_at = now
    if note:
        package.add_note(note)
    logger.info(
        "Package %s: %s -> %s", package.package_number, current.value, target.value
    )
