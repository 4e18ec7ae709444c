"""Mutation operation state machine.

Pure functions only; the reconciler and repository decide when to call them.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta


class OperationStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_SUCCESS = "partial_success"


class OperationKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"


ACTIVE = frozenset({OperationStatus.PENDING, OperationStatus.PROCESSING})
TERMINAL = frozenset({OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.PARTIAL_SUCCESS})
SUCCESSFUL = frozenset({OperationStatus.COMPLETED, OperationStatus.PARTIAL_SUCCESS})

_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({OperationStatus.PROCESSING}) | TERMINAL,
    OperationStatus.PROCESSING: TERMINAL,
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.FAILED: frozenset(),
    OperationStatus.PARTIAL_SUCCESS: frozenset(),
}

LISTING_STATUS_BY_KIND = {
    OperationKind.CREATE: "active",
    OperationKind.UPDATE: "active",
    OperationKind.ACTIVATE: "active",
    OperationKind.DEACTIVATE: "inactive",
    OperationKind.DELETE: "deleted",
}

DEFAULT_TIMEOUT = timedelta(minutes=15)
DEFAULT_MIN_POLL_INTERVAL = timedelta(seconds=20)


def is_terminal(status: OperationStatus) -> bool:
    return status in TERMINAL


def can_transition(current: OperationStatus, target: OperationStatus) -> bool:
    return target in _TRANSITIONS[current]


def is_timed_out(created_at: datetime, now: datetime, timeout: timedelta = DEFAULT_TIMEOUT) -> bool:
    """An operation times out once it has been active for longer than ``timeout``."""
    return now - created_at > timeout


def is_pollable(
    status: OperationStatus,
    last_polled_at: datetime | None,
    now: datetime,
    min_interval: timedelta = DEFAULT_MIN_POLL_INTERVAL,
) -> bool:
    if is_terminal(status):
        return False
    if last_polled_at is None:
        return True
    return now - last_polled_at >= min_interval


def listing_status_for(kind: OperationKind) -> str:
    return LISTING_STATUS_BY_KIND[kind]
