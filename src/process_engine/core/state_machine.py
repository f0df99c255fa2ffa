"""
Instance status state machine

    pending  -> running | cancelled | failed
    running  -> running | waiting | completed | failed | cancelled
    waiting  -> running | cancelled | failed

completed, failed and cancelled are absorbing.
"""
from typing import Dict, FrozenSet

from ..exceptions import InvalidStateTransition
from ..models.instance import InstanceStatus


VALID_TRANSITIONS: Dict[InstanceStatus, FrozenSet[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset([
        InstanceStatus.RUNNING,
        InstanceStatus.CANCELLED,
        InstanceStatus.FAILED,
    ]),
    InstanceStatus.RUNNING: frozenset([
        InstanceStatus.RUNNING,  # step budget exhausted, caller advances again
        InstanceStatus.WAITING,
        InstanceStatus.COMPLETED,
        InstanceStatus.FAILED,
        InstanceStatus.CANCELLED,
    ]),
    InstanceStatus.WAITING: frozenset([
        InstanceStatus.RUNNING,
        InstanceStatus.CANCELLED,
        InstanceStatus.FAILED,
    ]),
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.FAILED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}


def is_terminal(status: InstanceStatus) -> bool:
    return not VALID_TRANSITIONS[status]


def can_transition(current: InstanceStatus, target: InstanceStatus) -> bool:
    return target in VALID_TRANSITIONS[current]


def validate_transition(current: InstanceStatus, target: InstanceStatus, message: str = None):
    """Raise InvalidStateTransition when current -> target is not allowed"""
    if not can_transition(current, target):
        if message is None and is_terminal(current):
            message = "instance is in a terminal state"
        raise InvalidStateTransition(current.value, target.value, message)
