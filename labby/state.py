"""Lab status state machine."""
from __future__ import annotations

from labby.errors import InvalidTransitionError
from labby.schemas import Lab, LabStatus
from labby.utils import utcnow

ALLOWED_TRANSITIONS: dict[LabStatus, set[LabStatus]] = {
    LabStatus.PROVISIONING: {LabStatus.READY, LabStatus.ERROR, LabStatus.EXPIRED},
    LabStatus.READY: {LabStatus.EXPIRED},
    # Failed labs whose time runs out are swept like any other expired lab
    LabStatus.ERROR: {LabStatus.EXPIRED},
    LabStatus.EXPIRED: set(),
}


def can_transition(current: LabStatus, target: LabStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(lab: Lab, target: LabStatus) -> None:
    """Move ``lab`` to ``target`` in place.

    Raises:
        InvalidTransitionError: If the move is not allowed
    """
    if lab.status == target:
        return
    if not can_transition(lab.status, target):
        raise InvalidTransitionError(lab.id, lab.status.value, target.value)
    lab.status = target
    lab.updated_at = utcnow()
