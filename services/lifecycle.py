"""
Lifecycle rules for deceased-patient records and their dependent records.

Patient status moves forward along PATIENT_LIFECYCLE; `unclaimed` sits beside
it and can be entered from any stage before `released`. Status changes on a
postmortem or a release request are turned into events, and
`apply_transition` decides what the patient's status becomes and which
secondary writes the repository must perform in the same transaction.
"""
from .errors import InvalidTransition

REGISTERED = "registered"
PENDING_AUTOPSY = "pending_autopsy"
AUTOPSY_COMPLETED = "autopsy_completed"
PENDING_RELEASE = "pending_release"
RELEASED = "released"
UNCLAIMED = "unclaimed"

PATIENT_LIFECYCLE = (REGISTERED, PENDING_AUTOPSY, AUTOPSY_COMPLETED, PENDING_RELEASE, RELEASED)
PATIENT_STATUSES = PATIENT_LIFECYCLE + (UNCLAIMED,)

# Events raised by dependent records
POSTMORTEM_SCHEDULED = "postmortem_scheduled"
POSTMORTEM_COMPLETED = "postmortem_completed"
RELEASE_REQUESTED = "release_requested"
RELEASE_APPROVED = "release_approved"
RELEASE_REJECTED = "release_rejected"
MARKED_UNCLAIMED = "marked_unclaimed"

EVENT_TARGETS = {
    POSTMORTEM_SCHEDULED: PENDING_AUTOPSY,
    POSTMORTEM_COMPLETED: AUTOPSY_COMPLETED,
    RELEASE_REQUESTED: PENDING_RELEASE,
    RELEASE_APPROVED: RELEASED,
    RELEASE_REJECTED: None,
    MARKED_UNCLAIMED: UNCLAIMED,
}

# Side effects the caller must carry out alongside the status write
RELEASE_STORAGE = "release_storage"

EVENT_EFFECTS = {
    RELEASE_APPROVED: (RELEASE_STORAGE,),
}

POSTMORTEM_TRANSITIONS = {
    "scheduled": {"in_progress", "completed", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "cancelled": set(),
    "completed": set(),
}

APPROVAL_TRANSITIONS = {
    "pending": {"approved", "rejected"},
    "rejected": {"pending", "approved"},
    "approved": set(),
}


def stage_of(status: str) -> int:
    """Position of `status` in the forward lifecycle, -1 for unclaimed."""
    if status == UNCLAIMED:
        return -1
    try:
        return PATIENT_LIFECYCLE.index(status)
    except ValueError:
        raise InvalidTransition(f"Unknown patient status: {status!r}")


def apply_transition(current: str, event: str):
    """Return (next_status, effects) for a patient in `current` receiving `event`.

    Events whose target lies behind the patient's current stage leave the
    status as it is. A released patient accepts no status-changing event.
    """
    if event not in EVENT_TARGETS:
        raise InvalidTransition(f"Unknown lifecycle event: {event!r}")

    target = EVENT_TARGETS[event]
    effects = EVENT_EFFECTS.get(event, ())
    current_stage = stage_of(current)

    if target is None or target == current:
        return current, effects

    if current == RELEASED:
        raise InvalidTransition(f"Patient is already released; cannot apply {event}")

    if target == UNCLAIMED:
        return UNCLAIMED, effects

    if current == UNCLAIMED:
        # A late claim moves the body on; postmortem events leave it unclaimed
        if stage_of(target) >= stage_of(PENDING_RELEASE):
            return target, effects
        return current, effects

    if stage_of(target) < current_stage:
        return current, effects
    return target, effects


def check_status_change(current: str, requested: str, status_before_unclaimed: str = None) -> str:
    """Validate an explicit staff edit of a patient's status.

    An unclaimed patient may only return to the stage it held when it was
    marked unclaimed, or a later one.
    """
    if requested not in PATIENT_STATUSES:
        raise InvalidTransition(f"Unknown patient status: {requested!r}")
    if requested == current:
        return requested
    if current == RELEASED:
        raise InvalidTransition("A released patient's status cannot be changed")
    if requested == UNCLAIMED:
        return requested
    if current == UNCLAIMED:
        floor = status_before_unclaimed or REGISTERED
        if stage_of(requested) < stage_of(floor):
            raise InvalidTransition(f"Cannot move unclaimed patient back from {floor} to {requested}")
        return requested
    if stage_of(requested) < stage_of(current):
        raise InvalidTransition(f"Cannot move patient status back from {current} to {requested}")
    return requested


def check_postmortem_transition(current: str, requested: str) -> str:
    if requested == current:
        return requested
    if requested not in POSTMORTEM_TRANSITIONS:
        raise InvalidTransition(f"Unknown postmortem status: {requested!r}")
    if requested not in POSTMORTEM_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Postmortem cannot move from {current} to {requested}")
    return requested


def check_approval_transition(current: str, requested: str) -> str:
    if requested == current:
        return requested
    if requested not in APPROVAL_TRANSITIONS:
        raise InvalidTransition(f"Unknown approval status: {requested!r}")
    if requested not in APPROVAL_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Release request cannot move from {current} to {requested}")
    return requested
