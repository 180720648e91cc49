"""Generation request lifecycle transition rules."""

from app.errors import ApiError
from app.schemas.generation import GenerationStatus

_TERMINAL_STATES: set[GenerationStatus] = {GenerationStatus.COMPLETED}

# expired -> completed exists only for late artifacts found by the expired-sweep.
_ALLOWED_TRANSITIONS: dict[GenerationStatus, set[GenerationStatus]] = {
    GenerationStatus.PENDING: {GenerationStatus.PROCESSING, GenerationStatus.COMPLETED, GenerationStatus.EXPIRED},
    GenerationStatus.PROCESSING: {GenerationStatus.COMPLETED, GenerationStatus.EXPIRED},
    GenerationStatus.EXPIRED: {GenerationStatus.COMPLETED},
    GenerationStatus.COMPLETED: set(),
}


def allowed_next_statuses(status: GenerationStatus) -> list[GenerationStatus]:
    """Return deterministically ordered allowed successors for a status."""
    return sorted(_ALLOWED_TRANSITIONS.get(status, set()), key=lambda s: s.value)


def is_noop_transition(old_status: GenerationStatus, new_status: GenerationStatus) -> bool:
    """Completing an already completed request is accepted without a write."""
    return old_status is GenerationStatus.COMPLETED and new_status is GenerationStatus.COMPLETED


def ensure_transition(old_status: GenerationStatus, new_status: GenerationStatus) -> None:
    """Validate transition according to lifecycle rules."""
    if is_noop_transition(old_status, new_status):
        return

    if old_status in _TERMINAL_STATES:
        raise ApiError(
            status_code=409,
            code="FSM_TERMINAL_IMMUTABLE",
            message="Terminal state cannot be mutated",
            details={
                "current_status": old_status,
                "attempted_status": new_status,
                "allowed_next_statuses": [],
            },
        )

    if new_status not in _ALLOWED_TRANSITIONS.get(old_status, set()):
        raise ApiError(
            status_code=409,
            code="FSM_TRANSITION_INVALID",
            message="Invalid status transition",
            details={
                "current_status": old_status,
                "attempted_status": new_status,
                "allowed_next_statuses": allowed_next_statuses(old_status),
            },
        )
