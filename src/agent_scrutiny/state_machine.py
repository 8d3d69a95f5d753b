"""State machine for feedback lifecycle transitions."""

from __future__ import annotations

from agent_scrutiny.errors import ConflictError
from agent_scrutiny.models import FeedbackStatus

VALID_TRANSITIONS: dict[FeedbackStatus, set[FeedbackStatus]] = {
    FeedbackStatus.DRAFT: {FeedbackStatus.SUBMITTED, FeedbackStatus.RESOLVED},
    FeedbackStatus.SUBMITTED: {
        FeedbackStatus.DRAFT,  # edited after hand-off
        FeedbackStatus.RESOLVED,
    },
    FeedbackStatus.RESOLVED: {FeedbackStatus.DRAFT},  # unresolve
}

# Submitted items must be resolved before they can be hard-deleted.
DELETABLE_STATES: frozenset[FeedbackStatus] = frozenset(
    {FeedbackStatus.DRAFT, FeedbackStatus.RESOLVED}
)


def validate_transition(current: FeedbackStatus, target: FeedbackStatus) -> None:
    """Validate a state transition. Raises ConflictError if invalid."""
    allowed = VALID_TRANSITIONS.get(current)
    if allowed is None:
        raise ConflictError(f"Unknown state: {current}")
    if target not in allowed:
        raise ConflictError(
            f"Invalid transition: {current} -> {target}. "
            f"Valid targets from {current}: {sorted(allowed)}"
        )


def validate_delete(current: FeedbackStatus) -> None:
    """Raise ConflictError unless an item in this state may be deleted."""
    if current not in DELETABLE_STATES:
        raise ConflictError(
            f"Cannot delete {current} feedback; resolve it first"
        )
