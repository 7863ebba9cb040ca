PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"
# held while a refund request is out at the gateway; only the refund route sets it
REFUND_PENDING = "refund_pending"

# Events are gateway callback statuses plus the internal "refund" event.
TRANSITIONS: dict[str, dict[str, str]] = {
    PENDING: {
        "success": COMPLETED,
        "failure": FAILED,
        "cancel": FAILED,
        "pending": PENDING,
    },
    COMPLETED: {
        "refund": REFUNDED,
    },
}

# All valid event types across all states
ALL_VALID_EVENTS: set[str] = {
    event for transitions in TRANSITIONS.values() for event in transitions
}

# Terminal states: no further transitions possible
TERMINAL_STATES: set[str] = {FAILED, REFUNDED}

DEFAULT_FAILURE_REASONS = {
    "failure": "Payment failed due to insufficient funds or other payment issues.",
    "cancel": "Payment was cancelled by the user.",
    "pending": "Payment is pending. Please wait for confirmation.",
}


class InvalidTransitionError(Exception):
    """Event is not valid in any state."""


class ConflictingEventError(Exception):
    """Event is known but contradicts the payment's current state.

    A payment in this situation needs reconciliation with the gateway.
    """


def apply_transition(current_status: str, event: str) -> str:
    """
    Apply a state transition.

    Returns the new status if transition is valid.
    Raises InvalidTransitionError if event is not valid in any state.
    Raises ConflictingEventError if the current state is terminal, or if the
      event is valid globally but not for current_status.
    """
    if event not in ALL_VALID_EVENTS:
        raise InvalidTransitionError(
            f"Event '{event}' is not a valid event in any state."
        )

    if current_status in TERMINAL_STATES:
        raise ConflictingEventError(
            f"Payment in terminal state '{current_status}' cannot accept '{event}'."
        )

    state_transitions = TRANSITIONS.get(current_status, {})
    if event in state_transitions:
        return state_transitions[event]

    raise ConflictingEventError(
        f"Event '{event}' conflicts with payment in '{current_status}' status."
    )


def failure_reason(status: str, error_message: str = "") -> str:
    """Customer-facing explanation for a callback that did not succeed."""
    if error_message:
        return error_message
    return DEFAULT_FAILURE_REASONS.get(status, "Payment failed due to unknown error.")
