"""Lifecycle transitions for payment intents, orders and queued jobs."""

PAYMENT_INTENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"succeeded", "failed"},
    # Finalization re-marks succeeded intents idempotently.
    "succeeded": {"succeeded"},
    # A buyer may complete payment after the intent expired or was superseded.
    "failed": {"succeeded"},
}

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "confirmed": {"delivered", "refunded", "failed"},
    "delivered": {"refunded"},
    "refunded": set(),
    "failed": set(),
}

JOB_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing"},
    "processing": {"completed", "pending", "failed"},
    "completed": set(),
    "failed": set(),
}


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = PAYMENT_INTENT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
