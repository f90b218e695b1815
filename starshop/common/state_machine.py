"""Checkout phase transitions enforced by the payment orchestrator."""

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "IDLE": {"VALIDATING"},
    "VALIDATING": {"IDLE", "CONVERTING"},
    "CONVERTING": {"REQUESTING", "IDLE"},
    "REQUESTING": {"HAS_URL", "IDLE"},
    "HAS_URL": {"VALIDATING", "IDLE"},
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
