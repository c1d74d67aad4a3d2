"""Voucher status transitions enforced by the delivery consumer."""

PENDING = "PENDING"
SENT = "SENT"
FAILED = "FAILED"

TERMINAL_STATES = frozenset({SENT, FAILED})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {SENT, FAILED},
    SENT: set(),
    FAILED: set(),
}


class InvalidTransition(ValueError):
    """Raised when a status change would leave a terminal state or go backwards."""

    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid transition: {current} -> {new}")
        self.current = current
        self.new = new


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, new)
