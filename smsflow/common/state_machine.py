"""Message status transitions enforced by delivery and receipt handling."""

from smsflow.common.errors import InvalidStatusTransition

TERMINAL_STATUSES = frozenset({"delivered", "failed"})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    # `queued -> queued` is an exhausted transient send left for queue retry.
    "queued": {"queued", "sent", "failed"},
    "sent": {"sent", "delivered", "failed"},
    "delivered": set(),
    "failed": set(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current, new)
