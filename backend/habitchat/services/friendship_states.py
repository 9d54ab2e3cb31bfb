from habitchat.core.exceptions import ConflictError

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
BLOCKED = "blocked"
REMOVED = "removed"

ALL_STATUSES = (PENDING, ACCEPTED, DECLINED, BLOCKED, REMOVED)

# declined and removed are terminal; retrying means a new friendship row.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({ACCEPTED, DECLINED}),
    ACCEPTED: frozenset({BLOCKED, REMOVED}),
    BLOCKED: frozenset({ACCEPTED}),
    DECLINED: frozenset(),
    REMOVED: frozenset(),
}

_CONFLICT_MESSAGES = {
    PENDING: "Friend request is still pending",
    ACCEPTED: "You are already friends",
    DECLINED: "Friend request was already declined",
    BLOCKED: "Friendship is blocked",
    REMOVED: "Friendship was removed",
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise ConflictError(
            _CONFLICT_MESSAGES.get(current, "Invalid friendship state"),
            details={"from": current, "to": target},
        )


def is_open(status: str) -> bool:
    return status in (PENDING, ACCEPTED, BLOCKED)


def canonical_pair(user_a_id: int, user_b_id: int) -> tuple[int, int]:
    return (user_a_id, user_b_id) if user_a_id < user_b_id else (user_b_id, user_a_id)
