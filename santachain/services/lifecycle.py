"""
Chain lifecycle: open -> matching -> active -> revealing -> completed.

"revealed" shows up in older rows and clients as a synonym for "revealing".
It is accepted on input and normalized, never written.
"""
from __future__ import annotations

OPEN = "open"
MATCHING = "matching"
ACTIVE = "active"
REVEALING = "revealing"
COMPLETED = "completed"

STATUSES = (OPEN, MATCHING, ACTIVE, REVEALING, COMPLETED)
LEGACY_ALIASES = {"revealed": REVEALING}

# Statuses the matching engine may start from.
MATCHABLE = frozenset({OPEN, MATCHING})
# Assignments exist and must not be reshuffled.
MATCHED = frozenset({ACTIVE, REVEALING, COMPLETED})

TRANSITIONS: dict[str, frozenset[str]] = {
    OPEN: frozenset({MATCHING}),
    MATCHING: frozenset({ACTIVE, OPEN}),
    ACTIVE: frozenset({REVEALING}),
    REVEALING: frozenset({COMPLETED}),
    COMPLETED: frozenset(),
}


class InvalidTransition(ValueError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Chain cannot move from {current} to {target}")
        self.current = current
        self.target = target


def normalize_status(status: str) -> str:
    value = (status or "").strip().lower()
    value = LEGACY_ALIASES.get(value, value)
    if value not in STATUSES:
        raise ValueError(f"Unknown chain status: {status!r}")
    return value


def stored_forms(status: str) -> frozenset[str]:
    """Every value a row in this status may carry, legacy spellings included."""
    canonical = normalize_status(status)
    return frozenset({canonical} | {old for old, new in LEGACY_ALIASES.items() if new == canonical})


def can_transition(current: str, target: str) -> bool:
    return normalize_status(target) in TRANSITIONS[normalize_status(current)]


def transition(current: str, target: str) -> str:
    """Return the canonical target status, or raise InvalidTransition."""
    if not can_transition(current, target):
        raise InvalidTransition(normalize_status(current), normalize_status(target))
    return normalize_status(target)


def is_revealed(status: str) -> bool:
    return normalize_status(status) in {REVEALING, COMPLETED}
