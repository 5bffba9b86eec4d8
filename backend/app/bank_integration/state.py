"""
Connection lifecycle.

Phases a (user, bank) connection moves through, and which moves are legal.
Stored credential statuses map onto these phases via phase_for_status().
"""

import enum
from typing import Dict, FrozenSet, Optional


class ConnectionPhase(str, enum.Enum):
    DISCONNECTED = "disconnected"
    PENDING = "pending"
    ACTIVE = "active"
    REFRESHING = "refreshing"
    ERROR = "error"
    EXPIRED = "expired"
    REVOKED = "revoked"


ALLOWED_TRANSITIONS: Dict[ConnectionPhase, FrozenSet[ConnectionPhase]] = {
    ConnectionPhase.DISCONNECTED: frozenset({ConnectionPhase.PENDING}),
    ConnectionPhase.PENDING: frozenset({ConnectionPhase.ACTIVE, ConnectionPhase.DISCONNECTED}),
    ConnectionPhase.ACTIVE: frozenset({
        ConnectionPhase.REFRESHING, ConnectionPhase.ERROR, ConnectionPhase.EXPIRED,
        ConnectionPhase.REVOKED, ConnectionPhase.DISCONNECTED, ConnectionPhase.ACTIVE,
    }),
    ConnectionPhase.REFRESHING: frozenset({
        ConnectionPhase.ACTIVE, ConnectionPhase.EXPIRED, ConnectionPhase.DISCONNECTED,
    }),
    ConnectionPhase.ERROR: frozenset({
        ConnectionPhase.ACTIVE, ConnectionPhase.REFRESHING, ConnectionPhase.ERROR,
        ConnectionPhase.EXPIRED, ConnectionPhase.REVOKED, ConnectionPhase.DISCONNECTED,
    }),
    # Expired and revoked connections need a fresh authorization
    ConnectionPhase.EXPIRED: frozenset({
        ConnectionPhase.PENDING, ConnectionPhase.REVOKED, ConnectionPhase.DISCONNECTED,
    }),
    ConnectionPhase.REVOKED: frozenset({ConnectionPhase.PENDING, ConnectionPhase.DISCONNECTED}),
}

SYNCABLE_PHASES = frozenset({ConnectionPhase.ACTIVE, ConnectionPhase.ERROR})


class InvalidTransitionError(ValueError):
    pass


def phase_for_status(status: Optional[str]) -> ConnectionPhase:
    if status is None:
        return ConnectionPhase.DISCONNECTED
    return ConnectionPhase(status)


def can_transition(current: ConnectionPhase, target: ConnectionPhase) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: ConnectionPhase, target: ConnectionPhase) -> ConnectionPhase:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move connection from {current.value} to {target.value}")
    return target


def can_sync(status: Optional[str]) -> bool:
    return phase_for_status(status) in SYNCABLE_PHASES
