"""Per-Ingress lifecycle phases and their legal transitions.

The phase is an observation of the last reconcile pass, kept in memory for
logging and the introspection API. Reconciliation itself never reads it back;
every pass is derived from the cluster and directory state.
"""

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field

from .errors import InvariantViolation


class IngressPhase(str, Enum):
    UNVALIDATED = "Unvalidated"
    REJECTED = "Rejected"
    RECONCILING = "Reconciling"
    PENDING = "Pending"
    READY = "Ready"
    CLEANING_UP = "CleaningUp"
    GONE = "Gone"


_P = IngressPhase

TRANSITIONS: Dict[IngressPhase, FrozenSet[IngressPhase]] = {
    _P.UNVALIDATED: frozenset({_P.REJECTED, _P.RECONCILING, _P.CLEANING_UP, _P.GONE}),
    _P.REJECTED: frozenset({_P.UNVALIDATED, _P.CLEANING_UP, _P.GONE}),
    # A directory ownership conflict is only discovered while reconciling.
    _P.RECONCILING: frozenset({_P.PENDING, _P.REJECTED, _P.UNVALIDATED, _P.CLEANING_UP, _P.GONE}),
    _P.PENDING: frozenset({_P.READY, _P.UNVALIDATED, _P.CLEANING_UP, _P.GONE}),
    _P.READY: frozenset({_P.UNVALIDATED, _P.CLEANING_UP, _P.GONE}),
    _P.CLEANING_UP: frozenset({_P.UNVALIDATED, _P.CLEANING_UP, _P.GONE}),
    _P.GONE: frozenset({_P.UNVALIDATED, _P.CLEANING_UP, _P.GONE}),
}


def can_transition(current: IngressPhase, target: IngressPhase) -> bool:
    return target in TRANSITIONS[current]


def transition(current: IngressPhase, target: IngressPhase) -> IngressPhase:
    """Return ``target`` if reachable from ``current``, raise otherwise."""
    if not can_transition(current, target):
        raise InvariantViolation(f"illegal Ingress phase transition {current.value} -> {target.value}")
    return target


class IngressState(BaseModel):
    """Last observed phase of one Ingress."""

    key: str = Field(..., description="namespace/name")
    phase: IngressPhase = Field(IngressPhase.UNVALIDATED, description="Current phase")
    generation: Optional[int] = Field(None, description="Ingress generation the phase refers to")
    service_name: Optional[str] = Field(None, description="Resolved Service Name")
    message: Optional[str] = Field(None, description="Why the Ingress is in this phase")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Last transition timestamp")


class StateTracker:
    """Thread-safe map of Ingress key to IngressState."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: Dict[str, IngressState] = {}

    def get(self, key: str) -> IngressState:
        with self._lock:
            return self._states.get(key) or IngressState(key=key)

    def advance(self, key: str, phase: IngressPhase, generation: Optional[int] = None,
                service_name: Optional[str] = None, message: Optional[str] = None) -> IngressState:
        """Move ``key`` to ``phase``, enforcing the transition table."""
        with self._lock:
            current = self._states.get(key) or IngressState(key=key)
            if phase != current.phase:
                transition(current.phase, phase)
            state = IngressState(
                key=key,
                phase=phase,
                generation=generation if generation is not None else current.generation,
                service_name=service_name or current.service_name,
                message=message,
            )
            self._states[key] = state
            return state

    def forget(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def all(self) -> List[IngressState]:
        with self._lock:
            return sorted(self._states.values(), key=lambda s: s.key)
