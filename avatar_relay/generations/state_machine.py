"""Canonical job state machine helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

CANONICAL_STATES = (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
)

CANONICAL_PENDING_STATES = {STATUS_PENDING, STATUS_PROCESSING}

CANONICAL_TERMINAL_STATES = {STATUS_COMPLETED, STATUS_FAILED}

# Ordering used to reject backward moves; terminal states share a rank so
# completed <-> failed is also rejected.
_STATE_RANK = {
    STATUS_PENDING: 0,
    STATUS_PROCESSING: 1,
    STATUS_COMPLETED: 2,
    STATUS_FAILED: 2,
}


@dataclass(frozen=True)
class StateResolution:
    raw_state: str
    canonical_state: Optional[str]

    @property
    def known(self) -> bool:
        return self.canonical_state is not None


def normalize_provider_status(raw_state: Optional[str]) -> StateResolution:
    """Map a provider status string onto the fixed vocabulary.

    Unknown or missing values resolve to ``canonical_state=None``; callers keep
    the persisted status unchanged in that case.
    """
    if not raw_state:
        return StateResolution(raw_state="", canonical_state=None)

    lowered = str(raw_state).strip().lower()
    if lowered in _STATE_RANK:
        return StateResolution(raw_state=lowered, canonical_state=lowered)
    return StateResolution(raw_state=lowered, canonical_state=None)


def is_terminal(status: Optional[str]) -> bool:
    return status in CANONICAL_TERMINAL_STATES


def is_allowed_transition(current: Optional[str], new: Optional[str]) -> bool:
    """True when ``current -> new`` follows pending -> processing -> {completed, failed}.

    Staying in the same state is allowed (reconciliation re-observes status).
    """
    if new is None or new not in _STATE_RANK:
        return False
    if current is None or current == new:
        return True
    if current not in _STATE_RANK:
        return True
    if is_terminal(current):
        return False
    return _STATE_RANK[new] > _STATE_RANK[current]
