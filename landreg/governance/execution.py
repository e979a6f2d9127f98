"""
Timelock

Queued proposals become executable at ``earliest_execution_at``. The ledger's
timelock is authoritative: when the queue confirmation carries an ``eta``
event we mirror it, otherwise we fall back to ``queued_at + timelock_delay``.
"""

from typing import Any, Dict, Iterable, Optional

from ..constants import LEDGER_QUEUE_EVENT_NAME
from .proposals import Proposal, ProposalLifecycleError, ValidationError


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class TimelockError(ValidationError):
    """Timelock-specific errors."""
    code = "TIMELOCK_ERROR"


class TimelockNotReadyError(TimelockError):
    """Execution attempted before the delay expired."""
    code = "TIMELOCK_NOT_READY"

    def __init__(self, message: str, remaining: float):
        super().__init__(message)
        self.remaining = remaining


class InvalidTimelockDelayError(TimelockError):
    code = "INVALID_TIMELOCK_DELAY"


class AlreadyQueuedError(ProposalLifecycleError):
    code = "ALREADY_QUEUED"


class AlreadyExecutedError(ProposalLifecycleError):
    code = "ALREADY_EXECUTED"


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

def check_delay(delay: int, min_delay: int, max_delay: int) -> int:
    delay = int(delay)
    if delay < min_delay:
        raise InvalidTimelockDelayError(f"Delay {delay}s < minimum {min_delay}s")
    if delay > max_delay:
        raise InvalidTimelockDelayError(f"Delay {delay}s > maximum {max_delay}s")
    return delay


def eta_from_events(events: Iterable[Dict[str, Any]]) -> Optional[float]:
    """
    Pull the execution eta out of queue confirmation events.

    Prefers a ``ProposalQueued`` event; any event with an ``eta`` key is
    accepted otherwise.
    """
    fallback = None
    for event in events or ():
        args = event.get("args", event)
        eta = args.get("eta")
        if eta is None:
            continue
        if event.get("event") == LEDGER_QUEUE_EVENT_NAME:
            return float(eta)
        if fallback is None:
            fallback = float(eta)
    return fallback


def resolve_eta(
    events: Iterable[Dict[str, Any]],
    queued_at: float,
    timelock_delay: int,
) -> float:
    eta = eta_from_events(events)
    if eta is not None:
        return eta
    return queued_at + timelock_delay


def remaining_wait(proposal: Proposal, now: float) -> float:
    """Seconds until the proposal may execute (0 if ready or unknown)."""
    if proposal.earliest_execution_at is None:
        return 0.0
    return max(0.0, proposal.earliest_execution_at - now)
