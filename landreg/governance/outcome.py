"""
Outcome Evaluator

Single source of truth for quorum / threshold / decision. Every code path
that needs to know whether a proposal passed calls :func:`evaluate`; nothing
else compares tallies.

Rules:
  - Missing or zero snapshot power, or missing quorum → DEFEATED, no flags
  - Quorum: FOR + AGAINST + ABSTAIN ≥ quorum_required (abstain counts)
  - Threshold: FOR / (FOR + AGAINST) strictly greater than the threshold
    percentage, compared by integer cross-multiplication in basis points
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Dict, Optional, Union

from ..constants import GOVERNANCE_BPS_SCALE
from .proposals import ProposalStatus

Number = Union[int, str]


@dataclass(frozen=True)
class Outcome:
    """Result of evaluating a proposal's tallies."""
    quorum_reached: bool
    threshold_reached: bool
    decision: ProposalStatus

    @property
    def succeeded(self) -> bool:
        return self.decision == ProposalStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quorumReached": self.quorum_reached,
            "thresholdReached": self.threshold_reached,
            "decision": self.decision.name,
        }


_DEFEATED_NO_QUORUM = Outcome(False, False, ProposalStatus.DEFEATED)


def threshold_to_bps(threshold_percent: Union[Decimal, int, str]) -> int:
    """
    Convert a percentage (e.g. ``Decimal("50.0")``) to basis points.

    Goes through Decimal so that 33.33 stays 3333 and never picks up binary
    floating-point error.
    """
    value = Decimal(str(threshold_percent)) * 100
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def _as_int(value: Number, name: str) -> int:
    result = int(value)
    if result < 0:
        raise ValueError(f"{name} must be non-negative, got {result}")
    return result


def evaluate(
    votes_for: Number,
    votes_against: Number,
    votes_abstain: Number,
    quorum_required: Optional[Number],
    total_voting_power_at_snapshot: Optional[Number],
    voting_threshold_percent: Optional[Union[Decimal, int, str]],
) -> Outcome:
    """
    Compute ``(quorum_reached, threshold_reached, decision)`` from tallies.

    Pure and deterministic. All arithmetic is on Python ints, so tallies of
    any size (uint256 voting power) are exact.
    """
    if (
        total_voting_power_at_snapshot is None
        or quorum_required is None
        or voting_threshold_percent is None
    ):
        return _DEFEATED_NO_QUORUM

    snapshot = _as_int(total_voting_power_at_snapshot, "total_voting_power_at_snapshot")
    if snapshot == 0:
        return _DEFEATED_NO_QUORUM

    for_votes = _as_int(votes_for, "votes_for")
    against_votes = _as_int(votes_against, "votes_against")
    abstain_votes = _as_int(votes_abstain, "votes_abstain")
    quorum = _as_int(quorum_required, "quorum_required")

    quorum_reached = (for_votes + against_votes + abstain_votes) >= quorum
    if not quorum_reached:
        return _DEFEATED_NO_QUORUM

    effective_votes = for_votes + against_votes
    if effective_votes == 0:
        threshold_reached = False
    else:
        threshold_bps = threshold_to_bps(voting_threshold_percent)
        threshold_reached = (
            for_votes * GOVERNANCE_BPS_SCALE > threshold_bps * effective_votes
        )

    decision = ProposalStatus.SUCCEEDED if threshold_reached else ProposalStatus.DEFEATED
    return Outcome(
        quorum_reached=True,
        threshold_reached=threshold_reached,
        decision=decision,
    )


def evaluate_proposal(proposal) -> Outcome:
    """Evaluate a Proposal's current tallies."""
    return evaluate(
        proposal.votes_for,
        proposal.votes_against,
        proposal.votes_abstain,
        proposal.quorum_required,
        proposal.total_voting_power_at_snapshot,
        proposal.voting_threshold,
    )


def refresh_flags(proposal) -> Outcome:
    """Re-derive the cached quorum/threshold flags from the tallies."""
    outcome = evaluate_proposal(proposal)
    proposal.quorum_reached = outcome.quorum_reached
    proposal.threshold_reached = outcome.threshold_reached
    return outcome
