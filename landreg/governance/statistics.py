"""
Governance statistics

Read-side aggregation over the proposal store. All voting-power figures are
exact ints; the only non-integer figure (average voters per active proposal)
is an exact Fraction rounded to two decimals at the end.
"""

from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from typing import Any, Dict

from ..constants import GOVERNANCE_RECENT_WINDOW_SECONDS
from .proposals import ProposalStatus, ProposalType
from .store import ProposalStore


def _round2(value: Fraction) -> Decimal:
    exact = Decimal(value.numerator) / Decimal(value.denominator)
    return exact.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


async def proposal_statistics(store: ProposalStore, now: float) -> Dict[str, Any]:
    """Totals by status and type, plus proposals created in the last 30 days."""
    proposals = await store.list_proposals()
    by_status = {status.name: 0 for status in ProposalStatus}
    by_type = {ptype.name: 0 for ptype in ProposalType}
    recent = 0
    for proposal in proposals:
        by_status[proposal.status.name] += 1
        by_type[proposal.proposal_type.name] += 1
        if proposal.created_at > now - GOVERNANCE_RECENT_WINDOW_SECONDS:
            recent += 1
    return {
        "totalProposals": len(proposals),
        "proposalsByStatus": by_status,
        "proposalsByType": by_type,
        "recentProposals": recent,
    }


async def governance_statistics(store: ProposalStore, now: float) -> Dict[str, Any]:
    """Proposal statistics plus participation across ACTIVE proposals."""
    stats = await proposal_statistics(store, now)
    active = await store.list_proposals(status=ProposalStatus.ACTIVE)

    total_voters = 0
    total_voting_power = 0
    for proposal in active:
        total_voters += len(await store.get_votes(proposal.id))
        total_voting_power += proposal.total_votes

    average = Fraction(total_voters, len(active)) if active else Fraction(0)
    stats.update({
        "activeProposals": len(active),
        "totalVoters": total_voters,
        "totalVotingPower": str(total_voting_power),
        "averageParticipation": _round2(average),
    })
    return stats
