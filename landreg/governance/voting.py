"""
Votes

Vote choices use the ``support`` encoding of Governor-style contracts
(0 = Against, 1 = For, 2 = Abstain). Abstain counts toward quorum but not
toward the threshold ratio (see outcome.py).
"""

import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional

from ..exceptions import InvalidAddressError
from ..ledger.encoding import normalize_address
from .proposals import GovernanceError, Proposal, ValidationError


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class VotingError(ValidationError):
    """Base voting error."""
    code = "VOTING_ERROR"


class InsufficientVotingPowerError(VotingError):
    """Voter has no voting power at the snapshot block."""
    code = "NO_VOTING_POWER"


class AlreadyVotedError(VotingError):
    """Voter already cast a vote on this proposal."""
    code = "ALREADY_VOTED"


class VotingClosedError(VotingError):
    """Proposal is not accepting votes."""
    code = "VOTING_CLOSED"


class InvalidVoteError(VotingError):
    code = "INVALID_VOTE"


class TallyOverflowError(GovernanceError):
    """Recorded votes would exceed the snapshot voting power."""
    code = "TALLY_EXCEEDS_SNAPSHOT"


# ══════════════════════════════════════════════════════════════════════
#  VOTE DATA
# ══════════════════════════════════════════════════════════════════════

class VoteChoice(IntEnum):
    AGAINST = 0
    FOR = 1
    ABSTAIN = 2

    @classmethod
    def parse(cls, value: Any) -> "VoteChoice":
        """Accept a VoteChoice, its int value or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        else:
            try:
                return cls(int(value))
            except (TypeError, ValueError):
                pass
        raise InvalidVoteError(f"Invalid vote choice: {value!r}")


def normalize_voter(address: str) -> str:
    try:
        return normalize_address(address)
    except InvalidAddressError as e:
        raise InvalidVoteError(str(e), code="INVALID_VOTER") from e


@dataclass(frozen=True)
class VoteRecord:
    """An individual vote, recorded only after the ledger confirmed it."""
    proposal_id: str
    voter: str
    choice: VoteChoice
    voting_power: int
    tx_ref: str
    block_number: Optional[int] = None
    reason: Optional[str] = None
    cast_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "voter": self.voter,
            "choice": self.choice.name,
            "votingPower": str(self.voting_power),
            "txRef": self.tx_ref,
            "blockNumber": self.block_number,
            "reason": self.reason,
            "castAt": self.cast_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoteRecord":
        return cls(
            proposal_id=data["proposalId"],
            voter=data["voter"],
            choice=VoteChoice[data["choice"]],
            voting_power=int(data["votingPower"]),
            tx_ref=data["txRef"],
            block_number=data.get("blockNumber"),
            reason=data.get("reason"),
            cast_at=data.get("castAt", time.time()),
        )


def apply_vote(proposal: Proposal, vote: VoteRecord) -> None:
    """
    Add a confirmed vote's power to the matching tally bucket.

    Only the proposal store calls this, inside its per-proposal serialised
    update. Raises TallyOverflowError if the snapshot bound would be broken.
    """
    if vote.voting_power <= 0:
        raise InsufficientVotingPowerError(
            f"{vote.voter} has no voting power on proposal {proposal.id}"
        )
    new_total = proposal.total_votes + vote.voting_power
    snapshot = proposal.total_voting_power_at_snapshot
    if snapshot > 0 and new_total > snapshot:
        raise TallyOverflowError(
            f"Proposal {proposal.id}: tally {new_total} would exceed snapshot {snapshot}"
        )
    if vote.choice == VoteChoice.FOR:
        proposal.votes_for += vote.voting_power
    elif vote.choice == VoteChoice.AGAINST:
        proposal.votes_against += vote.voting_power
    else:
        proposal.votes_abstain += vote.voting_power
