"""
Proposal Store

Durable record of proposals and their votes. The store is the only
component that writes tallies and status, and it does so through two
serialised entry points:

  - ``update(proposal_id, mutator)``: atomic read-modify-write of one proposal
  - ``record_vote(vote)``: uniqueness re-check, tally increment and flag
    refresh for one proposal, as a single step

Readers always get copies; mutating a returned proposal has no effect until
it goes back through ``update``.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from ..logger import get_logger
from .outcome import refresh_flags
from .proposals import (
    DuplicateProposalError,
    Proposal,
    ProposalNotFoundError,
    ProposalStatus,
    ProposalType,
)
from .voting import AlreadyVotedError, VoteRecord, VotingClosedError, apply_vote

logger = get_logger(__name__)

# Receives a private copy; returning False means "nothing to do", skip the write.
Mutator = Callable[[Proposal], Optional[bool]]

EXPIRABLE_STATUSES = frozenset({ProposalStatus.PENDING, ProposalStatus.ACTIVE})


class ProposalStore(ABC):
    """Async persistence contract used by the lifecycle controller and sweep."""

    async def initialize(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def add(self, proposal: Proposal) -> Proposal:
        """Persist a new proposal. Raises DuplicateProposalError on id reuse."""

    @abstractmethod
    async def get(self, proposal_id: str) -> Proposal:
        """Return a copy. Raises ProposalNotFoundError."""

    @abstractmethod
    async def find_by_external_id(self, external_id: str) -> Optional[Proposal]:
        ...

    @abstractmethod
    async def update(self, proposal_id: str, mutator: Mutator) -> Proposal:
        """
        Apply *mutator* to the current record atomically.

        Exceptions raised by the mutator propagate and nothing is written.
        Returns the stored proposal after the call.
        """

    @abstractmethod
    async def record_vote(self, vote: VoteRecord) -> Proposal:
        """
        Store a confirmed vote and add its power to the tallies.

        Raises AlreadyVotedError if the voter already has a vote (checked
        inside the serialised scope), VotingClosedError if the proposal left
        ACTIVE meanwhile, TallyOverflowError if the snapshot bound breaks.
        """

    @abstractmethod
    async def get_vote(self, proposal_id: str, voter: str) -> Optional[VoteRecord]:
        ...

    @abstractmethod
    async def get_votes(self, proposal_id: str) -> List[VoteRecord]:
        ...

    @abstractmethod
    async def list_proposals(
        self,
        status: Optional[ProposalStatus] = None,
        proposal_type: Optional[ProposalType] = None,
        proposer: Optional[str] = None,
    ) -> List[Proposal]:
        """Newest first."""

    async def has_voted(self, proposal_id: str, voter: str) -> bool:
        return await self.get_vote(proposal_id, voter) is not None

    async def list_due_for_close(self, now: float) -> List[Proposal]:
        """ACTIVE proposals whose voting window has elapsed."""
        return [
            p for p in await self.list_proposals(status=ProposalStatus.ACTIVE)
            if p.voting_window_closed(now)
        ]

    async def list_due_for_expiry(self, now: float) -> List[Proposal]:
        """PENDING/ACTIVE proposals past their explicit expiration date."""
        due = []
        for status in sorted(EXPIRABLE_STATUSES):
            due.extend(
                p for p in await self.list_proposals(status=status)
                if p.expiration_at is not None and p.expiration_at <= now
            )
        return due


def tally_vote(proposal: Proposal, vote: VoteRecord, already_voted: bool) -> None:
    """
    The part of ``record_vote`` shared by every store implementation.

    Runs inside the store's serialised scope for ``proposal``.
    """
    if already_voted:
        raise AlreadyVotedError(f"{vote.voter} already voted on proposal {proposal.id}")
    if proposal.status != ProposalStatus.ACTIVE:
        raise VotingClosedError(
            f"Proposal {proposal.id} is {proposal.status.name}; vote {vote.tx_ref} not tallied"
        )
    apply_vote(proposal, vote)
    refresh_flags(proposal)


class InMemoryProposalStore(ProposalStore):
    """
    Dict-backed store with one asyncio.Lock per proposal.

    Nothing is ever evicted: proposals, votes and their locks live as long as
    the store. Meant for development and tests; use SQLiteProposalStore for
    long-running services.
    """

    def __init__(self):
        self._proposals: Dict[str, Proposal] = {}
        self._votes: Dict[str, Dict[str, VoteRecord]] = defaultdict(dict)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _require(self, proposal_id: str) -> Proposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(f"Proposal {proposal_id} not found")
        return proposal

    def _lock_for(self, proposal_id: str) -> asyncio.Lock:
        self._require(proposal_id)
        return self._locks[proposal_id]

    def _check_external_id(self, proposal: Proposal):
        for other in self._proposals.values():
            if proposal.external_id and other.id != proposal.id \
                    and other.external_id == proposal.external_id:
                raise DuplicateProposalError(
                    f"External id {proposal.external_id} already belongs to another proposal"
                )

    async def add(self, proposal: Proposal) -> Proposal:
        if proposal.id in self._proposals:
            raise DuplicateProposalError(f"Proposal {proposal.id} already exists")
        self._check_external_id(proposal)
        self._proposals[proposal.id] = proposal.copy()
        self._locks[proposal.id] = asyncio.Lock()
        return proposal.copy()

    async def get(self, proposal_id: str) -> Proposal:
        return self._require(proposal_id).copy()

    async def find_by_external_id(self, external_id: str) -> Optional[Proposal]:
        for proposal in self._proposals.values():
            if external_id and proposal.external_id == external_id:
                return proposal.copy()
        return None

    async def update(self, proposal_id: str, mutator: Mutator) -> Proposal:
        async with self._lock_for(proposal_id):
            working = self._require(proposal_id).copy()
            if mutator(working) is False:
                return self._proposals[proposal_id].copy()
            self._check_external_id(working)
            self._proposals[proposal_id] = working
            return working.copy()

    async def record_vote(self, vote: VoteRecord) -> Proposal:
        async with self._lock_for(vote.proposal_id):
            working = self._require(vote.proposal_id).copy()
            votes = self._votes[vote.proposal_id]
            tally_vote(working, vote, vote.voter in votes)
            votes[vote.voter] = vote
            self._proposals[vote.proposal_id] = working
            return working.copy()

    async def get_vote(self, proposal_id: str, voter: str) -> Optional[VoteRecord]:
        return self._votes.get(proposal_id, {}).get(voter)

    async def get_votes(self, proposal_id: str) -> List[VoteRecord]:
        self._require(proposal_id)
        return sorted(self._votes.get(proposal_id, {}).values(), key=lambda v: v.cast_at)

    async def list_proposals(
        self,
        status: Optional[ProposalStatus] = None,
        proposal_type: Optional[ProposalType] = None,
        proposer: Optional[str] = None,
    ) -> List[Proposal]:
        result = [
            p.copy() for p in self._proposals.values()
            if (status is None or p.status == status)
            and (proposal_type is None or p.proposal_type == proposal_type)
            and (proposer is None or p.proposer.lower() == proposer.lower())
        ]
        result.sort(key=lambda p: p.created_at, reverse=True)
        return result
