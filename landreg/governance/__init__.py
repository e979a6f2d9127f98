"""
Land Registry Governance

Provides:
  - ProposalType / ProposalStatus / ActionBatch / Proposal   (proposals.py)
  - VoteChoice / VoteRecord                                   (voting.py)
  - evaluate / Outcome                                        (outcome.py)
  - timelock helpers                                          (execution.py)
  - ProposalStore / InMemoryProposalStore                     (store.py)
  - SQLiteProposalStore                                       (store_sqlite.py)
  - LifecycleController / CreateProposalRequest               (controller.py)
  - ReconciliationSweep / SweepReport                         (sweep.py)
  - proposal_statistics / governance_statistics               (statistics.py)
"""

from .proposals import (
    ActionBatch,
    ConsistencyError,
    DuplicateProposalError,
    GovernanceError,
    InvalidProposalError,
    Proposal,
    ProposalLifecycleError,
    ProposalNotFoundError,
    ProposalStatus,
    ProposalType,
    ValidationError,
)
from .voting import (
    AlreadyVotedError,
    InsufficientVotingPowerError,
    InvalidVoteError,
    TallyOverflowError,
    VoteChoice,
    VoteRecord,
    VotingClosedError,
)
from .outcome import Outcome, evaluate, evaluate_proposal
from .execution import (
    AlreadyExecutedError,
    AlreadyQueuedError,
    TimelockNotReadyError,
)
from .store import InMemoryProposalStore, ProposalStore
from .store_sqlite import SQLiteProposalStore
from .controller import CreateProposalRequest, LifecycleController
from .sweep import ReconciliationSweep, SweepReport
from .statistics import governance_statistics, proposal_statistics

__all__ = [
    # Proposals
    "ActionBatch",
    "ConsistencyError",
    "DuplicateProposalError",
    "GovernanceError",
    "InvalidProposalError",
    "Proposal",
    "ProposalLifecycleError",
    "ProposalNotFoundError",
    "ProposalStatus",
    "ProposalType",
    "ValidationError",
    # Voting
    "AlreadyVotedError",
    "InsufficientVotingPowerError",
    "InvalidVoteError",
    "TallyOverflowError",
    "VoteChoice",
    "VoteRecord",
    "VotingClosedError",
    # Outcome
    "Outcome",
    "evaluate",
    "evaluate_proposal",
    # Timelock
    "AlreadyExecutedError",
    "AlreadyQueuedError",
    "TimelockNotReadyError",
    # Persistence
    "InMemoryProposalStore",
    "ProposalStore",
    "SQLiteProposalStore",
    # Lifecycle
    "CreateProposalRequest",
    "LifecycleController",
    "ReconciliationSweep",
    "SweepReport",
    "governance_statistics",
    "proposal_statistics",
]
