"""
Governance Proposals

Defines proposal types, lifecycle states, the ActionBatch value type and the
Proposal dataclass that tracks an individual governance proposal from
creation to execution.
"""

import copy
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..constants import (
    GOVERNANCE_BPS_SCALE,
    GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS,
    GOVERNANCE_DEFAULT_VOTING_THRESHOLD,
    GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS,
)
from ..exceptions import InvalidAddressError, LandRegistryException
from ..ledger.encoding import normalize_address, normalize_hex
from ..logger import get_logger

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class GovernanceError(LandRegistryException):
    """Base governance exception. ``code`` is a stable machine-readable reason."""
    code = "GOVERNANCE_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ValidationError(GovernanceError):
    """Request rejected before reaching the ledger."""
    code = "VALIDATION_ERROR"


class InvalidProposalError(ValidationError):
    """Raised when proposal data is invalid."""
    code = "INVALID_PROPOSAL"


class ProposalLifecycleError(ValidationError):
    """Raised on illegal state transitions."""
    code = "INVALID_STATE"


class ProposalNotFoundError(GovernanceError):
    code = "PROPOSAL_NOT_FOUND"


class DuplicateProposalError(GovernanceError):
    code = "DUPLICATE_PROPOSAL"


class ConsistencyError(GovernanceError):
    """Local record disagrees with what was registered on the ledger."""
    code = "DESCRIPTOR_MISMATCH"


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ProposalType(IntEnum):
    """Category of governance proposal."""
    PARAMETER_CHANGE = 1      # Registry fee / limit adjustments
    CONTRACT_UPGRADE = 2      # Registry contract upgrade
    TREASURY_ALLOCATION = 3   # Allocate treasury funds
    RULE_MODIFICATION = 4     # Cadastral / registration rule change
    EMERGENCY_ACTION = 5      # Emergency action
    GENERAL_PROPOSAL = 6      # Signalling proposal


class ProposalStatus(IntEnum):
    """Lifecycle stage."""
    PENDING = 0      # Recorded locally, not yet registered on the ledger
    ACTIVE = 1       # Registered, voting window open
    SUCCEEDED = 2    # Window closed, quorum and threshold met
    DEFEATED = 3     # Window closed, failed
    QUEUED = 4       # In timelock awaiting execution
    EXECUTED = 5     # Executed on the ledger
    CANCELLED = 6    # Cancelled with a reason
    EXPIRED = 7      # Explicit expiration date passed before a decision


TERMINAL_STATUSES = frozenset({
    ProposalStatus.EXECUTED,
    ProposalStatus.CANCELLED,
    ProposalStatus.EXPIRED,
    ProposalStatus.DEFEATED,
})

CANCELLABLE_STATUSES = frozenset({
    ProposalStatus.PENDING,
    ProposalStatus.ACTIVE,
    ProposalStatus.SUCCEEDED,
    ProposalStatus.QUEUED,
})

UPDATABLE_STATUSES = frozenset({ProposalStatus.PENDING, ProposalStatus.ACTIVE})

# Valid forward transitions
_VALID_TRANSITIONS: Dict[ProposalStatus, frozenset] = {
    ProposalStatus.PENDING:   frozenset({ProposalStatus.ACTIVE, ProposalStatus.CANCELLED,
                                         ProposalStatus.EXPIRED}),
    ProposalStatus.ACTIVE:    frozenset({ProposalStatus.SUCCEEDED, ProposalStatus.DEFEATED,
                                         ProposalStatus.CANCELLED, ProposalStatus.EXPIRED}),
    ProposalStatus.SUCCEEDED: frozenset({ProposalStatus.QUEUED, ProposalStatus.CANCELLED}),
    ProposalStatus.QUEUED:    frozenset({ProposalStatus.EXECUTED, ProposalStatus.CANCELLED}),
    # Terminal states, no further transitions
    ProposalStatus.DEFEATED:  frozenset(),
    ProposalStatus.EXECUTED:  frozenset(),
    ProposalStatus.CANCELLED: frozenset(),
    ProposalStatus.EXPIRED:   frozenset(),
}


def can_transition(current: ProposalStatus, new_status: ProposalStatus) -> bool:
    return new_status in _VALID_TRANSITIONS.get(current, frozenset())


# ══════════════════════════════════════════════════════════════════════
#  ACTION BATCH
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ActionBatch:
    """
    The calls a proposal executes if it passes.

    Four parallel arrays of equal, non-zero length. Targets are stored in
    checksum form, calldatas as lower-case 0x hex, values as ints.
    """
    targets: Tuple[str, ...]
    values: Tuple[int, ...]
    signatures: Tuple[str, ...]
    calldatas: Tuple[str, ...]

    def __post_init__(self):
        lengths = {len(self.targets), len(self.values),
                   len(self.signatures), len(self.calldatas)}
        if 0 in lengths:
            raise InvalidProposalError(
                "Action batch must contain at least one action",
                code="ACTION_BATCH_EMPTY",
            )
        if len(lengths) != 1:
            raise InvalidProposalError(
                f"Action arrays differ in length: targets={len(self.targets)} "
                f"values={len(self.values)} signatures={len(self.signatures)} "
                f"calldatas={len(self.calldatas)}",
                code="ACTION_BATCH_LENGTH_MISMATCH",
            )

        try:
            targets = tuple(normalize_address(t) for t in self.targets)
        except InvalidAddressError as e:
            raise InvalidProposalError(str(e), code="INVALID_TARGET_ADDRESS") from e

        values = []
        for v in self.values:
            try:
                amount = int(v)
            except (TypeError, ValueError) as e:
                raise InvalidProposalError(
                    f"Invalid action value: {v!r}", code="INVALID_VALUE"
                ) from e
            if amount < 0 or amount >= 2 ** 256:
                raise InvalidProposalError(
                    f"Action value out of range: {v!r}", code="INVALID_VALUE"
                )
            values.append(amount)

        try:
            calldatas = tuple(normalize_hex(c) for c in self.calldatas)
        except ValueError as e:
            raise InvalidProposalError(str(e), code="INVALID_CALLDATA") from e

        object.__setattr__(self, "targets", targets)
        object.__setattr__(self, "values", tuple(values))
        object.__setattr__(self, "signatures", tuple(str(s) for s in self.signatures))
        object.__setattr__(self, "calldatas", calldatas)

    @classmethod
    def from_lists(
        cls,
        targets: Iterable[str],
        values: Iterable[Any],
        signatures: Iterable[str],
        calldatas: Iterable[str],
    ) -> "ActionBatch":
        return cls(
            targets=tuple(targets),
            values=tuple(values),
            signatures=tuple(signatures),
            calldatas=tuple(calldatas),
        )

    def __len__(self) -> int:
        return len(self.targets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targets": list(self.targets),
            "values": [str(v) for v in self.values],
            "signatures": list(self.signatures),
            "calldatas": list(self.calldatas),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionBatch":
        return cls.from_lists(
            data.get("targets", []),
            data.get("values", []),
            data.get("signatures", []),
            data.get("calldatas", []),
        )


# ══════════════════════════════════════════════════════════════════════
#  PROPOSAL
# ══════════════════════════════════════════════════════════════════════

def _opt_int(value: Any) -> Optional[int]:
    return None if value is None or value == "" else int(value)


@dataclass
class Proposal:
    """
    Governance proposal mirrored from the ledger.

    Identity:
        id:                 Internal identifier (stable, used everywhere locally)
        external_id:        Ledger proposal id, empty until registration confirms

    Fixed once registered on the ledger:
        description_uri:    ``scheme://contentRef`` submitted as the description
        description_hash:   keccak256 of description_uri
        descriptor_hash:    Governor proposal hash over actions + description hash

    Tallies are Python ints and serialise as decimal strings.
    """
    title: str
    description: str
    proposal_type: ProposalType
    proposer: str
    actions: ActionBatch
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    external_id: str = ""
    status: ProposalStatus = ProposalStatus.PENDING

    content_ref: str = ""
    description_uri: str = ""
    description_hash: str = ""
    descriptor_hash: str = ""

    votes_for: int = 0
    votes_against: int = 0
    votes_abstain: int = 0
    quorum_required: int = 0
    voting_threshold: Decimal = GOVERNANCE_DEFAULT_VOTING_THRESHOLD
    total_voting_power_at_snapshot: int = 0
    quorum_reached: bool = False
    threshold_reached: bool = False
    timelock_delay: int = GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS
    voting_period: int = GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS

    created_at: float = field(default_factory=time.time)
    created_block: Optional[int] = None
    voting_start: Optional[float] = None
    voting_end: Optional[float] = None
    voting_start_block: Optional[int] = None
    voting_end_block: Optional[int] = None
    decided_at: Optional[float] = None
    queued_at: Optional[float] = None
    earliest_execution_at: Optional[float] = None
    executed_at: Optional[float] = None
    expiration_at: Optional[float] = None
    cancelled_at: Optional[float] = None

    registration_tx_ref: str = ""
    queue_tx_ref: str = ""
    execution_tx_ref: str = ""
    executed_by: str = ""
    execution_note: str = ""
    cancellation_reason: str = ""
    cancelled_by: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    pending_transactions: Dict[str, str] = field(default_factory=dict)
    _history: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.title or not self.title.strip():
            raise InvalidProposalError("Proposal title cannot be empty", code="TITLE_REQUIRED")
        if not self.description or not self.description.strip():
            raise InvalidProposalError(
                "Proposal description cannot be empty", code="DESCRIPTION_REQUIRED"
            )
        try:
            self.proposer = normalize_address(self.proposer)
        except InvalidAddressError as e:
            raise InvalidProposalError(str(e), code="INVALID_PROPOSER") from e
        self.voting_threshold = Decimal(str(self.voting_threshold))
        if not self._history:
            self._record_transition(self.status, "created", self.created_at)

    # ── Properties ────────────────────────────────────────────────────

    @property
    def is_registered(self) -> bool:
        return bool(self.external_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_votable(self) -> bool:
        return self.status == ProposalStatus.ACTIVE

    @property
    def total_votes(self) -> int:
        """Total power that participated (including abstain)."""
        return self.votes_for + self.votes_against + self.votes_abstain

    @property
    def effective_votes(self) -> int:
        """FOR + AGAINST; the denominator of the threshold ratio."""
        return self.votes_for + self.votes_against

    @property
    def participation_bps(self) -> int:
        """Participation in basis points of the snapshot power (floor)."""
        if self.total_voting_power_at_snapshot <= 0:
            return 0
        return self.total_votes * GOVERNANCE_BPS_SCALE // self.total_voting_power_at_snapshot

    @property
    def approval_bps(self) -> int:
        """FOR share of FOR+AGAINST in basis points (floor)."""
        if self.effective_votes == 0:
            return 0
        return self.votes_for * GOVERNANCE_BPS_SCALE // self.effective_votes

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def voting_window_closed(self, now: float) -> bool:
        return self.voting_end is not None and now >= self.voting_end

    def can_vote(self, now: float) -> bool:
        return self.is_votable and not self.voting_window_closed(now)

    def can_queue(self, now: float) -> bool:
        return (
            self.status == ProposalStatus.SUCCEEDED
            and self.queued_at is None
            and self.quorum_reached
            and self.threshold_reached
            and self.voting_window_closed(now)
        )

    def can_execute(self, now: float) -> bool:
        return (
            self.status == ProposalStatus.QUEUED
            and self.earliest_execution_at is not None
            and now >= self.earliest_execution_at
            and not self.execution_tx_ref
        )

    def seconds_until_voting_end(self, now: float) -> Optional[float]:
        """None unless ACTIVE with a known end; 0 once the window closed."""
        if self.status != ProposalStatus.ACTIVE or self.voting_end is None:
            return None
        return max(0.0, self.voting_end - now)

    def seconds_until_execution(self, now: float) -> Optional[float]:
        if self.status != ProposalStatus.QUEUED or self.earliest_execution_at is None:
            return None
        return max(0.0, self.earliest_execution_at - now)

    # ── State transitions ─────────────────────────────────────────────

    def _record_transition(self, new_status: ProposalStatus, reason: str, at: float):
        self._history.append({
            "from": self.status.name if self._history else "INIT",
            "to": new_status.name,
            "reason": reason,
            "timestamp": at,
        })

    def transition_to(
        self,
        new_status: ProposalStatus,
        reason: str = "",
        now: Optional[float] = None,
    ):
        """
        Advance proposal to *new_status*.

        Raises ProposalLifecycleError on invalid transitions.
        """
        if not can_transition(self.status, new_status):
            allowed = _VALID_TRANSITIONS.get(self.status, frozenset())
            raise ProposalLifecycleError(
                f"Cannot transition proposal {self.id} from {self.status.name} → "
                f"{new_status.name}. Allowed: {sorted(s.name for s in allowed)}"
            )
        old = self.status
        self._record_transition(new_status, reason, time.time() if now is None else now)
        self.status = new_status
        logger.info(
            f"Proposal {self.id} ({self.title}): {old.name} → {new_status.name} | {reason}"
        )

    # ── Serialization ─────────────────────────────────────────────────

    def copy(self) -> "Proposal":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "externalId": self.external_id,
            "proposalType": self.proposal_type.name,
            "status": self.status.name,
            "title": self.title,
            "description": self.description,
            "proposer": self.proposer,
            "actions": self.actions.to_dict(),
            "contentRef": self.content_ref,
            "descriptionUri": self.description_uri,
            "descriptionHash": self.description_hash,
            "descriptorHash": self.descriptor_hash,
            "votesFor": str(self.votes_for),
            "votesAgainst": str(self.votes_against),
            "votesAbstain": str(self.votes_abstain),
            "quorumRequired": str(self.quorum_required),
            "votingThreshold": str(self.voting_threshold),
            "totalVotingPowerAtSnapshot": str(self.total_voting_power_at_snapshot),
            "quorumReached": self.quorum_reached,
            "thresholdReached": self.threshold_reached,
            "timelockDelay": self.timelock_delay,
            "votingPeriod": self.voting_period,
            "createdAt": self.created_at,
            "createdBlock": self.created_block,
            "votingStart": self.voting_start,
            "votingEnd": self.voting_end,
            "votingStartBlock": self.voting_start_block,
            "votingEndBlock": self.voting_end_block,
            "decidedAt": self.decided_at,
            "queuedAt": self.queued_at,
            "earliestExecutionAt": self.earliest_execution_at,
            "executedAt": self.executed_at,
            "expirationAt": self.expiration_at,
            "cancelledAt": self.cancelled_at,
            "registrationTxRef": self.registration_tx_ref,
            "queueTxRef": self.queue_tx_ref,
            "executionTxRef": self.execution_tx_ref,
            "executedBy": self.executed_by,
            "executionNote": self.execution_note,
            "cancellationReason": self.cancellation_reason,
            "cancelledBy": self.cancelled_by,
            "metadata": self.metadata,
            "pendingTransactions": self.pending_transactions,
            "participationBps": self.participation_bps,
            "approvalBps": self.approval_bps,
            "history": self.history,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proposal":
        return cls(
            id=data["id"],
            external_id=data.get("externalId", ""),
            proposal_type=ProposalType[data["proposalType"]],
            status=ProposalStatus[data.get("status", "PENDING")],
            title=data["title"],
            description=data["description"],
            proposer=data["proposer"],
            actions=ActionBatch.from_dict(data["actions"]),
            content_ref=data.get("contentRef", ""),
            description_uri=data.get("descriptionUri", ""),
            description_hash=data.get("descriptionHash", ""),
            descriptor_hash=data.get("descriptorHash", ""),
            votes_for=int(data.get("votesFor", "0")),
            votes_against=int(data.get("votesAgainst", "0")),
            votes_abstain=int(data.get("votesAbstain", "0")),
            quorum_required=int(data.get("quorumRequired", "0")),
            voting_threshold=Decimal(
                data.get("votingThreshold", str(GOVERNANCE_DEFAULT_VOTING_THRESHOLD))
            ),
            total_voting_power_at_snapshot=int(data.get("totalVotingPowerAtSnapshot", "0")),
            quorum_reached=bool(data.get("quorumReached", False)),
            threshold_reached=bool(data.get("thresholdReached", False)),
            timelock_delay=int(data.get("timelockDelay", GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS)),
            voting_period=int(data.get("votingPeriod", GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS)),
            created_at=data.get("createdAt", time.time()),
            created_block=_opt_int(data.get("createdBlock")),
            voting_start=data.get("votingStart"),
            voting_end=data.get("votingEnd"),
            voting_start_block=_opt_int(data.get("votingStartBlock")),
            voting_end_block=_opt_int(data.get("votingEndBlock")),
            decided_at=data.get("decidedAt"),
            queued_at=data.get("queuedAt"),
            earliest_execution_at=data.get("earliestExecutionAt"),
            executed_at=data.get("executedAt"),
            expiration_at=data.get("expirationAt"),
            cancelled_at=data.get("cancelledAt"),
            registration_tx_ref=data.get("registrationTxRef", ""),
            queue_tx_ref=data.get("queueTxRef", ""),
            execution_tx_ref=data.get("executionTxRef", ""),
            executed_by=data.get("executedBy", ""),
            execution_note=data.get("executionNote", ""),
            cancellation_reason=data.get("cancellationReason", ""),
            cancelled_by=data.get("cancelledBy", ""),
            metadata=dict(data.get("metadata") or {}),
            pending_transactions=dict(data.get("pendingTransactions") or {}),
            _history=list(data.get("history") or []),
        )

    def __repr__(self) -> str:
        return (
            f"<Proposal {self.id} '{self.title}' "
            f"type={self.proposal_type.name} status={self.status.name}>"
        )
