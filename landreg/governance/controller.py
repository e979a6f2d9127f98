"""
Lifecycle Controller

Orchestrates the proposal workflow against the ledger:

    create → PENDING ──register──▶ ACTIVE ──window close──▶ SUCCEEDED / DEFEATED
    SUCCEEDED ──queue──▶ QUEUED ──execute (after eta)──▶ EXECUTED
    PENDING / ACTIVE / SUCCEEDED / QUEUED ──cancel──▶ CANCELLED
    PENDING / ACTIVE ──expiration date──▶ EXPIRED

Every operation follows the same shape: read a snapshot, validate, talk to
the ledger with no lock held, then persist through ``store.update`` with a
mutator that re-checks its precondition. A precondition that no longer holds
at persist time is a silent no-op where advancing twice is harmless.

A ledger confirmation that times out leaves the outcome unknown. The
transaction reference is kept in ``proposal.pending_transactions`` and the
next call of the same operation reads the ledger before doing anything else.
A vote holds its pending entry from before submission until it is tallied,
and the window is not decided while any vote entry is held.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config import GovernanceConfig
from ..constants import GOVERNANCE_DESCRIPTION_MAX_LENGTH, GOVERNANCE_TITLE_MAX_LENGTH
from ..content import ContentPublisher
from ..ledger.encoding import hash_description, hash_proposal
from ..ledger.gateway import (
    Confirmation,
    IndeterminateTransactionError,
    LedgerGateway,
    LedgerRevertError,
    LedgerSubmissionError,
    LedgerTimeoutError,
    RegistrationReceipt,
)
from ..logger import get_logger
from ..notifications import EventKind, GovernanceEvent, LoggingNotifier, Notifier, dispatch
from .execution import (
    AlreadyExecutedError,
    AlreadyQueuedError,
    InvalidTimelockDelayError,
    TimelockNotReadyError,
    check_delay,
    remaining_wait,
    resolve_eta,
)
from .outcome import refresh_flags
from .proposals import (
    CANCELLABLE_STATUSES,
    UPDATABLE_STATUSES,
    ActionBatch,
    ConsistencyError,
    GovernanceError,
    InvalidProposalError,
    Proposal,
    ProposalLifecycleError,
    ProposalStatus,
    ProposalType,
    ValidationError,
)
from .store import EXPIRABLE_STATUSES, ProposalStore
from .voting import (
    AlreadyVotedError,
    InsufficientVotingPowerError,
    VoteChoice,
    VoteRecord,
    VotingClosedError,
    normalize_voter,
)

logger = get_logger(__name__)

OP_REGISTER = "register"
OP_QUEUE = "queue"
OP_EXECUTE = "execute"
OP_CANCEL = "cancel"
VOTE_OPERATION_PREFIX = "vote:"

# Placeholder until the ledger returns a reference for a submitted vote.
TX_IN_FLIGHT = "in-flight"

UPDATABLE_FIELDS = frozenset({"title", "description", "voting_end", "metadata"})


def vote_operation(voter: str) -> str:
    return f"{VOTE_OPERATION_PREFIX}{voter}"


def pending_votes(proposal: Proposal) -> Dict[str, str]:
    return {
        op: tx_ref for op, tx_ref in proposal.pending_transactions.items()
        if op.startswith(VOTE_OPERATION_PREFIX)
    }


# ══════════════════════════════════════════════════════════════════════
#  REQUESTS
# ══════════════════════════════════════════════════════════════════════

@dataclass
class CreateProposalRequest:
    """
    Input to :meth:`LifecycleController.create`.

    ``voting_threshold``, ``voting_period`` and ``timelock_delay`` fall back
    to the ``[governance]`` config section when left as None.
    """
    title: str
    description: str
    proposal_type: ProposalType
    proposer: str
    targets: Sequence[str]
    values: Sequence[Any]
    signatures: Sequence[str]
    calldatas: Sequence[str]
    quorum_required: int
    voting_threshold: Optional[Any] = None
    voting_period: Optional[int] = None
    timelock_delay: Optional[int] = None
    expiration_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

def proposal_document(proposal: Proposal) -> Dict[str, Any]:
    """The body published to content-addressed storage."""
    return {
        "id": proposal.id,
        "title": proposal.title,
        "description": proposal.description,
        "proposalType": proposal.proposal_type.name,
        "proposer": proposal.proposer,
        "actions": proposal.actions.to_dict(),
        "createdAt": proposal.created_at,
    }


def compute_descriptor(actions: ActionBatch, description_uri: str) -> Tuple[str, str]:
    """``(description_hash, descriptor_hash)`` for an action batch and URI."""
    description_hash = hash_description(description_uri)
    descriptor_hash = hash_proposal(
        actions.targets, actions.values, actions.calldatas, description_hash
    )
    return description_hash, descriptor_hash


def verify_descriptor(proposal: Proposal) -> None:
    """
    Refuse to send a queue/execute/cancel whose tuple no longer hashes to
    what was registered.
    """
    description_hash, descriptor_hash = compute_descriptor(
        proposal.actions, proposal.description_uri
    )
    if description_hash != proposal.description_hash:
        raise ConsistencyError(
            f"Proposal {proposal.id}: description hash does not match its URI"
        )
    if descriptor_hash != proposal.descriptor_hash:
        raise ConsistencyError(
            f"Proposal {proposal.id}: action batch does not reproduce descriptor "
            f"{proposal.descriptor_hash}"
        )
    if proposal.is_registered and proposal.external_id != proposal.descriptor_hash:
        raise ConsistencyError(
            f"Proposal {proposal.id}: ledger id {proposal.external_id} differs from descriptor"
        )


def _event_args(events: Sequence[Dict[str, Any]], name: str) -> Dict[str, Any]:
    for event in events or ():
        if event.get("event") == name:
            return event.get("args", event)
    return {}


# ══════════════════════════════════════════════════════════════════════
#  CONTROLLER
# ══════════════════════════════════════════════════════════════════════

class LifecycleController:
    """
    Owns every status transition of a proposal.

    Args:
        store:     proposal store (sole writer of tallies and status)
        gateway:   ledger gateway
        publisher: content-addressed storage for proposal bodies
        notifier:  receives fire-and-forget governance events
        settings:  service configuration (defaults when omitted)
        clock:     time source, seconds since the epoch

    ``close_voting`` and ``expire`` never touch the gateway or publisher, so a
    sweep-only controller may be built without them.
    """

    def __init__(
        self,
        store: ProposalStore,
        gateway: Optional[LedgerGateway] = None,
        publisher: Optional[ContentPublisher] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[GovernanceConfig] = None,
        clock=time.time,
    ):
        self.store = store
        self.gateway = gateway
        self.publisher = publisher
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self.settings = settings or GovernanceConfig()
        self.clock = clock

    # ── Ledger plumbing ───────────────────────────────────────────────

    @property
    def _timeout(self) -> float:
        return self.settings.ledger.confirmation_timeout

    async def _set_pending(self, proposal_id: str, operation: str, tx_ref: str):
        def mutate(p: Proposal):
            p.pending_transactions[operation] = tx_ref
        await self.store.update(proposal_id, mutate)

    async def _clear_pending(self, proposal_id: str, operation: str):
        def mutate(p: Proposal):
            if operation not in p.pending_transactions:
                return False
            del p.pending_transactions[operation]
        await self.store.update(proposal_id, mutate)

    async def _confirm(self, proposal_id: str, operation: str, tx_ref: str) -> Confirmation:
        """Wait for *tx_ref*, bounded by the configured confirmation timeout."""
        try:
            confirmation = await asyncio.wait_for(
                self.gateway.await_confirmation(tx_ref), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            await self._set_pending(proposal_id, operation, tx_ref)
            logger.warning(
                f"Proposal {proposal_id}: {operation} tx {tx_ref} not confirmed within "
                f"{self._timeout}s, outcome indeterminate"
            )
            raise LedgerTimeoutError(
                f"{operation} transaction {tx_ref} was not confirmed in time", tx_ref=tx_ref
            ) from None
        if not confirmation.success:
            logger.warning(f"Proposal {proposal_id}: {operation} tx {tx_ref} reverted")
            raise LedgerRevertError(f"{operation} transaction {tx_ref} reverted", tx_ref=tx_ref)
        return confirmation

    async def _resolve_pending(
        self, proposal: Proposal, operation: str
    ) -> Optional[Tuple[str, Confirmation]]:
        """
        Settle an earlier indeterminate submission before trying again.

        Returns ``(tx_ref, confirmation)`` if it went through, None if there
        was nothing pending or it failed (and may be resubmitted).
        """
        tx_ref = proposal.pending_transactions.get(operation)
        if not tx_ref:
            return None
        if tx_ref == TX_IN_FLIGHT:
            raise IndeterminateTransactionError(
                f"Proposal {proposal.id}: {operation} submission is still in flight"
            )
        receipt = await self.gateway.get_receipt(tx_ref)
        if receipt is None:
            raise IndeterminateTransactionError(
                f"Proposal {proposal.id}: earlier {operation} tx {tx_ref} is still unconfirmed",
                tx_ref=tx_ref,
            )
        if receipt.success:
            logger.info(f"Proposal {proposal.id}: earlier {operation} tx {tx_ref} confirmed")
            return tx_ref, receipt
        logger.info(f"Proposal {proposal.id}: earlier {operation} tx {tx_ref} failed, resubmitting")
        await self._clear_pending(proposal.id, operation)
        return None

    async def _submit_and_confirm(self, proposal: Proposal, operation: str, submit):
        resolved = await self._resolve_pending(proposal, operation)
        if resolved is not None:
            return resolved
        tx_ref = await submit()
        return tx_ref, await self._confirm(proposal.id, operation, tx_ref)

    async def discard_pending_transaction(self, proposal_id: str, operation: str) -> Proposal:
        """
        Forget an indeterminate submission the operator has verified was dropped.

        The next call of *operation* submits afresh.
        """
        logger.warning(f"Proposal {proposal_id}: discarding pending {operation} transaction")
        await self._clear_pending(proposal_id, operation)
        return await self.store.get(proposal_id)

    def _notify(self, proposal: Proposal, actor: str, kind: EventKind):
        dispatch(self.notifier, GovernanceEvent(
            proposal_id=proposal.id,
            external_id=proposal.external_id,
            actor_address=actor,
            kind=kind,
        ))

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, proposal_id: str) -> Proposal:
        return await self.store.get(proposal_id)

    async def get_votes(self, proposal_id: str) -> List[VoteRecord]:
        return await self.store.get_votes(proposal_id)

    async def voting_power(self, proposal_id: str, address: str) -> int:
        """Power of *address* at the proposal's snapshot block."""
        proposal = await self.store.get(proposal_id)
        return await self.gateway.voting_power_at(
            normalize_voter(address), proposal.voting_start_block
        )

    # ── Create / register ─────────────────────────────────────────────

    def _validate_request(self, request: CreateProposalRequest, now: float):
        gov = self.settings.governance

        if request.title and len(request.title) > GOVERNANCE_TITLE_MAX_LENGTH:
            raise InvalidProposalError(
                f"Title exceeds {GOVERNANCE_TITLE_MAX_LENGTH} characters", code="TITLE_TOO_LONG"
            )
        if request.description and len(request.description) > GOVERNANCE_DESCRIPTION_MAX_LENGTH:
            raise InvalidProposalError(
                f"Description exceeds {GOVERNANCE_DESCRIPTION_MAX_LENGTH} characters",
                code="DESCRIPTION_TOO_LONG",
            )
        if len(request.targets) > gov.max_actions:
            raise InvalidProposalError(
                f"At most {gov.max_actions} actions per proposal", code="TOO_MANY_ACTIONS"
            )

        try:
            quorum = int(request.quorum_required)
        except (TypeError, ValueError) as e:
            raise InvalidProposalError(
                f"Invalid quorum: {request.quorum_required!r}", code="INVALID_QUORUM"
            ) from e
        if quorum < 0:
            raise InvalidProposalError("Quorum cannot be negative", code="INVALID_QUORUM")

        raw_threshold = (
            gov.voting_threshold if request.voting_threshold is None else request.voting_threshold
        )
        try:
            threshold = Decimal(str(raw_threshold))
        except InvalidOperation as e:
            raise InvalidProposalError(
                f"Invalid voting threshold: {raw_threshold!r}", code="INVALID_THRESHOLD"
            ) from e
        if not (Decimal(0) <= threshold <= Decimal(100)):
            raise InvalidProposalError(
                "Voting threshold must be within 0..100", code="INVALID_THRESHOLD"
            )

        period = gov.voting_period if request.voting_period is None else int(request.voting_period)
        if period <= 0:
            raise InvalidProposalError("Voting period must be positive", code="INVALID_VOTING_PERIOD")

        delay = gov.timelock_delay if request.timelock_delay is None else request.timelock_delay
        try:
            delay = check_delay(delay, gov.min_timelock_delay, gov.max_timelock_delay)
        except InvalidTimelockDelayError as e:
            raise InvalidProposalError(str(e), code="INVALID_TIMELOCK_DELAY") from e

        if request.expiration_at is not None and request.expiration_at <= now:
            raise InvalidProposalError(
                "Expiration date must be in the future", code="INVALID_EXPIRATION"
            )
        return quorum, threshold, period, delay

    async def create(self, request: CreateProposalRequest) -> Proposal:
        """
        Validate, publish the body, persist as PENDING and register on the ledger.

        If registration fails the record stays PENDING and the error is
        re-raised; resubmit with :meth:`submit`.
        """
        now = self.clock()
        quorum, threshold, period, delay = self._validate_request(request, now)
        actions = ActionBatch.from_lists(
            request.targets, request.values, request.signatures, request.calldatas
        )
        proposal = Proposal(
            title=request.title,
            description=request.description,
            proposal_type=ProposalType(request.proposal_type),
            proposer=request.proposer,
            actions=actions,
            quorum_required=quorum,
            voting_threshold=threshold,
            voting_period=period,
            timelock_delay=delay,
            expiration_at=request.expiration_at,
            metadata=dict(request.metadata or {}),
            created_at=now,
        )

        proposal.content_ref = await self.publisher.publish(proposal_document(proposal))
        proposal.description_uri = self.publisher.uri_for(proposal.content_ref)
        proposal.description_hash, proposal.descriptor_hash = compute_descriptor(
            actions, proposal.description_uri
        )

        await self.store.add(proposal)
        logger.info(f"Proposal {proposal.id} created by {proposal.proposer} ({proposal.title})")
        return await self.submit(proposal.id)

    async def _register(self, proposal: Proposal) -> RegistrationReceipt:
        if OP_REGISTER in proposal.pending_transactions:
            receipt = await self.gateway.get_registration(proposal.descriptor_hash)
            if receipt is None:
                raise IndeterminateTransactionError(
                    f"Proposal {proposal.id}: earlier registration is still unconfirmed",
                    tx_ref=proposal.pending_transactions[OP_REGISTER],
                )
            logger.info(f"Proposal {proposal.id}: earlier registration found on the ledger")
            return receipt

        actions = proposal.actions
        try:
            return await asyncio.wait_for(
                self.gateway.register_proposal(
                    actions.targets, actions.values, actions.signatures,
                    actions.calldatas, proposal.description_uri,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            # Registration has no tx ref until mined; the Governor id stands in for it.
            await self._set_pending(proposal.id, OP_REGISTER, proposal.descriptor_hash)
            logger.warning(f"Proposal {proposal.id}: registration not confirmed, outcome indeterminate")
            raise LedgerTimeoutError(
                f"Registration of proposal {proposal.id} was not confirmed in time"
            ) from None

    async def submit(self, proposal_id: str) -> Proposal:
        """
        Register a PENDING proposal on the ledger and open voting.

        No-op for proposals that already left PENDING.
        """
        proposal = await self.store.get(proposal_id)
        if proposal.status != ProposalStatus.PENDING:
            return proposal

        if not proposal.is_registered:
            verify_descriptor(proposal)
            try:
                receipt = await self._register(proposal)
            except (LedgerSubmissionError, LedgerRevertError) as e:
                logger.warning(f"Proposal {proposal_id}: registration failed, kept PENDING: {e}")
                raise
            if receipt.external_id != proposal.descriptor_hash:
                raise ConsistencyError(
                    f"Ledger registered {receipt.external_id}, expected {proposal.descriptor_hash}"
                )

            def record_registration(p: Proposal):
                if p.is_registered:
                    return False
                p.external_id = receipt.external_id
                p.registration_tx_ref = receipt.tx_ref
                p.created_block = receipt.block_number
                p.voting_start_block = receipt.voting_start_block or receipt.block_number
                p.voting_end_block = receipt.voting_end_block
                p.pending_transactions.pop(OP_REGISTER, None)

            proposal = await self.store.update(proposal_id, record_registration)
            logger.info(f"Proposal {proposal_id} registered as {proposal.external_id}")

        snapshot = await self.gateway.total_voting_power_at(proposal.voting_start_block)
        now = self.clock()

        def activate(p: Proposal):
            if p.status != ProposalStatus.PENDING:
                return False
            p.total_voting_power_at_snapshot = int(snapshot)
            p.voting_start = now
            if p.voting_end is None or p.voting_end <= now:
                p.voting_end = now + p.voting_period
            refresh_flags(p)
            p.transition_to(ProposalStatus.ACTIVE, "registered on ledger", now=now)

        before = proposal.status
        proposal = await self.store.update(proposal_id, activate)
        if before == ProposalStatus.PENDING and proposal.status == ProposalStatus.ACTIVE:
            self._notify(proposal, proposal.proposer, EventKind.PROPOSAL_CREATED)
        return proposal

    # ── Update ────────────────────────────────────────────────────────

    def _ledger_voting_deadline(self, proposal: Proposal) -> Optional[float]:
        if (
            not proposal.is_registered
            or proposal.voting_start is None
            or proposal.voting_start_block is None
            or proposal.voting_end_block is None
        ):
            return None
        blocks = proposal.voting_end_block - proposal.voting_start_block
        return proposal.voting_start + blocks * self.settings.ledger.block_time

    async def update(self, proposal_id: str, **changes) -> Proposal:
        """
        Change ``title``, ``description``, ``voting_end`` or ``metadata`` of a
        PENDING/ACTIVE proposal. A new title or description re-publishes the
        body.

        Once registered, ``voting_end`` cannot move past the time implied by
        the ledger's ``voting_end_block`` (``[ledger] block_time`` seconds per
        block from ``voting_start``); the ledger would refuse votes cast after it.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {sorted(unknown)}", code="FIELD_NOT_UPDATABLE"
            )

        now = self.clock()
        proposal = await self.store.get(proposal_id)
        if proposal.status not in UPDATABLE_STATUSES:
            raise ProposalLifecycleError(
                f"Proposal {proposal_id} is {proposal.status.name} and can no longer be updated"
            )

        title = changes.get("title")
        description = changes.get("description")
        voting_end = changes.get("voting_end")
        metadata = changes.get("metadata")

        if title is not None:
            if not title.strip():
                raise InvalidProposalError("Proposal title cannot be empty", code="TITLE_REQUIRED")
            if len(title) > GOVERNANCE_TITLE_MAX_LENGTH:
                raise InvalidProposalError("Title too long", code="TITLE_TOO_LONG")
        if description is not None:
            if not description.strip():
                raise InvalidProposalError(
                    "Proposal description cannot be empty", code="DESCRIPTION_REQUIRED"
                )
            if len(description) > GOVERNANCE_DESCRIPTION_MAX_LENGTH:
                raise InvalidProposalError("Description too long", code="DESCRIPTION_TOO_LONG")
        if voting_end is not None and voting_end <= now:
            raise ValidationError("Voting end must be in the future", code="INVALID_VOTING_END")
        if voting_end is not None:
            deadline = self._ledger_voting_deadline(proposal)
            if deadline is not None and voting_end > deadline:
                raise ValidationError(
                    f"Voting end {voting_end} is past the ledger window ending at {deadline}",
                    code="VOTING_END_BEYOND_LEDGER",
                )

        content_ref = None
        if title is not None or description is not None:
            draft = proposal.copy()
            draft.title = title if title is not None else draft.title
            draft.description = description if description is not None else draft.description
            content_ref = await self.publisher.publish(proposal_document(draft))

        def mutate(p: Proposal):
            if p.status not in UPDATABLE_STATUSES:
                raise ProposalLifecycleError(
                    f"Proposal {p.id} is {p.status.name} and can no longer be updated"
                )
            if title is not None:
                p.title = title
            if description is not None:
                p.description = description
            if voting_end is not None:
                p.voting_end = float(voting_end)
            if metadata is not None:
                p.metadata.update(metadata)
            if content_ref is not None:
                p.content_ref = content_ref
                # The on-chain descriptor is fixed once registered.
                if not p.is_registered and OP_REGISTER not in p.pending_transactions:
                    p.description_uri = self.publisher.uri_for(content_ref)
                    p.description_hash, p.descriptor_hash = compute_descriptor(
                        p.actions, p.description_uri
                    )

        proposal = await self.store.update(proposal_id, mutate)
        logger.info(f"Proposal {proposal_id} updated: {sorted(changes)}")
        return proposal

    # ── Vote ──────────────────────────────────────────────────────────

    async def vote(
        self,
        proposal_id: str,
        voter: str,
        choice: Any,
        reason: Optional[str] = None,
    ) -> VoteRecord:
        """
        Cast a vote on the ledger and tally it once confirmed.

        Never changes status; the decision is taken at window close. The
        voter's ``vote:<address>`` entry in ``pending_transactions`` is held
        from before submission until the vote is tallied or known to have
        failed, and ``close_voting`` waits for it. An earlier submission that
        the ledger confirmed is tallied on retry even after the window closed.
        """
        voter = normalize_voter(voter)
        choice = VoteChoice.parse(choice)
        operation = vote_operation(voter)
        proposal = await self.store.get(proposal_id)

        if operation in proposal.pending_transactions:
            if proposal.pending_transactions[operation] == TX_IN_FLIGHT:
                raise AlreadyVotedError(
                    f"A vote by {voter} on proposal {proposal_id} is already in flight"
                )
            resolved = await self._resolve_pending(proposal, operation)
            if resolved is not None:
                tx_ref, confirmation = resolved
                return await self._record_confirmed_vote(
                    proposal, voter, choice, None, reason, tx_ref, confirmation
                )
            proposal = await self.store.get(proposal_id)

        now = self.clock()
        if proposal.status != ProposalStatus.ACTIVE:
            raise VotingClosedError(
                f"Proposal {proposal_id} is {proposal.status.name}, not open for voting"
            )
        if proposal.voting_window_closed(now):
            raise VotingClosedError(f"Voting period of proposal {proposal_id} has ended")
        if await self.store.has_voted(proposal_id, voter):
            raise AlreadyVotedError(f"{voter} already voted on proposal {proposal_id}")

        power = await self.gateway.voting_power_at(voter, proposal.voting_start_block)
        if power <= 0:
            raise InsufficientVotingPowerError(
                f"{voter} has no voting power at block {proposal.voting_start_block}"
            )

        await self._claim_vote(proposal_id, operation)
        try:
            tx_ref = await self.gateway.cast_vote(proposal.external_id, voter, int(choice), reason)
        except LedgerSubmissionError:
            await self._clear_pending(proposal_id, operation)
            raise
        await self._set_pending(proposal_id, operation, tx_ref)

        try:
            confirmation = await self._confirm(proposal_id, operation, tx_ref)
        except LedgerRevertError:
            await self._clear_pending(proposal_id, operation)
            raise
        return await self._record_confirmed_vote(
            proposal, voter, choice, power, reason, tx_ref, confirmation
        )

    async def _claim_vote(self, proposal_id: str, operation: str):
        """Mark the vote in flight, provided the window is still open."""
        now = self.clock()

        def claim(p: Proposal):
            if p.status != ProposalStatus.ACTIVE or p.voting_window_closed(now):
                raise VotingClosedError(f"Voting period of proposal {p.id} has ended")
            if operation in p.pending_transactions:
                raise AlreadyVotedError(f"A vote for {operation} on proposal {p.id} is in flight")
            p.pending_transactions[operation] = TX_IN_FLIGHT

        await self.store.update(proposal_id, claim)

    async def _record_confirmed_vote(
        self,
        proposal: Proposal,
        voter: str,
        choice: Optional[VoteChoice],
        power: Optional[int],
        reason: Optional[str],
        tx_ref: str,
        confirmation: Confirmation,
    ) -> VoteRecord:
        operation = vote_operation(voter)

        # Prefer what the ledger says it counted.
        cast = _event_args(confirmation.events, "VoteCast")
        if "support" in cast:
            choice = VoteChoice(int(cast["support"]))
        if "weight" in cast:
            power = int(cast["weight"])
        if power is None:
            power = await self.gateway.voting_power_at(voter, proposal.voting_start_block)

        record = VoteRecord(
            proposal_id=proposal.id,
            voter=voter,
            choice=choice,
            voting_power=power,
            tx_ref=tx_ref,
            block_number=confirmation.block_number,
            reason=reason,
            cast_at=self.clock(),
        )
        try:
            updated = await self.store.record_vote(record)
        except AlreadyVotedError:
            existing = await self.store.get_vote(proposal.id, voter)
            await self._clear_pending(proposal.id, operation)
            if existing is not None and existing.tx_ref == tx_ref:
                return existing
            raise
        except GovernanceError:
            logger.warning(
                f"Vote {tx_ref} by {voter} confirmed on the ledger but not tallied "
                f"on proposal {proposal.id}"
            )
            await self._clear_pending(proposal.id, operation)
            raise
        await self._clear_pending(proposal.id, operation)

        logger.info(
            f"Vote {choice.name} by {voter} on proposal {proposal.id} "
            f"with power {power} (tx {tx_ref})"
        )
        self._notify(updated, voter, EventKind.VOTE_CAST)
        return record

    async def settle_pending_votes(self, proposal_id: str) -> Proposal:
        """
        Tally votes whose earlier submission the ledger has since confirmed.

        Used by the sweep so an abandoned retry cannot hold a window open.
        Unconfirmed entries are left for a later pass.
        """
        proposal = await self.store.get(proposal_id)
        for operation, tx_ref in pending_votes(proposal).items():
            if tx_ref == TX_IN_FLIGHT:
                continue
            receipt = await self.gateway.get_receipt(tx_ref)
            if receipt is None:
                continue
            if not receipt.success:
                logger.info(f"Proposal {proposal_id}: pending {operation} tx {tx_ref} failed")
                await self._clear_pending(proposal_id, operation)
                continue
            cast = _event_args(receipt.events, "VoteCast")
            if "support" not in cast:
                logger.warning(
                    f"Proposal {proposal_id}: {operation} tx {tx_ref} has no VoteCast event"
                )
                continue
            voter = operation[len(VOTE_OPERATION_PREFIX):]
            try:
                await self._record_confirmed_vote(
                    proposal, voter, None, None, cast.get("reason") or None, tx_ref, receipt
                )
            except (AlreadyVotedError, VotingClosedError):
                continue
        return await self.store.get(proposal_id)

    # ── Window close / expiry ─────────────────────────────────────────

    async def close_voting(self, proposal_id: str) -> Proposal:
        """
        Decide an ACTIVE proposal whose window has elapsed.

        Idempotent: a decided proposal, an open window or a due expiration
        leave the record untouched.
        A vote still in flight also leaves it untouched, so the decision never
        misses a vote the ledger counted; the next sweep retries.
        """
        now = self.clock()

        def decide(p: Proposal):
            if p.status != ProposalStatus.ACTIVE or not p.voting_window_closed(now):
                return False
            if p.expiration_at is not None and p.expiration_at <= now:
                return False
            if pending_votes(p):
                logger.info(
                    f"Proposal {p.id}: close deferred, {len(pending_votes(p))} vote(s) in flight"
                )
                return False
            outcome = refresh_flags(p)
            p.decided_at = now
            p.transition_to(
                outcome.decision,
                f"voting closed: quorum={outcome.quorum_reached} "
                f"threshold={outcome.threshold_reached}",
                now=now,
            )

        return await self.store.update(proposal_id, decide)

    async def expire(self, proposal_id: str) -> Proposal:
        """PENDING/ACTIVE past ``expiration_at`` → EXPIRED; otherwise a no-op."""
        now = self.clock()

        def mark_expired(p: Proposal):
            if p.status not in EXPIRABLE_STATUSES:
                return False
            if p.expiration_at is None or p.expiration_at > now:
                return False
            p.transition_to(ProposalStatus.EXPIRED, "expiration date passed", now=now)

        return await self.store.update(proposal_id, mark_expired)

    # ── Queue / execute ───────────────────────────────────────────────

    async def queue(self, proposal_id: str) -> Proposal:
        """Send a SUCCEEDED proposal to the timelock."""
        proposal = await self.store.get(proposal_id)
        now = self.clock()

        if proposal.status == ProposalStatus.QUEUED or proposal.queued_at is not None:
            raise AlreadyQueuedError(f"Proposal {proposal_id} is already queued")
        if OP_QUEUE not in proposal.pending_transactions:
            if proposal.status != ProposalStatus.SUCCEEDED:
                raise ProposalLifecycleError(
                    f"Proposal {proposal_id} is {proposal.status.name}; only SUCCEEDED can be queued"
                )
            if not proposal.can_queue(now):
                raise ProposalLifecycleError(
                    f"Proposal {proposal_id} has not met quorum and threshold with a closed window"
                )
            verify_descriptor(proposal)

        actions = proposal.actions

        async def submit():
            return await self.gateway.queue(
                actions.targets, actions.values, actions.calldatas, proposal.description_hash
            )

        tx_ref, confirmation = await self._submit_and_confirm(proposal, OP_QUEUE, submit)
        queued_at = self.clock()
        eta = resolve_eta(confirmation.events, queued_at, proposal.timelock_delay)

        def mark_queued(p: Proposal):
            p.pending_transactions.pop(OP_QUEUE, None)
            if p.status == ProposalStatus.QUEUED:
                return
            p.queued_at = queued_at
            p.earliest_execution_at = eta
            p.queue_tx_ref = tx_ref
            p.transition_to(ProposalStatus.QUEUED, f"queued, executable at {eta}", now=queued_at)

        return await self.store.update(proposal_id, mark_queued)

    async def execute(
        self,
        proposal_id: str,
        executed_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Proposal:
        """Execute a QUEUED proposal once its timelock has passed."""
        proposal = await self.store.get(proposal_id)
        now = self.clock()

        if proposal.status == ProposalStatus.EXECUTED:
            raise AlreadyExecutedError(f"Proposal {proposal_id} has already been executed")
        if OP_EXECUTE not in proposal.pending_transactions:
            if proposal.status != ProposalStatus.QUEUED:
                raise ProposalLifecycleError(
                    f"Proposal {proposal_id} is {proposal.status.name}; only QUEUED can be executed"
                )
            if not proposal.can_execute(now):
                remaining = remaining_wait(proposal, now)
                raise TimelockNotReadyError(
                    f"Proposal {proposal_id} is executable in {remaining:.0f}s", remaining
                )
            verify_descriptor(proposal)

        actions = proposal.actions

        async def submit():
            return await self.gateway.execute(
                actions.targets, actions.values, actions.calldatas, proposal.description_hash
            )

        tx_ref, _ = await self._submit_and_confirm(proposal, OP_EXECUTE, submit)
        executed_at = self.clock()
        executor = normalize_voter(executed_by) if executed_by else ""

        def mark_executed(p: Proposal):
            p.pending_transactions.pop(OP_EXECUTE, None)
            if p.status == ProposalStatus.EXECUTED:
                return
            p.executed_at = executed_at
            p.execution_tx_ref = tx_ref
            p.executed_by = executor
            p.execution_note = note or ""
            p.transition_to(ProposalStatus.EXECUTED, f"executed in {tx_ref}", now=executed_at)

        proposal = await self.store.update(proposal_id, mark_executed)
        self._notify(proposal, executor or proposal.proposer, EventKind.PROPOSAL_EXECUTED)
        return proposal

    # ── Cancel ────────────────────────────────────────────────────────

    async def cancel(
        self,
        proposal_id: str,
        reason: str,
        cancelled_by: Optional[str] = None,
    ) -> Proposal:
        """
        Cancel with a reason. Registered proposals are cancelled on the ledger
        first; an unregistered PENDING proposal is cancelled locally.
        """
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", code="CANCEL_REASON_REQUIRED")

        proposal = await self.store.get(proposal_id)
        if proposal.status not in CANCELLABLE_STATUSES:
            if proposal.status == ProposalStatus.EXECUTED:
                raise AlreadyExecutedError(f"Proposal {proposal_id} has already been executed")
            raise ProposalLifecycleError(
                f"Proposal {proposal_id} is {proposal.status.name} and cannot be cancelled"
            )
        if OP_REGISTER in proposal.pending_transactions:
            raise IndeterminateTransactionError(
                f"Proposal {proposal_id}: registration outcome unknown, resolve it with submit() first",
                tx_ref=proposal.pending_transactions[OP_REGISTER],
            )

        tx_ref = ""
        if proposal.is_registered:
            if OP_CANCEL not in proposal.pending_transactions:
                verify_descriptor(proposal)
            actions = proposal.actions

            async def submit():
                return await self.gateway.cancel(
                    actions.targets, actions.values, actions.calldatas, proposal.description_hash
                )

            tx_ref, _ = await self._submit_and_confirm(proposal, OP_CANCEL, submit)

        now = self.clock()
        canceller = normalize_voter(cancelled_by) if cancelled_by else ""

        def mark_cancelled(p: Proposal):
            p.pending_transactions.pop(OP_CANCEL, None)
            if p.status == ProposalStatus.CANCELLED:
                return
            p.cancelled_at = now
            p.cancellation_reason = reason.strip()
            p.cancelled_by = canceller
            if tx_ref:
                p.metadata["cancellationTxRef"] = tx_ref
            p.transition_to(ProposalStatus.CANCELLED, reason.strip(), now=now)

        return await self.store.update(proposal_id, mark_cancelled)
