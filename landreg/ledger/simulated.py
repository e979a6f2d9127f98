"""
Simulated Ledger

An in-process stand-in for the Governor/Timelock contracts, used for local
development and the test suite. It keeps just enough on-chain state to
behave like the real thing from the engine's point of view:

  - proposals keyed by their Governor proposal hash
  - one vote per (proposal, voter)
  - a timelock that reports ``eta`` on ``ProposalQueued``
  - execution refused before ``eta``

Failure injection (``fail_next``) covers the three ways a submission can go
wrong: rejected at submit time, reverted once mined, or never confirmed.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from eth_utils import encode_hex, keccak

from ..constants import (
    GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS,
    LEDGER_QUEUE_EVENT_NAME,
)
from ..logger import get_logger
from .encoding import hash_description, hash_proposal, normalize_address
from .gateway import (
    Confirmation,
    LedgerGateway,
    LedgerRevertError,
    LedgerSubmissionError,
    RegistrationReceipt,
)

logger = get_logger(__name__)

FAIL_SUBMIT = "submit"
FAIL_REVERT = "revert"
FAIL_HANG = "hang"


class _Revert(Exception):
    """Raised by an on-chain effect to revert the transaction."""


@dataclass
class _OnChainProposal:
    external_id: str
    registration_tx_ref: str
    proposer_block: int
    voting_start_block: int
    voting_end_block: int
    voters: Set[str] = field(default_factory=set)
    tally: Dict[int, int] = field(default_factory=lambda: {0: 0, 1: 0, 2: 0})
    eta: Optional[float] = None
    executed: bool = False
    cancelled: bool = False


@dataclass
class _PendingTx:
    operation: str
    effect: Callable[[str], List[Dict[str, Any]]]
    done: asyncio.Event = field(default_factory=asyncio.Event)


class SimulatedLedger(LedgerGateway):
    """
    Deterministic in-memory ledger.

    Args:
        clock:              time source shared with the controller under test
        timelock_delay:     seconds between queue and eta
        voting_delay_blocks / voting_period_blocks: reported block window
        emit_eta:           include ``eta`` in the queue confirmation events
        confirmation_delay: seconds ``await_confirmation`` sleeps (latency)
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        timelock_delay: int = GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS,
        voting_delay_blocks: int = 1,
        voting_period_blocks: int = 50_400,
        emit_eta: bool = True,
        confirmation_delay: float = 0.0,
        total_supply: Optional[int] = None,
    ):
        self.clock = clock
        self.timelock_delay = timelock_delay
        self.voting_delay_blocks = voting_delay_blocks
        self.voting_period_blocks = voting_period_blocks
        self.emit_eta = emit_eta
        self.confirmation_delay = confirmation_delay
        self.block_number = 1
        self._total_supply = total_supply
        self._power: Dict[str, int] = {}
        self._proposals: Dict[str, _OnChainProposal] = {}
        self._pending: Dict[str, _PendingTx] = {}
        self._receipts: Dict[str, Confirmation] = {}
        self._failures: Dict[str, List[str]] = {}
        self._tx_counter = 0
        self.submissions: List[Tuple[str, str]] = []

    # ── Test / dev controls ───────────────────────────────────────────

    def set_voting_power(self, address: str, power: int):
        self._power[normalize_address(address)] = int(power)

    def set_total_supply(self, total: int):
        self._total_supply = int(total)

    def fail_next(self, operation: str, mode: str = FAIL_SUBMIT):
        """
        Make the next *operation* (register/vote/queue/execute/cancel) fail.

        ``mode`` is one of ``submit``, ``revert`` or ``hang``.
        """
        if mode not in (FAIL_SUBMIT, FAIL_REVERT, FAIL_HANG):
            raise ValueError(f"Unknown failure mode: {mode}")
        self._failures.setdefault(operation, []).append(mode)

    def settle(self, tx_ref: str, success: bool = True):
        """Mine a transaction that was left hanging."""
        if tx_ref in self._receipts:
            return
        self._mine(tx_ref, force_revert=not success)

    def proposal_state(self, external_id: str) -> Optional[_OnChainProposal]:
        return self._proposals.get(external_id)

    def submission_count(self, operation: str) -> int:
        return sum(1 for op, _ in self.submissions if op == operation)

    def last_tx_ref(self, operation: str) -> Optional[str]:
        for op, tx_ref in reversed(self.submissions):
            if op == operation:
                return tx_ref
        return None

    # ── Internals ─────────────────────────────────────────────────────

    def _next_tx_ref(self, operation: str) -> str:
        self._tx_counter += 1
        return encode_hex(keccak(text=f"{operation}:{self._tx_counter}"))

    async def _submit(self, operation: str, effect: Callable[[str], List[Dict[str, Any]]]) -> str:
        await asyncio.sleep(0)
        modes = self._failures.get(operation)
        mode = modes.pop(0) if modes else None
        if mode == FAIL_SUBMIT:
            raise LedgerSubmissionError(f"Simulated submission failure for {operation}")

        tx_ref = self._next_tx_ref(operation)
        self.submissions.append((operation, tx_ref))
        self._pending[tx_ref] = _PendingTx(operation=operation, effect=effect)
        if mode != FAIL_HANG:
            self._mine(tx_ref, force_revert=(mode == FAIL_REVERT))
        return tx_ref

    def _mine(self, tx_ref: str, force_revert: bool = False):
        tx = self._pending[tx_ref]
        self.block_number += 1
        success, events = False, []
        if not force_revert:
            try:
                events = tx.effect(tx_ref)
                success = True
            except _Revert as e:
                logger.debug(f"Simulated revert of {tx.operation} {tx_ref}: {e}")
        self._receipts[tx_ref] = Confirmation(
            block_number=self.block_number, success=success, events=events
        )
        tx.done.set()

    def _lookup(self, targets, values, calldatas, description_hash) -> _OnChainProposal:
        external_id = hash_proposal(targets, values, calldatas, description_hash)
        proposal = self._proposals.get(external_id)
        if proposal is None:
            raise _Revert("Governor: unknown proposal id")
        return proposal

    # ── LedgerGateway ─────────────────────────────────────────────────

    async def register_proposal(
        self,
        targets: Sequence[str],
        values: Sequence[int],
        signatures: Sequence[str],
        calldatas: Sequence[str],
        description: str,
    ) -> RegistrationReceipt:
        external_id = hash_proposal(targets, values, calldatas, hash_description(description))
        if external_id in self._proposals:
            raise LedgerSubmissionError("Governor: proposal already exists")

        def effect(tx_ref):
            if external_id in self._proposals:
                raise _Revert("Governor: proposal already exists")
            start = self.block_number + self.voting_delay_blocks
            self._proposals[external_id] = _OnChainProposal(
                external_id=external_id,
                registration_tx_ref=tx_ref,
                proposer_block=self.block_number,
                voting_start_block=start,
                voting_end_block=start + self.voting_period_blocks,
            )
            return [{"event": "ProposalCreated", "args": {"proposalId": external_id}}]

        tx_ref = await self._submit("register", effect)
        confirmation = await self.await_confirmation(tx_ref)
        if not confirmation.success:
            raise LedgerRevertError("Proposal registration reverted", tx_ref=tx_ref)
        return await self.get_registration(external_id)

    async def get_registration(self, external_id: str) -> Optional[RegistrationReceipt]:
        onchain = self._proposals.get(external_id)
        if onchain is None:
            return None
        return RegistrationReceipt(
            external_id=external_id,
            block_number=onchain.proposer_block,
            tx_ref=onchain.registration_tx_ref,
            voting_start_block=onchain.voting_start_block,
            voting_end_block=onchain.voting_end_block,
        )

    async def cast_vote(
        self,
        external_id: str,
        voter: str,
        choice: int,
        reason: Optional[str] = None,
    ) -> str:
        voter = normalize_address(voter)

        def effect(tx_ref):
            proposal = self._proposals.get(external_id)
            if proposal is None:
                raise _Revert("Governor: unknown proposal id")
            if proposal.cancelled or proposal.eta is not None or proposal.executed:
                raise _Revert("Governor: vote not currently active")
            if voter in proposal.voters:
                raise _Revert("GovernorVotingSimple: vote already cast")
            weight = self._power.get(voter, 0)
            proposal.voters.add(voter)
            proposal.tally[int(choice)] += weight
            return [{
                "event": "VoteCast",
                "args": {
                    "voter": voter,
                    "proposalId": external_id,
                    "support": int(choice),
                    "weight": weight,
                    "reason": reason or "",
                },
            }]

        return await self._submit("vote", effect)

    async def await_confirmation(self, tx_ref: str) -> Confirmation:
        tx = self._pending.get(tx_ref)
        if tx is None:
            raise LedgerSubmissionError(f"Unknown transaction {tx_ref}", tx_ref=tx_ref)
        if self.confirmation_delay:
            await asyncio.sleep(self.confirmation_delay)
        await tx.done.wait()
        return self._receipts[tx_ref]

    async def queue(self, targets, values, calldatas, description_hash) -> str:
        def effect(tx_ref):
            proposal = self._lookup(targets, values, calldatas, description_hash)
            if proposal.cancelled or proposal.executed:
                raise _Revert("Governor: proposal not successful")
            if proposal.eta is not None:
                raise _Revert("Governor: proposal already queued")
            proposal.eta = self.clock() + self.timelock_delay
            args = {"proposalId": proposal.external_id}
            if self.emit_eta:
                args["eta"] = proposal.eta
            return [{"event": LEDGER_QUEUE_EVENT_NAME, "args": args}]

        return await self._submit("queue", effect)

    async def execute(self, targets, values, calldatas, description_hash) -> str:
        def effect(tx_ref):
            proposal = self._lookup(targets, values, calldatas, description_hash)
            if proposal.eta is None or proposal.cancelled:
                raise _Revert("Governor: proposal not queued")
            if proposal.executed:
                raise _Revert("Governor: proposal already executed")
            if self.clock() < proposal.eta:
                raise _Revert("TimelockController: operation is not ready")
            proposal.executed = True
            return [{"event": "ProposalExecuted", "args": {"proposalId": proposal.external_id}}]

        return await self._submit("execute", effect)

    async def cancel(self, targets, values, calldatas, description_hash) -> str:
        def effect(tx_ref):
            proposal = self._lookup(targets, values, calldatas, description_hash)
            if proposal.executed:
                raise _Revert("Governor: proposal already executed")
            if proposal.cancelled:
                raise _Revert("Governor: proposal already cancelled")
            proposal.cancelled = True
            return [{"event": "ProposalCanceled", "args": {"proposalId": proposal.external_id}}]

        return await self._submit("cancel", effect)

    async def voting_power_at(self, address: str, block_ref: Optional[int]) -> int:
        await asyncio.sleep(0)
        return self._power.get(normalize_address(address), 0)

    async def total_voting_power_at(self, block_ref: Optional[int]) -> int:
        await asyncio.sleep(0)
        if self._total_supply is not None:
            return self._total_supply
        return sum(self._power.values())

    async def get_receipt(self, tx_ref: str) -> Optional[Confirmation]:
        await asyncio.sleep(0)
        return self._receipts.get(tx_ref)
