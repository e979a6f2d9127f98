"""
Ledger Gateway

Interface the governance engine consumes to talk to the external,
authoritative ledger (a Governor + Timelock contract pair). Everything here
is I/O: callers must expect multi-second latency and must not hold locks
across these awaits.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..exceptions import LandRegistryException


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class LedgerError(LandRegistryException):
    """Base class for ledger interaction failures."""
    code = "LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str = "", tx_ref: str = ""):
        super().__init__(message)
        self.tx_ref = tx_ref


class LedgerSubmissionError(LedgerError):
    """Gateway unreachable or transaction rejected before inclusion."""
    code = "LEDGER_SUBMISSION_FAILED"
    retryable = True


class LedgerRevertError(LedgerError):
    """Transaction was mined but reverted on-chain."""
    code = "ON_CHAIN_FAILURE"


class LedgerTimeoutError(LedgerError):
    """Confirmation did not arrive in time; outcome unknown."""
    code = "LEDGER_TIMEOUT"


class IndeterminateTransactionError(LedgerError):
    """An earlier submission for the same operation has not been resolved yet."""
    code = "INDETERMINATE_TRANSACTION"


# ══════════════════════════════════════════════════════════════════════
#  RECEIPTS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RegistrationReceipt:
    """Confirmed proposal registration."""
    external_id: str
    block_number: int
    tx_ref: str
    voting_start_block: Optional[int] = None
    voting_end_block: Optional[int] = None


@dataclass(frozen=True)
class Confirmation:
    """Mined transaction outcome."""
    block_number: int
    success: bool
    events: List[Dict[str, Any]] = field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════
#  GATEWAY CONTRACT
# ══════════════════════════════════════════════════════════════════════

class LedgerGateway(ABC):
    """
    Async gateway to the governance contracts.

    Stateless with respect to the engine; implementations may be shared by
    concurrent callers.
    """

    @abstractmethod
    async def register_proposal(
        self,
        targets: Sequence[str],
        values: Sequence[int],
        signatures: Sequence[str],
        calldatas: Sequence[str],
        description: str,
    ) -> RegistrationReceipt:
        """Submit ``propose`` and wait until it is mined."""

    @abstractmethod
    async def cast_vote(
        self,
        external_id: str,
        voter: str,
        choice: int,
        reason: Optional[str] = None,
    ) -> str:
        """Submit a vote; returns the transaction reference."""

    @abstractmethod
    async def await_confirmation(self, tx_ref: str) -> Confirmation:
        """Block until *tx_ref* is mined."""

    @abstractmethod
    async def queue(
        self,
        targets: Sequence[str],
        values: Sequence[int],
        calldatas: Sequence[str],
        description_hash: str,
    ) -> str:
        ...

    @abstractmethod
    async def execute(
        self,
        targets: Sequence[str],
        values: Sequence[int],
        calldatas: Sequence[str],
        description_hash: str,
    ) -> str:
        ...

    @abstractmethod
    async def cancel(
        self,
        targets: Sequence[str],
        values: Sequence[int],
        calldatas: Sequence[str],
        description_hash: str,
    ) -> str:
        ...

    @abstractmethod
    async def voting_power_at(self, address: str, block_ref: Optional[int]) -> int:
        """Voting power of *address* at *block_ref*."""

    @abstractmethod
    async def total_voting_power_at(self, block_ref: Optional[int]) -> int:
        """Total eligible voting power at *block_ref* (the quorum denominator)."""

    @abstractmethod
    async def get_receipt(self, tx_ref: str) -> Optional[Confirmation]:
        """Confirmation for *tx_ref* if mined, else None. Never submits."""

    @abstractmethod
    async def get_registration(self, external_id: str) -> Optional[RegistrationReceipt]:
        """Registration of *external_id* if it exists on the ledger, else None."""
