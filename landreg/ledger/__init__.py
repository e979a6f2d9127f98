"""
Ledger integration: the gateway contract, Governor hashing and a simulated
ledger for development and tests.
"""

from .encoding import (
    hash_description,
    hash_proposal,
    normalize_address,
    normalize_hex,
)
from .gateway import (
    Confirmation,
    IndeterminateTransactionError,
    LedgerError,
    LedgerGateway,
    LedgerRevertError,
    LedgerSubmissionError,
    LedgerTimeoutError,
    RegistrationReceipt,
)
from .simulated import SimulatedLedger

__all__ = [
    "Confirmation",
    "IndeterminateTransactionError",
    "LedgerError",
    "LedgerGateway",
    "LedgerRevertError",
    "LedgerSubmissionError",
    "LedgerTimeoutError",
    "RegistrationReceipt",
    "SimulatedLedger",
    "hash_description",
    "hash_proposal",
    "normalize_address",
    "normalize_hex",
]
