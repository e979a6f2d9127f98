"""
Ledger Encoding Helpers

Address normalisation and the hashes a Governor-style contract uses to
identify a proposal:

- description hash:  keccak256(bytes(description))
- proposal hash:     keccak256(abi.encode(targets, values, calldatas, descriptionHash))

The ledger identifies proposals by the proposal hash, not by our internal id,
so queue / execute / cancel must reproduce it bit for bit.
"""

from typing import Sequence

from eth_abi import encode
from eth_utils import (
    decode_hex,
    encode_hex,
    is_address,
    is_hex,
    keccak,
    to_checksum_address,
)

from ..exceptions import InvalidAddressError

ZERO_HASH = "0x" + "00" * 32


def normalize_address(address: str) -> str:
    """
    Return the EIP-55 checksum form of *address*.

    Raises:
        InvalidAddressError: not a 20-byte hex address
    """
    if not isinstance(address, str) or not is_address(address.strip()):
        raise InvalidAddressError(f"Invalid address: {address!r}")
    return to_checksum_address(address.strip())


def normalize_hex(data: str) -> str:
    """Lower-case, 0x-prefixed hex; raises ValueError on non-hex input."""
    if not isinstance(data, str):
        raise ValueError(f"Expected hex string, got {type(data).__name__}")
    text = data.strip()
    if not text.startswith(("0x", "0X")):
        text = "0x" + text
    if text != "0x" and not is_hex(text):
        raise ValueError(f"Invalid hex data: {data!r}")
    if len(text) % 2:
        raise ValueError(f"Hex data has odd length: {data!r}")
    return text.lower()


def hash_description(description: str) -> str:
    """keccak256 of the UTF-8 description, 0x-prefixed."""
    return encode_hex(keccak(text=description))


def hash_proposal(
    targets: Sequence[str],
    values: Sequence[int],
    calldatas: Sequence[str],
    description_hash: str,
) -> str:
    """
    Governor proposal hash over the action tuple and description hash.
    """
    encoded = encode(
        ["address[]", "uint256[]", "bytes[]", "bytes32"],
        [
            [to_checksum_address(t) for t in targets],
            [int(v) for v in values],
            [decode_hex(c) for c in calldatas],
            decode_hex(description_hash),
        ],
    )
    return encode_hex(keccak(encoded))
