"""
Core value types shared by the engine and its collaborators.

Addresses are 20-byte ``bytes``; words, balances and storage keys/values are
plain Python ints kept in the uint256 range.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ethvm.common.crypto import keccak256


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMPTY_CODE_HASH = keccak256(b"")

ZERO_HASH = b"\x00" * 32
ZERO_ADDRESS = b"\x00" * 20
ADDRESS_MASK = (1 << 160) - 1


def to_address(word: int) -> bytes:
    """Lower 160 bits of a stack word as a 20-byte address."""
    return (word & ADDRESS_MASK).to_bytes(20, "big")


def address_to_word(address: bytes) -> int:
    return int.from_bytes(address, "big")


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------

@dataclass
class Account:
    """Account record as handed out by a Database.

    Code and storage are fetched separately, by address.
    """

    nonce: int = 0
    balance: int = 0
    code_hash: bytes = field(default_factory=lambda: EMPTY_CODE_HASH)

    def is_empty(self) -> bool:
        return (
            self.nonce == 0
            and self.balance == 0
            and self.code_hash == EMPTY_CODE_HASH
        )


# ---------------------------------------------------------------------------
# Log
# ---------------------------------------------------------------------------

@dataclass
class Log:
    address: bytes = field(default_factory=lambda: ZERO_ADDRESS)
    topics: list[bytes] = field(default_factory=list)
    data: bytes = b""
