"""Contract address derivation for CREATE and CREATE2 (EIP-1014).

CREATE:  keccak256(rlp([sender, nonce]))[12:]
CREATE2: keccak256(0xff ++ sender ++ salt ++ keccak256(init_code))[12:]
"""

from __future__ import annotations

import rlp

from ethvm.common.crypto import keccak256


def create_address(sender: bytes, nonce: int) -> bytes:
    """Compute the address of a contract deployed by ``sender`` at ``nonce``."""
    if len(sender) != 20:
        raise ValueError(f"Sender must be 20 bytes, got {len(sender)}")
    return keccak256(rlp.encode([sender, nonce]))[12:]


def create2_address(sender: bytes, salt: bytes, init_code_hash: bytes) -> bytes:
    """Compute a CREATE2 address from a pre-computed init code hash.

    The address is independent of the sender's nonce: the same sender, salt
    and init code always map to the same address.
    """
    if len(sender) != 20:
        raise ValueError(f"Sender must be 20 bytes, got {len(sender)}")
    if len(salt) != 32:
        raise ValueError(f"Salt must be 32 bytes, got {len(salt)}")
    if len(init_code_hash) != 32:
        raise ValueError(f"Init code hash must be 32 bytes, got {len(init_code_hash)}")
    return keccak256(b"\xff" + sender + salt + init_code_hash)[12:]
