"""
Cryptographic primitives used by the execution engine.

- keccak256 hashing (KECCAK256 opcode, code hashes, CREATE/CREATE2 addresses)
- SHA-256 / RIPEMD-160 for the hashing precompiles
- secp256k1 public key recovery for the ecrecover precompile
"""

from __future__ import annotations

from Crypto.Hash import keccak as _keccak_mod
from coincurve import PublicKey


def keccak256(data: bytes) -> bytes:
    """Compute Keccak-256 hash (NOT SHA3-256)."""
    h = _keccak_mod.new(digest_bits=256)
    h.update(data)
    return h.digest()


def sha256(data: bytes) -> bytes:
    from Crypto.Hash import SHA256
    return SHA256.new(data).digest()


def ripemd160(data: bytes) -> bytes:
    from Crypto.Hash import RIPEMD160
    return RIPEMD160.new(data).digest()


# ---------------------------------------------------------------------------
# secp256k1
# ---------------------------------------------------------------------------

def ecdsa_recover(msg_hash: bytes, v: int, r: int, s: int) -> bytes:
    """Recover the 65-byte uncompressed public key from a signature.

    v is the recovery id (0 or 1).
    """
    if len(msg_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")

    sig_bytes = r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([v])
    pub = PublicKey.from_signature_and_message(sig_bytes, msg_hash, hasher=None)
    return pub.format(compressed=False)


def pubkey_to_address(pubkey: bytes) -> bytes:
    """Derive a 20-byte address from a 65-byte or 64-byte public key."""
    if len(pubkey) == 65:
        pubkey = pubkey[1:]
    if len(pubkey) != 64:
        raise ValueError(f"Expected 64-byte public key, got {len(pubkey)}")
    return keccak256(pubkey)[12:]
