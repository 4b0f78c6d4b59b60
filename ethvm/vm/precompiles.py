"""
EVM precompiled contracts (addresses 0x01 - 0x09).

Every precompile is split into a pricing function and an execution
function so that gas is checked before any work is done:

    Precompile.run(data, gas_limit) -> (gas_used, output)

Malformed input raises PrecompileError; a price above ``gas_limit`` raises
PrecompileOutOfGas. The frame manager turns both into a failed call that
consumes all gas forwarded to it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from py_ecc.bn128 import (
    FQ, FQ2, FQ12, add, multiply, is_on_curve,
    curve_order, field_modulus, Z1, Z2, b, b2,
)
from py_ecc.bn128 import pairing as bn128_pairing

from ethvm.common.crypto import ecdsa_recover, pubkey_to_address, ripemd160, sha256
from ethvm.vm.forks import Fork
from ethvm.vm.memory import memory_word_size


class PrecompileError(Exception):
    """Input rejected by a precompile."""


class PrecompileOutOfGas(PrecompileError):
    """Price exceeds the gas forwarded to the precompile."""


def precompile_address(index: int) -> bytes:
    return index.to_bytes(20, "big")


@dataclass(frozen=True)
class Precompile:
    name: str
    gas: Callable[[bytes], int]
    fn: Callable[[bytes], bytes]

    def run(self, data: bytes, gas_limit: int) -> tuple[int, bytes]:
        cost = self.gas(data)
        if cost > gas_limit:
            raise PrecompileOutOfGas(f"{self.name}: need {cost}, have {gas_limit}")
        return cost, self.fn(data)


def _pad(data: bytes, start: int, length: int) -> bytes:
    """``length`` bytes of ``data`` from ``start``, right-padded with zeros."""
    return data[start:start + length].ljust(length, b"\x00")


# ---------------------------------------------------------------------------
# 0x01: ecRecover
# ---------------------------------------------------------------------------

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def ecrecover_gas(data: bytes) -> int:
    return 3000


def ecrecover(data: bytes) -> bytes:
    """Recover the signer address; empty output for a bad signature."""
    data = _pad(data, 0, 128)
    msg_hash = data[0:32]
    v = int.from_bytes(data[32:64], "big")
    r = int.from_bytes(data[64:96], "big")
    s = int.from_bytes(data[96:128], "big")

    if v not in (27, 28):
        return b""
    if not (0 < r < SECP256K1_N and 0 < s < SECP256K1_N):
        return b""

    try:
        pubkey = ecdsa_recover(msg_hash, v - 27, r, s)
    except Exception:
        return b""
    return pubkey_to_address(pubkey).rjust(32, b"\x00")


# ---------------------------------------------------------------------------
# 0x02: SHA256, 0x03: RIPEMD160, 0x04: identity
# ---------------------------------------------------------------------------

def sha256_gas(data: bytes) -> int:
    return 60 + 12 * memory_word_size(len(data))


def ripemd160_gas(data: bytes) -> int:
    return 600 + 120 * memory_word_size(len(data))


def identity_gas(data: bytes) -> int:
    return 15 + 3 * memory_word_size(len(data))


def ripemd160_word(data: bytes) -> bytes:
    return ripemd160(data).rjust(32, b"\x00")


def identity(data: bytes) -> bytes:
    return bytes(data)


# ---------------------------------------------------------------------------
# 0x05: ModExp (EIP-198, repriced by EIP-2565)
# ---------------------------------------------------------------------------

def _modexp_header(data: bytes) -> tuple[int, int, int]:
    return (
        int.from_bytes(_pad(data, 0, 32), "big"),
        int.from_bytes(_pad(data, 32, 32), "big"),
        int.from_bytes(_pad(data, 64, 32), "big"),
    )


def _modexp_iterations(data: bytes, b_size: int, e_size: int) -> int:
    """Adjusted exponent length."""
    head_len = min(32, e_size)
    head = int.from_bytes(_pad(data, 96 + b_size, head_len), "big") if head_len else 0
    if e_size <= 32:
        return head.bit_length() - 1 if head else 0
    bits = head.bit_length() - 1 if head else 0
    return bits + 8 * (e_size - 32)


def _mult_complexity_eip198(x: int) -> int:
    if x <= 64:
        return x * x
    if x <= 1024:
        return x * x // 4 + 96 * x - 3072
    return x * x // 16 + 480 * x - 199680


def _mult_complexity_eip2565(x: int) -> int:
    words = (x + 7) // 8
    return words * words


def modexp_gas_byzantium(data: bytes) -> int:
    b_size, e_size, m_size = _modexp_header(data)
    complexity = _mult_complexity_eip198(max(b_size, m_size))
    iters = max(_modexp_iterations(data, b_size, e_size), 1)
    return complexity * iters // 20


def modexp_gas_berlin(data: bytes) -> int:
    b_size, e_size, m_size = _modexp_header(data)
    complexity = _mult_complexity_eip2565(max(b_size, m_size))
    iters = max(_modexp_iterations(data, b_size, e_size), 1)
    return max(200, complexity * iters // 3)


def modexp(data: bytes) -> bytes:
    b_size, e_size, m_size = _modexp_header(data)
    if m_size == 0:
        return b""

    base = int.from_bytes(_pad(data, 96, b_size), "big") if b_size else 0
    exp = int.from_bytes(_pad(data, 96 + b_size, e_size), "big") if e_size else 0
    mod = int.from_bytes(_pad(data, 96 + b_size + e_size, m_size), "big")

    if mod == 0:
        return b"\x00" * m_size
    return pow(base, exp, mod).to_bytes(m_size, "big")


# ---------------------------------------------------------------------------
# 0x06 - 0x08: alt_bn128 (EIP-196/197, repriced by EIP-1108)
# ---------------------------------------------------------------------------

def _decode_g1_point(data: bytes):
    """Decode 64 bytes into a py_ecc G1 point (None is the point at infinity)."""
    x = int.from_bytes(data[0:32], "big")
    y = int.from_bytes(data[32:64], "big")
    if x >= field_modulus or y >= field_modulus:
        raise PrecompileError("G1 coordinate out of field")
    if x == 0 and y == 0:
        return Z1
    p = (FQ(x), FQ(y))
    if not is_on_curve(p, b):
        raise PrecompileError("G1 point not on curve")
    return p


def _encode_g1_point(p) -> bytes:
    if p is Z1:
        return b"\x00" * 64
    return int(p[0]).to_bytes(32, "big") + int(p[1]).to_bytes(32, "big")


def _decode_g2_point(data: bytes):
    """Decode 128 bytes into a py_ecc G2 point.

    Encoding: x_imag(32) + x_real(32) + y_imag(32) + y_real(32)
    """
    x_imag = int.from_bytes(data[0:32], "big")
    x_real = int.from_bytes(data[32:64], "big")
    y_imag = int.from_bytes(data[64:96], "big")
    y_real = int.from_bytes(data[96:128], "big")
    if max(x_imag, x_real, y_imag, y_real) >= field_modulus:
        raise PrecompileError("G2 coordinate out of field")
    if x_imag == 0 and x_real == 0 and y_imag == 0 and y_real == 0:
        return Z2
    p = (FQ2([x_real, x_imag]), FQ2([y_real, y_imag]))
    if not is_on_curve(p, b2):
        raise PrecompileError("G2 point not on curve")
    if multiply(p, curve_order) is not Z2:
        raise PrecompileError("G2 point not in subgroup")
    return p


def ecadd(data: bytes) -> bytes:
    p1 = _decode_g1_point(_pad(data, 0, 64))
    p2 = _decode_g1_point(_pad(data, 64, 64))
    return _encode_g1_point(add(p1, p2))


def ecmul(data: bytes) -> bytes:
    p = _decode_g1_point(_pad(data, 0, 64))
    scalar = int.from_bytes(_pad(data, 64, 32), "big")
    if p is Z1:
        return _encode_g1_point(Z1)
    return _encode_g1_point(multiply(p, scalar % curve_order))


def ecpairing(data: bytes) -> bytes:
    if len(data) % 192 != 0:
        raise PrecompileError("pairing input not a multiple of 192 bytes")

    pairs = []
    for i in range(len(data) // 192):
        chunk = data[i * 192:(i + 1) * 192]
        pairs.append((_decode_g1_point(chunk[0:64]), _decode_g2_point(chunk[64:192])))

    # Product of pairings: e(G1_1, G2_1) * ... == 1
    result = FQ12.one()
    for g1, g2 in pairs:
        if g1 is Z1 or g2 is Z2:
            continue
        result = result * bn128_pairing(g2, g1)

    return b"\x00" * 31 + (b"\x01" if result == FQ12.one() else b"\x00")


def _pairing_gas(base: int, per_pair: int) -> Callable[[bytes], int]:
    def gas(data: bytes) -> int:
        return base + per_pair * (len(data) // 192)
    return gas


def _flat_gas(amount: int) -> Callable[[bytes], int]:
    def gas(data: bytes) -> int:
        return amount
    return gas


# ---------------------------------------------------------------------------
# 0x09: BLAKE2f (EIP-152)
# ---------------------------------------------------------------------------

_MASK64 = 0xFFFFFFFFFFFFFFFF
_BLAKE2B_IV = (
    0x6A09E667F3BCC908, 0xBB67AE8584CAA73B,
    0x3C6EF372FE94F82B, 0xA54FF53A5F1D36F1,
    0x510E527FADE682D1, 0x9B05688C2B3E6C1F,
    0x1F83D9ABFB41BD6B, 0x5BE0CD19137E2179,
)
_BLAKE2B_SIGMA = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 11, 12, 13, 14, 15),
    (14, 10, 4, 8, 9, 15, 13, 6, 1, 12, 0, 2, 11, 7, 5, 3),
    (11, 8, 12, 0, 5, 2, 15, 13, 10, 14, 3, 6, 7, 1, 9, 4),
    (7, 9, 3, 1, 13, 12, 11, 14, 2, 6, 5, 10, 4, 0, 15, 8),
    (9, 0, 5, 7, 2, 4, 10, 15, 14, 1, 11, 12, 6, 8, 3, 13),
    (2, 12, 6, 10, 0, 11, 8, 3, 4, 13, 7, 5, 15, 14, 1, 9),
    (12, 5, 1, 15, 14, 13, 4, 10, 0, 7, 6, 3, 9, 2, 8, 11),
    (13, 11, 7, 14, 12, 1, 3, 9, 5, 0, 15, 4, 8, 6, 2, 10),
    (6, 15, 14, 9, 11, 3, 0, 8, 12, 2, 13, 7, 1, 4, 10, 5),
    (10, 2, 8, 4, 7, 6, 1, 5, 15, 11, 9, 14, 3, 12, 13, 0),
)


def blake2f_gas(data: bytes) -> int:
    if len(data) != 213:
        return 0
    return int.from_bytes(data[0:4], "big")


def blake2f(data: bytes) -> bytes:
    if len(data) != 213:
        raise PrecompileError(f"blake2f input must be 213 bytes, got {len(data)}")
    f = data[212]
    if f not in (0, 1):
        raise PrecompileError("blake2f final flag must be 0 or 1")

    rounds = int.from_bytes(data[0:4], "big")
    h = [int.from_bytes(data[4 + i * 8:12 + i * 8], "little") for i in range(8)]
    m = [int.from_bytes(data[68 + i * 8:76 + i * 8], "little") for i in range(16)]
    t0 = int.from_bytes(data[196:204], "little")
    t1 = int.from_bytes(data[204:212], "little")

    v = h + list(_BLAKE2B_IV)
    v[12] ^= t0
    v[13] ^= t1
    if f:
        v[14] ^= _MASK64

    def rotr64(x: int, n: int) -> int:
        return ((x >> n) | (x << (64 - n))) & _MASK64

    def mix(a: int, b_: int, c: int, d: int, x: int, y: int) -> None:
        v[a] = (v[a] + v[b_] + x) & _MASK64
        v[d] = rotr64(v[d] ^ v[a], 32)
        v[c] = (v[c] + v[d]) & _MASK64
        v[b_] = rotr64(v[b_] ^ v[c], 24)
        v[a] = (v[a] + v[b_] + y) & _MASK64
        v[d] = rotr64(v[d] ^ v[a], 16)
        v[c] = (v[c] + v[d]) & _MASK64
        v[b_] = rotr64(v[b_] ^ v[c], 63)

    for i in range(rounds):
        s = _BLAKE2B_SIGMA[i % 10]
        mix(0, 4, 8, 12, m[s[0]], m[s[1]])
        mix(1, 5, 9, 13, m[s[2]], m[s[3]])
        mix(2, 6, 10, 14, m[s[4]], m[s[5]])
        mix(3, 7, 11, 15, m[s[6]], m[s[7]])
        mix(0, 5, 10, 15, m[s[8]], m[s[9]])
        mix(1, 6, 11, 12, m[s[10]], m[s[11]])
        mix(2, 7, 8, 13, m[s[12]], m[s[13]])
        mix(3, 4, 9, 14, m[s[14]], m[s[15]])

    return b"".join(
        ((h[i] ^ v[i] ^ v[i + 8]) & _MASK64).to_bytes(8, "little") for i in range(8)
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ECRECOVER = precompile_address(0x01)
SHA256 = precompile_address(0x02)
RIPEMD160 = precompile_address(0x03)
IDENTITY = precompile_address(0x04)
MODEXP = precompile_address(0x05)
ECADD = precompile_address(0x06)
ECMUL = precompile_address(0x07)
ECPAIRING = precompile_address(0x08)
BLAKE2F = precompile_address(0x09)


class PrecompileRegistry:
    """Address-keyed table of the precompiles active on one fork."""

    def __init__(self) -> None:
        self._contracts: dict[bytes, Precompile] = {}

    @classmethod
    def for_fork(cls, fork: Fork) -> PrecompileRegistry:
        registry = cls()
        registry.register(ECRECOVER, Precompile("ecrecover", ecrecover_gas, ecrecover))
        registry.register(SHA256, Precompile("sha256", sha256_gas, sha256))
        registry.register(RIPEMD160, Precompile("ripemd160", ripemd160_gas, ripemd160_word))
        registry.register(IDENTITY, Precompile("identity", identity_gas, identity))

        if fork >= Fork.BYZANTIUM:
            istanbul = fork >= Fork.ISTANBUL
            modexp_gas = modexp_gas_berlin if fork >= Fork.BERLIN else modexp_gas_byzantium
            registry.register(MODEXP, Precompile("modexp", modexp_gas, modexp))
            registry.register(
                ECADD, Precompile("ecadd", _flat_gas(150 if istanbul else 500), ecadd)
            )
            registry.register(
                ECMUL, Precompile("ecmul", _flat_gas(6000 if istanbul else 40000), ecmul)
            )
            pairing_gas = _pairing_gas(45000, 34000) if istanbul else _pairing_gas(100000, 80000)
            registry.register(ECPAIRING, Precompile("ecpairing", pairing_gas, ecpairing))

        if fork >= Fork.ISTANBUL:
            registry.register(BLAKE2F, Precompile("blake2f", blake2f_gas, blake2f))

        return registry

    def register(self, address: bytes, precompile: Precompile) -> None:
        self._contracts[address] = precompile

    def get(self, address: bytes) -> Optional[Precompile]:
        return self._contracts.get(address)

    def __contains__(self, address: bytes) -> bool:
        return address in self._contracts

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._contracts)

    def __len__(self) -> int:
        return len(self._contracts)

    @property
    def addresses(self) -> list[bytes]:
        return list(self._contracts)

    def run(self, address: bytes, data: bytes, gas_limit: int) -> tuple[int, bytes]:
        """Run the precompile at ``address``. Raises PrecompileError on failure."""
        precompile = self._contracts.get(address)
        if precompile is None:
            raise KeyError(f"No precompile at 0x{address.hex()}")
        return precompile.run(data, gas_limit)
