"""
EVM gas accounting.

GasMeter tracks one frame's budget. The helpers below compute the dynamic
part of opcode costs: memory expansion, EXP, SSTORE (legacy and
net-metered), the CALL family's forwarded gas, and transaction-level
intrinsic gas and refund caps. All prices come from a CostTable.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ethvm.vm.forks import (
    CostTable,
    SstoreScheme,
    G_ACCESS_LIST_ADDRESS,
    G_ACCESS_LIST_STORAGE_KEY,
    G_CALLSTIPEND,
    G_EXP,
    G_INITCODE_WORD,
    G_TX,
    G_TX_CREATE,
    G_TX_DATA_ZERO,
)
from ethvm.vm.memory import OutOfGas, memory_word_size


class RefundSink(Protocol):
    def record_refund(self, amount: int) -> None: ...


class RefundCounter:
    """Stand-alone refund counter for meters not bound to a journal."""

    def __init__(self) -> None:
        self.refund = 0

    def record_refund(self, amount: int) -> None:
        self.refund += amount


class GasMeter:
    """Remaining/spent gas for one frame.

    Refunds are forwarded to ``refunds`` (normally the JournaledState, so that
    a reverted frame's refunds are rolled back with the rest of its state).
    """

    __slots__ = ("limit", "spent", "refunds")

    def __init__(self, limit: int, refunds: Optional[RefundSink] = None) -> None:
        self.limit = limit
        self.spent = 0
        self.refunds = refunds if refunds is not None else RefundCounter()

    @property
    def remaining(self) -> int:
        return self.limit - self.spent

    def charge(self, amount: int) -> None:
        """Consume gas, raising OutOfGas if insufficient."""
        remaining = self.limit - self.spent
        if amount > remaining:
            raise OutOfGas(f"Out of gas: need {amount}, have {remaining}")
        self.spent += amount

    def return_gas(self, amount: int) -> None:
        """Give back gas a sub-frame did not use."""
        self.spent -= amount

    def consume_all(self) -> None:
        self.spent = self.limit

    def refund(self, amount: int) -> None:
        self.refunds.record_refund(amount)

    def __repr__(self) -> str:
        return f"GasMeter(limit={self.limit}, spent={self.spent})"


# ---------------------------------------------------------------------------
# Memory expansion cost
# ---------------------------------------------------------------------------

def memory_cost(costs: CostTable, word_size: int) -> int:
    """Total cost of a memory of ``word_size`` words.

    Memory cost = G_MEMORY * word_size + word_size^2 / 512
    """
    return costs.memory_gas * word_size + (word_size * word_size) // costs.quad_coeff_div


def memory_expansion_cost(costs: CostTable, current_words: int, new_words: int) -> int:
    """Incremental cost of growing memory (0 if no growth)."""
    if new_words <= current_words:
        return 0
    return memory_cost(costs, new_words) - memory_cost(costs, current_words)


def memory_extent(*regions: tuple[int, int]) -> int:
    """Highest byte end touched by a set of (offset, size) regions.

    Zero-size regions touch nothing, whatever their offset.
    """
    end = 0
    for offset, size in regions:
        if size:
            end = max(end, offset + size)
    return end


# ---------------------------------------------------------------------------
# EXP
# ---------------------------------------------------------------------------

def exp_gas(costs: CostTable, exponent: int) -> int:
    """Dynamic EXP cost on top of the G_EXP base."""
    byte_len = (exponent.bit_length() + 7) // 8
    return costs.exp_byte * byte_len


def exp_total_gas(costs: CostTable, exponent: int) -> int:
    return G_EXP + exp_gas(costs, exponent)


# ---------------------------------------------------------------------------
# SSTORE
# ---------------------------------------------------------------------------

def sstore_gas(
    costs: CostTable,
    original_value: int,
    current_value: int,
    new_value: int,
    is_cold: bool = False,
) -> tuple[int, int]:
    """SSTORE gas cost and refund delta.

    Legacy pricing before Constantinople and in Petersburg; EIP-1283 net
    metering in Constantinople; EIP-2200 from Istanbul, with EIP-2929 slot
    access costs from Berlin and EIP-3529 refunds from London.

    Returns (gas_cost, refund_delta). The refund delta may be negative.
    """
    if costs.sstore_scheme is SstoreScheme.LEGACY:
        if current_value == 0 and new_value != 0:
            return costs.sstore_set, 0
        refund = costs.sstore_clear_refund if current_value != 0 and new_value == 0 else 0
        return costs.sstore_reset, refund

    cold_cost = costs.cold_sload if (costs.access_lists and is_cold) else 0

    if current_value == new_value:
        return costs.sload + cold_cost, 0

    if original_value == current_value:
        # First write to this slot in this execution
        if original_value == 0:
            return costs.sstore_set + cold_cost, 0
        refund = costs.sstore_clear_refund if new_value == 0 else 0
        return costs.sstore_reset + cold_cost, refund

    # Slot already dirty
    refund = 0
    if original_value != 0:
        if current_value == 0:
            refund -= costs.sstore_clear_refund
        elif new_value == 0:
            refund += costs.sstore_clear_refund

    if original_value == new_value:
        if original_value == 0:
            refund += costs.sstore_set - costs.sload
        else:
            refund += costs.sstore_reset - costs.sload

    return costs.sload + cold_cost, refund


# ---------------------------------------------------------------------------
# CALL gas
# ---------------------------------------------------------------------------

def max_call_gas(gas: int) -> int:
    """All but one 64th (EIP-150)."""
    return gas - gas // 64


def call_gas(
    costs: CostTable,
    gas_available: int,
    gas_requested: int,
    extra_cost: int,
    has_value: bool,
) -> tuple[int, int]:
    """Gas for CALL-type opcodes.

    ``gas_available`` is what the caller holds after base, access and memory
    costs were charged. ``extra_cost`` covers value transfer and new-account
    surcharges.

    Returns (total_cost, gas_for_callee). The stipend is added to the
    callee's budget without being charged to the caller.
    """
    callee_gas = gas_requested
    if costs.all_but_one_64th and gas_available >= extra_cost:
        callee_gas = min(gas_requested, max_call_gas(gas_available - extra_cost))

    total_cost = extra_cost + callee_gas
    if has_value:
        callee_gas += G_CALLSTIPEND
    return total_cost, callee_gas


def create_gas(costs: CostTable, gas_available: int) -> int:
    """Gas handed to a CREATE/CREATE2 init frame."""
    if costs.all_but_one_64th:
        return max_call_gas(gas_available)
    return gas_available


def initcode_gas(costs: CostTable, size: int) -> int:
    if costs.max_initcode_size is None:
        return 0
    return G_INITCODE_WORD * memory_word_size(size)


# ---------------------------------------------------------------------------
# Transaction-level
# ---------------------------------------------------------------------------

def intrinsic_gas(
    costs: CostTable,
    data: bytes,
    is_create: bool,
    access_list: Iterable[tuple[bytes, Iterable[int]]] = (),
) -> int:
    """Intrinsic gas of a transaction carrying ``data``."""
    gas = G_TX
    if is_create and costs.tx_create_cost:
        gas += G_TX_CREATE
    zeros = data.count(0)
    gas += G_TX_DATA_ZERO * zeros + costs.tx_data_nonzero * (len(data) - zeros)
    if is_create:
        gas += initcode_gas(costs, len(data))
    if costs.access_lists:
        for _address, keys in access_list:
            gas += G_ACCESS_LIST_ADDRESS + G_ACCESS_LIST_STORAGE_KEY * len(list(keys))
    return gas


def capped_refund(costs: CostTable, gas_used: int, refund: int, quotient: Optional[int] = None) -> int:
    """Refund actually granted at the end of a top-level execution."""
    if refund <= 0:
        return 0
    return min(refund, gas_used // (quotient or costs.refund_quotient))
