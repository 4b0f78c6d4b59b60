"""
EVM opcode definitions and handlers.

Each handler takes a CallFrame and the running Evm and modifies them. The
interpreter has already validated stack depth and charged the base cost
from the Operation record; handlers charge any dynamic cost before their
side effect.

``build_opcode_table(costs)`` returns the 256-entry dispatch table for one
fork, with None for opcodes that fork does not know.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Callable, Optional

from ethvm.common.crypto import keccak256
from ethvm.common.types import address_to_word, to_address
from ethvm.vm.call_frame import CallFrame, CallKind, Message
from ethvm.vm.forks import (
    CostTable,
    Fork,
    G_BASE,
    G_BLOCKHASH,
    G_CALLSTIPEND,
    G_CALLVALUE,
    G_COPY,
    G_CREATE,
    G_EXP,
    G_HIGH,
    G_JUMPDEST,
    G_KECCAK256,
    G_KECCAK256_WORD,
    G_LOG,
    G_LOG_DATA,
    G_LOG_TOPIC,
    G_LOW,
    G_MID,
    G_NEW_ACCOUNT,
    G_VERY_LOW,
    G_WARM_ACCESS,
    G_ZERO,
)
from ethvm.vm.gas import (
    call_gas,
    create_gas,
    exp_gas,
    initcode_gas,
    memory_expansion_cost,
    memory_extent,
    sstore_gas,
)
from ethvm.vm.memory import (
    UINT256_CEIL,
    UINT256_MAX,
    InitcodeSizeExceeded,
    InvalidJumpDest,
    InvalidOpcode,
    OutOfGas,
    Revert,
    ReturnData,
    ReturnDataOutOfBounds,
    SelfDestruct,
    StopExecution,
    WriteProtection,
    memory_word_size,
    to_signed,
    to_unsigned,
)

if TYPE_CHECKING:
    from ethvm.vm.evm import Evm


# ---------------------------------------------------------------------------
# Opcode enum / names
# ---------------------------------------------------------------------------

# fmt: off
class Op:
    STOP            = 0x00
    ADD             = 0x01
    MUL             = 0x02
    SUB             = 0x03
    DIV             = 0x04
    SDIV            = 0x05
    MOD             = 0x06
    SMOD            = 0x07
    ADDMOD          = 0x08
    MULMOD          = 0x09
    EXP             = 0x0A
    SIGNEXTEND      = 0x0B
    LT              = 0x10
    GT              = 0x11
    SLT             = 0x12
    SGT             = 0x13
    EQ              = 0x14
    ISZERO          = 0x15
    AND             = 0x16
    OR              = 0x17
    XOR             = 0x18
    NOT             = 0x19
    BYTE            = 0x1A
    SHL             = 0x1B
    SHR             = 0x1C
    SAR             = 0x1D
    KECCAK256       = 0x20
    ADDRESS         = 0x30
    BALANCE         = 0x31
    ORIGIN          = 0x32
    CALLER          = 0x33
    CALLVALUE       = 0x34
    CALLDATALOAD    = 0x35
    CALLDATASIZE    = 0x36
    CALLDATACOPY    = 0x37
    CODESIZE        = 0x38
    CODECOPY        = 0x39
    GASPRICE        = 0x3A
    EXTCODESIZE     = 0x3B
    EXTCODECOPY     = 0x3C
    RETURNDATASIZE  = 0x3D
    RETURNDATACOPY  = 0x3E
    EXTCODEHASH     = 0x3F
    BLOCKHASH       = 0x40
    COINBASE        = 0x41
    TIMESTAMP       = 0x42
    NUMBER          = 0x43
    PREVRANDAO      = 0x44  # DIFFICULTY before the merge
    GASLIMIT        = 0x45
    CHAINID         = 0x46
    SELFBALANCE     = 0x47
    BASEFEE         = 0x48
    BLOBHASH        = 0x49
    BLOBBASEFEE     = 0x4A
    POP             = 0x50
    MLOAD           = 0x51
    MSTORE          = 0x52
    MSTORE8         = 0x53
    SLOAD           = 0x54
    SSTORE          = 0x55
    JUMP            = 0x56
    JUMPI           = 0x57
    PC              = 0x58
    MSIZE           = 0x59
    GAS             = 0x5A
    JUMPDEST        = 0x5B
    TLOAD           = 0x5C
    TSTORE          = 0x5D
    MCOPY           = 0x5E
    PUSH0           = 0x5F
    PUSH1           = 0x60
    PUSH32          = 0x7F
    DUP1            = 0x80
    DUP16           = 0x8F
    SWAP1           = 0x90
    SWAP16          = 0x9F
    LOG0            = 0xA0
    LOG4            = 0xA4
    CREATE          = 0xF0
    CALL            = 0xF1
    CALLCODE        = 0xF2
    RETURN          = 0xF3
    DELEGATECALL    = 0xF4
    CREATE2         = 0xF5
    STATICCALL      = 0xFA
    REVERT          = 0xFD
    INVALID         = 0xFE
    SELFDESTRUCT    = 0xFF
# fmt: on


# ---------------------------------------------------------------------------
# Dynamic-cost helpers
# ---------------------------------------------------------------------------

def _expand_memory(frame: CallFrame, evm: Evm, *regions: tuple[int, int]) -> None:
    """Charge for and perform the memory growth needed to touch ``regions``."""
    end = memory_extent(*regions)
    if end <= frame.memory.size:
        return
    new_words = memory_word_size(end)
    frame.consume_gas(memory_expansion_cost(evm.costs, frame.memory.word_count, new_words))
    frame.memory.extend(new_words)


def _copy_cost(size: int) -> int:
    return G_COPY * memory_word_size(size)


def _access_account(frame: CallFrame, evm: Evm, address: bytes) -> None:
    """EIP-2929 cold account surcharge on top of the warm base cost."""
    costs = evm.costs
    if not costs.access_lists:
        return
    if not evm.state.is_warm_address(address):
        frame.consume_gas(costs.cold_account_access - costs.warm_access)
        evm.state.warm_address(address)


def _padded(data: bytes, offset: int, size: int) -> bytes:
    if size == 0:
        return b""
    chunk = data[offset:offset + size] if offset < len(data) else b""
    return chunk.ljust(size, b"\x00")


# ---------------------------------------------------------------------------
# Opcode handlers
# ---------------------------------------------------------------------------

def op_stop(frame, evm):
    raise StopExecution()


# -- Arithmetic --

def op_add(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a + b) % UINT256_CEIL)
    frame.pc += 1


def op_mul(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a * b) % UINT256_CEIL)
    frame.pc += 1


def op_sub(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a - b) % UINT256_CEIL)
    frame.pc += 1


def op_div(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a // b if b != 0 else 0)
    frame.pc += 1


def op_sdiv(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    if b == 0:
        frame.stack.push(0)
    else:
        sa, sb = to_signed(a), to_signed(b)
        if sa == -(1 << 255) and sb == -1:
            frame.stack.push(1 << 255)  # overflow case
        else:
            sign = -1 if (sa < 0) ^ (sb < 0) else 1
            frame.stack.push(to_unsigned(sign * (abs(sa) // abs(sb))))
    frame.pc += 1


def op_mod(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a % b if b != 0 else 0)
    frame.pc += 1


def op_smod(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    if b == 0:
        frame.stack.push(0)
    else:
        sa, sb = to_signed(a), to_signed(b)
        sign = -1 if sa < 0 else 1
        frame.stack.push(to_unsigned(sign * (abs(sa) % abs(sb))))
    frame.pc += 1


def op_addmod(frame, evm):
    a, b, n = frame.stack.pop(), frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a + b) % n if n != 0 else 0)
    frame.pc += 1


def op_mulmod(frame, evm):
    a, b, n = frame.stack.pop(), frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a * b) % n if n != 0 else 0)
    frame.pc += 1


def op_exp(frame, evm):
    base, exponent = frame.stack.pop(), frame.stack.pop()
    frame.consume_gas(exp_gas(evm.costs, exponent))
    frame.stack.push(pow(base, exponent, UINT256_CEIL))
    frame.pc += 1


def op_signextend(frame, evm):
    b, x = frame.stack.pop(), frame.stack.pop()
    if b < 31:
        bit = b * 8 + 7
        mask = (1 << bit) - 1
        if x & (1 << bit):
            frame.stack.push(x | (UINT256_MAX - mask))
        else:
            frame.stack.push(x & mask)
    else:
        frame.stack.push(x)
    frame.pc += 1


# -- Comparison & Bitwise --

def op_lt(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if a < b else 0)
    frame.pc += 1


def op_gt(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if a > b else 0)
    frame.pc += 1


def op_slt(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if to_signed(a) < to_signed(b) else 0)
    frame.pc += 1


def op_sgt(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if to_signed(a) > to_signed(b) else 0)
    frame.pc += 1


def op_eq(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if a == b else 0)
    frame.pc += 1


def op_iszero(frame, evm):
    frame.stack.push(1 if frame.stack.pop() == 0 else 0)
    frame.pc += 1


def op_and(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a & b)
    frame.pc += 1


def op_or(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a | b)
    frame.pc += 1


def op_xor(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a ^ b)
    frame.pc += 1


def op_not(frame, evm):
    frame.stack.push(frame.stack.pop() ^ UINT256_MAX)
    frame.pc += 1


def op_byte(frame, evm):
    i, x = frame.stack.pop(), frame.stack.pop()
    if i >= 32:
        frame.stack.push(0)
    else:
        frame.stack.push((x >> (248 - i * 8)) & 0xFF)
    frame.pc += 1


def op_shl(frame, evm):
    shift, value = frame.stack.pop(), frame.stack.pop()
    if shift >= 256:
        frame.stack.push(0)
    else:
        frame.stack.push((value << shift) % UINT256_CEIL)
    frame.pc += 1


def op_shr(frame, evm):
    shift, value = frame.stack.pop(), frame.stack.pop()
    if shift >= 256:
        frame.stack.push(0)
    else:
        frame.stack.push(value >> shift)
    frame.pc += 1


def op_sar(frame, evm):
    shift, value = frame.stack.pop(), frame.stack.pop()
    signed = to_signed(value)
    if shift >= 256:
        frame.stack.push(to_unsigned(-1 if signed < 0 else 0))
    else:
        frame.stack.push(to_unsigned(signed >> shift))
    frame.pc += 1


# -- Keccak256 --

def op_keccak256(frame, evm):
    offset, size = frame.stack.pop(), frame.stack.pop()
    frame.consume_gas(G_KECCAK256_WORD * memory_word_size(size))
    _expand_memory(frame, evm, (offset, size))
    data = frame.memory.load(offset, size)
    frame.stack.push(int.from_bytes(keccak256(data), "big"))
    frame.pc += 1


# -- Environment --

def op_address(frame, evm):
    frame.stack.push(address_to_word(frame.address))
    frame.pc += 1


def op_balance(frame, evm):
    addr = to_address(frame.stack.pop())
    _access_account(frame, evm, addr)
    frame.stack.push(evm.state.get_balance(addr))
    frame.pc += 1


def op_origin(frame, evm):
    frame.stack.push(address_to_word(frame.origin))
    frame.pc += 1


def op_caller(frame, evm):
    frame.stack.push(address_to_word(frame.caller))
    frame.pc += 1


def op_callvalue(frame, evm):
    frame.stack.push(frame.value)
    frame.pc += 1


def op_calldataload(frame, evm):
    offset = frame.stack.pop()
    frame.stack.push(int.from_bytes(_padded(frame.calldata, offset, 32), "big"))
    frame.pc += 1


def op_calldatasize(frame, evm):
    frame.stack.push(len(frame.calldata))
    frame.pc += 1


def op_calldatacopy(frame, evm):
    dest_offset = frame.stack.pop()
    data_offset = frame.stack.pop()
    size = frame.stack.pop()
    frame.consume_gas(_copy_cost(size))
    _expand_memory(frame, evm, (dest_offset, size))
    frame.memory.store(dest_offset, _padded(frame.calldata, data_offset, size))
    frame.pc += 1


def op_codesize(frame, evm):
    frame.stack.push(len(frame.code))
    frame.pc += 1


def op_codecopy(frame, evm):
    dest_offset = frame.stack.pop()
    code_offset = frame.stack.pop()
    size = frame.stack.pop()
    frame.consume_gas(_copy_cost(size))
    _expand_memory(frame, evm, (dest_offset, size))
    frame.memory.store(dest_offset, _padded(frame.code, code_offset, size))
    frame.pc += 1


def op_gasprice(frame, evm):
    frame.stack.push(evm.block.gas_price)
    frame.pc += 1


def op_extcodesize(frame, evm):
    addr = to_address(frame.stack.pop())
    _access_account(frame, evm, addr)
    frame.stack.push(len(evm.state.get_code(addr)))
    frame.pc += 1


def op_extcodecopy(frame, evm):
    addr = to_address(frame.stack.pop())
    dest_offset = frame.stack.pop()
    code_offset = frame.stack.pop()
    size = frame.stack.pop()
    _access_account(frame, evm, addr)
    frame.consume_gas(_copy_cost(size))
    _expand_memory(frame, evm, (dest_offset, size))
    code = evm.state.get_code(addr)
    frame.memory.store(dest_offset, _padded(code, code_offset, size))
    frame.pc += 1


def op_returndatasize(frame, evm):
    frame.stack.push(len(frame.return_data))
    frame.pc += 1


def op_returndatacopy(frame, evm):
    dest_offset = frame.stack.pop()
    data_offset = frame.stack.pop()
    size = frame.stack.pop()
    if data_offset + size > len(frame.return_data):
        raise ReturnDataOutOfBounds(
            f"RETURNDATACOPY [{data_offset}, +{size}) past {len(frame.return_data)} bytes"
        )
    frame.consume_gas(_copy_cost(size))
    _expand_memory(frame, evm, (dest_offset, size))
    frame.memory.store(dest_offset, frame.return_data[data_offset:data_offset + size])
    frame.pc += 1


def op_extcodehash(frame, evm):
    addr = to_address(frame.stack.pop())
    _access_account(frame, evm, addr)
    if evm.state.is_dead(addr):
        frame.stack.push(0)
    else:
        frame.stack.push(int.from_bytes(evm.state.get_code_hash(addr), "big"))
    frame.pc += 1


# -- Block info --

def op_blockhash(frame, evm):
    block_num = frame.stack.pop()
    current = evm.block.number
    if block_num >= current or current - block_num > 256:
        frame.stack.push(0)
    else:
        frame.stack.push(int.from_bytes(evm.state.get_block_hash(block_num), "big"))
    frame.pc += 1


def op_coinbase(frame, evm):
    frame.stack.push(address_to_word(evm.block.coinbase))
    frame.pc += 1


def op_timestamp(frame, evm):
    frame.stack.push(evm.block.timestamp)
    frame.pc += 1


def op_number(frame, evm):
    frame.stack.push(evm.block.number)
    frame.pc += 1


def op_difficulty(frame, evm):
    frame.stack.push(evm.block.difficulty)
    frame.pc += 1


def op_prevrandao(frame, evm):
    frame.stack.push(evm.block.prevrandao)
    frame.pc += 1


def op_gaslimit(frame, evm):
    frame.stack.push(evm.block.gas_limit)
    frame.pc += 1


def op_chainid(frame, evm):
    frame.stack.push(evm.block.chain_id)
    frame.pc += 1


def op_selfbalance(frame, evm):
    frame.stack.push(evm.state.get_balance(frame.address))
    frame.pc += 1


def op_basefee(frame, evm):
    frame.stack.push(evm.block.base_fee)
    frame.pc += 1


def op_blobhash(frame, evm):
    idx = frame.stack.pop()
    blob_hashes = evm.block.blob_hashes
    if idx < len(blob_hashes):
        frame.stack.push(int.from_bytes(blob_hashes[idx], "big"))
    else:
        frame.stack.push(0)
    frame.pc += 1


def op_blobbasefee(frame, evm):
    frame.stack.push(evm.block.blob_base_fee)
    frame.pc += 1


# -- Stack, Memory, Storage, Flow --

def op_pop(frame, evm):
    frame.stack.pop()
    frame.pc += 1


def op_mload(frame, evm):
    offset = frame.stack.pop()
    _expand_memory(frame, evm, (offset, 32))
    frame.stack.push(frame.memory.load_word(offset))
    frame.pc += 1


def op_mstore(frame, evm):
    offset = frame.stack.pop()
    value = frame.stack.pop()
    _expand_memory(frame, evm, (offset, 32))
    frame.memory.store_word(offset, value)
    frame.pc += 1


def op_mstore8(frame, evm):
    offset = frame.stack.pop()
    value = frame.stack.pop()
    _expand_memory(frame, evm, (offset, 1))
    frame.memory.store_byte(offset, value)
    frame.pc += 1


def op_sload(frame, evm):
    key = frame.stack.pop()
    costs = evm.costs
    if costs.access_lists and not evm.state.is_warm_slot(frame.address, key):
        frame.consume_gas(costs.cold_sload - costs.warm_access)
        evm.state.warm_slot(frame.address, key)
    frame.stack.push(evm.state.get_storage(frame.address, key))
    frame.pc += 1


def op_sstore(frame, evm):
    if frame.is_static:
        raise WriteProtection("SSTORE in static call")
    costs = evm.costs
    if costs.sstore_stipend_guard and frame.remaining_gas <= G_CALLSTIPEND:
        raise OutOfGas("SSTORE with gas left at or below the call stipend")
    key = frame.stack.pop()
    new_value = frame.stack.pop()
    state = evm.state
    is_cold = costs.access_lists and not state.is_warm_slot(frame.address, key)
    current = state.get_storage(frame.address, key)
    original = state.get_original_storage(frame.address, key)
    gas_cost, refund = sstore_gas(costs, original, current, new_value, is_cold)
    frame.consume_gas(gas_cost)
    if is_cold:
        state.warm_slot(frame.address, key)
    state.set_storage(frame.address, key, new_value)
    frame.gas.refund(refund)
    frame.pc += 1


def op_jump(frame, evm):
    dest = frame.stack.pop()
    if dest not in frame.valid_jumpdests:
        raise InvalidJumpDest(f"Invalid JUMP destination: {dest}")
    frame.pc = dest


def op_jumpi(frame, evm):
    dest = frame.stack.pop()
    cond = frame.stack.pop()
    if cond != 0:
        if dest not in frame.valid_jumpdests:
            raise InvalidJumpDest(f"Invalid JUMPI destination: {dest}")
        frame.pc = dest
    else:
        frame.pc += 1


def op_pc(frame, evm):
    frame.stack.push(frame.pc)
    frame.pc += 1


def op_msize(frame, evm):
    frame.stack.push(frame.memory.size)
    frame.pc += 1


def op_gas(frame, evm):
    frame.stack.push(frame.remaining_gas)
    frame.pc += 1


def op_jumpdest(frame, evm):
    frame.pc += 1


def op_tload(frame, evm):
    key = frame.stack.pop()
    frame.stack.push(evm.state.get_transient(frame.address, key))
    frame.pc += 1


def op_tstore(frame, evm):
    if frame.is_static:
        raise WriteProtection("TSTORE in static call")
    key = frame.stack.pop()
    value = frame.stack.pop()
    evm.state.set_transient(frame.address, key, value)
    frame.pc += 1


def op_mcopy(frame, evm):
    dest = frame.stack.pop()
    src = frame.stack.pop()
    size = frame.stack.pop()
    frame.consume_gas(_copy_cost(size))
    _expand_memory(frame, evm, (src, size), (dest, size))
    frame.memory.copy(dest, src, size)
    frame.pc += 1


# -- PUSH --

def op_push0(frame, evm):
    frame.stack.push(0)
    frame.pc += 1


def _make_push(n: int):
    def op_push(frame, evm):
        frame.stack.push(frame.read_immediate(n))
        frame.pc += 1 + n
    return op_push


# -- DUP --

def _make_dup(n: int):
    def op_dup(frame, evm):
        frame.stack.dup(n)
        frame.pc += 1
    return op_dup


# -- SWAP --

def _make_swap(n: int):
    def op_swap(frame, evm):
        frame.stack.swap(n)
        frame.pc += 1
    return op_swap


# -- LOG --

def _make_log(topic_count: int):
    def op_log(frame, evm):
        if frame.is_static:
            raise WriteProtection(f"LOG{topic_count} in static call")
        offset = frame.stack.pop()
        size = frame.stack.pop()
        topics = [frame.stack.pop().to_bytes(32, "big") for _ in range(topic_count)]
        frame.consume_gas(G_LOG_TOPIC * topic_count + G_LOG_DATA * size)
        _expand_memory(frame, evm, (offset, size))
        evm.state.add_log(frame.address, topics, frame.memory.load(offset, size))
        frame.pc += 1
    return op_log


# -- System: CREATE family --

def _create(frame: CallFrame, evm: Evm, kind: CallKind) -> None:
    if frame.is_static:
        raise WriteProtection(f"{kind.name} in static call")
    value = frame.stack.pop()
    offset = frame.stack.pop()
    size = frame.stack.pop()
    salt = frame.stack.pop() if kind is CallKind.CREATE2 else None

    costs = evm.costs
    if costs.max_initcode_size is not None and size > costs.max_initcode_size:
        raise InitcodeSizeExceeded(f"init code of {size} bytes")

    _expand_memory(frame, evm, (offset, size))
    extra = initcode_gas(costs, size)
    if kind is CallKind.CREATE2:
        extra += G_KECCAK256_WORD * memory_word_size(size)
    frame.consume_gas(extra)
    init_code = frame.memory.load(offset, size)

    callee_gas = create_gas(costs, frame.remaining_gas)
    frame.consume_gas(callee_gas)

    outcome = evm.create(Message(
        kind=kind,
        caller=frame.address,
        value=value,
        gas=callee_gas,
        depth=frame.depth + 1,
        origin=frame.origin,
        salt=salt,
        code=init_code,
    ))

    frame.gas.return_gas(outcome.gas_remaining)
    frame.return_data = b"" if outcome.success else outcome.output
    frame.stack.push(address_to_word(outcome.address) if outcome.success else 0)
    frame.pc += 1


def op_create(frame, evm):
    _create(frame, evm, CallKind.CREATE)


def op_create2(frame, evm):
    _create(frame, evm, CallKind.CREATE2)


# -- System: CALL family --

def _call(frame: CallFrame, evm: Evm, kind: CallKind) -> None:
    gas_req = frame.stack.pop()
    addr = to_address(frame.stack.pop())
    value = frame.stack.pop() if kind in (CallKind.CALL, CallKind.CALLCODE) else 0
    args_offset = frame.stack.pop()
    args_size = frame.stack.pop()
    ret_offset = frame.stack.pop()
    ret_size = frame.stack.pop()

    if kind is CallKind.CALL and frame.is_static and value > 0:
        raise WriteProtection("CALL with value in static context")

    _expand_memory(frame, evm, (args_offset, args_size), (ret_offset, ret_size))
    _access_account(frame, evm, addr)

    costs = evm.costs
    extra = 0
    if value > 0:
        extra += G_CALLVALUE
    if kind is CallKind.CALL:
        if costs.new_account_when_empty:
            if value > 0 and evm.state.is_dead(addr):
                extra += G_NEW_ACCOUNT
        elif not evm.state.account_exists(addr):
            extra += G_NEW_ACCOUNT

    total_cost, callee_gas = call_gas(costs, frame.remaining_gas, gas_req, extra, value > 0)
    frame.consume_gas(total_cost)

    calldata = frame.memory.load(args_offset, args_size)
    caller, target, is_static = frame.address, addr, frame.is_static
    if kind is CallKind.CALLCODE:
        target = frame.address
    elif kind is CallKind.DELEGATECALL:
        caller, target, value = frame.caller, frame.address, frame.value
    elif kind is CallKind.STATICCALL:
        is_static = True

    outcome = evm.call(Message(
        kind=kind,
        caller=caller,
        target=target,
        code_address=addr,
        value=value,
        data=calldata,
        gas=callee_gas,
        depth=frame.depth + 1,
        is_static=is_static,
        origin=frame.origin,
        transfers_value=kind is not CallKind.DELEGATECALL,
    ))

    frame.gas.return_gas(outcome.gas_remaining)
    frame.return_data = outcome.output
    if ret_size > 0 and outcome.output:
        frame.memory.store(ret_offset, outcome.output[:ret_size])
    frame.stack.push(1 if outcome.success else 0)
    frame.pc += 1


def op_call(frame, evm):
    _call(frame, evm, CallKind.CALL)


def op_callcode(frame, evm):
    _call(frame, evm, CallKind.CALLCODE)


def op_delegatecall(frame, evm):
    _call(frame, evm, CallKind.DELEGATECALL)


def op_staticcall(frame, evm):
    _call(frame, evm, CallKind.STATICCALL)


# -- System: halting --

def op_return(frame, evm):
    offset = frame.stack.pop()
    size = frame.stack.pop()
    _expand_memory(frame, evm, (offset, size))
    raise ReturnData(frame.memory.load(offset, size))


def op_revert(frame, evm):
    offset = frame.stack.pop()
    size = frame.stack.pop()
    _expand_memory(frame, evm, (offset, size))
    raise Revert(frame.memory.load(offset, size))


def op_invalid(frame, evm):
    raise InvalidOpcode("INVALID opcode (0xFE)")


def op_selfdestruct(frame, evm):
    if frame.is_static:
        raise WriteProtection("SELFDESTRUCT in static call")
    beneficiary = to_address(frame.stack.pop())
    costs = evm.costs
    state = evm.state

    if costs.access_lists and not state.is_warm_address(beneficiary):
        frame.consume_gas(costs.cold_account_access)
        state.warm_address(beneficiary)

    balance = state.get_balance(frame.address)
    if costs.selfdestruct_new_account:
        if costs.new_account_when_empty:
            needs_account = balance > 0 and state.is_dead(beneficiary)
        else:
            needs_account = not state.account_exists(beneficiary)
        if needs_account:
            frame.consume_gas(G_NEW_ACCOUNT)

    if costs.selfdestruct_refund and not state.is_destroyed(frame.address):
        frame.gas.refund(costs.selfdestruct_refund)

    if costs.selfdestruct_only_new and not state.is_created(frame.address):
        # EIP-6780: only the balance moves
        if beneficiary != frame.address:
            state.transfer(frame.address, beneficiary, balance)
    else:
        state.add_balance(beneficiary, balance)
        state.set_balance(frame.address, 0)
        state.destroy(frame.address)
    state.touch(beneficiary)
    raise SelfDestruct(beneficiary)


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Operation:
    handler: Callable[[CallFrame, "Evm"], None]
    base_gas: int
    inputs: int
    outputs: int
    name: str


OPCODE_NAMES: dict[int, str] = {
    value: name for name, value in vars(Op).items()
    if not name.startswith("_") and isinstance(value, int)
}
OPCODE_NAMES[Op.PREVRANDAO] = "PREVRANDAO"
for _i in range(1, 33):
    OPCODE_NAMES[Op.PUSH1 + _i - 1] = f"PUSH{_i}"
for _i in range(1, 17):
    OPCODE_NAMES[Op.DUP1 + _i - 1] = f"DUP{_i}"
    OPCODE_NAMES[Op.SWAP1 + _i - 1] = f"SWAP{_i}"
for _i in range(5):
    OPCODE_NAMES[Op.LOG0 + _i] = f"LOG{_i}"
del _i


def opcode_name(opcode: int) -> str:
    return OPCODE_NAMES.get(opcode, f"0x{opcode:02x}")


@lru_cache(maxsize=None)
def build_opcode_table(costs: CostTable) -> tuple[Optional[Operation], ...]:
    """256-entry dispatch table for the fork ``costs`` describes."""
    t: list[Optional[Operation]] = [None] * 256
    fork = costs.fork

    def reg(opcode: int, handler, gas: int, inputs: int, outputs: int,
            since: Fork = Fork.FRONTIER, name: Optional[str] = None) -> None:
        if fork >= since:
            t[opcode] = Operation(handler, gas, inputs, outputs, name or opcode_name(opcode))

    reg(Op.STOP, op_stop, G_ZERO, 0, 0)
    reg(Op.ADD, op_add, G_VERY_LOW, 2, 1)
    reg(Op.MUL, op_mul, G_LOW, 2, 1)
    reg(Op.SUB, op_sub, G_VERY_LOW, 2, 1)
    reg(Op.DIV, op_div, G_LOW, 2, 1)
    reg(Op.SDIV, op_sdiv, G_LOW, 2, 1)
    reg(Op.MOD, op_mod, G_LOW, 2, 1)
    reg(Op.SMOD, op_smod, G_LOW, 2, 1)
    reg(Op.ADDMOD, op_addmod, G_MID, 3, 1)
    reg(Op.MULMOD, op_mulmod, G_MID, 3, 1)
    reg(Op.EXP, op_exp, G_EXP, 2, 1)
    reg(Op.SIGNEXTEND, op_signextend, G_LOW, 2, 1)

    reg(Op.LT, op_lt, G_VERY_LOW, 2, 1)
    reg(Op.GT, op_gt, G_VERY_LOW, 2, 1)
    reg(Op.SLT, op_slt, G_VERY_LOW, 2, 1)
    reg(Op.SGT, op_sgt, G_VERY_LOW, 2, 1)
    reg(Op.EQ, op_eq, G_VERY_LOW, 2, 1)
    reg(Op.ISZERO, op_iszero, G_VERY_LOW, 1, 1)
    reg(Op.AND, op_and, G_VERY_LOW, 2, 1)
    reg(Op.OR, op_or, G_VERY_LOW, 2, 1)
    reg(Op.XOR, op_xor, G_VERY_LOW, 2, 1)
    reg(Op.NOT, op_not, G_VERY_LOW, 1, 1)
    reg(Op.BYTE, op_byte, G_VERY_LOW, 2, 1)
    reg(Op.SHL, op_shl, G_VERY_LOW, 2, 1, Fork.CONSTANTINOPLE)
    reg(Op.SHR, op_shr, G_VERY_LOW, 2, 1, Fork.CONSTANTINOPLE)
    reg(Op.SAR, op_sar, G_VERY_LOW, 2, 1, Fork.CONSTANTINOPLE)

    reg(Op.KECCAK256, op_keccak256, G_KECCAK256, 2, 1)

    reg(Op.ADDRESS, op_address, G_BASE, 0, 1)
    reg(Op.BALANCE, op_balance, costs.balance, 1, 1)
    reg(Op.ORIGIN, op_origin, G_BASE, 0, 1)
    reg(Op.CALLER, op_caller, G_BASE, 0, 1)
    reg(Op.CALLVALUE, op_callvalue, G_BASE, 0, 1)
    reg(Op.CALLDATALOAD, op_calldataload, G_VERY_LOW, 1, 1)
    reg(Op.CALLDATASIZE, op_calldatasize, G_BASE, 0, 1)
    reg(Op.CALLDATACOPY, op_calldatacopy, G_VERY_LOW, 3, 0)
    reg(Op.CODESIZE, op_codesize, G_BASE, 0, 1)
    reg(Op.CODECOPY, op_codecopy, G_VERY_LOW, 3, 0)
    reg(Op.GASPRICE, op_gasprice, G_BASE, 0, 1)
    reg(Op.EXTCODESIZE, op_extcodesize, costs.extcode, 1, 1)
    reg(Op.EXTCODECOPY, op_extcodecopy, costs.extcode, 4, 0)
    reg(Op.RETURNDATASIZE, op_returndatasize, G_BASE, 0, 1, Fork.BYZANTIUM)
    reg(Op.RETURNDATACOPY, op_returndatacopy, G_VERY_LOW, 3, 0, Fork.BYZANTIUM)
    reg(Op.EXTCODEHASH, op_extcodehash, costs.extcodehash, 1, 1, Fork.CONSTANTINOPLE)

    reg(Op.BLOCKHASH, op_blockhash, G_BLOCKHASH, 1, 1)
    reg(Op.COINBASE, op_coinbase, G_BASE, 0, 1)
    reg(Op.TIMESTAMP, op_timestamp, G_BASE, 0, 1)
    reg(Op.NUMBER, op_number, G_BASE, 0, 1)
    if fork >= Fork.MERGE:
        reg(Op.PREVRANDAO, op_prevrandao, G_BASE, 0, 1)
    else:
        reg(Op.PREVRANDAO, op_difficulty, G_BASE, 0, 1, name="DIFFICULTY")
    reg(Op.GASLIMIT, op_gaslimit, G_BASE, 0, 1)
    reg(Op.CHAINID, op_chainid, G_BASE, 0, 1, Fork.ISTANBUL)
    reg(Op.SELFBALANCE, op_selfbalance, G_LOW, 0, 1, Fork.ISTANBUL)
    reg(Op.BASEFEE, op_basefee, G_BASE, 0, 1, Fork.LONDON)
    reg(Op.BLOBHASH, op_blobhash, G_VERY_LOW, 1, 1, Fork.CANCUN)
    reg(Op.BLOBBASEFEE, op_blobbasefee, G_BASE, 0, 1, Fork.CANCUN)

    reg(Op.POP, op_pop, G_BASE, 1, 0)
    reg(Op.MLOAD, op_mload, G_VERY_LOW, 1, 1)
    reg(Op.MSTORE, op_mstore, G_VERY_LOW, 2, 0)
    reg(Op.MSTORE8, op_mstore8, G_VERY_LOW, 2, 0)
    reg(Op.SLOAD, op_sload, costs.sload, 1, 1)
    reg(Op.SSTORE, op_sstore, G_ZERO, 2, 0)
    reg(Op.JUMP, op_jump, G_MID, 1, 0)
    reg(Op.JUMPI, op_jumpi, G_HIGH, 2, 0)
    reg(Op.PC, op_pc, G_BASE, 0, 1)
    reg(Op.MSIZE, op_msize, G_BASE, 0, 1)
    reg(Op.GAS, op_gas, G_BASE, 0, 1)
    reg(Op.JUMPDEST, op_jumpdest, G_JUMPDEST, 0, 0)
    reg(Op.TLOAD, op_tload, G_WARM_ACCESS, 1, 1, Fork.CANCUN)
    reg(Op.TSTORE, op_tstore, G_WARM_ACCESS, 2, 0, Fork.CANCUN)
    reg(Op.MCOPY, op_mcopy, G_VERY_LOW, 3, 0, Fork.CANCUN)

    reg(Op.PUSH0, op_push0, G_BASE, 0, 1, Fork.SHANGHAI)
    for i in range(1, 33):
        reg(Op.PUSH1 + i - 1, _make_push(i), G_VERY_LOW, 0, 1)

    for i in range(1, 17):
        reg(Op.DUP1 + i - 1, _make_dup(i), G_VERY_LOW, i, i + 1)

    for i in range(1, 17):
        reg(Op.SWAP1 + i - 1, _make_swap(i), G_VERY_LOW, i + 1, i + 1)

    for i in range(5):
        reg(Op.LOG0 + i, _make_log(i), G_LOG, 2 + i, 0)

    reg(Op.CREATE, op_create, G_CREATE, 3, 1)
    reg(Op.CALL, op_call, costs.call, 7, 1)
    reg(Op.CALLCODE, op_callcode, costs.call, 7, 1)
    reg(Op.RETURN, op_return, G_ZERO, 2, 0)
    reg(Op.DELEGATECALL, op_delegatecall, costs.call, 6, 1, Fork.HOMESTEAD)
    reg(Op.CREATE2, op_create2, G_CREATE, 4, 1, Fork.CONSTANTINOPLE)
    reg(Op.STATICCALL, op_staticcall, costs.call, 6, 1, Fork.BYZANTIUM)
    reg(Op.REVERT, op_revert, G_ZERO, 2, 0, Fork.BYZANTIUM)
    reg(Op.INVALID, op_invalid, G_ZERO, 0, 0)
    reg(Op.SELFDESTRUCT, op_selfdestruct, costs.selfdestruct, 1, 0)

    return tuple(t)
