"""
EVM words, stack, memory and the execution error taxonomy.

Stack: 1024-depth, 256-bit (uint256) values.
Memory: byte-addressable, expands in 32-byte words.
"""

from __future__ import annotations

from enum import Enum

UINT256_MAX = (1 << 256) - 1
UINT256_CEIL = 1 << 256
WORD_SIZE = 32
MAX_STACK_DEPTH = 1024


def to_signed(value: int) -> int:
    """Convert uint256 to signed int256."""
    if value >= (1 << 255):
        return value - UINT256_CEIL
    return value


def to_unsigned(value: int) -> int:
    """Convert signed int256 to uint256."""
    return value % UINT256_CEIL


def memory_word_size(byte_size: int) -> int:
    """Convert byte size to word (32-byte) count, rounding up."""
    return (byte_size + 31) // 32


# ---------------------------------------------------------------------------
# Halt reasons
# ---------------------------------------------------------------------------

class HaltReason(Enum):
    """Terminal outcome of one frame."""

    STOP = "stop"
    RETURN = "return"
    REVERT = "revert"
    SELFDESTRUCT = "selfdestruct"
    OUT_OF_GAS = "out of gas"
    STACK_UNDERFLOW = "stack underflow"
    STACK_OVERFLOW = "stack overflow"
    INVALID_OPCODE = "invalid opcode"
    INVALID_JUMP = "invalid jump destination"
    STATIC_VIOLATION = "state write in static context"
    RETURNDATA_OUT_OF_BOUNDS = "return data out of bounds"
    CODE_SIZE_EXCEEDED = "code size exceeded"
    INITCODE_SIZE_EXCEEDED = "init code size exceeded"
    INVALID_CODE_PREFIX = "invalid code prefix"
    CREATE_COLLISION = "create address collision"
    PRECOMPILE_FAILURE = "precompile failure"
    CALL_DEPTH_EXCEEDED = "call depth exceeded"
    INSUFFICIENT_BALANCE = "insufficient balance"
    NONCE_OVERFLOW = "nonce overflow"
    ABORTED = "aborted by hook"

    @property
    def is_success(self) -> bool:
        return self in _SUCCESS_REASONS


_SUCCESS_REASONS = frozenset(
    {HaltReason.STOP, HaltReason.RETURN, HaltReason.SELFDESTRUCT}
)


# ---------------------------------------------------------------------------
# Exceptional halts: consume all frame gas, revert the frame
# ---------------------------------------------------------------------------

class EvmError(Exception):
    """Base class for EVM execution errors."""

    reason: HaltReason


class StackOverflow(EvmError):
    reason = HaltReason.STACK_OVERFLOW


class StackUnderflow(EvmError):
    reason = HaltReason.STACK_UNDERFLOW


class InvalidJumpDest(EvmError):
    reason = HaltReason.INVALID_JUMP


class OutOfGas(EvmError):
    reason = HaltReason.OUT_OF_GAS


class WriteProtection(EvmError):
    reason = HaltReason.STATIC_VIOLATION


class InvalidOpcode(EvmError):
    reason = HaltReason.INVALID_OPCODE


class ReturnDataOutOfBounds(EvmError):
    reason = HaltReason.RETURNDATA_OUT_OF_BOUNDS


class CodeSizeExceeded(EvmError):
    reason = HaltReason.CODE_SIZE_EXCEEDED


class InitcodeSizeExceeded(EvmError):
    reason = HaltReason.INITCODE_SIZE_EXCEEDED


class InvalidCodePrefix(EvmError):
    reason = HaltReason.INVALID_CODE_PREFIX


class ExecutionAborted(EvmError):
    """Raised by an ExecutionHook to stop the current frame."""

    reason = HaltReason.ABORTED


# ---------------------------------------------------------------------------
# Normal halts: raised by handlers, caught by the interpreter loop
# ---------------------------------------------------------------------------

class Halt(Exception):
    reason: HaltReason

    def __init__(self, data: bytes = b""):
        self.data = data
        super().__init__()


class StopExecution(Halt):
    reason = HaltReason.STOP


class ReturnData(Halt):
    reason = HaltReason.RETURN


class Revert(Halt):
    """REVERT opcode: failure, but output is kept and unspent gas returned."""
    reason = HaltReason.REVERT


class SelfDestruct(Halt):
    reason = HaltReason.SELFDESTRUCT

    def __init__(self, beneficiary: bytes = b""):
        self.beneficiary = beneficiary
        super().__init__()


# ---------------------------------------------------------------------------
# Stack
# ---------------------------------------------------------------------------

class Stack:
    """EVM stack: max 1024 items, each item is a 256-bit unsigned integer."""

    __slots__ = ("_data",)

    def __init__(self) -> None:
        self._data: list[int] = []

    def push(self, value: int) -> None:
        if len(self._data) >= MAX_STACK_DEPTH:
            raise StackOverflow("Stack overflow (max 1024)")
        self._data.append(value & UINT256_MAX)

    def pop(self) -> int:
        if not self._data:
            raise StackUnderflow("Stack underflow")
        return self._data.pop()

    def peek(self, depth: int = 0) -> int:
        if depth >= len(self._data):
            raise StackUnderflow(f"Stack underflow: peek({depth})")
        return self._data[-(depth + 1)]

    def swap(self, depth: int) -> None:
        """Swap top with item at depth (1-indexed: SWAP1 uses depth=1)."""
        if depth >= len(self._data):
            raise StackUnderflow(f"Stack underflow: swap({depth})")
        idx = -(depth + 1)
        self._data[-1], self._data[idx] = self._data[idx], self._data[-1]

    def dup(self, depth: int) -> None:
        """Duplicate item at depth (1-indexed: DUP1 uses depth=1)."""
        if depth > len(self._data):
            raise StackUnderflow(f"Stack underflow: dup({depth})")
        if len(self._data) >= MAX_STACK_DEPTH:
            raise StackOverflow("Stack overflow on DUP")
        self._data.append(self._data[-depth])

    def to_list(self) -> list[int]:
        """Bottom-to-top copy of the stack contents."""
        return list(self._data)

    @property
    def size(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

class Memory:
    """EVM memory: byte-addressable, expands in 32-byte word increments.

    Memory is not gas-aware. Reads and writes past the end grow it to the
    next word boundary, so opcode handlers charge
    ``gas.memory_expansion_cost`` for the touched range before accessing it.
    """

    __slots__ = ("_data",)

    def __init__(self) -> None:
        self._data = bytearray()

    def extend(self, word_count: int) -> None:
        """Grow memory to ``word_count`` words. Never shrinks."""
        new_size = word_count * WORD_SIZE
        if new_size > len(self._data):
            self._data.extend(b"\x00" * (new_size - len(self._data)))

    def _expand(self, offset: int, size: int) -> None:
        if size == 0:
            return
        end = offset + size
        if end > len(self._data):
            self.extend(memory_word_size(end))

    def load(self, offset: int, size: int) -> bytes:
        """Read `size` bytes from memory starting at `offset`."""
        if size == 0:
            return b""
        self._expand(offset, size)
        return bytes(self._data[offset : offset + size])

    def load_word(self, offset: int) -> int:
        return int.from_bytes(self.load(offset, 32), "big")

    def store(self, offset: int, data: bytes) -> None:
        """Write bytes to memory at offset."""
        if len(data) == 0:
            return
        self._expand(offset, len(data))
        self._data[offset : offset + len(data)] = data

    def store_word(self, offset: int, value: int) -> None:
        self.store(offset, (value & UINT256_MAX).to_bytes(32, "big"))

    def store_byte(self, offset: int, value: int) -> None:
        self._expand(offset, 1)
        self._data[offset] = value & 0xFF

    def copy(self, dst: int, src: int, length: int) -> None:
        """Copy `length` bytes within memory from src to dst (MCOPY)."""
        if length == 0:
            return
        self._expand(src, length)
        self._expand(dst, length)
        data = bytes(self._data[src : src + length])
        self._data[dst : dst + length] = data

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def word_count(self) -> int:
        return len(self._data) // WORD_SIZE
