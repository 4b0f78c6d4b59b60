"""
EVM Call Frame: a single execution context.

Each CALL/CALLCODE/DELEGATECALL/STATICCALL/CREATE/CREATE2 is described by a
Message; the frame manager turns it into a CallFrame when bytecode has to
run, and reports back with a CallOutcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ethvm.common.types import ZERO_ADDRESS
from ethvm.vm.gas import GasMeter
from ethvm.vm.memory import HaltReason, Memory, Stack

MAX_CALL_DEPTH = 1024


class CallKind(Enum):
    CALL = "call"
    CALLCODE = "callcode"
    DELEGATECALL = "delegatecall"
    STATICCALL = "staticcall"
    CREATE = "create"
    CREATE2 = "create2"


@dataclass
class Message:
    """Parameters of one sub-execution."""

    kind: CallKind
    caller: bytes
    target: bytes = field(default_factory=lambda: ZERO_ADDRESS)  # storage/balance context
    code_address: bytes = field(default_factory=lambda: ZERO_ADDRESS)
    value: int = 0
    data: bytes = b""
    gas: int = 0
    depth: int = 0
    is_static: bool = False
    origin: bytes = field(default_factory=lambda: ZERO_ADDRESS)

    # Only CALL and CALLCODE move ``value``; DELEGATECALL just reports it
    transfers_value: bool = True

    # CREATE2 salt
    salt: Optional[int] = None

    # Code to run instead of the code stored at ``code_address``
    code: Optional[bytes] = None


@dataclass
class CallOutcome:
    """What a finished sub-execution hands back to its caller."""

    success: bool
    gas_remaining: int = 0
    output: bytes = b""
    reason: HaltReason = HaltReason.STOP
    address: Optional[bytes] = None  # deployed contract, CREATE only


@dataclass
class CallFrame:
    """One frame in the EVM call stack."""

    # Execution context
    caller: bytes = field(default_factory=lambda: ZERO_ADDRESS)
    address: bytes = field(default_factory=lambda: ZERO_ADDRESS)
    code_address: bytes = field(default_factory=lambda: ZERO_ADDRESS)
    origin: bytes = field(default_factory=lambda: ZERO_ADDRESS)

    # Code being executed
    code: bytes = b""
    pc: int = 0

    gas: GasMeter = field(default_factory=lambda: GasMeter(0))

    # Value & calldata
    value: int = 0
    calldata: bytes = b""

    # Depth in call stack
    depth: int = 0

    # Static flag (STATICCALL)
    is_static: bool = False

    # Stack & memory (created fresh per frame)
    stack: Stack = field(default_factory=Stack)
    memory: Memory = field(default_factory=Memory)

    # Return data from the last sub-call
    return_data: bytes = b""

    # Valid JUMPDEST positions (lazily computed)
    _valid_jumpdests: Optional[frozenset[int]] = field(default=None, repr=False)

    @property
    def valid_jumpdests(self) -> frozenset[int]:
        if self._valid_jumpdests is None:
            self._valid_jumpdests = compute_valid_jumpdests(self.code)
        return self._valid_jumpdests

    def consume_gas(self, amount: int) -> None:
        """Consume gas, raising OutOfGas if insufficient."""
        self.gas.charge(amount)

    @property
    def remaining_gas(self) -> int:
        return self.gas.remaining

    def read_immediate(self, size: int) -> int:
        """Immediate operand after the current opcode; bytes past the end read as zero."""
        start = self.pc + 1
        data = self.code[start:start + size]
        return int.from_bytes(data.ljust(size, b"\x00"), "big")


def compute_valid_jumpdests(code: bytes) -> frozenset[int]:
    """Pre-compute the set of valid JUMPDEST positions in bytecode.

    PUSH instructions' immediate data bytes are not valid jump targets.
    """
    valid = set()
    i = 0
    while i < len(code):
        op = code[i]
        if op == 0x5B:  # JUMPDEST
            valid.add(i)
        # PUSH1..PUSH32: skip immediate bytes
        if 0x60 <= op <= 0x7F:
            i += op - 0x5F
        i += 1
    return frozenset(valid)
