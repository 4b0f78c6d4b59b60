"""
EVM main execution loop.

run() is the fetch-decode-execute loop for one CallFrame. It returns when
the frame halts; sub-calls happen inside CALL/CREATE handlers, which call
back into the frame manager and resume the loop afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from ethvm.vm.call_frame import CallFrame
from ethvm.vm.memory import (
    MAX_STACK_DEPTH,
    EvmError,
    Halt,
    HaltReason,
    InvalidOpcode,
    StackOverflow,
    StackUnderflow,
)

if TYPE_CHECKING:
    from ethvm.vm.evm import Evm

__all__ = ["FrameResult", "HaltReason", "run"]


@dataclass
class FrameResult:
    reason: HaltReason
    output: bytes = b""
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.reason.is_success


def run(frame: CallFrame, evm: Evm) -> FrameResult:
    """Execute bytecode in the given call frame until it halts.

    On an exceptional halt all of the frame's gas is consumed and the output
    is empty. Reverting state is left to the caller.
    """
    code = frame.code
    table = evm.opcode_table
    hook = evm.hook
    trace = hook.traces_steps
    stack = frame.stack

    try:
        while frame.pc < len(code):
            opcode = code[frame.pc]
            op = table[opcode]
            if op is None:
                raise InvalidOpcode(f"Unknown opcode: 0x{opcode:02x}")

            if trace:
                hook.on_step(frame, opcode)

            depth = len(stack)
            if depth < op.inputs:
                raise StackUnderflow(f"{op.name} needs {op.inputs} items, stack has {depth}")
            if depth - op.inputs + op.outputs > MAX_STACK_DEPTH:
                raise StackOverflow(f"{op.name} would overflow the stack")

            frame.consume_gas(op.base_gas)
            op.handler(frame, evm)

            if trace:
                hook.on_step_end(frame, opcode)

        # Fell off the end of code: implicit STOP
        return FrameResult(HaltReason.STOP)

    except Halt as halt:
        return FrameResult(halt.reason, halt.data)

    except EvmError as err:
        frame.gas.consume_all()
        return FrameResult(err.reason, b"", str(err) or err.reason.value)
