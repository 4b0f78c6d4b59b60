"""
EVM execution hook system.

Provides extension points for inspecting execution without modifying the
engine core. DefaultHook does nothing; TracingHook records every step.

A step callback may raise ExecutionAborted to stop the running frame. The
frame fails like any exceptional halt: its gas is consumed, its state
changes are reverted and the calling frame sees a failed sub-call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ethvm.vm.opcodes import opcode_name

if TYPE_CHECKING:
    from ethvm.vm.call_frame import CallFrame, CallOutcome, Message

logger = logging.getLogger(__name__)


class ExecutionHook:
    """Base hook interface. Override methods to observe the EVM."""

    # on_step and on_step_end are only called when this is set
    traces_steps = False

    def before_execution(self, tx_data: dict) -> None:
        """Called before top-level execution begins."""
        pass

    def after_execution(self, tx_data: dict, success: bool, gas_used: int) -> None:
        """Called after top-level execution completes."""
        pass

    def before_call(self, msg: Message) -> None:
        """Called before entering a new call frame (CALL/CREATE)."""
        pass

    def after_call(self, msg: Message, outcome: CallOutcome) -> None:
        """Called after returning from a call frame."""
        pass

    def on_step(self, frame: CallFrame, opcode: int) -> None:
        """Called before each instruction, ahead of its gas charge."""
        pass

    def on_step_end(self, frame: CallFrame, opcode: int) -> None:
        """Called after an instruction that did not halt its frame."""
        pass


class DefaultHook(ExecutionHook):
    """All operations are no-ops."""
    pass


@dataclass(frozen=True)
class TraceStep:
    depth: int
    pc: int
    op: str
    gas: int
    stack_size: int


class TracingHook(ExecutionHook):
    """Records one TraceStep per executed instruction."""

    traces_steps = True

    def __init__(self) -> None:
        self.steps: list[TraceStep] = []
        self.calls: list[tuple[int, str, bool]] = []

    def on_step(self, frame: CallFrame, opcode: int) -> None:
        step = TraceStep(
            depth=frame.depth,
            pc=frame.pc,
            op=opcode_name(opcode),
            gas=frame.remaining_gas,
            stack_size=len(frame.stack),
        )
        self.steps.append(step)
        logger.debug(
            "%d %4d %-14s gas=%d stack=%d",
            step.depth, step.pc, step.op, step.gas, step.stack_size,
        )

    def after_call(self, msg: Message, outcome: CallOutcome) -> None:
        self.calls.append((msg.depth, msg.kind.name, outcome.success))

    def ops(self) -> list[str]:
        return [s.op for s in self.steps]
