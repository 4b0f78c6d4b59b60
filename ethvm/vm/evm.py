"""
EVM frame manager and execution entry point.

Evm.call() / Evm.create() run one Message: they checkpoint the journaled
state, move value, short-circuit precompiles, run the interpreter on a
fresh CallFrame and commit or revert the checkpoint. CALL/CREATE handlers
re-enter them recursively, so nesting is plain recursion bounded by the
call depth limit.

execute() wires a Database, block context and config together and returns
an ExecutionResult for one top-level call.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from ethvm.common.address import create2_address, create_address
from ethvm.common.config import BlockContext, VMConfig
from ethvm.common.crypto import keccak256
from ethvm.common.types import ZERO_ADDRESS, Log
from ethvm.vm.call_frame import CallFrame, CallKind, CallOutcome, Message
from ethvm.vm.database import Database
from ethvm.vm.forks import G_CODEDEPOSIT, Fork
from ethvm.vm.gas import GasMeter, capped_refund, intrinsic_gas
from ethvm.vm.hooks import DefaultHook, ExecutionHook
from ethvm.vm.interpreter import run
from ethvm.vm.journal import JournaledState, StateDelta
from ethvm.vm.memory import (
    CodeSizeExceeded,
    EvmError,
    HaltReason,
    InvalidCodePrefix,
    OutOfGas,
)
from ethvm.vm.opcodes import build_opcode_table
from ethvm.vm.precompiles import PrecompileError, PrecompileOutOfGas, PrecompileRegistry

logger = logging.getLogger(__name__)

MAX_NONCE = 2**64 - 1

# Python frames needed per nested message
FRAMES_PER_CALL = 16


class Evm:
    """Runs messages against a JournaledState for one top-level execution.

    Nested messages recurse through the interpreter, so constructing an Evm
    raises the process recursion limit (never lowers it) to fit
    ``call_depth_limit`` nested frames.
    """

    def __init__(
        self,
        state: JournaledState,
        block: Optional[BlockContext] = None,
        config: Optional[VMConfig] = None,
    ) -> None:
        self.state = state
        self.block = block or BlockContext()
        self.config = config or VMConfig()
        self.costs = self.config.cost_table()
        self.fork: Fork = self.costs.fork
        self.precompiles = PrecompileRegistry.for_fork(self.fork)
        self.opcode_table = build_opcode_table(self.costs)
        self.hook: ExecutionHook = self.config.hook or DefaultHook()
        self.depth_limit = self.config.call_depth_limit
        needed = FRAMES_PER_CALL * (self.depth_limit + 1) + 1000
        if sys.getrecursionlimit() < needed:
            sys.setrecursionlimit(needed)

    # -- Helpers --

    def _fail(self, msg: Message, reason: HaltReason, gas_remaining: int = 0) -> CallOutcome:
        logger.debug("%s at depth %d failed early: %s", msg.kind.name, msg.depth, reason.value)
        return CallOutcome(success=False, gas_remaining=gas_remaining, reason=reason)

    def _frame(self, msg: Message, address: bytes, code: bytes) -> CallFrame:
        return CallFrame(
            caller=msg.caller,
            address=address,
            code_address=msg.code_address,
            origin=msg.origin,
            code=code,
            gas=GasMeter(msg.gas, self.state),
            value=msg.value,
            calldata=msg.data,
            depth=msg.depth,
            is_static=msg.is_static,
        )

    # -- CALL family --

    def call(self, msg: Message) -> CallOutcome:
        """Execute a CALL/CALLCODE/DELEGATECALL/STATICCALL message."""
        if msg.depth > self.depth_limit:
            return self._fail(msg, HaltReason.CALL_DEPTH_EXCEEDED, msg.gas)
        state = self.state
        moves_value = msg.transfers_value and msg.value > 0
        if moves_value and state.get_balance(msg.caller) < msg.value:
            return self._fail(msg, HaltReason.INSUFFICIENT_BALANCE, msg.gas)

        self.hook.before_call(msg)
        cp = state.checkpoint()
        if moves_value:
            state.transfer(msg.caller, msg.target, msg.value)
        state.touch(msg.target)

        if msg.code_address in self.precompiles:
            try:
                gas_used, output = self.precompiles.run(msg.code_address, msg.data, msg.gas)
            except PrecompileError as err:
                state.revert(cp)
                logger.debug("Precompile 0x%s failed: %s", msg.code_address.hex(), err)
                reason = (
                    HaltReason.OUT_OF_GAS if isinstance(err, PrecompileOutOfGas)
                    else HaltReason.PRECOMPILE_FAILURE
                )
                outcome = CallOutcome(success=False, reason=reason)
            else:
                state.commit(cp)
                outcome = CallOutcome(
                    success=True, gas_remaining=msg.gas - gas_used,
                    output=output, reason=HaltReason.RETURN,
                )
            self.hook.after_call(msg, outcome)
            return outcome

        code = msg.code if msg.code is not None else state.get_code(msg.code_address)
        if not code:
            state.commit(cp)
            outcome = CallOutcome(success=True, gas_remaining=msg.gas)
            self.hook.after_call(msg, outcome)
            return outcome

        frame = self._frame(msg, msg.target, code)
        result = run(frame, self)

        if result.success:
            state.commit(cp)
        else:
            state.revert(cp)

        outcome = CallOutcome(
            success=result.success,
            gas_remaining=frame.gas.remaining,
            output=result.output,
            reason=result.reason,
        )
        logger.debug(
            "%s 0x%s depth=%d -> %s gas_left=%d",
            msg.kind.name, msg.target.hex(), msg.depth,
            result.reason.value, outcome.gas_remaining,
        )
        self.hook.after_call(msg, outcome)
        return outcome

    # -- CREATE family --

    def create(self, msg: Message) -> CallOutcome:
        """Execute a CREATE/CREATE2 message whose ``code`` is the init code."""
        if msg.depth > self.depth_limit:
            return self._fail(msg, HaltReason.CALL_DEPTH_EXCEEDED, msg.gas)
        state = self.state
        costs = self.costs
        if state.get_balance(msg.caller) < msg.value:
            return self._fail(msg, HaltReason.INSUFFICIENT_BALANCE, msg.gas)
        nonce = state.get_nonce(msg.caller)
        if nonce >= MAX_NONCE:
            return self._fail(msg, HaltReason.NONCE_OVERFLOW, msg.gas)

        init_code = msg.code or b""
        state.increment_nonce(msg.caller)
        if msg.kind is CallKind.CREATE2:
            address = create2_address(
                msg.caller, (msg.salt or 0).to_bytes(32, "big"), keccak256(init_code)
            )
        else:
            address = create_address(msg.caller, nonce)
        if costs.access_lists:
            state.warm_address(address)

        msg = replace(msg, target=address, code_address=address)
        self.hook.before_call(msg)

        if state.has_code_or_nonce(address):
            outcome = CallOutcome(success=False, reason=HaltReason.CREATE_COLLISION)
            logger.debug("CREATE collision at 0x%s", address.hex())
            self.hook.after_call(msg, outcome)
            return outcome

        cp = state.checkpoint()
        state.create_account(address)
        if costs.contract_initial_nonce:
            state.set_nonce(address, costs.contract_initial_nonce)
        if msg.value:
            state.transfer(msg.caller, address, msg.value)

        frame = self._frame(msg, address, init_code)
        result = run(frame, self)

        if not result.success:
            state.revert(cp)
            outcome = CallOutcome(
                success=False,
                gas_remaining=frame.gas.remaining,
                output=result.output,
                reason=result.reason,
            )
            self.hook.after_call(msg, outcome)
            return outcome

        code = result.output
        try:
            self._deposit_code(frame, code)
        except EvmError as err:
            state.revert(cp)
            logger.debug("Code deposit at 0x%s failed: %s", address.hex(), err)
            outcome = CallOutcome(success=False, reason=err.reason)
            self.hook.after_call(msg, outcome)
            return outcome

        state.commit(cp)
        outcome = CallOutcome(
            success=True,
            gas_remaining=frame.gas.remaining,
            reason=result.reason,
            address=address,
        )
        logger.debug(
            "%s 0x%s depth=%d deployed %d bytes gas_left=%d",
            msg.kind.name, address.hex(), msg.depth, len(code), outcome.gas_remaining,
        )
        self.hook.after_call(msg, outcome)
        return outcome

    def _deposit_code(self, frame: CallFrame, code: bytes) -> None:
        """Validate, charge for and store deployed code."""
        costs = self.costs
        if costs.max_code_size is not None and len(code) > costs.max_code_size:
            raise CodeSizeExceeded(f"{len(code)} bytes > {costs.max_code_size}")
        if costs.reject_ef_code and code[:1] == b"\xef":
            raise InvalidCodePrefix("deployed code starts with 0xEF")
        try:
            frame.consume_gas(G_CODEDEPOSIT * len(code))
        except OutOfGas:
            if costs.code_deposit_oog_fails:
                raise
            # Frontier: creation succeeds with empty code
            code = b""
        self.state.set_code(frame.address, code)

    # -- Top level --

    def transact(
        self,
        caller: bytes,
        to: Optional[bytes] = None,
        *,
        code: Optional[bytes] = None,
        value: int = 0,
        data: bytes = b"",
        gas_limit: int = 30_000_000,
        access_list: Iterable[tuple[bytes, Iterable[int]]] = (),
    ) -> ExecutionResult:
        """Run one top-level call or creation and collapse the result."""
        state = self.state
        costs = self.costs
        access_list = [(addr, list(keys)) for addr, keys in access_list]
        is_create = to is None and code is None
        tx_data = {
            "sender": caller, "to": to, "value": value,
            "data": data, "gas_limit": gas_limit,
        }
        self.hook.before_execution(tx_data)

        limit = costs.max_initcode_size
        if is_create and limit is not None and len(data) > limit:
            result = ExecutionResult(
                success=False, gas_used=gas_limit,
                halt_reason=HaltReason.INITCODE_SIZE_EXCEEDED,
                error=f"init code of {len(data)} bytes exceeds {limit}",
            )
            self.hook.after_execution(tx_data, False, gas_limit)
            return result

        gas = gas_limit
        if self.config.charge_intrinsic_gas:
            intrinsic = intrinsic_gas(costs, data, is_create, access_list)
            if intrinsic > gas_limit:
                result = ExecutionResult(
                    success=False, gas_used=gas_limit,
                    halt_reason=HaltReason.OUT_OF_GAS,
                    error=f"intrinsic gas {intrinsic} exceeds gas limit {gas_limit}",
                )
                self.hook.after_execution(tx_data, False, gas_limit)
                return result
            gas -= intrinsic

        target = to if to is not None else ZERO_ADDRESS
        if costs.access_lists:
            state.warm_address(caller)
            if not is_create:
                state.warm_address(target)
            for address in self.precompiles:
                state.warm_address(address)
            if costs.warm_coinbase:
                state.warm_address(self.block.coinbase)
            for address, keys in access_list:
                state.warm_address(address)
                for key in keys:
                    state.warm_slot(address, key)

        if is_create:
            outcome = self.create(Message(
                kind=CallKind.CREATE, caller=caller, value=value,
                gas=gas, origin=caller, code=data,
            ))
        else:
            outcome = self.call(Message(
                kind=CallKind.CALL, caller=caller, target=target, code_address=target,
                value=value, data=data, gas=gas, origin=caller, code=code,
            ))

        gas_used = gas_limit - outcome.gas_remaining
        if outcome.success:
            refund = capped_refund(costs, gas_used, state.refund)
            result = ExecutionResult(
                success=True,
                gas_used=gas_used - refund,
                gas_refunded=refund,
                output=outcome.output,
                logs=state.logs,
                state_delta=state.finalize(costs.prune_empty_accounts),
                halt_reason=outcome.reason,
                created_address=outcome.address,
            )
        else:
            result = ExecutionResult(
                success=False,
                gas_used=gas_used,
                output=outcome.output,
                halt_reason=outcome.reason,
                error=outcome.reason.value,
            )

        self.hook.after_execution(tx_data, result.success, result.gas_used)
        return result


# ---------------------------------------------------------------------------
# Execution entry point
# ---------------------------------------------------------------------------

@dataclass
class ExecutionResult:
    success: bool = True
    gas_used: int = 0
    gas_refunded: int = 0
    output: bytes = b""
    logs: list[Log] = field(default_factory=list)
    state_delta: StateDelta = field(default_factory=StateDelta)
    halt_reason: HaltReason = HaltReason.STOP
    error: Optional[str] = None
    created_address: Optional[bytes] = None


def execute(
    database: Database,
    caller: bytes,
    to: Optional[bytes] = None,
    *,
    code: Optional[bytes] = None,
    value: int = 0,
    data: bytes = b"",
    gas_limit: int = 30_000_000,
    fork: Optional[Fork] = None,
    block: Optional[BlockContext] = None,
    config: Optional[VMConfig] = None,
    access_list: Iterable[tuple[bytes, Iterable[int]]] = (),
) -> ExecutionResult:
    """Execute one top-level call against ``database``.

    Args:
        database: read-only state source
        caller: sender address (20 bytes)
        to: target address; None with no ``code`` deploys ``data`` as init code
        code: bytecode to run directly at ``to`` (or the zero address)
            instead of the code stored there
        value: wei to transfer
        data: calldata or init code
        gas_limit: gas available to the call
        fork: overrides ``config.fork``
        block: block context visible to the code
        config: engine settings
        access_list: (address, [slot, ...]) pairs to pre-warm

    The database is never written; persist ``result.state_delta`` to keep
    the changes. Database errors propagate unchanged.
    """
    config = config or VMConfig()
    if fork is not None:
        config = replace(config, fork=fork)
    evm = Evm(JournaledState(database), block, config)
    return evm.transact(
        caller, to,
        code=code, value=value, data=data,
        gas_limit=gas_limit, access_list=access_list,
    )
