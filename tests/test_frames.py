"""Tests for nested message calls, contract creation and their rollbacks."""

import pytest
from eth_utils import keccak

from ethvm.common.address import create2_address, create_address
from ethvm.common.config import VMConfig
from ethvm.vm.call_frame import CallKind, Message
from ethvm.vm.evm import execute
from ethvm.vm.forks import Fork
from ethvm.vm.gas import max_call_gas
from ethvm.vm.hooks import ExecutionHook
from ethvm.vm.memory import HaltReason
from ethvm.vm.opcodes import Op
from ethvm.vm.precompiles import ECPAIRING, ECRECOVER, IDENTITY

from tests.fixtures import (
    ALICE_ADDRESS,
    BOB_ADDRESS,
    CONTRACT_ADDRESS,
    OTHER_CONTRACT_ADDRESS,
    bytecode,
    push,
    push_address,
    returning_top,
)

# Deploys a single STOP byte
INIT_CODE = bytecode(push(1), push(0), Op.RETURN)


class RecordingHook(ExecutionHook):
    def __init__(self):
        self.entered = []
        self.outcomes = []

    def before_call(self, msg):
        self.entered.append(msg)

    def after_call(self, msg, outcome):
        self.outcomes.append((msg, outcome))

    def outcome_at(self, depth):
        return next(o for m, o in self.outcomes if m.depth == depth)


def call(target, *, kind=Op.CALL, value=0, gas=None, args=(0, 0), ret=(0, 32)):
    """Code for a CALL-family instruction; forwards all gas unless ``gas`` is set."""
    ops = [push(ret[1]), push(ret[0]), push(args[1]), push(args[0])]
    if kind in (Op.CALL, Op.CALLCODE):
        ops.append(push(value))
    ops.append(push_address(target))
    ops.append(Op.GAS if gas is None else push(gas))
    ops.append(kind)
    return bytecode(*ops)


def factory(init_code, kind=Op.CREATE, salt=0, value=0):
    """Code storing ``init_code`` (at most 32 bytes) in memory and creating from it."""
    n = len(init_code)
    ops = [push(int.from_bytes(init_code, "big"), n), push(0), Op.MSTORE]
    if kind == Op.CREATE2:
        ops.append(push(salt))
    ops += [push(n), push(32 - n), push(value), kind]
    return bytecode(*ops)


def returning(size: int) -> bytes:
    """Init code returning ``size`` zero bytes, valid on every fork."""
    return bytecode(push(size, 2), push(0, 1), Op.RETURN)


def returned_address(result) -> bytes:
    return result.output[12:32]


@pytest.fixture
def hook():
    return RecordingHook()


# ---------------------------------------------------------------------------
# Message calls
# ---------------------------------------------------------------------------

class TestCall:
    def test_callee_output_copied(self, run, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, returning_top(push(0x42)))
        result = run(bytecode(call(OTHER_CONTRACT_ADDRESS), Op.POP, push(32), push(0), Op.RETURN))
        assert result.success
        assert int.from_bytes(result.output, "big") == 0x42

    def test_success_flag(self, top, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, bytecode(Op.STOP))
        assert top(returning_top(call(OTHER_CONTRACT_ADDRESS))) == 1

    def test_call_to_account_without_code(self, top):
        assert top(returning_top(call(BOB_ADDRESS), Op.POP, Op.RETURNDATASIZE)) == 0

    def test_requested_gas_forwarded_exactly(self, top, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, returning_top(Op.GAS))
        code = bytecode(call(OTHER_CONTRACT_ADDRESS, gas=5000), Op.POP, push(32), push(0), Op.RETURN)
        # the callee's GAS instruction costs 2
        assert top(code) == 4998

    def test_forwarded_gas_capped_at_63_64(self, top, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, returning_top(Op.GAS))
        code = bytecode(
            call(OTHER_CONTRACT_ADDRESS, gas=2**256 - 1), Op.POP, push(32), push(0), Op.RETURN
        )
        # 17 gas of pushes, then CALL: warm base, one word of memory, cold surcharge
        available = 100_000 - 17 - 100 - 3 - 2500
        assert top(code, gas_limit=100_000) == max_call_gas(available) - 2

    def test_value_transfer(self, run, db):
        db.set_balance(CONTRACT_ADDRESS, 1000)
        result = run(bytecode(call(BOB_ADDRESS, value=300, ret=(0, 0)), Op.STOP))
        assert result.success
        assert result.state_delta[BOB_ADDRESS].balance == 300
        assert result.state_delta[CONTRACT_ADDRESS].balance == 700
        # pushes and GAS, base + cold + value + new account, minus the unused stipend
        assert result.gas_used == 16 + 100 + 2500 + 9000 + 25000 - 2300

    def test_insufficient_balance_pushes_zero(self, top):
        assert top(returning_top(call(BOB_ADDRESS, value=1, ret=(0, 0)))) == 0

    def test_child_revert_rolls_back_child_only(self, run, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, bytecode(
            push(1), push(1), Op.SSTORE,
            push(0x99), push(0), Op.MSTORE, push(32), push(0), Op.REVERT,
        ))
        result = run(bytecode(
            call(OTHER_CONTRACT_ADDRESS), push(7), push(1), Op.SSTORE,
            push(32), push(0), Op.RETURN,
        ))
        assert result.success
        # revert data still reaches the caller
        assert int.from_bytes(result.output, "big") == 0x99
        assert result.state_delta[CONTRACT_ADDRESS].storage == {1: 7}
        assert OTHER_CONTRACT_ADDRESS not in result.state_delta

    def test_child_revert_discards_refund(self, run, db, deploy):
        db.set_storage(OTHER_CONTRACT_ADDRESS, 0, 1)
        deploy(OTHER_CONTRACT_ADDRESS, bytecode(
            push(0), push(0), Op.SSTORE, push(0), push(0), Op.REVERT,
        ))
        result = run(bytecode(call(OTHER_CONTRACT_ADDRESS, ret=(0, 0)), Op.STOP))
        assert result.success
        assert result.gas_refunded == 0

    def test_exceptional_child_consumes_forwarded_gas(self, run, deploy, hook):
        deploy(OTHER_CONTRACT_ADDRESS, bytecode(Op.INVALID))
        result = run(
            bytecode(call(OTHER_CONTRACT_ADDRESS, gas=10_000), Op.STOP),
            config=VMConfig(hook=hook),
        )
        assert result.success
        outcome = hook.outcome_at(1)
        assert outcome.reason is HaltReason.INVALID_OPCODE
        assert outcome.gas_remaining == 0
        assert result.gas_used > 10_000


class TestCallContext:
    STORE_CONTEXT = bytecode(
        Op.CALLER, push(0), Op.SSTORE,
        Op.CALLVALUE, push(1), Op.SSTORE,
        Op.ADDRESS, push(2), Op.SSTORE,
    )

    def test_delegatecall_keeps_caller_and_value(self, run, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, self.STORE_CONTEXT)
        result = run(
            bytecode(call(OTHER_CONTRACT_ADDRESS, kind=Op.DELEGATECALL), Op.STOP), value=5
        )
        assert result.success
        assert result.state_delta[CONTRACT_ADDRESS].storage == {
            0: int.from_bytes(ALICE_ADDRESS, "big"),
            1: 5,
            2: int.from_bytes(CONTRACT_ADDRESS, "big"),
        }
        assert OTHER_CONTRACT_ADDRESS not in result.state_delta

    def test_callcode_runs_in_callers_storage(self, run, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, self.STORE_CONTEXT)
        result = run(bytecode(call(OTHER_CONTRACT_ADDRESS, kind=Op.CALLCODE), Op.STOP))
        contract = int.from_bytes(CONTRACT_ADDRESS, "big")
        assert result.state_delta[CONTRACT_ADDRESS].storage == {0: contract, 2: contract}

    def test_call_uses_callee_storage(self, run, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, self.STORE_CONTEXT)
        result = run(bytecode(call(OTHER_CONTRACT_ADDRESS), Op.STOP))
        assert result.state_delta[CONTRACT_ADDRESS].storage == {}
        caller = result.state_delta[OTHER_CONTRACT_ADDRESS].storage[0]
        assert caller == int.from_bytes(CONTRACT_ADDRESS, "big")


class TestStaticCall:
    @pytest.mark.parametrize("callee", [
        bytecode(push(1), push(0), Op.SSTORE),
        bytecode(push(1), push(0), Op.TSTORE),
        bytecode(push(0), push(0), Op.LOG0),
        bytecode(push(0), push(0), push(0), Op.CREATE),
        bytecode(push_address(BOB_ADDRESS), Op.SELFDESTRUCT),
        call(BOB_ADDRESS, value=1, ret=(0, 0)),
    ], ids=["sstore", "tstore", "log", "create", "selfdestruct", "call-value"])
    def test_writes_fail(self, top, deploy, callee):
        deploy(OTHER_CONTRACT_ADDRESS, callee)
        assert top(returning_top(call(OTHER_CONTRACT_ADDRESS, kind=Op.STATICCALL))) == 0

    def test_reads_allowed(self, top, deploy):
        deploy(OTHER_CONTRACT_ADDRESS, bytecode(push(0), Op.SLOAD, Op.POP, Op.STOP))
        assert top(returning_top(call(OTHER_CONTRACT_ADDRESS, kind=Op.STATICCALL))) == 1

    def test_violation_rolls_back(self, run, deploy, hook):
        deploy(OTHER_CONTRACT_ADDRESS, bytecode(push(1), push(0), Op.SSTORE))
        result = run(
            returning_top(call(OTHER_CONTRACT_ADDRESS, kind=Op.STATICCALL)),
            config=VMConfig(hook=hook),
        )
        assert result.success
        assert OTHER_CONTRACT_ADDRESS not in result.state_delta
        assert hook.outcome_at(1).reason is HaltReason.STATIC_VIOLATION

    @pytest.mark.parametrize("callee_tail, balance_cost", [
        (bytecode(push(1), push(0), Op.SSTORE), 2600),
        (bytecode(Op.STOP), 100),
    ], ids=["violation", "clean-exit"])
    def test_violation_undoes_warm_accounts(self, run, deploy, hook, callee_tail, balance_cost):
        # OTHER touches BOB before its own fate is decided
        deploy(OTHER_CONTRACT_ADDRESS, bytecode(call(BOB_ADDRESS, ret=(0, 0)), Op.POP, callee_tail))
        result = run(
            returning_top(
                call(OTHER_CONTRACT_ADDRESS, kind=Op.STATICCALL), Op.POP,
                Op.GAS, push_address(BOB_ADDRESS), Op.BALANCE, Op.POP, Op.GAS,
                Op.SWAP1, Op.SUB,
            ),
            config=VMConfig(hook=hook),
        )
        assert result.success
        # PUSH20, BALANCE, POP and the second GAS
        assert int.from_bytes(result.output, "big") == 3 + balance_cost + 2 + 2
        assert hook.outcome_at(2).success

    def test_static_flag_is_inherited(self, run, deploy):
        inner = b"\xc2" * 20
        deploy(inner, bytecode(push(1), push(0), Op.SSTORE))
        # OTHER does a plain CALL to inner and returns that call's flag
        deploy(OTHER_CONTRACT_ADDRESS, returning_top(call(inner, ret=(0, 0))))
        result = run(bytecode(
            call(OTHER_CONTRACT_ADDRESS, kind=Op.STATICCALL), Op.POP,
            push(32), push(0), Op.RETURN,
        ))
        assert result.success
        assert int.from_bytes(result.output, "big") == 0
        assert inner not in result.state_delta


class TestCallDepth:
    RECURSE = bytecode(push(0), push(0), push(0), push(0), push(0), Op.ADDRESS, Op.GAS, Op.CALL)

    def test_depth_limit(self, run, hook):
        result = run(self.RECURSE, config=VMConfig(call_depth_limit=3, hook=hook))
        assert result.success
        assert max(msg.depth for msg in hook.entered) == 3
        # the call that would go to depth 4 never starts a frame
        assert len(hook.entered) == 4

    def test_default_limit_end_to_end(self, run, hook):
        # 63/64 forwarding needs a large budget to reach the bottom
        result = run(self.RECURSE, config=VMConfig(hook=hook), gas_limit=10**12)
        assert result.success
        assert max(msg.depth for msg in hook.entered) == 1024
        assert len(hook.entered) == 1025
        assert hook.outcome_at(1024).success

    def test_message_too_deep(self, evm):
        msg = Message(
            CallKind.CALL, caller=ALICE_ADDRESS, target=BOB_ADDRESS,
            code_address=BOB_ADDRESS, gas=1000, depth=1025,
        )
        outcome = evm.call(msg)
        assert not outcome.success
        assert outcome.reason is HaltReason.CALL_DEPTH_EXCEEDED
        assert outcome.gas_remaining == 1000

    def test_deepest_allowed_message(self, evm):
        msg = Message(
            CallKind.CALL, caller=ALICE_ADDRESS, target=BOB_ADDRESS,
            code_address=BOB_ADDRESS, gas=1000, depth=1024,
        )
        assert evm.call(msg).success


class TestInsufficientBalance:
    def test_message_fails_without_side_effects(self, evm, state, hook):
        evm.hook = hook
        length = state.journal_length
        outcome = evm.call(Message(
            CallKind.CALL, caller=BOB_ADDRESS, target=CONTRACT_ADDRESS,
            code_address=CONTRACT_ADDRESS, value=1, gas=1000,
        ))
        assert not outcome.success
        assert outcome.reason is HaltReason.INSUFFICIENT_BALANCE
        assert outcome.gas_remaining == 1000
        assert state.journal_length == length
        assert hook.entered == []

    def test_top_level(self, db):
        result = execute(db, BOB_ADDRESS, CONTRACT_ADDRESS, value=1, gas_limit=50_000)
        assert not result.success
        assert result.halt_reason is HaltReason.INSUFFICIENT_BALANCE
        assert result.gas_used == 0
        assert not result.state_delta


# ---------------------------------------------------------------------------
# Precompiles reached through CALL
# ---------------------------------------------------------------------------

class TestPrecompileCalls:
    def test_identity(self, run):
        result = run(bytecode(
            push(0x42), push(0), Op.MSTORE,
            call(IDENTITY, args=(0, 32), ret=(32, 32)), Op.POP,
            push(32), push(32), Op.RETURN,
        ))
        assert int.from_bytes(result.output, "big") == 0x42

    def test_malformed_input_consumes_gas(self, run, hook):
        code = returning_top(call(ECPAIRING, gas=50_000, args=(0, 100), ret=(0, 0)))
        result = run(code, config=VMConfig(hook=hook))
        assert result.success
        assert int.from_bytes(result.output, "big") == 0
        outcome = hook.outcome_at(1)
        assert (outcome.success, outcome.gas_remaining, outcome.output) == (False, 0, b"")
        assert outcome.reason is HaltReason.PRECOMPILE_FAILURE
        assert result.gas_used > 50_000

    def test_failure_clears_return_data(self, top):
        code = returning_top(
            call(ECPAIRING, gas=50_000, args=(0, 100), ret=(0, 0)), Op.POP, Op.RETURNDATASIZE
        )
        assert top(code) == 0

    def test_out_of_gas(self, run, hook):
        code = returning_top(call(ECRECOVER, gas=2999, args=(0, 128), ret=(0, 0)))
        result = run(code, config=VMConfig(hook=hook))
        assert int.from_bytes(result.output, "big") == 0
        assert hook.outcome_at(1).reason is HaltReason.OUT_OF_GAS


# ---------------------------------------------------------------------------
# Contract creation
# ---------------------------------------------------------------------------

class TestCreate:
    def test_create_from_contract(self, run):
        result = run(returning_top(factory(INIT_CODE)))
        child = create_address(CONTRACT_ADDRESS, 0)
        assert returned_address(result) == child
        delta = result.state_delta
        assert delta[child].code == b"\x00"
        assert delta[child].nonce == 1
        assert delta[CONTRACT_ADDRESS].nonce == 1

    def test_create_with_value(self, run, db):
        db.set_balance(CONTRACT_ADDRESS, 50)
        result = run(returning_top(factory(INIT_CODE, value=20)))
        child = returned_address(result)
        assert result.state_delta[child].balance == 20
        assert result.state_delta[CONTRACT_ADDRESS].balance == 30

    def test_failed_init_still_bumps_nonce(self, run):
        result = run(returning_top(factory(bytecode(Op.INVALID))))
        assert int.from_bytes(result.output, "big") == 0
        assert result.state_delta[CONTRACT_ADDRESS].nonce == 1

    def test_revert_data_visible_to_creator(self, top):
        init = bytecode(push(0xAB), push(0), Op.MSTORE, push(32), push(0), Op.REVERT)
        assert top(returning_top(factory(init), Op.POP, Op.RETURNDATASIZE)) == 32

    def test_success_leaves_no_return_data(self, top):
        assert top(returning_top(factory(INIT_CODE), Op.POP, Op.RETURNDATASIZE)) == 0

    def test_top_level_create(self, db, block):
        result = execute(db, ALICE_ADDRESS, data=INIT_CODE, block=block)
        assert result.success
        expected = create_address(ALICE_ADDRESS, 0)
        assert result.created_address == expected
        assert result.output == b""
        assert result.state_delta[ALICE_ADDRESS].nonce == 1
        assert result.state_delta[expected].code == b"\x00"
        assert result.state_delta[expected].nonce == 1
        # init code (3 + 2 + memory 3) plus 200 per deployed byte
        assert result.gas_used == 8 + 200


class TestCreate2:
    def test_address(self, run):
        result = run(returning_top(factory(INIT_CODE, Op.CREATE2, salt=0x5A)))
        expected = create2_address(CONTRACT_ADDRESS, (0x5A).to_bytes(32, "big"), keccak(INIT_CODE))
        assert returned_address(result) == expected

    def test_same_salt_twice_collides(self, run, hook):
        result = run(bytecode(
            factory(INIT_CODE, Op.CREATE2, salt=1), push(32), Op.MSTORE,
            factory(INIT_CODE, Op.CREATE2, salt=1), push(64), Op.MSTORE,
            push(64), push(32), Op.RETURN,
        ), config=VMConfig(hook=hook))
        assert result.output[12:32] == create2_address(
            CONTRACT_ADDRESS, (1).to_bytes(32, "big"), keccak(INIT_CODE)
        )
        assert result.output[32:] == bytes(32)
        creates = [o for m, o in hook.outcomes if m.kind is CallKind.CREATE2]
        collision = creates[-1]
        assert collision.reason is HaltReason.CREATE_COLLISION
        assert collision.gas_remaining == 0

    def test_deterministic_until_applied(self, run, db):
        code = returning_top(factory(INIT_CODE, Op.CREATE2, salt=7))
        first = run(code)
        second = run(code)
        assert first.output == second.output != bytes(32)
        db.apply(first.state_delta)
        assert run(code).output == bytes(32)


class TestCodeDeposit:
    @pytest.mark.parametrize("size, success", [(24576, True), (24577, False)])
    def test_code_size_limit(self, db, size, success):
        result = execute(db, ALICE_ADDRESS, data=returning(size), gas_limit=10_000_000)
        assert result.success is success
        if success:
            assert len(result.state_delta[result.created_address].code) == size
        else:
            assert result.halt_reason is HaltReason.CODE_SIZE_EXCEEDED
            assert result.gas_used == 10_000_000
            assert result.created_address is None

    def test_no_limit_before_spurious_dragon(self, db):
        result = execute(
            db, ALICE_ADDRESS, data=returning(24577), gas_limit=10_000_000, fork=Fork.HOMESTEAD
        )
        assert result.success

    def test_configured_code_size(self, db):
        config = VMConfig(max_code_size=10)
        assert execute(db, ALICE_ADDRESS, data=returning(10), config=config).success
        result = execute(db, ALICE_ADDRESS, data=returning(11), config=config)
        assert result.halt_reason is HaltReason.CODE_SIZE_EXCEEDED

    def test_ef_prefix(self, db):
        init = bytecode(push(0xEF), push(0, 1), Op.MSTORE8, push(1), push(0, 1), Op.RETURN)
        london = execute(db, ALICE_ADDRESS, data=init, fork=Fork.LONDON)
        assert london.halt_reason is HaltReason.INVALID_CODE_PREFIX
        berlin = execute(db, ALICE_ADDRESS, data=init, fork=Fork.BERLIN)
        assert berlin.success
        assert berlin.state_delta[berlin.created_address].code == b"\xef"

    def test_deposit_out_of_gas(self, db):
        # 18 gas of init code, then 100 bytes * 200 does not fit
        init = bytecode(push(100), push(0, 1), Op.RETURN)
        homestead = execute(db, ALICE_ADDRESS, data=init, gas_limit=10_000, fork=Fork.HOMESTEAD)
        assert not homestead.success
        assert homestead.halt_reason is HaltReason.OUT_OF_GAS
        assert homestead.gas_used == 10_000

    def test_frontier_keeps_empty_contract(self, db):
        init = bytecode(push(100), push(0, 1), Op.RETURN)
        result = execute(db, ALICE_ADDRESS, data=init, gas_limit=10_000, fork=Fork.FRONTIER)
        assert result.success
        assert result.gas_used == 18
        assert result.state_delta[result.created_address].code == b""


class TestInitcodeSize:
    def test_over_limit_halts_creator(self, run):
        result = run(bytecode(push(49153, 2), push(0), push(0), Op.CREATE))
        assert not result.success
        assert result.halt_reason is HaltReason.INITCODE_SIZE_EXCEEDED

    def test_at_limit(self, top):
        # all-zero init code is a STOP and deploys nothing
        assert top(returning_top(push(49152, 2), push(0), push(0), Op.CREATE)) != 0

    @pytest.mark.parametrize("config", [
        VMConfig(),
        VMConfig(charge_intrinsic_gas=True),
    ], ids=["plain", "intrinsic"])
    def test_top_level_over_limit(self, db, config):
        result = execute(db, ALICE_ADDRESS, data=bytes(49153), gas_limit=10_000_000, config=config)
        assert not result.success
        assert result.halt_reason is HaltReason.INITCODE_SIZE_EXCEEDED
        assert result.gas_used == 10_000_000
        assert result.created_address is None
        assert not result.state_delta

    def test_top_level_at_limit(self, db):
        result = execute(db, ALICE_ADDRESS, data=bytes(49152), gas_limit=10_000_000)
        assert result.success
        assert result.created_address == create_address(ALICE_ADDRESS, 0)

    def test_top_level_no_limit_before_shanghai(self, db):
        result = execute(db, ALICE_ADDRESS, data=bytes(49153), gas_limit=10_000_000, fork=Fork.LONDON)
        assert result.success


# ---------------------------------------------------------------------------
# SELFDESTRUCT
# ---------------------------------------------------------------------------

class TestSelfdestruct:
    CODE = bytecode(push_address(BOB_ADDRESS), Op.SELFDESTRUCT)

    def test_cancun_only_moves_balance(self, run, db):
        db.set_balance(CONTRACT_ADDRESS, 100)
        result = run(self.CODE)
        assert result.success
        assert result.halt_reason is HaltReason.SELFDESTRUCT
        delta = result.state_delta
        assert delta[BOB_ADDRESS].balance == 100
        assert delta[CONTRACT_ADDRESS].balance == 0
        assert not delta[CONTRACT_ADDRESS].deleted
        # push, base, cold beneficiary, new account
        assert result.gas_used == 3 + 5000 + 2600 + 25000

    def test_shanghai_deletes_account(self, run, db):
        db.set_balance(CONTRACT_ADDRESS, 100)
        result = run(self.CODE, fork=Fork.SHANGHAI)
        assert result.state_delta[CONTRACT_ADDRESS].deleted
        assert result.state_delta[BOB_ADDRESS].balance == 100

    def test_berlin_refund(self, run, db):
        db.set_balance(CONTRACT_ADDRESS, 100)
        result = run(self.CODE, fork=Fork.BERLIN)
        spent = 3 + 5000 + 2600 + 25000
        assert result.gas_refunded == spent // 2
        assert result.gas_used == spent - spent // 2

    def test_cancun_contract_created_in_same_execution(self, run, db):
        db.set_balance(CONTRACT_ADDRESS, 10)
        result = run(returning_top(factory(self.CODE, value=10)))
        child = returned_address(result)
        assert child != bytes(20)
        assert child not in result.state_delta
        assert result.state_delta[BOB_ADDRESS].balance == 10
