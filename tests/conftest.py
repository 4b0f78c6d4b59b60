"""Pytest configuration and shared fixtures for all tests."""

import pytest
from eth_utils import to_wei

from ethvm.common.config import BlockContext, VMConfig
from ethvm.vm.database import InMemoryDatabase
from ethvm.vm.evm import Evm, execute
from ethvm.vm.journal import JournaledState

from tests.fixtures.addresses import (
    ALICE_ADDRESS,
    COINBASE_ADDRESS,
    CONTRACT_ADDRESS,
)


# =============================================================================
# State Fixtures
# =============================================================================

@pytest.fixture
def db():
    """In-memory database with a funded sender."""
    database = InMemoryDatabase()
    database.set_balance(ALICE_ADDRESS, to_wei(100, "ether"))
    return database


@pytest.fixture
def state(db):
    """Journaled overlay over the funded database."""
    return JournaledState(db)


@pytest.fixture
def block():
    return BlockContext(
        number=100,
        timestamp=1_700_000_000,
        coinbase=COINBASE_ADDRESS,
        prevrandao=0x1234,
        chain_id=1337,
        base_fee=7,
    )


@pytest.fixture
def evm(state, block):
    """Frame manager on the latest fork."""
    return Evm(state, block, VMConfig())


# =============================================================================
# Execution Fixtures
# =============================================================================

@pytest.fixture
def run(db, block):
    """Deploy code at CONTRACT_ADDRESS and call it from ALICE."""
    def _run(code: bytes, **kwargs):
        db.set_code(CONTRACT_ADDRESS, code)
        kwargs.setdefault("gas_limit", 1_000_000)
        kwargs.setdefault("block", block)
        return execute(db, ALICE_ADDRESS, CONTRACT_ADDRESS, **kwargs)
    return _run


@pytest.fixture
def top(run):
    """Run code built with ``returning_top`` and decode the returned word."""
    def _top(code: bytes, **kwargs) -> int:
        result = run(code, **kwargs)
        assert result.success, result.error
        return int.from_bytes(result.output, "big")
    return _top


@pytest.fixture
def deploy(db):
    """Install code at an address in the database."""
    def _deploy(address: bytes, code: bytes, balance: int = 0) -> bytes:
        db.set_code(address, code)
        if balance:
            db.set_balance(address, balance)
        return address
    return _deploy
