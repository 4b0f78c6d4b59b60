"""Shared test fixtures for the execution engine tests."""

from .addresses import (
    ALICE_ADDRESS,
    ALICE_PRIVATE_KEY,
    BOB_ADDRESS,
    CONTRACT_ADDRESS,
    OTHER_CONTRACT_ADDRESS,
    COINBASE_ADDRESS,
)
from .bytecode import bytecode, push, push_address, returning_top
