"""
Database interface: the state the engine reads from.

The engine never writes to a Database while executing. Writes are buffered
in the JournaledState and handed back as a StateDelta, which a host may
persist (``InMemoryDatabase.apply`` does this for the in-memory backend).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from ethvm.common.crypto import keccak256
from ethvm.common.types import Account, EMPTY_CODE_HASH, ZERO_HASH

if TYPE_CHECKING:
    from ethvm.vm.journal import StateDelta


class DatabaseError(Exception):
    """Raised by a Database that cannot serve a read.

    Propagates out of ``execute`` unchanged: the engine does not retry.
    """


class Database(ABC):
    """Read-only account/storage/code source for one execution."""

    @abstractmethod
    def get_account(self, address: bytes) -> Optional[Account]:
        """Get account by address, or None if not found."""
        ...

    @abstractmethod
    def get_storage(self, address: bytes, key: int) -> int:
        """Storage value, 0 when unset."""
        ...

    @abstractmethod
    def get_code(self, address: bytes) -> bytes:
        """Code deployed at address, b"" when none."""
        ...

    def get_code_hash(self, address: bytes) -> bytes:
        acc = self.get_account(address)
        if acc is None:
            return EMPTY_CODE_HASH
        return acc.code_hash

    @abstractmethod
    def get_block_hash(self, number: int) -> bytes:
        """Hash of a historical block, ZERO_HASH when unknown."""
        ...


class InMemoryDatabase(Database):
    """Dict-backed Database for tests and simulations."""

    def __init__(self) -> None:
        self._accounts: dict[bytes, Account] = {}
        self._code: dict[bytes, bytes] = {}  # code_hash -> code
        self._storage: dict[tuple[bytes, int], int] = {}  # (addr, key) -> value
        self._block_hashes: dict[int, bytes] = {}

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def get_account(self, address: bytes) -> Optional[Account]:
        acc = self._accounts.get(address)
        if acc is None:
            return None
        return Account(nonce=acc.nonce, balance=acc.balance, code_hash=acc.code_hash)

    def get_storage(self, address: bytes, key: int) -> int:
        return self._storage.get((address, key), 0)

    def get_code(self, address: bytes) -> bytes:
        acc = self._accounts.get(address)
        if acc is None or acc.code_hash == EMPTY_CODE_HASH:
            return b""
        return self._code.get(acc.code_hash, b"")

    def get_block_hash(self, number: int) -> bytes:
        return self._block_hashes.get(number, ZERO_HASH)

    def get_balance(self, address: bytes) -> int:
        acc = self._accounts.get(address)
        return acc.balance if acc else 0

    def get_nonce(self, address: bytes) -> int:
        acc = self._accounts.get(address)
        return acc.nonce if acc else 0

    def storage_of(self, address: bytes) -> dict[int, int]:
        return {k: v for (a, k), v in self._storage.items() if a == address}

    # -----------------------------------------------------------------
    # Setup helpers
    # -----------------------------------------------------------------

    def _account(self, address: bytes) -> Account:
        acc = self._accounts.get(address)
        if acc is None:
            acc = Account()
            self._accounts[address] = acc
        return acc

    def set_balance(self, address: bytes, balance: int) -> None:
        self._account(address).balance = balance

    def set_nonce(self, address: bytes, nonce: int) -> None:
        self._account(address).nonce = nonce

    def set_code(self, address: bytes, code: bytes) -> None:
        """Store code for an account, updating account's code_hash."""
        acc = self._account(address)
        if code:
            code_hash = keccak256(code)
            acc.code_hash = code_hash
            self._code[code_hash] = code
        else:
            acc.code_hash = EMPTY_CODE_HASH

    def set_storage(self, address: bytes, key: int, value: int) -> None:
        self._account(address)
        if value == 0:
            self._storage.pop((address, key), None)
        else:
            self._storage[(address, key)] = value

    def set_block_hash(self, number: int, block_hash: bytes) -> None:
        self._block_hashes[number] = block_hash

    def delete_account(self, address: bytes) -> None:
        self._accounts.pop(address, None)
        self._clear_storage(address)

    def _clear_storage(self, address: bytes) -> None:
        keys_to_remove = [k for k in self._storage if k[0] == address]
        for k in keys_to_remove:
            del self._storage[k]

    # -----------------------------------------------------------------
    # Persistence of execution results
    # -----------------------------------------------------------------

    def apply(self, delta: StateDelta) -> None:
        """Write a StateDelta produced by a successful execution."""
        for address, change in delta.accounts.items():
            if change.deleted:
                self.delete_account(address)
                continue
            if change.storage_reset:
                self._clear_storage(address)
            acc = self._account(address)
            acc.balance = change.balance
            acc.nonce = change.nonce
            if change.code is not None:
                self.set_code(address, change.code)
            for key, value in change.storage.items():
                self.set_storage(address, key, value)
