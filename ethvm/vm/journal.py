"""
Journaled state overlay.

Every mutation made during an execution is applied to an in-memory overlay
of the Database and recorded as a journal entry holding the value it
replaced. A checkpoint is an index into the entry log; reverting to it
undoes the entries after it in reverse order. Nothing reaches the Database
during execution: ``finalize`` turns the overlay into a StateDelta.

Warm/cold access sets, transient storage, logs and the refund counter are
journaled the same way, so a reverted frame leaves no trace in any of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from ethvm.common.crypto import keccak256
from ethvm.common.types import EMPTY_CODE_HASH, Log
from ethvm.vm.database import Database

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cached account
# ---------------------------------------------------------------------------

@dataclass
class CachedAccount:
    """Overlay copy of one account."""

    balance: int = 0
    nonce: int = 0
    code_hash: bytes = EMPTY_CODE_HASH
    code: Optional[bytes] = None  # loaded lazily
    storage: dict[int, int] = field(default_factory=dict)
    original_storage: dict[int, int] = field(default_factory=dict)

    # Present in the database or brought into existence during execution
    exists: bool = False
    # Deployed (or re-created) during this execution: database storage is void
    created: bool = False
    destroyed: bool = False
    touched: bool = False

    db_code_hash: bytes = EMPTY_CODE_HASH
    in_db: bool = False

    def is_empty(self) -> bool:
        return self.nonce == 0 and self.balance == 0 and self.code_hash == EMPTY_CODE_HASH


# ---------------------------------------------------------------------------
# Journal entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JournalEntry:
    def undo(self, state: JournaledState) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class AccountTouched(JournalEntry):
    address: bytes
    previous_exists: bool
    previous_touched: bool

    def undo(self, state: JournaledState) -> None:
        acc = state._accounts[self.address]
        acc.exists = self.previous_exists
        acc.touched = self.previous_touched


@dataclass(frozen=True)
class BalanceChanged(JournalEntry):
    address: bytes
    previous: int

    def undo(self, state: JournaledState) -> None:
        state._accounts[self.address].balance = self.previous


@dataclass(frozen=True)
class NonceChanged(JournalEntry):
    address: bytes
    previous: int

    def undo(self, state: JournaledState) -> None:
        state._accounts[self.address].nonce = self.previous


@dataclass(frozen=True)
class CodeChanged(JournalEntry):
    address: bytes
    previous_code: Optional[bytes]
    previous_hash: bytes

    def undo(self, state: JournaledState) -> None:
        acc = state._accounts[self.address]
        acc.code = self.previous_code
        acc.code_hash = self.previous_hash


@dataclass(frozen=True)
class StorageChanged(JournalEntry):
    address: bytes
    key: int
    previous: int

    def undo(self, state: JournaledState) -> None:
        state._accounts[self.address].storage[self.key] = self.previous


@dataclass(frozen=True)
class AccountCreated(JournalEntry):
    address: bytes
    previous_storage: dict = field(hash=False, compare=False)
    previous_created: bool = False

    def undo(self, state: JournaledState) -> None:
        acc = state._accounts[self.address]
        acc.storage = self.previous_storage
        acc.created = self.previous_created


@dataclass(frozen=True)
class AccountDestroyed(JournalEntry):
    address: bytes
    previous: bool

    def undo(self, state: JournaledState) -> None:
        state._accounts[self.address].destroyed = self.previous


@dataclass(frozen=True)
class LogEmitted(JournalEntry):
    def undo(self, state: JournaledState) -> None:
        state._logs.pop()


@dataclass(frozen=True)
class RefundChanged(JournalEntry):
    delta: int

    def undo(self, state: JournaledState) -> None:
        state._refund -= self.delta


@dataclass(frozen=True)
class AddressWarmed(JournalEntry):
    address: bytes

    def undo(self, state: JournaledState) -> None:
        state._warm_addresses.discard(self.address)


@dataclass(frozen=True)
class SlotWarmed(JournalEntry):
    address: bytes
    key: int

    def undo(self, state: JournaledState) -> None:
        state._warm_slots.discard((self.address, self.key))


@dataclass(frozen=True)
class TransientStorageChanged(JournalEntry):
    address: bytes
    key: int
    previous: int

    def undo(self, state: JournaledState) -> None:
        if self.previous:
            state._transient[(self.address, self.key)] = self.previous
        else:
            state._transient.pop((self.address, self.key), None)


@dataclass(frozen=True)
class Checkpoint:
    """Opaque marker: journal length at the time it was taken."""

    index: int
    depth: int


# ---------------------------------------------------------------------------
# State delta
# ---------------------------------------------------------------------------

@dataclass
class AccountChange:
    """Final state of one account written by an execution.

    ``code`` is None when the code was not changed. ``storage`` holds the
    slots whose value differs from the database. ``storage_reset`` means the
    account's previous storage must be dropped before applying ``storage``.
    """

    balance: int = 0
    nonce: int = 0
    code: Optional[bytes] = None
    code_hash: bytes = EMPTY_CODE_HASH
    storage: dict[int, int] = field(default_factory=dict)
    deleted: bool = False
    storage_reset: bool = False


@dataclass
class StateDelta:
    accounts: dict[bytes, AccountChange] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.accounts)

    def __contains__(self, address: bytes) -> bool:
        return address in self.accounts

    def __getitem__(self, address: bytes) -> AccountChange:
        return self.accounts[address]


# ---------------------------------------------------------------------------
# Journaled state
# ---------------------------------------------------------------------------

class JournaledState:
    """Overlay over a Database with checkpoint/commit/revert."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._accounts: dict[bytes, CachedAccount] = {}
        self._journal: list[JournalEntry] = []
        self._checkpoints: list[Checkpoint] = []
        self._logs: list[Log] = []
        self._refund = 0
        self._warm_addresses: set[bytes] = set()
        self._warm_slots: set[tuple[bytes, int]] = set()
        self._transient: dict[tuple[bytes, int], int] = {}

    # -- Checkpoints --

    def checkpoint(self) -> Checkpoint:
        cp = Checkpoint(index=len(self._journal), depth=len(self._checkpoints))
        self._checkpoints.append(cp)
        return cp

    def _pop_checkpoint(self, cp: Checkpoint) -> None:
        if cp.depth >= len(self._checkpoints) or self._checkpoints[cp.depth] != cp:
            raise ValueError(f"Unknown checkpoint {cp}")
        del self._checkpoints[cp.depth:]

    def commit(self, cp: Checkpoint) -> None:
        """Keep every change made since ``cp`` (they now belong to the parent)."""
        self._pop_checkpoint(cp)
        if not self._checkpoints:
            self._journal.clear()

    def revert(self, cp: Checkpoint) -> None:
        """Undo every change made since ``cp``, newest first."""
        self._pop_checkpoint(cp)
        undone = len(self._journal) - cp.index
        while len(self._journal) > cp.index:
            self._journal.pop().undo(self)
        logger.debug("Reverted %d journal entries to checkpoint %d", undone, cp.index)

    @property
    def journal_length(self) -> int:
        return len(self._journal)

    # -- Accounts --

    def _load(self, address: bytes) -> CachedAccount:
        acc = self._accounts.get(address)
        if acc is None:
            stored = self.db.get_account(address)
            if stored is None:
                acc = CachedAccount()
            else:
                acc = CachedAccount(
                    balance=stored.balance,
                    nonce=stored.nonce,
                    code_hash=stored.code_hash,
                    exists=True,
                    db_code_hash=stored.code_hash,
                    in_db=True,
                )
            self._accounts[address] = acc
        return acc

    def touch(self, address: bytes) -> None:
        """Bring the account into existence and mark it touched."""
        acc = self._load(address)
        if acc.exists and acc.touched:
            return
        self._journal.append(AccountTouched(address, acc.exists, acc.touched))
        acc.exists = True
        acc.touched = True

    def account_exists(self, address: bytes) -> bool:
        return self._load(address).exists

    def is_empty(self, address: bytes) -> bool:
        return self._load(address).is_empty()

    def is_dead(self, address: bytes) -> bool:
        """Non-existent or empty."""
        acc = self._load(address)
        return not acc.exists or acc.is_empty()

    def has_code_or_nonce(self, address: bytes) -> bool:
        acc = self._load(address)
        return acc.nonce != 0 or acc.code_hash != EMPTY_CODE_HASH

    def create_account(self, address: bytes) -> None:
        """Start a fresh contract at ``address``, keeping any existing balance."""
        acc = self._load(address)
        self.touch(address)
        self._journal.append(AccountCreated(address, acc.storage, acc.created))
        acc.storage = {}
        acc.created = True

    def is_created(self, address: bytes) -> bool:
        return self._load(address).created

    def destroy(self, address: bytes) -> None:
        acc = self._load(address)
        if acc.destroyed:
            return
        self._journal.append(AccountDestroyed(address, acc.destroyed))
        acc.destroyed = True

    def is_destroyed(self, address: bytes) -> bool:
        return self._load(address).destroyed

    # -- Balance / nonce --

    def get_balance(self, address: bytes) -> int:
        return self._load(address).balance

    def set_balance(self, address: bytes, balance: int) -> None:
        acc = self._load(address)
        self.touch(address)
        if acc.balance == balance:
            return
        self._journal.append(BalanceChanged(address, acc.balance))
        acc.balance = balance

    def add_balance(self, address: bytes, amount: int) -> None:
        self.set_balance(address, self.get_balance(address) + amount)

    def sub_balance(self, address: bytes, amount: int) -> None:
        self.set_balance(address, self.get_balance(address) - amount)

    def transfer(self, sender: bytes, recipient: bytes, value: int) -> bool:
        """Move ``value`` between accounts; False (and no change) if short."""
        if self.get_balance(sender) < value:
            return False
        self.sub_balance(sender, value)
        self.add_balance(recipient, value)
        return True

    def get_nonce(self, address: bytes) -> int:
        return self._load(address).nonce

    def set_nonce(self, address: bytes, nonce: int) -> None:
        acc = self._load(address)
        self.touch(address)
        if acc.nonce == nonce:
            return
        self._journal.append(NonceChanged(address, acc.nonce))
        acc.nonce = nonce

    def increment_nonce(self, address: bytes) -> None:
        self.set_nonce(address, self.get_nonce(address) + 1)

    # -- Code --

    def get_code(self, address: bytes) -> bytes:
        acc = self._load(address)
        if acc.code is None:
            if acc.code_hash == EMPTY_CODE_HASH:
                acc.code = b""
            else:
                acc.code = self.db.get_code(address)
        return acc.code

    def get_code_hash(self, address: bytes) -> bytes:
        return self._load(address).code_hash

    def set_code(self, address: bytes, code: bytes) -> None:
        acc = self._load(address)
        self.touch(address)
        self._journal.append(CodeChanged(address, acc.code, acc.code_hash))
        acc.code = code
        acc.code_hash = keccak256(code) if code else EMPTY_CODE_HASH

    # -- Storage --

    def _db_storage(self, address: bytes, acc: CachedAccount, key: int) -> int:
        value = acc.original_storage.get(key)
        if value is None:
            value = self.db.get_storage(address, key) if acc.in_db else 0
            acc.original_storage[key] = value
        return value

    def get_storage(self, address: bytes, key: int) -> int:
        acc = self._load(address)
        value = acc.storage.get(key)
        if value is None:
            value = 0 if acc.created else self._db_storage(address, acc, key)
            acc.storage[key] = value
        return value

    def get_original_storage(self, address: bytes, key: int) -> int:
        """Slot value at the start of the execution (EIP-1283/2200)."""
        acc = self._load(address)
        if acc.created:
            return 0
        return self._db_storage(address, acc, key)

    def set_storage(self, address: bytes, key: int, value: int) -> None:
        previous = self.get_storage(address, key)
        acc = self._accounts[address]
        self.touch(address)
        self._journal.append(StorageChanged(address, key, previous))
        acc.storage[key] = value

    # -- Transient storage (EIP-1153) --

    def get_transient(self, address: bytes, key: int) -> int:
        return self._transient.get((address, key), 0)

    def set_transient(self, address: bytes, key: int, value: int) -> None:
        previous = self._transient.get((address, key), 0)
        self._journal.append(TransientStorageChanged(address, key, previous))
        if value:
            self._transient[(address, key)] = value
        else:
            self._transient.pop((address, key), None)

    # -- Logs --

    def add_log(self, address: bytes, topics: list[bytes], data: bytes) -> None:
        self._journal.append(LogEmitted())
        self._logs.append(Log(address=address, topics=topics, data=data))

    @property
    def logs(self) -> list[Log]:
        return list(self._logs)

    # -- Refund counter --

    def record_refund(self, amount: int) -> None:
        if amount == 0:
            return
        self._journal.append(RefundChanged(amount))
        self._refund += amount

    @property
    def refund(self) -> int:
        return self._refund

    # -- EIP-2929 access sets --

    def is_warm_address(self, address: bytes) -> bool:
        return address in self._warm_addresses

    def warm_address(self, address: bytes) -> bool:
        """Mark address warm. Returns True if it was cold."""
        if address in self._warm_addresses:
            return False
        self._journal.append(AddressWarmed(address))
        self._warm_addresses.add(address)
        return True

    def is_warm_slot(self, address: bytes, key: int) -> bool:
        return (address, key) in self._warm_slots

    def warm_slot(self, address: bytes, key: int) -> bool:
        """Mark slot warm. Returns True if it was cold."""
        if (address, key) in self._warm_slots:
            return False
        self._journal.append(SlotWarmed(address, key))
        self._warm_slots.add((address, key))
        return True

    # -- Block data --

    def get_block_hash(self, number: int) -> bytes:
        return self.db.get_block_hash(number)

    # -- End of execution --

    def finalize(self, prune_empty: bool) -> StateDelta:
        """Collapse the overlay into the writes a host should persist."""
        if self._checkpoints:
            raise RuntimeError("finalize() with open checkpoints")
        delta = StateDelta()
        for address, acc in self._accounts.items():
            if not acc.touched:
                continue
            if acc.destroyed or (prune_empty and acc.is_empty()):
                if acc.in_db:
                    delta.accounts[address] = AccountChange(deleted=True)
                continue
            change = AccountChange(
                balance=acc.balance,
                nonce=acc.nonce,
                code_hash=acc.code_hash,
                storage_reset=acc.created and acc.in_db,
            )
            if acc.code_hash != acc.db_code_hash or acc.created:
                change.code = self.get_code(address)
            for key, value in acc.storage.items():
                if acc.created:
                    if value:
                        change.storage[key] = value
                elif value != acc.original_storage.get(key, 0):
                    change.storage[key] = value
            delta.accounts[address] = change
        return delta
