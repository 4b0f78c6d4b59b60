"""
Hard-fork identifiers and per-fork cost tables.

A fork is selected once per execution; everything fork-sensitive (opcode
availability, gas prices, refund rules, size limits) is read from the
immutable CostTable returned by ``cost_table(fork)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from functools import lru_cache
from typing import Optional


class Fork(IntEnum):
    FRONTIER = 0
    HOMESTEAD = 1
    TANGERINE_WHISTLE = 2     # EIP-150
    SPURIOUS_DRAGON = 3       # EIP-155/158/161/170
    BYZANTIUM = 4
    CONSTANTINOPLE = 5
    PETERSBURG = 6
    ISTANBUL = 7
    BERLIN = 8                # EIP-2929/2930
    LONDON = 9                # EIP-1559/3529/3541
    MERGE = 10                # PREVRANDAO
    SHANGHAI = 11             # PUSH0, EIP-3651/3860
    CANCUN = 12               # EIP-1153/4844/5656/6780

    LATEST = 12

    @classmethod
    def from_name(cls, name: str) -> Fork:
        key = name.strip().upper().replace("-", "_").replace(" ", "_")
        aliases = {"TANGERINE": "TANGERINE_WHISTLE", "SPURIOUS": "SPURIOUS_DRAGON", "PARIS": "MERGE"}
        key = aliases.get(key, key)
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown fork: {name!r}") from None


class SstoreScheme(Enum):
    LEGACY = "legacy"         # flat set/reset pricing
    NET_METERED = "net"       # EIP-1283 / EIP-2200 / EIP-2929


# ---------------------------------------------------------------------------
# Fork-independent constants
# ---------------------------------------------------------------------------

G_ZERO = 0
G_JUMPDEST = 1
G_BASE = 2
G_VERY_LOW = 3
G_LOW = 5
G_MID = 8
G_HIGH = 10
G_EXP = 10
G_MEMORY = 3
G_QUAD_COEFF_DIV = 512
G_KECCAK256 = 30
G_KECCAK256_WORD = 6
G_COPY = 3
G_BLOCKHASH = 20
G_LOG = 375
G_LOG_DATA = 8
G_LOG_TOPIC = 375
G_CREATE = 32000
G_CODEDEPOSIT = 200
G_CALLVALUE = 9000
G_CALLSTIPEND = 2300
G_NEW_ACCOUNT = 25000
G_SSET = 20000
G_WARM_ACCESS = 100           # EIP-2929
G_COLD_SLOAD = 2100           # EIP-2929
G_COLD_ACCOUNT_ACCESS = 2600  # EIP-2929
G_TX = 21000
G_TX_CREATE = 32000
G_TX_DATA_ZERO = 4
G_ACCESS_LIST_ADDRESS = 2400
G_ACCESS_LIST_STORAGE_KEY = 1900
G_INITCODE_WORD = 2

MAX_CODE_SIZE = 24576          # EIP-170
MAX_INITCODE_SIZE = 2 * MAX_CODE_SIZE  # EIP-3860


@dataclass(frozen=True)
class CostTable:
    """Every fork-sensitive price and rule the engine consults."""

    fork: Fork

    # Opcode base costs that moved between forks
    balance: int
    extcode: int
    extcodehash: int
    sload: int
    call: int
    selfdestruct: int
    exp_byte: int

    # EIP-2929 access lists
    access_lists: bool
    warm_access: int
    cold_sload: int
    cold_account_access: int

    # SSTORE
    sstore_scheme: SstoreScheme
    sstore_set: int
    sstore_reset: int
    sstore_clear_refund: int
    sstore_stipend_guard: bool

    # Refunds
    selfdestruct_refund: int
    refund_quotient: int

    # Calls and creation
    all_but_one_64th: bool
    new_account_when_empty: bool
    selfdestruct_new_account: bool
    max_code_size: Optional[int]
    max_initcode_size: Optional[int]
    reject_ef_code: bool
    code_deposit_oog_fails: bool
    contract_initial_nonce: int
    selfdestruct_only_new: bool

    # End-of-execution and transaction-level rules
    prune_empty_accounts: bool
    warm_coinbase: bool
    tx_data_nonzero: int
    tx_create_cost: bool

    # Memory
    memory_gas: int = G_MEMORY
    quad_coeff_div: int = G_QUAD_COEFF_DIV

    def active(self, since: Fork) -> bool:
        """True if a feature introduced at ``since`` is active."""
        return self.fork >= since


def _pick(fork: Fork, default, *schedule):
    """Value in force at ``fork`` given ``(since_fork, value)`` pairs in order."""
    value = default
    for since, v in schedule:
        if fork >= since:
            value = v
    return value


@lru_cache(maxsize=None)
def cost_table(fork: Fork) -> CostTable:
    F = Fork
    return CostTable(
        fork=fork,
        balance=_pick(fork, 20, (F.TANGERINE_WHISTLE, 400), (F.ISTANBUL, 700), (F.BERLIN, G_WARM_ACCESS)),
        extcode=_pick(fork, 20, (F.TANGERINE_WHISTLE, 700), (F.BERLIN, G_WARM_ACCESS)),
        extcodehash=_pick(fork, 400, (F.ISTANBUL, 700), (F.BERLIN, G_WARM_ACCESS)),
        sload=_pick(fork, 50, (F.TANGERINE_WHISTLE, 200), (F.ISTANBUL, 800), (F.BERLIN, G_WARM_ACCESS)),
        call=_pick(fork, 40, (F.TANGERINE_WHISTLE, 700), (F.BERLIN, G_WARM_ACCESS)),
        selfdestruct=_pick(fork, 0, (F.TANGERINE_WHISTLE, 5000)),
        exp_byte=_pick(fork, 10, (F.SPURIOUS_DRAGON, 50)),
        access_lists=fork >= F.BERLIN,
        warm_access=G_WARM_ACCESS,
        cold_sload=G_COLD_SLOAD,
        cold_account_access=G_COLD_ACCOUNT_ACCESS,
        sstore_scheme=_pick(
            fork, SstoreScheme.LEGACY,
            (F.CONSTANTINOPLE, SstoreScheme.NET_METERED),
            (F.PETERSBURG, SstoreScheme.LEGACY),
            (F.ISTANBUL, SstoreScheme.NET_METERED),
        ),
        sstore_set=G_SSET,
        sstore_reset=_pick(fork, 5000, (F.BERLIN, 5000 - G_COLD_SLOAD)),
        sstore_clear_refund=_pick(fork, 15000, (F.LONDON, 4800)),
        sstore_stipend_guard=fork >= F.ISTANBUL,
        selfdestruct_refund=_pick(fork, 24000, (F.LONDON, 0)),
        refund_quotient=_pick(fork, 2, (F.LONDON, 5)),
        all_but_one_64th=fork >= F.TANGERINE_WHISTLE,
        new_account_when_empty=fork >= F.SPURIOUS_DRAGON,
        selfdestruct_new_account=fork >= F.TANGERINE_WHISTLE,
        max_code_size=MAX_CODE_SIZE if fork >= F.SPURIOUS_DRAGON else None,
        max_initcode_size=MAX_INITCODE_SIZE if fork >= F.SHANGHAI else None,
        reject_ef_code=fork >= F.LONDON,
        code_deposit_oog_fails=fork >= F.HOMESTEAD,
        contract_initial_nonce=1 if fork >= F.SPURIOUS_DRAGON else 0,
        selfdestruct_only_new=fork >= F.CANCUN,
        prune_empty_accounts=fork >= F.SPURIOUS_DRAGON,
        warm_coinbase=fork >= F.SHANGHAI,
        tx_data_nonzero=_pick(fork, 68, (F.ISTANBUL, 16)),
        tx_create_cost=fork >= F.HOMESTEAD,
    )
