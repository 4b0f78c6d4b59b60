"""
Execution configuration: block environment and engine settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Optional

from ethvm.common.types import ZERO_ADDRESS
from ethvm.vm.call_frame import MAX_CALL_DEPTH
from ethvm.vm.forks import CostTable, Fork, cost_table

if TYPE_CHECKING:
    from ethvm.vm.hooks import ExecutionHook


@dataclass
class BlockContext:
    """Block-level values visible to executing code."""

    number: int = 0
    timestamp: int = 0
    coinbase: bytes = field(default_factory=lambda: ZERO_ADDRESS)
    difficulty: int = 0
    prevrandao: int = 0
    gas_limit: int = 30_000_000
    chain_id: int = 1
    base_fee: int = 0
    blob_base_fee: int = 1
    blob_hashes: list[bytes] = field(default_factory=list)
    gas_price: int = 0


@dataclass
class VMConfig:
    """Engine settings fixed for one execution."""

    fork: Fork = Fork.LATEST
    call_depth_limit: int = MAX_CALL_DEPTH
    charge_intrinsic_gas: bool = False
    refund_quotient: Optional[int] = None
    max_code_size: Optional[int] = None
    hook: Optional[ExecutionHook] = None

    def cost_table(self) -> CostTable:
        """Fork cost table with this config's overrides applied."""
        costs = cost_table(self.fork)
        overrides = {}
        if self.refund_quotient is not None:
            overrides["refund_quotient"] = self.refund_quotient
        if self.max_code_size is not None:
            overrides["max_code_size"] = self.max_code_size
        if overrides:
            costs = replace(costs, **overrides)
        return costs
