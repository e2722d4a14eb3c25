"""
Transfer cost model and yield projection helpers.

All USD amounts are integer micro-USD (1 USD = 1_000_000). Asset amounts are
in asset-native units and are converted assuming a USD stablecoin.
"""

from abc import ABC, abstractmethod
from typing import Tuple

BPS_DENOMINATOR = 10_000
DAYS_PER_YEAR = 365
MICRO_USD_DECIMALS = 6
MICRO_USD = 10**MICRO_USD_DECIMALS


def asset_to_micro_usd(amount: int, decimals: int = MICRO_USD_DECIMALS) -> int:
    """Convert a stablecoin amount in native units to micro-USD."""
    if decimals >= MICRO_USD_DECIMALS:
        return amount // 10 ** (decimals - MICRO_USD_DECIMALS)
    return amount * 10 ** (MICRO_USD_DECIMALS - decimals)


def project_yield(amount: int, gain_bps: int, days: int) -> int:
    """Extra yield earned on `amount` over `days` at `gain_bps` higher APY."""
    if amount <= 0 or gain_bps <= 0 or days <= 0:
        return 0
    return amount * gain_bps * days // (BPS_DENOMINATOR * DAYS_PER_YEAR)


def is_profitable(yield_gain: int, cost: int, min_profit: int = 0) -> Tuple[bool, int]:
    """
    Net profit check.

    Returns:
        (profitable, net_profit) where profitable means net_profit > min_profit.
    """
    net_profit = yield_gain - cost
    return net_profit > min_profit, net_profit


class CostModel(ABC):
    """Estimates what a move between two chains costs, in micro-USD."""

    @abstractmethod
    def transfer_cost(self, source_chain_id: int, dest_chain_id: int) -> int:
        """Fixed cost of moving a position, independent of its size."""

    @abstractmethod
    def execution_cost(self, source_chain_id: int, dest_chain_id: int, amount_usd: int) -> int:
        """Full cost of moving a position of `amount_usd` micro-USD."""


class StepCostModel(CostModel):
    """
    Cost is a step on whether the move crosses chains, plus an optional
    slippage allowance proportional to the amount moved.
    """

    def __init__(self, same_chain_cost: int = 1 * MICRO_USD, cross_chain_cost: int = 5 * MICRO_USD, slippage_bps: int = 0):
        if cross_chain_cost <= same_chain_cost:
            raise ValueError(
                f"Cross-chain cost ({cross_chain_cost}) must be greater than same-chain cost ({same_chain_cost})"
            )
        if same_chain_cost < 0 or slippage_bps < 0:
            raise ValueError("Costs and slippage must be non-negative")
        self.same_chain_cost = same_chain_cost
        self.cross_chain_cost = cross_chain_cost
        self.slippage_bps = slippage_bps

    @classmethod
    def from_config(cls, config) -> "StepCostModel":
        return cls(
            same_chain_cost=int(config.get("SAME_CHAIN_COST_USD", 1 * MICRO_USD)),
            cross_chain_cost=int(config.get("CROSS_CHAIN_COST_USD", 5 * MICRO_USD)),
            slippage_bps=int(config.get("ESTIMATED_SLIPPAGE_BPS", 0)),
        )

    def transfer_cost(self, source_chain_id: int, dest_chain_id: int) -> int:
        if source_chain_id != dest_chain_id:
            return self.cross_chain_cost
        return self.same_chain_cost

    def execution_cost(self, source_chain_id: int, dest_chain_id: int, amount_usd: int) -> int:
        slippage = max(amount_usd, 0) * self.slippage_bps // BPS_DENOMINATOR
        return self.transfer_cost(source_chain_id, dest_chain_id) + slippage
