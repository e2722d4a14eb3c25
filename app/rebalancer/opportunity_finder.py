"""
Pairwise opportunity matching over one cycle's healthy snapshots.
"""

import time
from typing import List, Optional

from app.rebalancer.cost_model import MICRO_USD, CostModel, project_yield
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import SnapshotSet, YieldOpportunity, YieldSnapshot
from app.rebalancer.registry import ChainRegistry

logger = setup_logger()

DEFAULT_REFERENCE_AMOUNT_USD = 1_000 * MICRO_USD
DEFAULT_PROJECTION_DAYS = 30


class OpportunityFinder:
    """
    Ranks every ordered (source, destination) pair of healthy snapshots by
    yield gain, highest first, ties broken by lower transfer cost.

    Net profit is projected for a fixed reference position over a fixed
    window; the guardrail validator re-derives it for the real amount.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        cost_model: CostModel,
        reference_amount_usd: int = DEFAULT_REFERENCE_AMOUNT_USD,
        projection_days: int = DEFAULT_PROJECTION_DAYS,
        max_snapshot_age: Optional[float] = None,
    ):
        self.registry = registry
        self.cost_model = cost_model
        self.reference_amount_usd = reference_amount_usd
        self.projection_days = projection_days
        self.max_snapshot_age = max_snapshot_age

    def _fresh(self, snapshots: List[YieldSnapshot], now: float) -> List[YieldSnapshot]:
        if self.max_snapshot_age is None:
            return snapshots
        fresh = [snapshot for snapshot in snapshots if now - snapshot.collected_at <= self.max_snapshot_age]
        if len(fresh) != len(snapshots):
            logger.warning(
                "OpportunityFinder: Excluded %s stale snapshots older than %ss",
                len(snapshots) - len(fresh), self.max_snapshot_age,
            )
        return fresh

    def find(self, snapshot_set: SnapshotSet, min_gain_bps: int, now: Optional[float] = None) -> List[YieldOpportunity]:
        now = time.time() if now is None else now
        floor = max(int(min_gain_bps), 1)

        healthy = [snapshot for snapshot in snapshot_set.healthy() if snapshot.cycle_id == snapshot_set.cycle_id]
        healthy = self._fresh(healthy, now)

        opportunities: List[YieldOpportunity] = []
        for source in healthy:
            for dest in healthy:
                if source.key == dest.key:
                    continue

                gain = dest.yield_bps - source.yield_bps
                if gain < floor:
                    continue

                try:
                    dest_adapter = self.registry.get_adapter(dest.chain_id, dest.protocol_id)
                except KeyError as ex:
                    logger.warning("OpportunityFinder: Ignoring snapshot without deployed adapter: %s", ex)
                    continue

                cost = self.cost_model.transfer_cost(source.chain_id, dest.chain_id)
                expected_profit = project_yield(self.reference_amount_usd, gain, self.projection_days) - cost

                opportunities.append(
                    YieldOpportunity(
                        source_chain_id=source.chain_id,
                        source_protocol_id=source.protocol_id,
                        source_yield_bps=source.yield_bps,
                        dest_chain_id=dest.chain_id,
                        dest_protocol_id=dest.protocol_id,
                        dest_yield_bps=dest.yield_bps,
                        dest_adapter_address=dest_adapter.adapter_address,
                        yield_gain_bps=gain,
                        is_cross_chain=source.chain_id != dest.chain_id,
                        estimated_cost=cost,
                        expected_profit=expected_profit,
                        profitable_after_gas=expected_profit > 0,
                        cycle_id=snapshot_set.cycle_id,
                    )
                )

        # list.sort is stable, so equal (gain, cost) keep snapshot iteration order
        opportunities.sort(key=lambda opp: (-opp.yield_gain_bps, opp.estimated_cost))

        logger.info(
            "OpportunityFinder: %s opportunities from %s healthy snapshots (floor %s bps)",
            len(opportunities), len(healthy), floor,
        )
        return opportunities

    def best_for_position(
        self, opportunities: List[YieldOpportunity], chain_id: int, protocol_id: int
    ) -> Optional[YieldOpportunity]:
        """Highest-ranked profitable opportunity whose source is the given position."""
        for opportunity in opportunities:
            if (
                opportunity.source_chain_id == chain_id
                and opportunity.source_protocol_id == protocol_id
                and opportunity.profitable_after_gas
            ):
                return opportunity
        return None


def format_opportunities(opportunities: List[YieldOpportunity], registry: ChainRegistry, limit: int = 10) -> str:
    """Render the top opportunities as a text table."""
    if not opportunities:
        return "No yield opportunities found."

    def label(chain_id: int, protocol_id: int) -> str:
        chain = registry.get_chain(chain_id).name
        try:
            return f"{chain}/{registry.get_adapter(chain_id, protocol_id).name}"
        except KeyError:
            return f"{chain}/#{protocol_id}"

    lines = ["Top yield opportunities:"]
    for index, opp in enumerate(opportunities[:limit], start=1):
        lines.append(
            f"{index:>2}. {label(opp.source_chain_id, opp.source_protocol_id)} "
            f"({opp.source_yield_bps / 100:.2f}%) -> {label(opp.dest_chain_id, opp.dest_protocol_id)} "
            f"({opp.dest_yield_bps / 100:.2f}%) | gain {opp.yield_gain_bps / 100:.2f}% | "
            f"{'cross-chain' if opp.is_cross_chain else 'same-chain'} | cost ${opp.estimated_cost / MICRO_USD:.2f} | "
            f"projected profit ${opp.expected_profit / MICRO_USD:.2f} "
            f"{'OK' if opp.profitable_after_gas else 'NOT PROFITABLE'}"
        )
    return "\n".join(lines)
