"""
Tests for opportunity matching and ranking.
"""

import random

from conftest import AAVE, BASE, COMPOUND, ETHEREUM
from app.rebalancer.cost_model import MICRO_USD
from app.rebalancer.models import SnapshotSet, YieldSnapshot
from app.rebalancer.opportunity_finder import OpportunityFinder, format_opportunities


def _snapshots(yields, cycle_id="cycle", collected_at=1_000.0, unhealthy=()):
    snapshots = {}
    for (chain_id, protocol_id), yield_bps in yields.items():
        snapshots[(chain_id, protocol_id)] = YieldSnapshot(
            chain_id=chain_id,
            protocol_id=protocol_id,
            yield_bps=yield_bps,
            tvl=10**12,
            healthy=(chain_id, protocol_id) not in unhealthy,
            collected_at=collected_at,
            cycle_id=cycle_id,
        )
    return SnapshotSet(cycle_id=cycle_id, collected_at=collected_at, snapshots=snapshots)


def test_gain_is_destination_minus_source(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    opportunities = finder.find(_snapshots({(ETHEREUM, AAVE): 500, (ETHEREUM, COMPOUND): 600}), 50, now=1_000.0)

    assert len(opportunities) == 1
    opportunity = opportunities[0]
    assert (opportunity.source_protocol_id, opportunity.dest_protocol_id) == (AAVE, COMPOUND)
    assert opportunity.yield_gain_bps == 100
    assert not opportunity.is_cross_chain
    assert opportunity.estimated_cost == 1 * MICRO_USD
    assert opportunity.dest_adapter_address == registry.get_adapter(ETHEREUM, COMPOUND).adapter_address


def test_never_returns_gain_below_floor_or_non_positive(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    rng = random.Random(7)
    for _ in range(50):
        yields = {
            (ETHEREUM, AAVE): rng.randint(0, 1000),
            (ETHEREUM, COMPOUND): rng.randint(0, 1000),
            (BASE, AAVE): rng.randint(0, 1000),
        }
        floor = rng.randint(-10, 300)
        for opportunity in finder.find(_snapshots(yields), floor, now=1_000.0):
            assert opportunity.yield_gain_bps > 0
            assert opportunity.yield_gain_bps >= floor


def test_zero_floor_still_excludes_equal_yields(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    assert finder.find(_snapshots({(ETHEREUM, AAVE): 500, (BASE, AAVE): 500}), 0, now=1_000.0) == []


def test_sorted_by_gain_then_lower_cost(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    # two moves gain 300 bps: Aave -> Compound on Ethereum, and Compound -> Base
    snapshot_set = _snapshots({(ETHEREUM, AAVE): 100, (ETHEREUM, COMPOUND): 400, (BASE, AAVE): 700})

    opportunities = finder.find(snapshot_set, 1, now=1_000.0)
    gains = [opportunity.yield_gain_bps for opportunity in opportunities]
    assert gains == sorted(gains, reverse=True)

    ties = [opportunity for opportunity in opportunities if opportunity.yield_gain_bps == 300]
    assert [opportunity.is_cross_chain for opportunity in ties] == [False, True]


def test_unhealthy_snapshots_are_ignored(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    snapshot_set = _snapshots({(ETHEREUM, AAVE): 100, (BASE, AAVE): 900}, unhealthy={(BASE, AAVE)})
    assert finder.find(snapshot_set, 1, now=1_000.0) == []


def test_snapshots_from_other_cycles_are_not_paired(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    snapshot_set = _snapshots({(ETHEREUM, AAVE): 100, (ETHEREUM, COMPOUND): 600}, cycle_id="new")
    stale = YieldSnapshot(BASE, AAVE, 900, 10**12, True, 1_000.0, "old")
    snapshot_set.snapshots[(BASE, AAVE)] = stale

    opportunities = finder.find(snapshot_set, 1, now=1_000.0)
    assert all(opportunity.dest_chain_id == ETHEREUM for opportunity in opportunities)
    assert all(opportunity.cycle_id == "new" for opportunity in opportunities)


def test_stale_snapshots_are_excluded(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model, max_snapshot_age=60)
    snapshot_set = _snapshots({(ETHEREUM, AAVE): 100, (ETHEREUM, COMPOUND): 600}, collected_at=1_000.0)

    assert len(finder.find(snapshot_set, 1, now=1_030.0)) == 1
    assert finder.find(snapshot_set, 1, now=1_100.0) == []


def test_profit_projection_for_reference_size(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model, reference_amount_usd=1_000 * MICRO_USD, projection_days=30)

    small = finder.find(_snapshots({(ETHEREUM, AAVE): 500, (ETHEREUM, COMPOUND): 600}), 1, now=1_000.0)[0]
    # $1000 * 1% * 30/365 = $0.82, below the $1 same-chain cost
    assert small.expected_profit == 821_917 - 1 * MICRO_USD
    assert not small.profitable_after_gas

    large = finder.find(_snapshots({(ETHEREUM, AAVE): 100, (ETHEREUM, COMPOUND): 1100}), 1, now=1_000.0)[0]
    assert large.expected_profit == 8_219_178 - 1 * MICRO_USD
    assert large.profitable_after_gas


def test_same_input_same_output(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    snapshot_set = _snapshots({(ETHEREUM, AAVE): 100, (ETHEREUM, COMPOUND): 400, (BASE, AAVE): 700})
    assert finder.find(snapshot_set, 1, now=1_000.0) == finder.find(snapshot_set, 1, now=1_000.0)


def test_best_for_position_skips_unprofitable(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    opportunities = finder.find(
        _snapshots({(ETHEREUM, AAVE): 100, (ETHEREUM, COMPOUND): 150, (BASE, AAVE): 1500}), 1, now=1_000.0
    )

    best = finder.best_for_position(opportunities, ETHEREUM, AAVE)
    assert (best.dest_chain_id, best.dest_protocol_id) == (BASE, AAVE)
    assert finder.best_for_position(opportunities, BASE, AAVE) is None


def test_format_opportunities(registry, cost_model):
    finder = OpportunityFinder(registry, cost_model)
    opportunities = finder.find(_snapshots({(ETHEREUM, AAVE): 500, (BASE, AAVE): 700}), 1, now=1_000.0)

    table = format_opportunities(opportunities, registry)
    assert "Ethereum/Aave V3 (5.00%) -> Base/Aave V3 (7.00%)" in table
    assert "cross-chain" in table
    assert format_opportunities([], registry) == "No yield opportunities found."
