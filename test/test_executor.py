"""
Tests for the rebalance executor.
"""

from unittest.mock import MagicMock

import pytest

from conftest import AAVE, BASE, ETHEREUM, USDC_ETHEREUM, make_decision
from app.rebalancer import executor as executor_module
from app.rebalancer.bridge import BridgeRequest, BridgeTracker
from app.rebalancer.exceptions import BridgeError, ExecutionConfirmError, ExecutionSubmitError
from app.rebalancer.executor import RebalanceExecutor, realized_gas_cost
from app.rebalancer.models import BridgeProgress, ExecutionStatus, TxReceipt


@pytest.fixture()
def tracker(outcome_log):
    return BridgeTracker(outcome_log, timeout_seconds=600)


@pytest.fixture()
def executor(registry, clients, outcome_log, tracker):
    return RebalanceExecutor(registry, clients, outcome_log, tracker, confirmation_timeout=0.2)


def test_same_chain_confirmed(executor, clients, outcome_log):
    outcome = executor.execute(make_decision(approved=True))

    assert outcome.status == ExecutionStatus.CONFIRMED
    assert outcome.terminal
    assert [kind for kind, _ in clients[ETHEREUM].submissions] == ["same-chain"]
    assert len(outcome.tx_hashes) == 1
    assert [status for status, _ in outcome.history] == ["pending", "submitted", "confirmed"]
    assert outcome_log.get(outcome.outcome_id).status == ExecutionStatus.CONFIRMED


def test_realized_costs_recorded(executor, clients):
    clients[ETHEREUM].receipt = TxReceipt("", True, 10, 200_000, 10 * 10**9, yield_gain_bps=120)
    outcome = executor.execute(make_decision(approved=True))

    # 200k gas at 10 gwei is 0.002 ETH, $4 at $2000
    assert outcome.realized_gas_cost == 4_000_000
    assert outcome.realized_yield_gain_bps == 120


def test_realized_yield_falls_back_to_decision(executor):
    outcome = executor.execute(make_decision(gain=90, approved=True))
    assert outcome.realized_yield_gain_bps == 90


def test_scenario_d_reverted_receipt_fails_without_retry(executor, clients, outcome_log):
    clients[ETHEREUM].receipt = TxReceipt("", False, 55, 21_000, 10**9)

    outcome = executor.execute(make_decision(approved=True))

    assert outcome.status == ExecutionStatus.FAILED
    assert "reverted in block 55" in outcome.error
    assert len(clients[ETHEREUM].submissions) == 1
    assert outcome_log.get(outcome.outcome_id).error == outcome.error


def test_submit_error_captured_verbatim(executor, clients):
    clients[ETHEREUM].submit_error = ExecutionSubmitError("Ethereum: executeSameChainRebalance submission failed: nonce too low")

    outcome = executor.execute(make_decision(approved=True))

    assert outcome.status == ExecutionStatus.FAILED
    assert outcome.error == "Ethereum: executeSameChainRebalance submission failed: nonce too low"
    assert outcome.tx_hashes == []
    assert [status for status, _ in outcome.history] == ["pending", "failed"]


def test_confirm_error_fails(executor, clients):
    clients[ETHEREUM].receipt_error = ExecutionConfirmError("Ethereum: no receipt for 0x1 after 300s")
    outcome = executor.execute(make_decision(approved=True))
    assert outcome.status == ExecutionStatus.FAILED
    assert outcome.error == "Ethereum: no receipt for 0x1 after 300s"


def test_receipt_timeout_fails(executor, clients):
    clients[ETHEREUM].receipt = None  # never resolves

    outcome = executor.execute(make_decision(approved=True))

    assert outcome.status == ExecutionStatus.FAILED
    assert "No receipt" in outcome.error
    assert len(clients[ETHEREUM].submissions) == 1


def test_unapproved_decision_is_refused(executor, clients):
    with pytest.raises(ValueError):
        executor.execute(make_decision())
    assert clients[ETHEREUM].submissions == []


def test_dry_run_submits_nothing(registry, clients, outcome_log, tracker):
    executor = RebalanceExecutor(registry, clients, outcome_log, tracker, dry_run=True)

    outcome = executor.execute(make_decision(approved=True))

    assert outcome.status == ExecutionStatus.PENDING
    assert clients[ETHEREUM].submissions == []
    assert outcome_log.all() == []


def test_scenario_e_cross_chain_stays_bridging(executor, clients, tracker, outcome_log):
    outcome = executor.execute(make_decision(dest_chain=BASE, dest_protocol=AAVE, cost=5_000_000, approved=True))

    assert outcome.status == ExecutionStatus.BRIDGING
    assert [kind for kind, _ in clients[ETHEREUM].submissions] == ["cross-chain"]
    assert clients[BASE].submissions == []

    flagged = tracker.reconcile(now=outcome.updated_at + 601)

    assert flagged == [outcome]
    stored = outcome_log.get(outcome.outcome_id)
    assert stored.status == ExecutionStatus.BRIDGING
    assert stored.bridge_timed_out
    assert [open_outcome.outcome_id for open_outcome in outcome_log.open_bridging()] == [outcome.outcome_id]


def test_cross_chain_starts_bridge_intent(registry, clients, outcome_log, tracker):
    bridge_client = MagicMock()
    bridge_client.bridge_and_execute.return_value = "intent-1"
    executor = RebalanceExecutor(registry, clients, outcome_log, tracker, bridge_client=bridge_client)

    outcome = executor.execute(make_decision(dest_chain=BASE, dest_protocol=AAVE, cost=5_000_000, approved=True))

    request = bridge_client.bridge_and_execute.call_args[0][0]
    assert request.token == USDC_ETHEREUM
    assert request.dest_chain_id == BASE
    assert request.dest_contract == registry.get_adapter(BASE, AAVE).adapter_address
    assert request.dest_function == "deposit"
    assert outcome_log.get(outcome.outcome_id).bridge_intent_id == "intent-1"


def test_bridge_intent_failure_closes_saga(registry, clients, outcome_log, tracker):
    bridge_client = MagicMock()
    bridge_client.bridge_and_execute.side_effect = BridgeError("relay down")
    executor = RebalanceExecutor(registry, clients, outcome_log, tracker, bridge_client=bridge_client)

    outcome = executor.execute(make_decision(dest_chain=BASE, dest_protocol=AAVE, cost=5_000_000, approved=True))

    assert outcome.status == ExecutionStatus.BRIDGE_FAILED
    assert outcome.error == "relay down"
    assert tracker.open_outcomes() == []


def test_bridge_error_before_intent_returned_is_applied(registry, clients, outcome_log, tracker):
    def relay_reports_error_first(request: BridgeRequest):
        progress = BridgeProgress("intent-9", "error", "no liquidity", client_reference=request.client_reference)
        tracker.on_progress(progress)
        return "intent-9"

    bridge_client = MagicMock()
    bridge_client.bridge_and_execute.side_effect = relay_reports_error_first
    executor = RebalanceExecutor(registry, clients, outcome_log, tracker, bridge_client=bridge_client)

    outcome = executor.execute(make_decision(dest_chain=BASE, dest_protocol=AAVE, cost=5_000_000, approved=True))

    assert bridge_client.bridge_and_execute.call_args[0][0].client_reference == outcome.outcome_id
    assert outcome.status == ExecutionStatus.BRIDGE_FAILED
    assert outcome.error == "no liquidity"
    assert outcome.bridge_intent_id == "intent-9"
    assert tracker.open_outcomes() == []
    assert outcome_log.get(outcome.outcome_id).status == ExecutionStatus.BRIDGE_FAILED


def test_bridge_failure_sends_failed_notification(registry, clients, outcome_log, tracker, config, monkeypatch):
    executed = MagicMock()
    failed = MagicMock()
    monkeypatch.setattr(executor_module, "post_rebalance_executed_notification", executed)
    monkeypatch.setattr(executor_module, "post_rebalance_failed_notification", failed)
    bridge_client = MagicMock()
    bridge_client.bridge_and_execute.side_effect = BridgeError("relay down")
    executor = RebalanceExecutor(
        registry, clients, outcome_log, tracker, bridge_client=bridge_client, config=config, notify=True
    )

    outcome = executor.execute(make_decision(dest_chain=BASE, dest_protocol=AAVE, cost=5_000_000, approved=True))

    failed.assert_called_once_with(outcome, config)
    executed.assert_not_called()


def test_bridging_sends_executed_notification(registry, clients, outcome_log, tracker, config, monkeypatch):
    executed = MagicMock()
    failed = MagicMock()
    monkeypatch.setattr(executor_module, "post_rebalance_executed_notification", executed)
    monkeypatch.setattr(executor_module, "post_rebalance_failed_notification", failed)
    executor = RebalanceExecutor(registry, clients, outcome_log, tracker, config=config, notify=True)

    outcome = executor.execute(make_decision(dest_chain=BASE, dest_protocol=AAVE, cost=5_000_000, approved=True))

    assert outcome.status == ExecutionStatus.BRIDGING
    executed.assert_called_once_with(outcome, config)
    failed.assert_not_called()


def test_failure_notification_errors_do_not_escape(registry, clients, outcome_log, tracker, config, monkeypatch):
    monkeypatch.setattr(executor_module, "post_rebalance_failed_notification", MagicMock(side_effect=RuntimeError("slack")))
    clients[ETHEREUM].receipt = TxReceipt("", False, 1, 1, 1)
    executor = RebalanceExecutor(registry, clients, outcome_log, tracker, config=config, notify=True)

    assert executor.execute(make_decision(approved=True)).status == ExecutionStatus.FAILED


def test_realized_gas_cost_conversion():
    receipt = TxReceipt("0x1", True, 1, 100_000, 2 * 10**9)
    assert realized_gas_cost(receipt, 3000.0) == 600_000
    assert realized_gas_cost(receipt, 0.0) == 0
