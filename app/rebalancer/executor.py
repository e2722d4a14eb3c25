"""
Rebalance executor.

Carries an approved decision through
pending -> submitted -> confirmed | failed, and for cross-chain decisions on
to bridging, after which the BridgeTracker owns the outcome. Submission and
confirmation errors fail the outcome with the error text as-is; nothing is
resubmitted within the cycle.
"""

import uuid
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Dict, Optional

from app.rebalancer.bridge import BridgeClient, BridgeRequest, BridgeTracker
from app.rebalancer.chain_client import ChainClient
from app.rebalancer.config_loader import EngineConfig
from app.rebalancer.cost_model import MICRO_USD
from app.rebalancer.exceptions import BridgeError, ExecutionConfirmError, ExecutionSubmitError
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import ExecutionOutcome, ExecutionStatus, RebalanceDecision, TxReceipt
from app.rebalancer.notifications import post_rebalance_executed_notification, post_rebalance_failed_notification
from app.rebalancer.outcome_log import OutcomeLog
from app.rebalancer.registry import ChainRegistry

logger = setup_logger()

WEI_PER_NATIVE = 10**18


def realized_gas_cost(receipt: TxReceipt, native_price_usd: float) -> int:
    """Gas paid by a receipt, in micro-USD."""
    native_spent = receipt.gas_used * receipt.effective_gas_price / WEI_PER_NATIVE
    return int(round(native_spent * native_price_usd * MICRO_USD))


class RebalanceExecutor:
    def __init__(
        self,
        registry: ChainRegistry,
        clients: Dict[int, ChainClient],
        outcome_log: OutcomeLog,
        tracker: BridgeTracker,
        bridge_client: Optional[BridgeClient] = None,
        confirmation_timeout: float = 300,
        dry_run: bool = False,
        config: Optional[EngineConfig] = None,
        notify: bool = False,
    ):
        self.registry = registry
        self.clients = clients
        self.outcome_log = outcome_log
        self.tracker = tracker
        self.bridge_client = bridge_client
        self.confirmation_timeout = confirmation_timeout
        self.dry_run = dry_run
        self.config = config
        self.notify = notify

    def execute(self, decision: RebalanceDecision) -> ExecutionOutcome:
        """
        Execute an approved decision and return its outcome.

        Returns once the source-chain call is confirmed or failed. In dry-run
        mode the outcome stays pending and is not recorded.
        """
        if not decision.approved:
            raise ValueError(f"Decision for {decision.user} is not approved: {decision.reason}")

        outcome = ExecutionOutcome(outcome_id=uuid.uuid4().hex, decision=decision)

        if self.dry_run:
            logger.info(
                "RebalanceExecutor: DRY RUN, would move %s for %s from %s/%s to %s/%s",
                decision.amount, decision.user, decision.source_chain_id, decision.source_protocol_id,
                decision.dest_chain_id, decision.dest_protocol_id,
            )
            return outcome

        self.outcome_log.record(outcome)
        client = self.clients[decision.source_chain_id]

        try:
            if decision.is_cross_chain:
                tx_hash = client.submit_cross_chain_rebalance(decision)
            else:
                tx_hash = client.submit_same_chain_rebalance(decision)
        except ExecutionSubmitError as ex:
            return self._fail(outcome, str(ex))

        outcome.tx_hashes.append(tx_hash)
        outcome.transition(ExecutionStatus.SUBMITTED)
        self.outcome_log.record(outcome)

        try:
            receipt = client.watch_receipt(tx_hash, self.confirmation_timeout).result(
                timeout=self.confirmation_timeout
            )
        except FuturesTimeoutError:
            return self._fail(outcome, f"No receipt for {tx_hash} after {self.confirmation_timeout}s")
        except ExecutionConfirmError as ex:
            return self._fail(outcome, str(ex))

        if not receipt.success:
            return self._fail(outcome, f"Transaction {tx_hash} reverted in block {receipt.block_number}")

        outcome.realized_gas_cost = realized_gas_cost(receipt, client.chain.native_price_usd)
        outcome.realized_yield_gain_bps = (
            receipt.yield_gain_bps if receipt.yield_gain_bps is not None else decision.min_yield_gain_bps
        )
        outcome.transition(ExecutionStatus.CONFIRMED)
        self.outcome_log.record(outcome)
        logger.info(
            "RebalanceExecutor: %s confirmed in block %s for %s (gas $%.4f)",
            tx_hash, receipt.block_number, decision.user, outcome.realized_gas_cost / MICRO_USD,
        )

        if decision.is_cross_chain:
            self._start_bridging(outcome)

        if outcome.status == ExecutionStatus.BRIDGE_FAILED:
            self._post(post_rebalance_failed_notification, outcome)
        else:
            self._post(post_rebalance_executed_notification, outcome)
        return outcome

    def _start_bridging(self, outcome: ExecutionOutcome) -> None:
        decision = outcome.decision
        outcome.transition(ExecutionStatus.BRIDGING)
        self.outcome_log.record(outcome)
        self.tracker.open(outcome)
        logger.info(
            "RebalanceExecutor: Outcome %s bridging from chain %s to %s",
            outcome.outcome_id, decision.source_chain_id, decision.dest_chain_id,
        )

        if self.bridge_client is None:
            return

        source_adapter = self.registry.get_adapter(decision.source_chain_id, decision.source_protocol_id)
        dest_adapter = self.registry.get_adapter(decision.dest_chain_id, decision.dest_protocol_id)
        request = BridgeRequest(
            user=decision.user,
            token=source_adapter.asset_address,
            amount=decision.amount,
            source_chain_id=decision.source_chain_id,
            dest_chain_id=decision.dest_chain_id,
            dest_contract=dest_adapter.adapter_address,
            dest_asset=dest_adapter.asset_address,
            client_reference=outcome.outcome_id,
        )
        try:
            intent_id = self.bridge_client.bridge_and_execute(request)
        except BridgeError as ex:
            logger.error("RebalanceExecutor: Bridge intent for %s failed: %s", outcome.outcome_id, ex, exc_info=True)
            self.tracker.fail(outcome.outcome_id, str(ex))
            return
        self.tracker.attach_intent(outcome.outcome_id, intent_id)

    def _fail(self, outcome: ExecutionOutcome, error: str) -> ExecutionOutcome:
        outcome.error = error
        outcome.transition(ExecutionStatus.FAILED)
        self.outcome_log.record(outcome)
        logger.error("RebalanceExecutor: Rebalance for %s failed: %s", outcome.user, error)
        self._post(post_rebalance_failed_notification, outcome)
        return outcome

    def _post(self, post, outcome: ExecutionOutcome) -> None:
        if not self.notify:
            return
        try:
            post(outcome, self.config)
        except Exception as ex:
            logger.error(
                "RebalanceExecutor: Failed to post notification for %s: %s", outcome.outcome_id, ex, exc_info=True
            )
