"""
Batch scheduler: one snapshot collection per cycle, then every user's
positions through matching, validation and execution.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set

from app.rebalancer.bridge import BridgeTracker
from app.rebalancer.chain_client import ChainClient
from app.rebalancer.config_loader import EngineConfig
from app.rebalancer.exceptions import ConfigError
from app.rebalancer.executor import RebalanceExecutor
from app.rebalancer.guardrails import GuardrailValidator, read_guardrails
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import (
    CycleSummary,
    ExecutionOutcome,
    ExecutionStatus,
    RebalanceDecision,
    UserPosition,
    Verdict,
    YieldOpportunity,
)
from app.rebalancer.notifications import post_cycle_summary_notification, post_error_notification
from app.rebalancer.opportunity_finder import OpportunityFinder
from app.rebalancer.outcome_log import EngineState, OutcomeLog
from app.rebalancer.registry import ChainRegistry
from app.rebalancer.snapshot_collector import YieldSnapshotCollector

logger = setup_logger()


class RebalanceScheduler:
    """
    Drives rebalance cycles.

    A per-user lock keeps at most one rebalance in flight per user, also
    across cycles triggered concurrently. cancel() stops a cycle between
    users, never in the middle of a submitted call.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        clients: Dict[int, ChainClient],
        collector: YieldSnapshotCollector,
        finder: OpportunityFinder,
        validator: GuardrailValidator,
        executor: RebalanceExecutor,
        outcome_log: OutcomeLog,
        state: EngineState,
        tracker: Optional[BridgeTracker] = None,
        min_gain_bps: int = 50,
        user_pacing_seconds: float = 5,
        position_pacing_seconds: float = 2,
        user_workers: int = 1,
        config: Optional[EngineConfig] = None,
        notify: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.clients = clients
        self.collector = collector
        self.finder = finder
        self.validator = validator
        self.executor = executor
        self.outcome_log = outcome_log
        self.state = state
        self.tracker = tracker
        self.min_gain_bps = min_gain_bps
        self.user_pacing_seconds = user_pacing_seconds
        self.position_pacing_seconds = position_pacing_seconds
        self.user_workers = max(int(user_workers), 1)
        self.config = config
        self.notify = notify
        self.sleep = sleep

        self._user_locks: Dict[str, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()
        self._summary_lock = threading.Lock()
        self._running_lock = threading.Lock()
        self._running_cycles = 0
        self._cycle_cancels: Set[threading.Event] = set()
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None

    @property
    def cycle_running(self) -> bool:
        with self._running_lock:
            return self._running_cycles > 0

    def _user_lock(self, user: str) -> threading.Lock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user.lower())
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user.lower()] = lock
            return lock

    def _count(self, summary: CycleSummary, field_name: str, verdict: Optional[Verdict] = None) -> None:
        with self._summary_lock:
            setattr(summary, field_name, getattr(summary, field_name) + 1)
            if verdict is not None:
                summary.reject_reasons[verdict.value] += 1

    # Produced interface

    def get_opportunities(self, min_gain_bps: Optional[int] = None) -> List[YieldOpportunity]:
        """Collect fresh snapshots and rank opportunities. Read-only."""
        min_gain_bps = self.min_gain_bps if min_gain_bps is None else min_gain_bps
        snapshot_set = self.collector.collect()
        return self.finder.find(snapshot_set, min_gain_bps)

    def get_outcome_history(self, user: str) -> List[ExecutionOutcome]:
        return self.outcome_log.history(user)

    def read_positions(self, user: str) -> List[UserPosition]:
        """Non-zero vault balances of a user across every deployed adapter."""
        positions = []
        for adapter in self.registry.deployed_adapters():
            client = self.clients.get(adapter.chain_id)
            if client is None:
                continue
            try:
                balance = client.get_protocol_balance(user, adapter.protocol_id)
            except Exception as ex:
                logger.warning(
                    "RebalanceScheduler: Could not read %s balance of %s on chain %s: %s",
                    adapter.name, user, adapter.chain_id, ex,
                )
                continue
            if balance > 0:
                positions.append(UserPosition(user, adapter.chain_id, adapter.protocol_id, balance))
        return positions

    def run_cycle(self, users: Optional[List[str]] = None, min_gain_bps: Optional[int] = None) -> CycleSummary:
        """
        Run one cycle over `users` (default: the configured user list).

        Raises:
            ConfigError: no chain is reachable with engine contracts deployed.
        """
        if not self.clients:
            raise ConfigError("No reachable chains with deployed contracts configured")

        if users is None:
            users = list(self.config.USERS) if self.config is not None else []
        min_gain_bps = self.min_gain_bps if min_gain_bps is None else min_gain_bps

        summary = CycleSummary(cycle_id=uuid.uuid4().hex, started_at=time.time())
        cancel_event = threading.Event()
        with self._running_lock:
            self._running_cycles += 1
            self._cycle_cancels.add(cancel_event)

        try:
            logger.info("RebalanceScheduler: Starting cycle %s for %s users", summary.cycle_id, len(users))
            snapshot_set = self.collector.collect(summary.cycle_id)
            opportunities = self.finder.find(snapshot_set, min_gain_bps)

            if self.user_workers == 1:
                for index, user in enumerate(users):
                    if cancel_event.is_set():
                        summary.cancelled = True
                        logger.warning("RebalanceScheduler: Cycle %s cancelled after %s users", summary.cycle_id, index)
                        break
                    if index > 0:
                        self.sleep(self.user_pacing_seconds)
                    self._process_user(user, opportunities, summary)
            else:
                with ThreadPoolExecutor(max_workers=self.user_workers, thread_name_prefix="rebalance-users") as pool:
                    for index, user in enumerate(users):
                        pool.submit(self._process_user_paced, index, user, opportunities, summary, cancel_event)
                summary.cancelled = cancel_event.is_set()
        finally:
            with self._running_lock:
                self._running_cycles -= 1
                self._cycle_cancels.discard(cancel_event)

        summary.finished_at = time.time()
        self.state.save()
        if self.tracker is not None:
            self.tracker.reconcile()

        logger.info(
            "RebalanceScheduler: Cycle %s done: executed %s, failed %s, skipped not profitable %s, "
            "skipped guardrail %s, bridging %s%s",
            summary.cycle_id, summary.executed, summary.failed, summary.skipped_not_profitable,
            summary.skipped_guardrail, summary.bridging, " (cancelled)" if summary.cancelled else "",
        )
        if self.notify:
            try:
                post_cycle_summary_notification(summary, self.config)
            except Exception as ex:
                logger.error("RebalanceScheduler: Failed to post cycle summary: %s", ex, exc_info=True)
        return summary

    def _process_user_paced(
        self,
        index: int,
        user: str,
        opportunities: List[YieldOpportunity],
        summary: CycleSummary,
        cancel_event: threading.Event,
    ) -> None:
        if cancel_event.is_set():
            return
        if index >= self.user_workers:
            self.sleep(self.user_pacing_seconds)
        self._process_user(user, opportunities, summary)

    def _process_user(self, user: str, opportunities: List[YieldOpportunity], summary: CycleSummary) -> None:
        try:
            with self._user_lock(user):
                positions = self.read_positions(user)
                if not positions:
                    logger.info("RebalanceScheduler: %s has no positions", user)
                else:
                    for index, position in enumerate(positions):
                        if index > 0:
                            self.sleep(self.position_pacing_seconds)
                        self._process_position(position, opportunities, summary)
        except Exception as ex:
            logger.error("RebalanceScheduler: Unexpected error processing %s: %s", user, ex, exc_info=True)
            self._count(summary, "failed")
        self._count(summary, "users_processed")

    def _process_position(
        self, position: UserPosition, opportunities: List[YieldOpportunity], summary: CycleSummary
    ) -> None:
        user = position.user
        opportunity = self.finder.best_for_position(opportunities, position.chain_id, position.protocol_id)
        if opportunity is None:
            logger.info(
                "RebalanceScheduler: No profitable opportunity for %s on chain %s protocol %s",
                user, position.chain_id, position.protocol_id,
            )
            self._count(summary, "skipped_not_profitable")
            return

        try:
            client = self.clients[position.chain_id]
            amount = client.get_protocol_balance(user, position.protocol_id)
            if amount <= 0:
                logger.info("RebalanceScheduler: %s balance on chain %s is now empty", user, position.chain_id)
                self._count(summary, "skipped_not_profitable")
                return

            decision = RebalanceDecision(
                user=user,
                source_chain_id=opportunity.source_chain_id,
                source_protocol_id=opportunity.source_protocol_id,
                dest_chain_id=opportunity.dest_chain_id,
                dest_protocol_id=opportunity.dest_protocol_id,
                dest_adapter_address=opportunity.dest_adapter_address,
                amount=amount,
                min_yield_gain_bps=opportunity.yield_gain_bps,
                estimated_cost=opportunity.estimated_cost,
            )
            verdict = self.validator.validate(decision, read_guardrails(client, user))
        except Exception as ex:
            logger.error(
                "RebalanceScheduler: Validation of %s on chain %s failed: %s", user, position.chain_id, ex, exc_info=True
            )
            self._count(summary, "failed")
            return

        if verdict == Verdict.NOT_PROFITABLE:
            self._count(summary, "skipped_not_profitable", verdict)
            return
        if verdict != Verdict.OK:
            self._count(summary, "skipped_guardrail", verdict)
            return

        outcome = self.executor.execute(decision)
        if outcome.status == ExecutionStatus.PENDING:
            self._count(summary, "dry_run_approved")
        elif outcome.status in (ExecutionStatus.FAILED, ExecutionStatus.BRIDGE_FAILED):
            self._count(summary, "failed")
        else:
            self._count(summary, "executed")
            if outcome.status == ExecutionStatus.BRIDGING:
                self._count(summary, "bridging")

    # Lifecycle

    def cancel(self) -> None:
        """Stop the cycles running now at their next user boundary. Cycles started later are not affected."""
        logger.info("RebalanceScheduler: Cancellation requested")
        with self._running_lock:
            for cancel_event in self._cycle_cancels:
                cancel_event.set()

    def start(self, interval: float) -> threading.Thread:
        """Run cycles every `interval` seconds on a background thread until stop()."""
        self._stop_event.clear()
        self._timer_thread = threading.Thread(
            target=self._run_forever, args=(interval,), name="rebalance-cycles", daemon=True
        )
        self._timer_thread.start()
        return self._timer_thread

    def _run_forever(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except ConfigError as ex:
                logger.error("RebalanceScheduler: Cycle aborted by configuration fault: %s", ex, exc_info=True)
                if self.notify:
                    try:
                        post_error_notification(f"Rebalance cycle aborted: {ex}", self.config)
                    except Exception as notify_ex:
                        logger.error("RebalanceScheduler: Failed to post error notification: %s", notify_ex)
            except Exception as ex:
                logger.error("RebalanceScheduler: Unexpected exception in cycle: %s", ex, exc_info=True)
            self._stop_event.wait(interval)

    def stop(self) -> None:
        self._stop_event.set()
        self.cancel()
        if self._timer_thread is not None:
            self._timer_thread.join(timeout=5)
