from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

from .bridge import BridgeTracker, HttpBridgeClient
from .chain_client import ChainClient, build_chain_clients
from .config_loader import EngineConfig, load_config
from .cost_model import MICRO_USD, StepCostModel
from .event_listener import RebalanceEventListener
from .executor import RebalanceExecutor
from .guardrails import GuardrailValidator
from .logging_config import setup_logger
from .opportunity_finder import OpportunityFinder
from .outcome_log import EngineState, OutcomeLog
from .registry import ChainRegistry
from .scheduler import RebalanceScheduler
from .snapshot_collector import YieldSnapshotCollector

logger = setup_logger()


class RebalanceEngine:
    """Wires the registry, chain clients and rebalancing components together"""

    def __init__(self, config: EngineConfig, notify: Optional[bool] = None, dry_run: Optional[bool] = None):
        self.config = config
        self.notify = bool(config.get("NOTIFY", True)) if notify is None else notify
        self.dry_run = bool(config.get("DRY_RUN", False)) if dry_run is None else dry_run

        self.registry = ChainRegistry.from_config(config)
        self.clients: Dict[int, ChainClient] = build_chain_clients(self.registry, config)
        self.listeners: Dict[int, RebalanceEventListener] = {}

        self._initialize_components()

    def _initialize_components(self):
        """Initialize the cycle components and one event listener per chain"""
        config = self.config
        logger.info("RebalanceEngine: Initializing chains %s", list(self.clients))

        self.state = EngineState(config.STATE_PATH)
        self.state.load()
        self.outcome_log = OutcomeLog(config.OUTCOME_LOG_PATH)

        self.tracker = BridgeTracker(
            self.outcome_log,
            timeout_seconds=float(config.get("BRIDGE_TIMEOUT_SECONDS", 3600)),
            config=config,
            notify=self.notify,
        )
        self.tracker.resume()

        cost_model = StepCostModel.from_config(config)
        projection_days = int(config.get("PROJECTION_DAYS", 30))
        max_age = config.get("SNAPSHOT_MAX_AGE_SECONDS")

        collector = YieldSnapshotCollector(
            self.registry,
            self.clients,
            max_reads_per_chain=int(config.get("MAX_READS_PER_CHAIN", 4)),
            max_workers=int(config.get("COLLECTOR_WORKERS", 16)),
            record_on_chain=bool(config.get("RECORD_APY_ON_CHAIN", False)) and not self.dry_run,
        )
        finder = OpportunityFinder(
            self.registry,
            cost_model,
            reference_amount_usd=int(config.get("REFERENCE_POSITION_USD", 1_000 * MICRO_USD)),
            projection_days=projection_days,
            max_snapshot_age=float(max_age) if max_age is not None else None,
        )
        validator = GuardrailValidator(
            self.registry,
            self.clients,
            cost_model,
            projection_days=projection_days,
            min_profit_usd=int(config.get("MIN_PROFIT_USD", 1 * MICRO_USD)),
            cooldown_observer=self.state.observe_cooldown,
        )
        executor = RebalanceExecutor(
            self.registry,
            self.clients,
            self.outcome_log,
            self.tracker,
            bridge_client=HttpBridgeClient.from_config(config),
            confirmation_timeout=float(config.get("CONFIRMATION_TIMEOUT", 300)),
            dry_run=self.dry_run,
            config=config,
            notify=self.notify,
        )
        self.scheduler = RebalanceScheduler(
            self.registry,
            self.clients,
            collector,
            finder,
            validator,
            executor,
            self.outcome_log,
            self.state,
            tracker=self.tracker,
            min_gain_bps=int(config.get("MIN_GAIN_BPS", 50)),
            user_pacing_seconds=float(config.get("USER_PACING_SECONDS", 5)),
            position_pacing_seconds=float(config.get("POSITION_PACING_SECONDS", 2)),
            user_workers=int(config.get("USER_WORKERS", 1)),
            config=config,
            notify=self.notify,
        )

        for chain_id, client in self.clients.items():
            self.listeners[chain_id] = RebalanceEventListener(client, self.tracker, self.state, config)

    def start(self):
        """Start the cycle timer and all chain listeners"""
        with ThreadPoolExecutor() as executor:
            # First catch up on events missed while stopped
            for listener in self.listeners.values():
                listener.batch_scan_on_startup()

            self.scheduler.start(float(self.config.get("CYCLE_INTERVAL", 3600)))

            listener_futures = [executor.submit(listener.start_event_monitoring) for listener in self.listeners.values()]

            # Wait for all to complete (they shouldn't unless there's an error)
            for future in listener_futures:
                try:
                    future.result()
                except Exception as e:
                    logger.error("Chain listener failed: %s", e, exc_info=True)

    def stop(self):
        """Stop the cycle timer, the listeners and the receipt watchers"""
        self.scheduler.stop()
        for listener in self.listeners.values():
            listener.stop()
        for client in self.clients.values():
            client.close()
        self.state.save()


def build_engine(config_path: Optional[str] = None, **kwargs) -> RebalanceEngine:
    return RebalanceEngine(load_config(config_path), **kwargs)
