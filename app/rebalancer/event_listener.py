"""
Vault event listener.
Scans CrossChainRebalanceInitiated and Rebalanced events from one chain's
vault and hands them to the BridgeTracker.
"""

import threading
import time

from app.rebalancer.bridge import BridgeTracker
from app.rebalancer.chain_client import ChainClient
from app.rebalancer.config_loader import EngineConfig
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.outcome_log import EngineState

logger = setup_logger()


class RebalanceEventListener:
    """
    Listener for the vault's rebalance events on one chain.
    The block cursor is kept in EngineState so a restart continues where it stopped.
    """

    def __init__(self, client: ChainClient, tracker: BridgeTracker, state: EngineState, config: EngineConfig):
        self.client = client
        self.chain_id = client.chain_id
        self.tracker = tracker
        self.state = state
        self.config = config
        self.start_block = int(config.chain_settings(self.chain_id).get("EVENT_START_BLOCK", 0))
        self._stop_event = threading.Event()

    @property
    def latest_block(self) -> int:
        return self.state.get_cursor(self.chain_id, self.start_block)

    def start_event_monitoring(self) -> None:
        while not self._stop_event.is_set():
            try:
                current_block = self.client.block_number() - 1
                if self.latest_block < current_block:
                    self.scan_block_range(self.latest_block + 1, current_block)
            except Exception as ex:
                logger.error(
                    "RebalanceEventListener: Unexpected exception in event monitoring on chain %s: %s",
                    self.chain_id, ex, exc_info=True,
                )

            try:
                self.tracker.reconcile()
            except Exception as ex:
                logger.error("RebalanceEventListener: Bridge reconciliation failed: %s", ex, exc_info=True)

            self._stop_event.wait(float(self.config.get("SCAN_INTERVAL", 30)))

    def scan_block_range(self, start_block: int, end_block: int, max_retries: int = 3) -> bool:
        for attempt in range(max_retries):
            try:
                logger.info(
                    "RebalanceEventListener: Scanning blocks %s to %s on chain %s for rebalance events.",
                    start_block, end_block, self.chain_id,
                )

                events = self.client.get_rebalance_events(start_block, end_block)
                for event in events:
                    logger.info(
                        "RebalanceEventListener: %s event for %s (%s -> %s, amount %s) in %s",
                        event.kind, event.user, event.src_chain, event.dst_chain, event.amount, event.tx_hash,
                    )
                    try:
                        self.tracker.on_rebalance_event(event)
                    except Exception as ex:
                        logger.error(
                            "RebalanceEventListener: Exception applying event %s: %s", event.tx_hash, ex, exc_info=True
                        )

                self.state.set_cursor(self.chain_id, end_block)
                logger.info(
                    "RebalanceEventListener: Finished scanning blocks %s to %s on chain %s.",
                    start_block, end_block, self.chain_id,
                )
                return True
            except Exception as ex:
                logger.error(
                    "RebalanceEventListener: Exception scanning block range %s to %s (attempt %s/%s): %s",
                    start_block, end_block, attempt + 1, max_retries, ex, exc_info=True,
                )
                if attempt == max_retries - 1:
                    logger.error(
                        "RebalanceEventListener: Failed to scan block range %s to %s after %s attempts",
                        start_block, end_block, max_retries,
                    )
                else:
                    time.sleep(float(self.config.get("RETRY_DELAY", 5)))
        return False

    def batch_scan_on_startup(self) -> None:
        try:
            start_block = self.latest_block
            if start_block > self.start_block:
                start_block += 1
            current_block = self.client.block_number()
            batch_block_size = int(self.config.get("BATCH_SIZE", 10_000))

            logger.info(
                "RebalanceEventListener: Starting batch scan on chain %s from block %s to %s.",
                self.chain_id, start_block, current_block,
            )

            while start_block < current_block and not self._stop_event.is_set():
                end_block = min(start_block + batch_block_size, current_block)
                if not self.scan_block_range(start_block, end_block):
                    break
                self.state.save()
                start_block = end_block + 1
                time.sleep(float(self.config.get("BATCH_INTERVAL", 0)))

            logger.info(
                "RebalanceEventListener: Finished batch scan on chain %s at block %s.", self.chain_id, self.latest_block
            )
        except Exception as ex:
            logger.error(
                "RebalanceEventListener: Unexpected exception in batch scanning on startup: %s", ex, exc_info=True
            )

    def stop(self) -> None:
        self._stop_event.set()
