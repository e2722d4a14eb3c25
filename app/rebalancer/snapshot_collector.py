"""
Yield snapshot collector.

Reads yield, health and TVL of every deployed adapter concurrently, with a
bounded number of in-flight reads per chain endpoint, and waits for all of
them before returning. A failed read degrades that adapter's snapshot to
healthy=False / yield=0; it never aborts the collection.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from app.rebalancer.chain_client import ChainClient
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import ProtocolAdapter, ProtocolKind, SnapshotSet, YieldSnapshot
from app.rebalancer.morpho_api import fetch_vault_apy_bps
from app.rebalancer.registry import ChainRegistry

logger = setup_logger()


class YieldSnapshotCollector:
    def __init__(
        self,
        registry: ChainRegistry,
        clients: Dict[int, ChainClient],
        max_reads_per_chain: int = 4,
        max_workers: int = 16,
        record_on_chain: bool = False,
        external_apy_fetcher: Callable[[str, int], int] = fetch_vault_apy_bps,
    ):
        self.registry = registry
        self.clients = clients
        self.max_workers = max_workers
        self.record_on_chain = record_on_chain
        self.external_apy_fetcher = external_apy_fetcher
        self._chain_slots = {
            chain_id: threading.BoundedSemaphore(max_reads_per_chain) for chain_id in clients
        }

    def collect(self, cycle_id: Optional[str] = None) -> SnapshotSet:
        cycle_id = cycle_id or uuid.uuid4().hex
        collected_at = time.time()

        adapters = [adapter for adapter in self.registry.deployed_adapters() if adapter.chain_id in self.clients]
        skipped = len(self.registry.deployed_adapters()) - len(adapters)
        if skipped:
            logger.warning("SnapshotCollector: %s deployed adapters have no chain client and were skipped", skipped)

        logger.info("SnapshotCollector: Collecting %s adapters for cycle %s", len(adapters), cycle_id)

        snapshots: Dict = {}
        if adapters:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(adapters))) as executor:
                futures = [
                    executor.submit(self._snapshot_adapter, adapter, cycle_id, collected_at) for adapter in adapters
                ]
                wait(futures)
            for future in futures:
                snapshot = future.result()
                snapshots[snapshot.key] = snapshot

        healthy = sum(1 for snapshot in snapshots.values() if snapshot.healthy)
        logger.info(
            "SnapshotCollector: Cycle %s collected %s snapshots (%s healthy, %s degraded)",
            cycle_id, len(snapshots), healthy, len(snapshots) - healthy,
        )

        snapshot_set = SnapshotSet(cycle_id=cycle_id, collected_at=collected_at, snapshots=snapshots)
        if self.record_on_chain:
            self.record_apys(snapshot_set)
        return snapshot_set

    def _snapshot_adapter(self, adapter: ProtocolAdapter, cycle_id: str, collected_at: float) -> YieldSnapshot:
        client = self.clients[adapter.chain_id]
        with self._chain_slots[adapter.chain_id]:
            try:
                yield_bps = self._read_yield(client, adapter)
                healthy = client.is_healthy(adapter)
                tvl = client.get_tvl(adapter)
            except Exception as ex:
                logger.warning(
                    "SnapshotCollector: Read failed for %s on chain %s, degrading snapshot: %s",
                    adapter.name, adapter.chain_id, ex,
                )
                return YieldSnapshot(
                    chain_id=adapter.chain_id,
                    protocol_id=adapter.protocol_id,
                    yield_bps=0,
                    tvl=0,
                    healthy=False,
                    collected_at=collected_at,
                    cycle_id=cycle_id,
                )

        logger.debug(
            "SnapshotCollector: %s on chain %s apy %.2f%% tvl %s healthy %s",
            adapter.name, adapter.chain_id, yield_bps / 100, tvl, healthy,
        )
        return YieldSnapshot(
            chain_id=adapter.chain_id,
            protocol_id=adapter.protocol_id,
            yield_bps=max(int(yield_bps), 0),
            tvl=max(int(tvl), 0),
            healthy=bool(healthy),
            collected_at=collected_at,
            cycle_id=cycle_id,
        )

    def _read_yield(self, client: ChainClient, adapter: ProtocolAdapter) -> int:
        if adapter.kind == ProtocolKind.CURATED_VAULT and adapter.morpho_vault:
            return self.external_apy_fetcher(adapter.morpho_vault, adapter.chain_id)
        return client.get_current_apy(adapter)

    def record_apys(self, snapshot_set: SnapshotSet) -> List[str]:
        """Record healthy yields on the automation contract of each chain."""
        tx_hashes = []
        for snapshot in snapshot_set.healthy():
            try:
                tx_hashes.append(self.clients[snapshot.chain_id].record_apy(snapshot.protocol_id, snapshot.yield_bps))
            except Exception as ex:
                logger.error(
                    "SnapshotCollector: Failed to record apy for protocol %s on chain %s: %s",
                    snapshot.protocol_id, snapshot.chain_id, ex, exc_info=True,
                )
        return tx_hashes
