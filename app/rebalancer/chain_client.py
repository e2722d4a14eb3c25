"""
Per-chain read / write access to the vault, the automation contract and the
protocol adapters.

Every read goes to the chain at call time. Writes are signed with the
automation key and sent raw; the returned transaction hash is the pending
handle, resolved through watch_receipt().
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.logs import DISCARD

from app.rebalancer.config_loader import EngineConfig
from app.rebalancer.contracts import create_contract_instance
from app.rebalancer.exceptions import ExecutionConfirmError, ExecutionSubmitError, ReadUnavailableError
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import ChainDescriptor, ProtocolAdapter, RebalanceDecision, RebalanceEvent, TxReceipt

logger = setup_logger()

ADAPTER_ABI = "YieldAdapter.json"
VAULT_ABI = "YieldVault.json"
AUTOMATION_ABI = "RebalanceAutomation.json"


class ChainClient:
    """Read and write capability for one chain."""

    def __init__(self, chain: ChainDescriptor, config: EngineConfig, w3: Optional[Web3] = None):
        self.chain = chain
        self.chain_id = chain.chain_id
        self.config = config
        self.w3 = w3 or config.w3_for(chain.chain_id)

        self.vault = create_contract_instance(self.w3, chain.vault_address, config.abi_path(VAULT_ABI))
        self.automation = create_contract_instance(self.w3, chain.automation_address, config.abi_path(AUTOMATION_ABI))
        self._adapters: Dict[str, object] = {}

        self._send_lock = threading.Lock()
        self._receipt_lock = threading.Lock()
        self._pending_receipts: Dict[str, Future] = {}
        self._receipt_executor = ThreadPoolExecutor(
            max_workers=int(config.get("RECEIPT_WORKERS", 4)), thread_name_prefix=f"receipts-{self.chain_id}"
        )

    def _adapter_contract(self, adapter: ProtocolAdapter):
        contract = self._adapters.get(adapter.adapter_address)
        if contract is None:
            contract = create_contract_instance(self.w3, adapter.adapter_address, self.config.abi_path(ADAPTER_ABI))
            self._adapters[adapter.adapter_address] = contract
        return contract

    def _read(self, call, what: str):
        try:
            return call.call()
        except Exception as ex:
            raise ReadUnavailableError(f"{self.chain.name}: {what} failed: {ex}") from ex

    # Reads

    def block_number(self) -> int:
        try:
            return self.w3.eth.block_number
        except Exception as ex:
            raise ReadUnavailableError(f"{self.chain.name}: block number unavailable: {ex}") from ex

    def get_current_apy(self, adapter: ProtocolAdapter) -> int:
        contract = self._adapter_contract(adapter)
        return int(self._read(contract.functions.getCurrentAPY(adapter.asset_address), f"{adapter.name} getCurrentAPY"))

    def is_healthy(self, adapter: ProtocolAdapter) -> bool:
        contract = self._adapter_contract(adapter)
        return bool(self._read(contract.functions.isHealthy(), f"{adapter.name} isHealthy"))

    def get_tvl(self, adapter: ProtocolAdapter) -> int:
        contract = self._adapter_contract(adapter)
        return int(self._read(contract.functions.getBalance(self.chain.vault_address), f"{adapter.name} getBalance"))

    def get_protocol_balance(self, user: str, protocol_id: int) -> int:
        call = self.vault.functions.getProtocolBalance(Web3.to_checksum_address(user), protocol_id)
        return int(self._read(call, f"getProtocolBalance({user}, {protocol_id})"))

    def get_user_guardrails(self, user: str) -> Tuple[int, int, int, bool, int]:
        call = self.vault.functions.getUserGuardrails(Web3.to_checksum_address(user))
        max_slippage, gas_ceiling, min_diff, enabled, last_updated = self._read(call, f"getUserGuardrails({user})")
        return int(max_slippage), int(gas_ceiling), int(min_diff), bool(enabled), int(last_updated)

    def can_rebalance(self, user: str, chain_id: int) -> Tuple[bool, int]:
        call = self.automation.functions.canRebalance(Web3.to_checksum_address(user), chain_id)
        allowed, time_remaining = self._read(call, f"canRebalance({user}, {chain_id})")
        return bool(allowed), int(time_remaining)

    # Writes

    def _send(self, function, what: str) -> str:
        with self._send_lock:
            try:
                nonce = self.w3.eth.get_transaction_count(self.config.AUTOMATION_EOA, "pending")
                tx = function.build_transaction(
                    {
                        "chainId": self.chain_id,
                        "from": self.config.AUTOMATION_EOA,
                        "nonce": nonce,
                    }
                )
                signed_tx = self.w3.eth.account.sign_transaction(tx, self.config.AUTOMATION_PRIVATE_KEY)
                tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
            except Exception as ex:
                raise ExecutionSubmitError(f"{self.chain.name}: {what} submission failed: {ex}") from ex

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info("ChainClient: %s submitted on %s with hash %s (nonce %s)", what, self.chain.name, tx_hash_hex, nonce)
        return tx_hash_hex

    def submit_same_chain_rebalance(self, decision: RebalanceDecision) -> str:
        function = self.automation.functions.executeSameChainRebalance(
            decision.source_chain_id,
            Web3.to_checksum_address(decision.user),
            decision.source_protocol_id,
            decision.dest_protocol_id,
            decision.amount,
            decision.min_yield_gain_bps,
            decision.estimated_cost,
        )
        return self._send(function, "executeSameChainRebalance")

    def submit_cross_chain_rebalance(self, decision: RebalanceDecision) -> str:
        function = self.automation.functions.executeCrossChainRebalance(
            decision.source_chain_id,
            decision.dest_chain_id,
            Web3.to_checksum_address(decision.user),
            decision.source_protocol_id,
            decision.dest_protocol_id,
            decision.amount,
            decision.min_yield_gain_bps,
            decision.estimated_cost,
            Web3.to_checksum_address(decision.dest_adapter_address),
        )
        return self._send(function, "executeCrossChainRebalance")

    def record_apy(self, protocol_id: int, apy_bps: int) -> str:
        function = self.automation.functions.recordAPY(self.chain_id, protocol_id, apy_bps)
        return self._send(function, f"recordAPY({protocol_id})")

    # Completion

    def watch_receipt(self, tx_hash: str, timeout: float) -> Future:
        """
        Future resolving the pending handle to a TxReceipt.

        One future per handle; watching the same hash twice returns the same
        future.
        """
        with self._receipt_lock:
            future = self._pending_receipts.get(tx_hash)
            if future is not None:
                return future
            future = self._receipt_executor.submit(self._resolve_receipt, tx_hash, timeout)
            self._pending_receipts[tx_hash] = future

        # a finished future runs the callback right here, so the lock must be released first
        future.add_done_callback(lambda done, h=tx_hash: self._forget_receipt(h, done))
        return future

    def _forget_receipt(self, tx_hash: str, future: Future) -> None:
        with self._receipt_lock:
            if self._pending_receipts.get(tx_hash) is future:
                del self._pending_receipts[tx_hash]

    def _resolve_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as ex:
            raise ExecutionConfirmError(f"{self.chain.name}: no receipt for {tx_hash} after {timeout}s") from ex
        except Exception as ex:
            raise ExecutionConfirmError(f"{self.chain.name}: receipt lookup for {tx_hash} failed: {ex}") from ex

        yield_gain = None
        try:
            executed = self.automation.events.RebalanceExecuted().process_receipt(receipt, errors=DISCARD)
            if executed:
                yield_gain = int(executed[0]["args"]["apyGain"])
        except Exception as ex:
            logger.warning("ChainClient: Could not decode RebalanceExecuted from %s: %s", tx_hash, ex)

        return TxReceipt(
            tx_hash=tx_hash,
            success=receipt["status"] == 1,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            effective_gas_price=int(receipt.get("effectiveGasPrice", 0) or 0),
            yield_gain_bps=yield_gain,
        )

    # Events

    def get_rebalance_events(self, from_block: int, to_block: int) -> List[RebalanceEvent]:
        """Decode the vault's CrossChainRebalanceInitiated and Rebalanced logs over a block range."""
        initiated = self.vault.events.CrossChainRebalanceInitiated().get_logs(from_block=from_block, to_block=to_block)
        completed = self.vault.events.Rebalanced().get_logs(from_block=from_block, to_block=to_block)

        events = []
        for log in initiated:
            args = log["args"]
            events.append(
                RebalanceEvent(
                    kind="initiated",
                    chain_id=self.chain_id,
                    user=Web3.to_checksum_address(args["user"]),
                    from_protocol=int(args["fromProtocol"]),
                    to_protocol=int(args["toProtocol"]),
                    amount=int(args["amount"]),
                    src_chain=int(args["srcChain"]),
                    dst_chain=int(args["dstChain"]),
                    tx_hash=Web3.to_hex(log["transactionHash"]),
                    block_number=int(log["blockNumber"]),
                    automation_address=args["vincentAutomation"],
                )
            )
        for log in completed:
            args = log["args"]
            events.append(
                RebalanceEvent(
                    kind="completed",
                    chain_id=self.chain_id,
                    user=Web3.to_checksum_address(args["user"]),
                    from_protocol=int(args["fromProtocol"]),
                    to_protocol=int(args["toProtocol"]),
                    amount=int(args["amount"]),
                    src_chain=int(args["srcChain"]),
                    dst_chain=int(args["dstChain"]),
                    tx_hash=Web3.to_hex(log["transactionHash"]),
                    block_number=int(log["blockNumber"]),
                    yield_gain_bps=int(args["apyGain"]),
                )
            )
        return sorted(events, key=lambda event: event.block_number)

    def close(self) -> None:
        self._receipt_executor.shutdown(wait=False)


def build_chain_clients(registry, config: EngineConfig) -> Dict[int, ChainClient]:
    """One ChainClient per chain that has an endpoint and the engine contracts deployed."""
    clients = {}
    for chain in registry.deployed_chains():
        clients[chain.chain_id] = ChainClient(chain, config)
    return clients
