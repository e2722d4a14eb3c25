import os
from concurrent.futures import Future
from dataclasses import replace
from typing import Dict, List

import pytest
from dotenv import load_dotenv

from app.rebalancer.config_loader import EngineConfig, load_config
from app.rebalancer.cost_model import StepCostModel
from app.rebalancer.exceptions import ReadUnavailableError
from app.rebalancer.models import (
    ChainDescriptor,
    ProtocolAdapter,
    ProtocolKind,
    RebalanceDecision,
    TxReceipt,
    UndeployedAdapter,
    Verdict,
)
from app.rebalancer.outcome_log import OutcomeLog
from app.rebalancer.registry import ChainRegistry

TEST_DIR = os.path.dirname(os.path.abspath(__file__))
TEST_CONFIG_PATH = os.path.join(TEST_DIR, "config.test.yaml")

TEST_USER = "0xabcdef0123456789abcdef0123456789abcdef01"
OTHER_USER = "0x1234567890123456789012345678901234567890"

ETHEREUM = 1
BASE = 8453
AAVE = 1
COMPOUND = 2
MORPHO = 3

USDC_ETHEREUM = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"

# 10,000 USDC
POSITION_BALANCE = 10_000 * 10**6


class FakeChainClient:
    """In-memory stand-in for ChainClient. Values set to an Exception are raised on read."""

    def __init__(self, chain: ChainDescriptor):
        self.chain = chain
        self.chain_id = chain.chain_id
        self.apys: Dict[int, object] = {}
        self.health: Dict[int, object] = {}
        self.tvls: Dict[int, object] = {}
        self.balances: Dict[tuple, object] = {}
        self.guardrails: Dict[str, object] = {}
        self.cooldowns: Dict[str, object] = {}
        self.receipt = TxReceipt("", True, 1234, 200_000, 10 * 10**9)
        self.receipt_error = None
        self.submit_error = None
        self.submissions: List[tuple] = []
        self.recorded_apys: List[tuple] = []
        self.events = []
        self.block = 100
        self.balance_reads = 0

    @staticmethod
    def _value(table, key, default):
        value = table.get(key, default)
        if isinstance(value, Exception):
            raise value
        return value

    def block_number(self) -> int:
        return self.block

    def get_current_apy(self, adapter) -> int:
        return self._value(self.apys, adapter.protocol_id, 0)

    def is_healthy(self, adapter) -> bool:
        return self._value(self.health, adapter.protocol_id, True)

    def get_tvl(self, adapter) -> int:
        return self._value(self.tvls, adapter.protocol_id, 1_000_000 * 10**6)

    def get_protocol_balance(self, user: str, protocol_id: int) -> int:
        self.balance_reads += 1
        value = self.balances.get((user.lower(), protocol_id), 0)
        if isinstance(value, list):
            # successive reads return successive values, the last one repeats
            return value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        return value

    def get_user_guardrails(self, user: str):
        return self._value(self.guardrails, user.lower(), (0, 0, 0, False, 0))

    def can_rebalance(self, user: str, chain_id: int):
        return self._value(self.cooldowns, user.lower(), (True, 0))

    def _submit(self, kind: str, decision) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append((kind, decision))
        return "0x" + f"{self.chain_id:08x}{len(self.submissions):056x}"

    def submit_same_chain_rebalance(self, decision) -> str:
        return self._submit("same-chain", decision)

    def submit_cross_chain_rebalance(self, decision) -> str:
        return self._submit("cross-chain", decision)

    def record_apy(self, protocol_id: int, apy_bps: int) -> str:
        self.recorded_apys.append((protocol_id, apy_bps))
        return "0x" + "ab" * 32

    def watch_receipt(self, tx_hash: str, timeout: float) -> Future:
        future = Future()
        if self.receipt_error is not None:
            future.set_exception(self.receipt_error)
        elif self.receipt is not None:
            future.set_result(replace(self.receipt, tx_hash=tx_hash))
        return future

    def get_rebalance_events(self, from_block: int, to_block: int):
        return [event for event in self.events if from_block <= event.block_number <= to_block]

    def close(self) -> None:
        pass


def set_guardrails(client, user=TEST_USER, max_slippage=100, gas_ceiling=5_000_000, min_diff=50, enabled=True):
    client.guardrails[user.lower()] = (max_slippage, gas_ceiling, min_diff, enabled, 1_700_000_000)


def make_decision(
    source_chain=ETHEREUM,
    source_protocol=AAVE,
    dest_chain=ETHEREUM,
    dest_protocol=COMPOUND,
    amount=POSITION_BALANCE,
    gain=100,
    cost=1_000_000,
    user=TEST_USER,
    approved=False,
) -> RebalanceDecision:
    decision = RebalanceDecision(
        user=user,
        source_chain_id=source_chain,
        source_protocol_id=source_protocol,
        dest_chain_id=dest_chain,
        dest_protocol_id=dest_protocol,
        dest_adapter_address="0x" + "77" * 20,
        amount=amount,
        min_yield_gain_bps=gain,
        estimated_cost=cost,
    )
    if approved:
        decision.verdict = Verdict.OK
        decision.reason = "All validations passed"
    return decision


@pytest.fixture()
def config(monkeypatch, tmp_path) -> EngineConfig:
    load_dotenv(dotenv_path=os.path.join(TEST_DIR, "..", ".env.example"))
    monkeypatch.setenv("TEST_ETHEREUM_RPC_URL", "http://localhost:8545")
    monkeypatch.setenv("TEST_BASE_RPC_URL", "http://localhost:8546")
    monkeypatch.delenv("TEST_OPTIMISM_RPC_URL", raising=False)
    monkeypatch.setenv("OUTCOME_LOG_PATH", str(tmp_path / "outcomes.jsonl"))
    monkeypatch.setenv("STATE_PATH", str(tmp_path / "engine_state.json"))
    monkeypatch.setenv("NOTIFICATION_URL", "")
    monkeypatch.setenv("BRIDGE_RELAY_URL", "")
    return load_config(TEST_CONFIG_PATH)


@pytest.fixture()
def registry() -> ChainRegistry:
    chains = [
        ChainDescriptor(ETHEREUM, "Ethereum", "http://localhost:8545", "0x" + "11" * 20, "0x" + "22" * 20, 2000.0),
        ChainDescriptor(BASE, "Base", "http://localhost:8546", "0x" + "55" * 20, "0x" + "66" * 20, 2000.0),
    ]
    adapters = [
        ProtocolAdapter(ETHEREUM, AAVE, "Aave V3", ProtocolKind.LENDING_POOL, "0x" + "33" * 20, USDC_ETHEREUM),
        ProtocolAdapter(ETHEREUM, COMPOUND, "Compound V3", ProtocolKind.MONEY_MARKET, "0x" + "44" * 20, USDC_ETHEREUM),
        ProtocolAdapter(BASE, AAVE, "Aave V3", ProtocolKind.LENDING_POOL, "0x" + "77" * 20, USDC_BASE),
        UndeployedAdapter(BASE, MORPHO, "Morpho Blue", "adapter not deployed yet"),
    ]
    return ChainRegistry(chains, adapters)


@pytest.fixture()
def clients(registry) -> Dict[int, FakeChainClient]:
    return {chain.chain_id: FakeChainClient(chain) for chain in registry.chains()}


@pytest.fixture()
def cost_model() -> StepCostModel:
    return StepCostModel()


@pytest.fixture()
def outcome_log(tmp_path) -> OutcomeLog:
    return OutcomeLog(str(tmp_path / "outcomes.jsonl"))


@pytest.fixture()
def unreachable():
    return ReadUnavailableError("Ethereum: getCurrentAPY failed: connection refused")
