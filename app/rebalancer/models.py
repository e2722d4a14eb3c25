"""
Data classes shared by the rebalancer components.
"""

import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from app.rebalancer.exceptions import InvalidTransitionError

SnapshotKey = Tuple[int, int]


class ProtocolKind(str, Enum):
    LENDING_POOL = "lending-pool"
    MONEY_MARKET = "money-market"
    CURATED_VAULT = "curated-vault"


@dataclass(frozen=True)
class ChainDescriptor:
    """A supported network and the engine contracts deployed on it."""

    chain_id: int
    name: str
    rpc_url: Optional[str]
    vault_address: Optional[str]
    automation_address: Optional[str]
    native_price_usd: float = 0.0

    @property
    def reachable(self) -> bool:
        return bool(self.rpc_url)

    @property
    def deployed(self) -> bool:
        return self.reachable and bool(self.vault_address) and bool(self.automation_address)


@dataclass(frozen=True)
class ProtocolAdapter:
    """A deployed protocol adapter on one chain."""

    chain_id: int
    protocol_id: int
    name: str
    kind: ProtocolKind
    adapter_address: str
    asset_address: str
    asset_decimals: int = 6
    morpho_vault: Optional[str] = None

    @property
    def key(self) -> SnapshotKey:
        return (self.chain_id, self.protocol_id)


@dataclass(frozen=True)
class UndeployedAdapter:
    """A configured adapter that must not be queried, with the reason why."""

    chain_id: int
    protocol_id: int
    name: str
    reason: str

    @property
    def key(self) -> SnapshotKey:
        return (self.chain_id, self.protocol_id)


@dataclass(frozen=True)
class YieldSnapshot:
    chain_id: int
    protocol_id: int
    yield_bps: int
    tvl: int
    healthy: bool
    collected_at: float
    cycle_id: str

    @property
    def key(self) -> SnapshotKey:
        return (self.chain_id, self.protocol_id)


@dataclass(frozen=True)
class SnapshotSet:
    """All snapshots of one collection cycle, keyed by (chain id, protocol id)."""

    cycle_id: str
    collected_at: float
    snapshots: Dict[SnapshotKey, YieldSnapshot]

    def __iter__(self) -> Iterator[YieldSnapshot]:
        return iter(self.snapshots.values())

    def __len__(self) -> int:
        return len(self.snapshots)

    def get(self, chain_id: int, protocol_id: int) -> Optional[YieldSnapshot]:
        return self.snapshots.get((chain_id, protocol_id))

    def healthy(self) -> List[YieldSnapshot]:
        return [snapshot for snapshot in self.snapshots.values() if snapshot.healthy]


@dataclass
class UserGuardrails:
    """User-configured limits, as stored by the vault contract."""

    user: str
    max_slippage_bps: int
    gas_ceiling_usd: int  # micro-USD
    min_yield_gain_bps: int
    automation_enabled: bool
    last_updated: int = 0

    DEFAULT_MAX_SLIPPAGE_BPS = 100
    DEFAULT_GAS_CEILING_USD = 5_000_000
    DEFAULT_MIN_YIELD_GAIN_BPS = 50

    MAX_SLIPPAGE_LIMIT_BPS = 1_000
    GAS_CEILING_LIMIT_USD = 100_000_000
    MIN_YIELD_GAIN_LIMIT_BPS = 10_000

    @classmethod
    def defaults(cls, user: str) -> "UserGuardrails":
        """Safe defaults for a user who never configured guardrails. Automation stays off."""
        return cls(
            user=user,
            max_slippage_bps=cls.DEFAULT_MAX_SLIPPAGE_BPS,
            gas_ceiling_usd=cls.DEFAULT_GAS_CEILING_USD,
            min_yield_gain_bps=cls.DEFAULT_MIN_YIELD_GAIN_BPS,
            automation_enabled=False,
            last_updated=0,
        )

    def validate(self) -> List[str]:
        """Return a list of problems with these guardrails, empty when they are sane."""
        problems = []
        if not 0 <= self.max_slippage_bps <= self.MAX_SLIPPAGE_LIMIT_BPS:
            problems.append(f"max slippage must be within 0..{self.MAX_SLIPPAGE_LIMIT_BPS} bps")
        if not 0 <= self.gas_ceiling_usd <= self.GAS_CEILING_LIMIT_USD:
            problems.append(f"gas ceiling must be within $0..${self.GAS_CEILING_LIMIT_USD / 1e6:.0f}")
        if not 0 <= self.min_yield_gain_bps <= self.MIN_YIELD_GAIN_LIMIT_BPS:
            problems.append(f"min yield gain must be within 0..{self.MIN_YIELD_GAIN_LIMIT_BPS} bps")
        return problems


@dataclass(frozen=True)
class UserPosition:
    user: str
    chain_id: int
    protocol_id: int
    balance: int


@dataclass(frozen=True)
class YieldOpportunity:
    """A candidate move between two snapshots of the same cycle."""

    source_chain_id: int
    source_protocol_id: int
    source_yield_bps: int
    dest_chain_id: int
    dest_protocol_id: int
    dest_yield_bps: int
    dest_adapter_address: str
    yield_gain_bps: int
    is_cross_chain: bool
    estimated_cost: int  # micro-USD
    expected_profit: int  # micro-USD, over the projection window for the reference size
    profitable_after_gas: bool
    cycle_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Verdict(str, Enum):
    AUTOMATION_DISABLED = "automation-disabled"
    GAIN_BELOW_USER_MINIMUM = "gain-below-user-minimum"
    GAS_ABOVE_USER_CEILING = "gas-above-user-ceiling"
    COOLDOWN_ACTIVE = "cooldown-active"
    NOT_PROFITABLE = "not-profitable"
    OK = "ok"


@dataclass
class RebalanceDecision:
    user: str
    source_chain_id: int
    source_protocol_id: int
    dest_chain_id: int
    dest_protocol_id: int
    dest_adapter_address: str
    amount: int
    min_yield_gain_bps: int
    estimated_cost: int  # micro-USD
    verdict: Optional[Verdict] = None
    reason: str = ""

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError(f"Rebalance amount cannot be negative: {self.amount}")

    @property
    def is_cross_chain(self) -> bool:
        return self.source_chain_id != self.dest_chain_id

    @property
    def approved(self) -> bool:
        return self.verdict == Verdict.OK

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["verdict"] = self.verdict.value if self.verdict else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RebalanceDecision":
        data = dict(data)
        data["verdict"] = Verdict(data["verdict"]) if data.get("verdict") else None
        return cls(**data)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    BRIDGING = "bridging"
    COMPLETED = "completed"
    BRIDGE_FAILED = "bridge-failed"


ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.SUBMITTED, ExecutionStatus.FAILED},
    ExecutionStatus.SUBMITTED: {ExecutionStatus.CONFIRMED, ExecutionStatus.FAILED},
    ExecutionStatus.CONFIRMED: {ExecutionStatus.BRIDGING},
    ExecutionStatus.BRIDGING: {ExecutionStatus.COMPLETED, ExecutionStatus.BRIDGE_FAILED},
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.BRIDGE_FAILED: set(),
}


@dataclass
class ExecutionOutcome:
    """Durable record of one decision's execution, updated phase by phase."""

    outcome_id: str
    decision: RebalanceDecision
    status: ExecutionStatus = ExecutionStatus.PENDING
    tx_hashes: List[str] = field(default_factory=list)
    realized_gas_cost: Optional[int] = None  # micro-USD
    realized_yield_gain_bps: Optional[int] = None
    error: Optional[str] = None
    bridge_intent_id: Optional[str] = None
    bridge_timed_out: bool = False
    history: List[Tuple[str, float]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = 0.0

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.status.value, self.created_at))
            self.updated_at = self.created_at

    @property
    def user(self) -> str:
        return self.decision.user

    @property
    def success(self) -> bool:
        return self.status in (ExecutionStatus.CONFIRMED, ExecutionStatus.BRIDGING, ExecutionStatus.COMPLETED)

    @property
    def terminal(self) -> bool:
        if self.decision.is_cross_chain and self.status == ExecutionStatus.CONFIRMED:
            return False
        return self.status in (
            ExecutionStatus.CONFIRMED,
            ExecutionStatus.FAILED,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.BRIDGE_FAILED,
        )

    def transition(self, status: ExecutionStatus, now: Optional[float] = None) -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Outcome {self.outcome_id} cannot move from {self.status.value} to {status.value}"
            )
        if status == ExecutionStatus.BRIDGING and not self.decision.is_cross_chain:
            raise InvalidTransitionError(f"Outcome {self.outcome_id} is same-chain and cannot bridge")
        now = time.time() if now is None else now
        self.status = status
        self.updated_at = now
        self.history.append((status.value, now))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome_id": self.outcome_id,
            "decision": self.decision.to_dict(),
            "status": self.status.value,
            "tx_hashes": list(self.tx_hashes),
            "realized_gas_cost": self.realized_gas_cost,
            "realized_yield_gain_bps": self.realized_yield_gain_bps,
            "error": self.error,
            "bridge_intent_id": self.bridge_intent_id,
            "bridge_timed_out": self.bridge_timed_out,
            "history": [list(entry) for entry in self.history],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionOutcome":
        return cls(
            outcome_id=data["outcome_id"],
            decision=RebalanceDecision.from_dict(data["decision"]),
            status=ExecutionStatus(data["status"]),
            tx_hashes=list(data.get("tx_hashes", [])),
            realized_gas_cost=data.get("realized_gas_cost"),
            realized_yield_gain_bps=data.get("realized_yield_gain_bps"),
            error=data.get("error"),
            bridge_intent_id=data.get("bridge_intent_id"),
            bridge_timed_out=data.get("bridge_timed_out", False),
            history=[(status, ts) for status, ts in data.get("history", [])],
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
        )


@dataclass(frozen=True)
class TxReceipt:
    """Resolved pending handle."""

    tx_hash: str
    success: bool
    block_number: int
    gas_used: int
    effective_gas_price: int
    yield_gain_bps: Optional[int] = None


@dataclass(frozen=True)
class RebalanceEvent:
    """A decoded CrossChainRebalanceInitiated or Rebalanced vault event."""

    kind: str  # "initiated" or "completed"
    chain_id: int
    user: str
    from_protocol: int
    to_protocol: int
    amount: int
    src_chain: int
    dst_chain: int
    tx_hash: str
    block_number: int
    yield_gain_bps: Optional[int] = None
    automation_address: Optional[str] = None


@dataclass(frozen=True)
class BridgeProgress:
    """A lifecycle notification from the bridge capability."""

    intent_id: str
    kind: str  # steps-expected, step-complete, started, completed, error
    detail: Optional[str] = None
    client_reference: Optional[str] = None


@dataclass
class CycleSummary:
    cycle_id: str
    started_at: float
    finished_at: float = 0.0
    executed: int = 0
    failed: int = 0
    skipped_not_profitable: int = 0
    skipped_guardrail: int = 0
    bridging: int = 0
    dry_run_approved: int = 0
    users_processed: int = 0
    cancelled: bool = False
    reject_reasons: Counter = field(default_factory=Counter)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reject_reasons"] = dict(self.reject_reasons)
        return data
