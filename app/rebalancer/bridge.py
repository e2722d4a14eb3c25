"""
Cross-chain rebalance saga.

Phase one is the source-chain executeCrossChainRebalance call, confirmed by
the executor. Phase two is the bridge transfer and destination deposit,
which this engine does not control: it is observed through bridge progress
notifications and the destination vault's Rebalanced event. Each phase
change is appended to the outcome log, and open sagas are rebuilt from the
log on restart.
"""

import hashlib
import hmac
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from app.rebalancer.config_loader import EngineConfig
from app.rebalancer.decorators import make_api_post
from app.rebalancer.exceptions import BridgeError
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import BridgeProgress, ExecutionOutcome, ExecutionStatus, RebalanceEvent
from app.rebalancer.notifications import post_bridge_stalled_notification
from app.rebalancer.outcome_log import OutcomeLog

logger = setup_logger()

PROGRESS_KINDS = ("steps-expected", "step-complete", "started", "completed", "error")
SIGNATURE_HEADER = "X-Relay-Signature"


@dataclass(frozen=True)
class BridgeRequest:
    """
    Bridge `amount` of `token` to `dest_chain_id` and call deposit(asset, amount) on the destination adapter.

    client_reference is echoed back on every progress notification, so progress
    that arrives before the intent id is returned can still be matched.
    """

    user: str
    token: str
    amount: int
    source_chain_id: int
    dest_chain_id: int
    dest_contract: str
    dest_asset: str
    dest_function: str = "deposit"
    client_reference: str = ""


class BridgeClient(ABC):
    """Bridge-and-execute capability."""

    @abstractmethod
    def bridge_and_execute(self, request: BridgeRequest) -> str:
        """Start the transfer and return the intent id its progress notifications will carry."""


class HttpBridgeClient(BridgeClient):
    """
    Bridge relay reached over HTTP. The relay reports progress back to the
    engine's /rebalancer/bridge/progress webhook.
    """

    def __init__(self, relay_url: str, api_key: str = "", callback_url: str = ""):
        self.relay_url = relay_url.rstrip("/")
        self.callback_url = callback_url
        self.headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_config(cls, config: EngineConfig) -> Optional["HttpBridgeClient"]:
        if not config.BRIDGE_RELAY_URL:
            return None
        return cls(config.BRIDGE_RELAY_URL, config.BRIDGE_RELAY_API_KEY, config.get("BRIDGE_CALLBACK_URL", ""))

    def bridge_and_execute(self, request: BridgeRequest) -> str:
        payload = asdict(request)
        payload["amount"] = str(request.amount)
        payload["clientReference"] = payload.pop("client_reference")
        payload["callbackUrl"] = self.callback_url
        data = make_api_post(f"{self.relay_url}/intents", self.headers, payload)
        if not data or not data.get("intentId"):
            raise BridgeError(f"Bridge relay did not accept intent for {request.user}: {data}")
        logger.info("HttpBridgeClient: Intent %s created for %s", data["intentId"], request.user)
        return str(data["intentId"])


def sign_progress(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_progress_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """
    Progress callbacks carry an HMAC-SHA256 of the raw body keyed with the
    relay API key. Without a configured key every callback is rejected.
    """
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_progress(secret, body).encode(), signature.encode())


def _bridging_since(outcome: ExecutionOutcome) -> float:
    for status, ts in reversed(outcome.history):
        if status == ExecutionStatus.BRIDGING.value:
            return ts
    return outcome.updated_at


class BridgeTracker:
    """Open cross-chain sagas, completed by progress notifications or destination events."""

    def __init__(
        self,
        outcome_log: OutcomeLog,
        timeout_seconds: float,
        config: Optional[EngineConfig] = None,
        notify: bool = False,
    ):
        self.outcome_log = outcome_log
        self.timeout_seconds = timeout_seconds
        self.config = config
        self.notify = notify
        self._lock = threading.Lock()
        self._open: Dict[str, ExecutionOutcome] = {}
        self._by_intent: Dict[str, str] = {}
        self._completions: Dict[str, Future] = {}

    def resume(self) -> int:
        """Re-open every saga the outcome log still shows as bridging."""
        resumed = 0
        for outcome in self.outcome_log.open_bridging():
            self.open(outcome)
            resumed += 1
        if resumed:
            logger.info("BridgeTracker: Resumed observation of %s cross-chain rebalances", resumed)
        return resumed

    def open(self, outcome: ExecutionOutcome) -> Future:
        """Track a bridging outcome; the future resolves with it once it is terminal."""
        if outcome.status != ExecutionStatus.BRIDGING:
            raise ValueError(f"Outcome {outcome.outcome_id} is {outcome.status.value}, not bridging")
        with self._lock:
            self._open[outcome.outcome_id] = outcome
            if outcome.bridge_intent_id:
                self._by_intent[outcome.bridge_intent_id] = outcome.outcome_id
            future = self._completions.get(outcome.outcome_id)
            if future is None:
                future = Future()
                self._completions[outcome.outcome_id] = future
            return future

    def attach_intent(self, outcome_id: str, intent_id: str) -> None:
        with self._lock:
            outcome = self._open.get(outcome_id)
            if outcome is None:
                return
            outcome.bridge_intent_id = intent_id
            self._by_intent[intent_id] = outcome_id
        self.outcome_log.record(outcome)

    def open_outcomes(self) -> List[ExecutionOutcome]:
        with self._lock:
            return list(self._open.values())

    def _finish(
        self,
        outcome_id: str,
        status: ExecutionStatus,
        yield_gain_bps: Optional[int] = None,
        error: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> Optional[ExecutionOutcome]:
        with self._lock:
            outcome = self._open.pop(outcome_id, None)
            if outcome is None:
                return None
            if outcome.bridge_intent_id:
                self._by_intent.pop(outcome.bridge_intent_id, None)
            future = self._completions.pop(outcome_id, None)

        outcome.transition(status)
        if yield_gain_bps is not None:
            outcome.realized_yield_gain_bps = yield_gain_bps
        if error:
            outcome.error = error
        if tx_hash and tx_hash not in outcome.tx_hashes:
            outcome.tx_hashes.append(tx_hash)
        self.outcome_log.record(outcome)

        logger.info(
            "BridgeTracker: Outcome %s for %s is %s", outcome.outcome_id, outcome.user, outcome.status.value
        )
        if future is not None and not future.done():
            future.set_result(outcome)
        return outcome

    def fail(self, outcome_id: str, error: str) -> Optional[ExecutionOutcome]:
        """Close a saga whose bridge transfer could not be started."""
        return self._finish(outcome_id, ExecutionStatus.BRIDGE_FAILED, error=error)

    def on_progress(self, progress: BridgeProgress) -> Optional[ExecutionOutcome]:
        """Apply a bridge lifecycle notification. Returns the outcome when it became terminal."""
        if progress.kind not in PROGRESS_KINDS:
            logger.warning("BridgeTracker: Unknown progress kind %s for intent %s", progress.kind, progress.intent_id)
            return None

        with self._lock:
            outcome_id = self._by_intent.get(progress.intent_id)
            if outcome_id is None and progress.client_reference in self._open:
                # progress raced ahead of attach_intent
                outcome_id = progress.client_reference
                outcome = self._open[outcome_id]
                outcome.bridge_intent_id = outcome.bridge_intent_id or progress.intent_id
                self._by_intent[progress.intent_id] = outcome_id
        if outcome_id is None:
            logger.warning("BridgeTracker: Progress for unknown intent %s (%s)", progress.intent_id, progress.kind)
            return None

        if progress.kind == "completed":
            return self._finish(outcome_id, ExecutionStatus.COMPLETED)
        if progress.kind == "error":
            return self._finish(outcome_id, ExecutionStatus.BRIDGE_FAILED, error=progress.detail or "bridge error")

        logger.info("BridgeTracker: Intent %s progress %s %s", progress.intent_id, progress.kind, progress.detail or "")
        return None

    def _match(self, event: RebalanceEvent) -> Optional[str]:
        user = event.user.lower()
        with self._lock:
            candidates = [
                outcome
                for outcome in self._open.values()
                if outcome.user.lower() == user
                and outcome.decision.source_chain_id == event.src_chain
                and outcome.decision.dest_chain_id == event.dst_chain
                and outcome.decision.source_protocol_id == event.from_protocol
                and outcome.decision.dest_protocol_id == event.to_protocol
            ]
        if not candidates:
            return None
        exact = [outcome for outcome in candidates if outcome.decision.amount == event.amount]
        chosen = min(exact or candidates, key=lambda outcome: outcome.created_at)
        return chosen.outcome_id

    def on_rebalance_event(self, event: RebalanceEvent) -> Optional[ExecutionOutcome]:
        """Apply a vault event. A Rebalanced event on the destination chain completes the matching saga."""
        outcome_id = self._match(event)
        if event.kind == "initiated":
            if outcome_id is None:
                logger.info(
                    "BridgeTracker: Cross-chain rebalance initiated by %s in %s not started by this engine",
                    event.user, event.tx_hash,
                )
            else:
                logger.info("BridgeTracker: Initiation of outcome %s seen in %s", outcome_id, event.tx_hash)
            return None

        if event.chain_id != event.dst_chain:
            return None
        if outcome_id is None:
            logger.info("BridgeTracker: Rebalanced event %s matches no open cross-chain rebalance", event.tx_hash)
            return None
        return self._finish(
            outcome_id, ExecutionStatus.COMPLETED, yield_gain_bps=event.yield_gain_bps, tx_hash=event.tx_hash
        )

    def reconcile(self, now: Optional[float] = None) -> List[ExecutionOutcome]:
        """
        Flag sagas bridging for longer than the timeout. They stay bridging:
        completion is decided by the bridge, not by this engine.
        """
        now = time.time() if now is None else now
        flagged = []
        with self._lock:
            overdue = [
                outcome
                for outcome in self._open.values()
                if not outcome.bridge_timed_out and now - _bridging_since(outcome) > self.timeout_seconds
            ]
            for outcome in overdue:
                outcome.bridge_timed_out = True

        for outcome in overdue:
            self.outcome_log.record(outcome)
            logger.warning(
                "BridgeTracker: Outcome %s for %s has been bridging for over %ss, left open for reconciliation",
                outcome.outcome_id, outcome.user, self.timeout_seconds,
            )
            if self.notify:
                try:
                    post_bridge_stalled_notification(outcome, self.config)
                except Exception as ex:
                    logger.error("BridgeTracker: Failed to post stalled notification: %s", ex, exc_info=True)
            flagged.append(outcome)
        return flagged
