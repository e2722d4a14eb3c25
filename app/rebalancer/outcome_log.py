"""
Durable engine state: the append-only execution outcome log and the small
JSON state file holding the last-seen cooldowns and event listener cursors.
"""

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import ExecutionOutcome, ExecutionStatus

logger = setup_logger()

STATE_VERSION = 1


class OutcomeLog:
    """
    Append-only JSON-lines log of ExecutionOutcome records.

    Each status change appends the full record; reading folds records by
    outcome_id so the latest line for an outcome wins. With path=None the
    log is kept in memory only.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._outcomes: Dict[str, ExecutionOutcome] = {}
        if path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            logger.info("OutcomeLog: No outcome log found at %s, starting empty.", self.path)
            return

        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    outcome = ExecutionOutcome.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError, TypeError) as ex:
                    logger.error("OutcomeLog: Skipping corrupt record at %s:%s: %s", self.path, line_number, ex)
                    continue
                self._outcomes[outcome.outcome_id] = outcome

        logger.info("OutcomeLog: Loaded %s outcomes from %s", len(self._outcomes), self.path)

    def record(self, outcome: ExecutionOutcome) -> None:
        data = outcome.to_dict()
        with self._lock:
            if self.path:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(data) + "\n")
            self._outcomes[outcome.outcome_id] = ExecutionOutcome.from_dict(data)

    def get(self, outcome_id: str) -> Optional[ExecutionOutcome]:
        with self._lock:
            outcome = self._outcomes.get(outcome_id)
            return ExecutionOutcome.from_dict(outcome.to_dict()) if outcome else None

    def all(self) -> List[ExecutionOutcome]:
        with self._lock:
            return [ExecutionOutcome.from_dict(outcome.to_dict()) for outcome in self._outcomes.values()]

    def history(self, user: str) -> List[ExecutionOutcome]:
        """Outcomes of one user, newest first."""
        user = user.lower()
        outcomes = [outcome for outcome in self.all() if outcome.user.lower() == user]
        return sorted(outcomes, key=lambda outcome: outcome.created_at, reverse=True)

    def open_bridging(self) -> List[ExecutionOutcome]:
        return [outcome for outcome in self.all() if outcome.status == ExecutionStatus.BRIDGING]


class EngineState:
    """Last-seen cooldown snapshot per (user, chain) and event listener block cursors."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self.cooldowns: Dict[str, Dict[str, Any]] = {}
        self.block_cursors: Dict[int, int] = {}

    @staticmethod
    def _cooldown_key(user: str, chain_id: int) -> str:
        return f"{user.lower()}:{chain_id}"

    def observe_cooldown(self, user: str, chain_id: int, allowed: bool, time_remaining: int) -> None:
        with self._lock:
            self.cooldowns[self._cooldown_key(user, chain_id)] = {
                "allowed": allowed,
                "time_remaining": time_remaining,
                "observed_at": time.time(),
            }

    def last_cooldown(self, user: str, chain_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.cooldowns.get(self._cooldown_key(user, chain_id))

    def get_cursor(self, chain_id: int, default: int = 0) -> int:
        with self._lock:
            return self.block_cursors.get(chain_id, default)

    def set_cursor(self, chain_id: int, block: int) -> None:
        with self._lock:
            self.block_cursors[chain_id] = block

    def save(self) -> None:
        if not self.path:
            return
        try:
            with self._lock:
                state = {
                    "version": STATE_VERSION,
                    "cooldowns": dict(self.cooldowns),
                    "block_cursors": {str(chain_id): block for chain_id, block in self.block_cursors.items()},
                }
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(state, f)
            logger.info(
                "EngineState: State saved at time %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
            )
        except Exception as ex:
            logger.error("EngineState: Failed to save state: %s", ex, exc_info=True)

    def load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            logger.info("EngineState: No saved state found.")
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (json.JSONDecodeError, IOError) as ex:
            logger.error("EngineState: Corrupt state file, starting fresh: %s", ex)
            return

        state_version = state.get("version")
        if state_version != STATE_VERSION:
            logger.warning("EngineState: State version mismatch (got %s, expected %s)", state_version, STATE_VERSION)

        with self._lock:
            self.cooldowns = dict(state.get("cooldowns", {}))
            self.block_cursors = {int(chain_id): int(block) for chain_id, block in state.get("block_cursors", {}).items()}

        logger.info(
            "EngineState: Loaded %s cooldown observations and %s block cursors from %s",
            len(self.cooldowns), len(self.block_cursors), self.path,
        )
