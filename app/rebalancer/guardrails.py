"""
Guardrail validation of rebalance decisions.

Checks run in a fixed order and stop at the first failure:
automation flag, user minimum gain, user gas ceiling (static comparisons),
then the on-chain cooldown, then the profitability recomputation for the
decision's actual amount.
"""

from typing import Callable, Dict, Optional

from app.rebalancer.chain_client import ChainClient
from app.rebalancer.cost_model import MICRO_USD, CostModel, asset_to_micro_usd, is_profitable, project_yield
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import RebalanceDecision, UserGuardrails, Verdict
from app.rebalancer.registry import ChainRegistry

logger = setup_logger()

CooldownObserver = Callable[[str, int, bool, int], None]


def read_guardrails(client: ChainClient, user: str) -> UserGuardrails:
    """
    Read a user's guardrails from the vault on the client's chain.

    A struct that was never written (last_updated == 0) means the user never
    configured guardrails; safe defaults with automation disabled are used.
    """
    max_slippage, gas_ceiling, min_diff, enabled, last_updated = client.get_user_guardrails(user)
    if last_updated == 0:
        logger.info("Guardrails: %s has no guardrails on chain %s, using defaults", user, client.chain_id)
        return UserGuardrails.defaults(user)
    return UserGuardrails(
        user=user,
        max_slippage_bps=max_slippage,
        gas_ceiling_usd=gas_ceiling,
        min_yield_gain_bps=min_diff,
        automation_enabled=enabled,
        last_updated=last_updated,
    )


class GuardrailValidator:
    def __init__(
        self,
        registry: ChainRegistry,
        clients: Dict[int, ChainClient],
        cost_model: CostModel,
        projection_days: int = 30,
        min_profit_usd: int = 1 * MICRO_USD,
        cooldown_observer: Optional[CooldownObserver] = None,
    ):
        self.registry = registry
        self.clients = clients
        self.cost_model = cost_model
        self.projection_days = projection_days
        self.min_profit_usd = min_profit_usd
        self.cooldown_observer = cooldown_observer

    def _reject(self, decision: RebalanceDecision, verdict: Verdict, reason: str) -> Verdict:
        decision.verdict = verdict
        decision.reason = reason
        logger.info("GuardrailValidator: %s rejected (%s): %s", decision.user, verdict.value, reason)
        return verdict

    def validate(self, decision: RebalanceDecision, guardrails: UserGuardrails) -> Verdict:
        """
        Set decision.verdict / decision.reason and return the verdict.

        Raises:
            ReadUnavailableError: the cooldown could not be read.
        """
        if not guardrails.automation_enabled:
            return self._reject(decision, Verdict.AUTOMATION_DISABLED, "User has auto-rebalance disabled")

        if decision.min_yield_gain_bps < guardrails.min_yield_gain_bps:
            return self._reject(
                decision,
                Verdict.GAIN_BELOW_USER_MINIMUM,
                f"APY gain {decision.min_yield_gain_bps} bps below user minimum {guardrails.min_yield_gain_bps} bps",
            )

        if decision.estimated_cost > guardrails.gas_ceiling_usd:
            return self._reject(
                decision,
                Verdict.GAS_ABOVE_USER_CEILING,
                f"Gas cost ${decision.estimated_cost / MICRO_USD:.2f} exceeds user ceiling "
                f"${guardrails.gas_ceiling_usd / MICRO_USD:.2f}",
            )

        client = self.clients[decision.source_chain_id]
        allowed, time_remaining = client.can_rebalance(decision.user, decision.source_chain_id)
        if self.cooldown_observer is not None:
            self.cooldown_observer(decision.user, decision.source_chain_id, allowed, time_remaining)
        if not allowed:
            return self._reject(decision, Verdict.COOLDOWN_ACTIVE, f"Cooldown active - {time_remaining}s remaining")

        source_adapter = self.registry.get_adapter(decision.source_chain_id, decision.source_protocol_id)
        amount_usd = asset_to_micro_usd(decision.amount, source_adapter.asset_decimals)
        cost = self.cost_model.execution_cost(decision.source_chain_id, decision.dest_chain_id, amount_usd)
        yield_gain = project_yield(amount_usd, decision.min_yield_gain_bps, self.projection_days)
        profitable, net_profit = is_profitable(yield_gain, cost, self.min_profit_usd)
        if not profitable:
            return self._reject(
                decision,
                Verdict.NOT_PROFITABLE,
                f"Not profitable after gas costs - net profit: ${net_profit / MICRO_USD:.2f} "
                f"over {self.projection_days} days",
            )

        decision.verdict = Verdict.OK
        decision.reason = "All validations passed"
        return Verdict.OK
