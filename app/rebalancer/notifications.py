"""
Slack notification functions for the yield rebalancer.
"""

import time
from typing import Optional

from apprise import Apprise

from app.rebalancer.config_loader import EngineConfig
from app.rebalancer.cost_model import MICRO_USD
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import CycleSummary, ExecutionOutcome

logger = setup_logger()


def setup_apprise_notification_object(config: EngineConfig) -> Apprise:
    """Set up the Apprise notification engine."""
    apprise = Apprise()
    apprise.add(config.NOTIFICATION_URL)
    return apprise


def _notify(config: Optional[EngineConfig], body: str, title: str) -> bool:
    if config is None or not config.NOTIFICATION_URL:
        logger.debug("Notifications: No NOTIFICATION_URL configured, not sending '%s'", title)
        return False
    apprise = setup_apprise_notification_object(config)
    return bool(apprise.notify(body=body, title=title))


def _slack_mentions(config: EngineConfig) -> str:
    """Build Slack mention string from config."""
    mention_ids = getattr(config, "SLACK_MENTION_IDS", [])
    return " ".join(f"<@{uid}>" for uid in mention_ids)


def _chain_label(chain_id: int, config: EngineConfig) -> str:
    try:
        return config.chain_settings(chain_id).get("name", str(chain_id))
    except ValueError:
        return str(chain_id)


def _tx_link(chain_id: int, tx_hash: str, config: EngineConfig) -> str:
    try:
        explorer = config.chain_settings(chain_id).get("EXPLORER_URL")
    except ValueError:
        explorer = None
    if not explorer:
        return f"`{tx_hash}`"
    return f"<{explorer}/tx/{tx_hash}|View Transaction on Explorer>"


def post_rebalance_executed_notification(outcome: ExecutionOutcome, config: EngineConfig) -> bool:
    """Post a Slack notification about a confirmed or bridging rebalance."""
    decision = outcome.decision
    gas = f"${outcome.realized_gas_cost / MICRO_USD:.4f}" if outcome.realized_gas_cost is not None else "unknown"
    links = "\n".join(f"• {_tx_link(decision.source_chain_id, tx_hash, config)}" for tx_hash in outcome.tx_hashes)
    message = (
        ":moneybag: *Rebalance Executed* :moneybag:\n\n"
        f"*User*: `{decision.user}`\n"
        f"*Route*: `{_chain_label(decision.source_chain_id, config)}` protocol `{decision.source_protocol_id}` -> "
        f"`{_chain_label(decision.dest_chain_id, config)}` protocol `{decision.dest_protocol_id}`\n"
        f"*Amount*: `{decision.amount}`\n"
        f"*Status*: `{outcome.status.value}`\n"
        f"*Yield gain*: `{(outcome.realized_yield_gain_bps or decision.min_yield_gain_bps) / 100:.2f}%`\n"
        f"*Gas cost*: `{gas}`\n"
        f"{links}\n"
        f"Time: {time.strftime('%Y-%m-%d %H:%M:%S')}\n"
    )
    logger.info("Rebalance executed notification:\n%s", message)
    return _notify(config, message, "Rebalance Executed")


def post_rebalance_failed_notification(outcome: ExecutionOutcome, config: EngineConfig) -> bool:
    """Post a Slack notification about a failed rebalance."""
    decision = outcome.decision
    message = (
        ":rotating_light: *Rebalance Failed* :rotating_light:\n\n"
        f"*User*: `{decision.user}`\n"
        f"*Route*: `{_chain_label(decision.source_chain_id, config)}` -> `{_chain_label(decision.dest_chain_id, config)}`\n"
        f"*Amount*: `{decision.amount}`\n"
        f"*Status*: `{outcome.status.value}`\n"
        f"*Error*: `{outcome.error}`\n"
        f"Time: {time.strftime('%Y-%m-%d %H:%M:%S')} {_slack_mentions(config)}\n"
    )
    logger.info("Rebalance failed notification:\n%s", message)
    return _notify(config, message, "Rebalance Failed")


def post_bridge_stalled_notification(outcome: ExecutionOutcome, config: EngineConfig) -> bool:
    """Post a Slack notification about a cross-chain rebalance with no completion after the timeout."""
    decision = outcome.decision
    waited = (time.time() - outcome.updated_at) / 60
    message = (
        ":warning: *Cross-Chain Rebalance Not Completed* :warning:\n\n"
        f"*Outcome*: `{outcome.outcome_id}`\n"
        f"*User*: `{decision.user}`\n"
        f"*Route*: `{_chain_label(decision.source_chain_id, config)}` -> `{_chain_label(decision.dest_chain_id, config)}`\n"
        f"*Amount*: `{decision.amount}`\n"
        f"*Bridging since*: `{waited:.0f}` minutes, left open for reconciliation\n"
        f"{_slack_mentions(config)}\n"
    )
    logger.info("Bridge stalled notification:\n%s", message)
    return _notify(config, message, "Cross-Chain Rebalance Not Completed")


def post_cycle_summary_notification(summary: CycleSummary, config: EngineConfig) -> bool:
    """Post the per-cycle summary."""
    reasons = ", ".join(f"{reason}: {count}" for reason, count in sorted(summary.reject_reasons.items())) or "none"
    message = (
        "*Rebalance Cycle Summary*\n\n"
        f"*Cycle*: `{summary.cycle_id}`\n"
        f"*Users processed*: `{summary.users_processed}`\n"
        f"*Executed*: `{summary.executed}` (bridging `{summary.bridging}`)\n"
        f"*Failed*: `{summary.failed}`\n"
        f"*Skipped, not profitable*: `{summary.skipped_not_profitable}`\n"
        f"*Skipped, guardrail*: `{summary.skipped_guardrail}` ({reasons})\n"
        f"*Cancelled*: `{summary.cancelled}`\n"
        f"*Duration*: `{summary.finished_at - summary.started_at:.1f}s`\n"
    )
    logger.info("Cycle summary notification:\n%s", message)
    return _notify(config, message, "Rebalance Cycle Summary")


def post_error_notification(message: str, config: EngineConfig = None) -> bool:
    """Post an error notification to Slack."""
    error_message = f":rotating_light: *Error Notification* :rotating_light:\n\n{message}\n\n"
    error_message += f"Time: {time.strftime('%Y-%m-%d %H:%M:%S')}\n"
    if config:
        error_message += _slack_mentions(config)

    logger.info("Error notification:\n%s", error_message)
    return _notify(config, error_message, "Error Notification")
