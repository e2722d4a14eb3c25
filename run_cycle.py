"""
Run a single rebalance cycle from the command line
"""

import argparse
import sys

from dotenv import load_dotenv

load_dotenv()

from app.rebalancer.config_loader import load_config
from app.rebalancer.engine import RebalanceEngine
from app.rebalancer.exceptions import ConfigError
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.opportunity_finder import format_opportunities

logger = setup_logger()


def main():
    """
    Main function to parse arguments, print the opportunity table and run one cycle
    """
    parser = argparse.ArgumentParser(description="Run one yield rebalance cycle")
    parser.add_argument("--chain-config", type=str, help="Path to the chain config YAML (default: app/config.yaml)")
    parser.add_argument("--users", type=str, help="Comma separated user addresses (default: REBALANCER_USERS)")
    parser.add_argument("--dry-run", action="store_true", help="Validate decisions without submitting transactions")
    parser.add_argument("--min-gain", type=int, help="Minimum yield gain in bps (default: MIN_GAIN_BPS)")

    args = parser.parse_args()

    config = load_config(args.chain_config)
    engine = RebalanceEngine(config, notify=False, dry_run=True if args.dry_run else None)
    users = [user.strip() for user in args.users.split(",") if user.strip()] if args.users else None

    try:
        opportunities = engine.scheduler.get_opportunities(args.min_gain)
        print(format_opportunities(opportunities, engine.registry))

        summary = engine.scheduler.run_cycle(users, args.min_gain)
    except ConfigError as ex:
        logger.error("Cycle aborted: %s", ex)
        return 1
    finally:
        engine.stop()

    print(f"Cycle {summary.cycle_id}")
    print(f"  users processed:        {summary.users_processed}")
    print(f"  executed:               {summary.executed} (bridging {summary.bridging})")
    print(f"  failed:                 {summary.failed}")
    print(f"  skipped not profitable: {summary.skipped_not_profitable}")
    print(f"  skipped guardrail:      {summary.skipped_guardrail} {dict(summary.reject_reasons)}")
    if engine.dry_run:
        print(f"  approved (dry run):     {summary.dry_run_approved}")
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
