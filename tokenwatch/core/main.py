import argparse
import dataclasses
import logging
import sys
from typing import List, Optional

from ..config import Config, setup_logging
from ..database.redis_client import RedisConnectionError
from ..errors import ConfigurationError, PersistenceError
from .supervisor import PipelineSupervisor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Token discovery & price aggregation pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Without options the pipeline runs until SIGINT/SIGTERM/SIGUSR2.

Examples:
  python run.py
  python run.py --once
  python run.py --force-update 0xabc...
  python run.py --sync --from-block 41000000 --to-block 41000050
  python run.py --sync --dry-run
        """,
    )
    parser.add_argument("--once", action="store_true", help="Run a single price pass and exit")
    parser.add_argument("--force-update", metavar="ADDRESS", default=None, help="Update one token's price and exit")
    parser.add_argument("--sync", action="store_true", help="Run block discovery once and exit")
    parser.add_argument("--from-block", type=int, default=None, help="First block for --sync")
    parser.add_argument("--to-block", type=int, default=None, help="Last block for --sync (default: head)")
    parser.add_argument("--dry-run", action="store_true", help="Use the in-memory token store")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    config = Config.pipeline_config()
    if args.dry_run:
        config = dataclasses.replace(config, token_store='memory')

    if (args.from_block is not None or args.to_block is not None) and not args.sync:
        logger.error("--from-block/--to-block require --sync")
        return 2

    supervisor = PipelineSupervisor(config)
    try:
        if args.force_update:
            if not supervisor.force_update_token(args.force_update):
                logger.error(f"No price could be stored for {args.force_update}")
                return 1
            return 0

        if args.sync:
            created = supervisor.sync_from_source(args.from_block, args.to_block)
            logger.info(f"Sync done: {len(created)} new token(s)")
            for meta in created:
                logger.info(f"  {meta.symbol:<12} {meta.name:<32} {meta.contract_address} [{meta.category.value}]")
            return 0

        if args.once:
            report = supervisor.update_all_prices()
            logger.info(f"Price pass: {report.updated}/{report.tokens} updated, {report.failed} failed")
            return 0

        supervisor.initialize()
        supervisor.wait()
        return 0
    except (ConfigurationError, PersistenceError, RedisConnectionError) as e:
        logger.error(f"Startup failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    finally:
        supervisor.shutdown()


if __name__ == "__main__":
    sys.exit(main())
