#!/usr/bin/env python3
"""Entry point for the resolution sync service.

Runs the CNS/UNS and ZNS synchronizers until interrupted, or a single cycle
per chain with --once.
"""

import argparse
import asyncio
import logging
import os
import sys


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from resolution_sync.service import ResolutionSync  # noqa: E402


async def main() -> None:
    """Main entry point for the resolution sync service.

    Raises:
        SystemExit: On configuration errors or failed --once cycles
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Resolution Sync - Mirror CNS, UNS and ZNS registry state into a database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  DATABASE_URL          - SQLAlchemy database URL (default: sqlite:///resolution.db)
  CNS_RPC_URL           - Ethereum JSON-RPC endpoint
  CNS_REGISTRY_ADDRESS  - CNS registry contract
  UNS_REGISTRY_ADDRESS  - UNS registry contract
  VIEWBLOCK_API_KEY     - ViewBlock API key for the ZNS registry
  ZILLIQA_RPC_URL       - Zilliqa JSON-RPC endpoint
  DISABLE_CNS           - Skip the CNS/UNS synchronizer
  DISABLE_ZNS           - Skip the ZNS synchronizer
  LOG_LEVEL             - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single cycle per chain and exit"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Resolution Sync Starting ===")

    try:
        service: ResolutionSync = ResolutionSync.from_env()
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - CNS_RPC_URL: Ethereum JSON-RPC endpoint (or DISABLE_CNS=true)")
        logger.error("  - VIEWBLOCK_API_KEY: ViewBlock API key (or DISABLE_ZNS=true)")
        logger.error("  - DATABASE_URL: Projection database URL")
        sys.exit(1)

    if args.once:
        reports = await service.run_once()
        failed = [report for report in reports if not report.ok]
        if failed:
            logger.error(f"{len(failed)} of {len(reports)} cycles failed")
            sys.exit(1)
        return

    await service.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shut down gracefully")
        sys.exit(0)
