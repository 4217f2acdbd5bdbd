"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the alerting pipeline.

- Provides argparse-based CLI
- Loads configuration from the environment (.env supported)
- Runs the scheduler, or a single job once

============================================================
USAGE
============================================================
python -m orchestrator.cli run
python -m orchestrator.cli sweep
python -m orchestrator.cli generate-recent
python -m orchestrator.cli backfill --agent-id <id> --days 7
python -m orchestrator.cli cleanup --days 365
python -m orchestrator.cli init-db

============================================================
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, List, Optional

from core.config import AlertingConfig
from core.exceptions import AlertingException
from database import initialize_database
from .runtime import AlertingRuntime


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="metrics-alerting",
        description="Metrics candle aggregation, alert ledger and escalation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run              - Run the scheduler (candles, cleanup, escalation)
  sweep            - Run one escalation sweep and exit
  generate-recent  - Refresh recent candles for every active agent
  backfill         - Backfill candles for one agent, or all agents
  cleanup          - Delete candles past the retention horizon
  init-db          - Create tables

Examples:
  %(prog)s run
  %(prog)s backfill --agent-id 3f2a... --days 30
        """
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    parser.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="Load environment variables from this .env file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    # --------------------------------------------------------
    # Commands
    # --------------------------------------------------------
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    commands.add_parser("run", help="Run the scheduler until interrupted")
    commands.add_parser("sweep", help="Run one escalation sweep")
    commands.add_parser("generate-recent", help="Refresh recent candles")

    backfill = commands.add_parser("backfill", help="Backfill candles")
    backfill.add_argument(
        "--agent-id",
        type=str,
        help="Agent to backfill (default: every active agent)",
    )
    backfill.add_argument(
        "--days",
        type=int,
        default=None,
        help="Days to backfill (default: CANDLE_BACKFILL_DAYS)",
    )

    cleanup = commands.add_parser("cleanup", help="Delete old candles")
    cleanup.add_argument(
        "--days",
        type=int,
        default=None,
        help="Days of candles to keep (default: CANDLE_RETENTION_DAYS)",
    )

    commands.add_parser("init-db", help="Create database tables")

    return parser


def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []
    if args.command == "backfill" and args.days is not None and args.days < 1:
        errors.append("--days must be at least 1")
    if args.command == "cleanup" and args.days is not None and args.days < 0:
        errors.append("--days must not be negative")
    return errors


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# ============================================================
# COMMANDS
# ============================================================

async def run_forever(runtime: AlertingRuntime) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)

    await runtime.scheduler.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        await runtime.scheduler.stop()


async def async_main(args: argparse.Namespace, config: AlertingConfig) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    runtime = AlertingRuntime.create(config)
    try:
        if args.command in ("init-db", "run"):
            await initialize_database(config.database, runtime.engine)

        if args.command == "run":
            await run_forever(runtime)
        elif args.command == "sweep":
            summary = await runtime.escalation.sweep()
            _print_json(summary.to_dict())
            return 1 if summary.errors else 0
        elif args.command == "generate-recent":
            summary = await runtime.aggregator.generate_recent()
            _print_json(summary.to_dict())
            return 1 if summary.errors else 0
        elif args.command == "backfill":
            if args.agent_id:
                _print_json(await runtime.aggregator.backfill(args.agent_id, args.days))
            else:
                summary = await runtime.aggregator.backfill_all_agents(args.days)
                _print_json(summary.to_dict())
                return 1 if summary.errors else 0
        elif args.command == "cleanup":
            deleted = await runtime.aggregator.cleanup_old_candles(args.days)
            _print_json({"deleted": deleted})
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except AlertingException as e:
        logger.error(e.to_log_format())
        return 1
    finally:
        await runtime.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    setup_logging(args.log_level)

    try:
        config = AlertingConfig.from_env(args.env_file)
    except AlertingException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    return asyncio.run(async_main(args, config))


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
