#!/usr/bin/env python3
"""Entry point for the transaction log backup service.

Runs the periodic backup monitor as a long-lived service, and exposes one-shot
commands for backups, segment restore, the transaction database and network
recovery.
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
from typing import Any

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

from txlog_backup.models import RecoveryScope, SearchFilter
from txlog_backup.service import TxLogBackupService


def emit(payload: Any) -> None:
    """Print a command result as JSON on stdout."""
    print(json.dumps(payload, indent=2, default=str))


def parse_setting(raw: str) -> tuple[str, Any]:
    """Parse a ``key=value`` monitor setting, decoding JSON literals."""
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise ValueError(f"Expected key=value, got {raw!r}")
    try:
        return key, json.loads(value)
    except json.JSONDecodeError:
        return key, value


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Transaction Log Backup - back up, index and recover on-chain transaction history",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  CHAIN_ID              - Chain ID of the node (required)
  NETWORK               - Network name (default: localhost)
  RPC_URL               - Node RPC endpoint (default: http://127.0.0.1:8545)
  BACKUP_DIR            - Backup root directory (default: backups)
  BACKUP_INTERVAL       - Seconds between monitor cycles (default: 300)
  MAX_BACKUP_FILES      - Segments kept by cleanup (default: 100)
  DATABASE_TYPE         - Document store backend (default: json)
  LOG_LEVEL             - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    monitor = commands.add_parser("monitor", help="Periodic backup monitor")
    monitor_actions = monitor.add_subparsers(dest="action", required=True)
    monitor_actions.add_parser("start", help="Run the monitor until interrupted")
    monitor_actions.add_parser("stop", help="Signal the running monitor to shut down")
    monitor_actions.add_parser("status", help="Show monitor and backup status")
    monitor_actions.add_parser("backup", help="Run one backup cycle now")
    monitor_config = monitor_actions.add_parser("config", help="Show or validate monitor settings")
    monitor_config.add_argument("settings", nargs="*", help="key=value overrides")

    backup = commands.add_parser("backup", help="Back up a block range once")
    backup.add_argument("from_block", nargs="?", type=int, help="First block (default: after cursor)")
    backup.add_argument("to_block", nargs="?", type=int, help="Last block (default: chain head)")

    restore = commands.add_parser("restore", help="Inspect and consolidate backup segments")
    restore_actions = restore.add_subparsers(dest="action", required=True)
    restore_actions.add_parser("list", help="List backup segments")
    restore_actions.add_parser("stats", help="Show backup statistics")
    restore_actions.add_parser("all", help="Consolidate every segment")
    restore_file = restore_actions.add_parser("file", help="Consolidate one segment")
    restore_file.add_argument("segment_id")

    db = commands.add_parser("db", help="Transaction database")
    db_actions = db.add_subparsers(dest="action", required=True)
    db_actions.add_parser("stats", help="Show database statistics")
    db_export = db_actions.add_parser("export", help="Export transactions as CSV")
    db_export.add_argument("output_file", nargs="?")
    db_search = db_actions.add_parser("search", help="Search transactions")
    db_search.add_argument("--from-address")
    db_search.add_argument("--to-address")
    db_search.add_argument("--block-range", nargs=2, type=int, metavar=("FROM", "TO"))
    db_search.add_argument("--value-range", nargs=2, type=int, metavar=("MIN", "MAX"))
    db_search.add_argument("--status", type=int, choices=[0, 1])

    recover = commands.add_parser("recover", help="Recover the transaction database from backups")
    recover_modes = recover.add_subparsers(dest="mode", required=True)
    recover_full = recover_modes.add_parser("full", help="Recover everything")
    recover_full.add_argument("--segments", nargs="+", default=[], help="Restrict to these segment ids")
    recover_incremental = recover_modes.add_parser("incremental", help="Recover a block range")
    recover_incremental.add_argument("start_block", type=int)
    recover_incremental.add_argument("end_block", type=int)
    recover_selective = recover_modes.add_parser("selective", help="Recover a set of addresses")
    recover_selective.add_argument("addresses", help="Comma-separated addresses")

    return parser


async def run_command(service: TxLogBackupService, args: argparse.Namespace) -> None:
    """Dispatch one parsed command against the service."""
    match (args.command, getattr(args, "action", None) or getattr(args, "mode", None)):
        case ("monitor", "start"):
            await service.run()
        case ("monitor", "stop"):
            emit({"stopped": service.signal_running_monitor()})
        case ("monitor", "status"):
            emit(await service.scheduler.status())
        case ("monitor", "backup"):
            result = await service.scheduler.force_run()
            emit(dataclasses.asdict(result) if result else {"message": "No new blocks to backup"})
        case ("monitor", "config"):
            changes = dict(parse_setting(raw) for raw in args.settings)
            config = await service.scheduler.reconfigure(**changes)
            emit(dataclasses.asdict(config))
        case ("backup", _):
            result = await service.engine.run_backup(args.from_block, args.to_block)
            emit(dataclasses.asdict(result))
        case ("restore", "list"):
            async with service.segment_store.lock:
                emit(service.segment_store.describe_segments())
        case ("restore", "stats"):
            emit(service.segment_store.backup_stats())
        case ("restore", "all"):
            result = await service.consolidation.consolidate()
            emit(result.summary)
        case ("restore", "file"):
            result = await service.consolidation.consolidate([args.segment_id])
            emit(result.summary)
        case ("db", "stats"):
            emit(service.document_store.stats().to_dict())
        case ("db", "export"):
            path = service.document_store.export_table(args.output_file)
            emit({"exported": str(path)})
        case ("db", "search"):
            query = SearchFilter(
                from_address=args.from_address,
                to_address=args.to_address,
                block_range=tuple(args.block_range) if args.block_range else None,
                value_range=tuple(args.value_range) if args.value_range else None,
                status=args.status,
            )
            emit([record.to_dict() for record in service.document_store.search(query)])
        case ("recover", "full"):
            report = await service.recovery().recover("full", RecoveryScope(segment_ids=tuple(args.segments)))
            emit(report.to_dict())
        case ("recover", "incremental"):
            scope = RecoveryScope(start_block=args.start_block, end_block=args.end_block)
            report = await service.recovery().recover("incremental", scope)
            emit(report.to_dict())
        case ("recover", "selective"):
            addresses = tuple(a.strip() for a in args.addresses.split(",") if a.strip())
            report = await service.recovery().recover("selective", RecoveryScope(target_addresses=addresses))
            emit(report.to_dict())
        case _:
            raise ValueError(f"Unknown command: {args.command}")


async def main(argv: list[str] | None = None) -> None:
    """Main entry point for the transaction log backup service.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    args: argparse.Namespace = build_parser().parse_args(argv)

    # Set up logging with specified level
    setup_logging(args.log_level)

    logger.info("Loading configuration from environment...")

    try:
        service: TxLogBackupService = TxLogBackupService.from_env()
        await run_command(service, args)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables and arguments:")
        logger.error("  - CHAIN_ID: Chain ID of the node being backed up")
        logger.error("  - NETWORK: Network name (default: localhost)")
        logger.error("  - RPC_URL: Node RPC endpoint")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    # Run the main async function
    asyncio.run(main())
