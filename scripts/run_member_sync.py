#!/usr/bin/env python3
"""
Run one members cache sync from the command line.

This script runs a single sync against the configured Caspio account and
local cache database, then prints the same JSON body the HTTP trigger
returns. It is useful for backfills and for checking configuration.

Usage:
    python scripts/run_member_sync.py [OPTIONS]

Examples:
    # Incremental sync since the stored watermark
    python scripts/run_member_sync.py

    # Full resync with a custom field configuration
    python scripts/run_member_sync.py --mode full --fields-config config/members_fields.yaml
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from members_sync.config.loader import ConfigurationError, load_fields_config
from members_sync.config.settings import get_settings
from members_sync.core.sync_engine import MembersSyncEngine, InvalidSyncModeError
from members_sync.database import CacheStore, init_database, close_database
from members_sync.utils.logging import setup_logging, get_logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one members cache sync")
    parser.add_argument(
        "--mode",
        choices=["incremental", "full"],
        default="incremental",
        help="Sync mode (default: incremental)"
    )
    parser.add_argument("--fields-config", help="YAML or JSON field configuration file")
    parser.add_argument("--database-url", help="Override DB_URL")
    parser.add_argument("--caller-id", default="cli", help="Identity recorded as the run's caller")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    logger = get_logger("run_member_sync")

    try:
        fields_config = load_fields_config(
            args.fields_config or settings.sync.fields_config_path,
            table_name=settings.caspio.members_table
        )
    except ConfigurationError as e:
        logger.error("Invalid field configuration", error=str(e))
        return 2

    init_database(args.database_url, create_tables=True)
    try:
        engine = MembersSyncEngine(store=CacheStore(), fields_config=fields_config)
        result = await engine.run(args.mode, caller_id=args.caller_id)
    except InvalidSyncModeError as e:
        logger.error("Invalid mode", error=str(e))
        return 2
    finally:
        close_database()

    print(json.dumps(result.to_response(), indent=2))
    return 0 if result.success else 1


def main():
    args = parse_args()
    setup_logging(log_level=args.log_level)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
