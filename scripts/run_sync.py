#!/usr/bin/env python
"""
Run Sync Script
Command-line script for squad syncs and queue maintenance.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from kaos_sync.database.models import SyncMode
from kaos_sync.services import build_services
from kaos_sync.utils.logger import setup_logging, get_logger


def main():
    """Main entry point for sync script."""
    parser = argparse.ArgumentParser(description='Run KAOS Jira sync jobs')
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--squad', type=int, help='Sync one squad')
    target.add_argument('--all', action='store_true', help='Sync every active squad')
    target.add_argument('--process-queue', action='store_true', help='Process due queue operations')
    target.add_argument('--purge', action='store_true', help='Purge old completed operations')
    parser.add_argument(
        '--mode',
        choices=[m.value for m in SyncMode],
        default=SyncMode.INCREMENTAL.value,
        help='Sync mode (default INCREMENTAL)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Override logging.level from config'
    )

    args = parser.parse_args()

    setup_logging(args.log_level)
    logger = get_logger(__name__)

    try:
        services = build_services()
        mode = SyncMode(args.mode)

        if args.squad is not None:
            summary = services.orchestrator.sync_all(args.squad, mode).to_dict()
        elif args.all:
            scheduler = services.batch_scheduler
            if mode == SyncMode.FULL:
                summary = scheduler.run_full_sync().to_dict()
            else:
                summary = scheduler.run_incremental_sync().to_dict()
        elif args.process_queue:
            summary = services.batch_scheduler.process_queue().to_dict()
        else:
            summary = services.batch_scheduler.purge_queue()

        print(f"\n{'='*50}")
        print("Sync Run Complete")
        print(f"{'='*50}")
        for key, value in summary.items():
            print(f"{key}: {value}")

        quota = services.rate_limiter.snapshot()
        print(f"Quota: {quota.consumed}/{quota.limit} calls used")

    except Exception as e:
        logger.error(f"Sync failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
