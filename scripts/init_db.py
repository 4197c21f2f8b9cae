#!/usr/bin/env python
"""
Initialize Database Script
Creates the database schema and seeds the default alert rules.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from kaos_sync.utils.logger import setup_logging, get_logger
from kaos_sync.database.connection import get_db
from kaos_sync.database.models import Base
from kaos_sync.alerts.store import AlertRuleStore


def main():
    """Main entry point for database initialization."""
    parser = argparse.ArgumentParser(description='Initialize database schema')
    parser.add_argument(
        '--drop',
        action='store_true',
        help='Drop existing tables before creating (DANGEROUS)'
    )
    parser.add_argument(
        '--seed-rules',
        action='store_true',
        help='Insert the default alert rules from config/alert_rules.yaml'
    )

    args = parser.parse_args()

    setup_logging()
    logger = get_logger(__name__)

    try:
        logger.info("Initializing database")

        db = get_db()
        engine = db.engine

        if not db.check_connection():
            print("Error: Cannot connect to database")
            sys.exit(1)

        print("Database connection successful")

        if args.drop:
            confirm = input("Are you sure you want to drop all tables? (yes/no): ")
            if confirm.lower() == 'yes':
                logger.warning("Dropping all tables")
                Base.metadata.drop_all(engine)
                print("All tables dropped")
            else:
                print("Cancelled")
                sys.exit(0)

        logger.info("Creating tables")
        db.create_all()

        print(f"\n{'='*50}")
        print("Database Initialized Successfully")
        print(f"{'='*50}")

        tables = inspect(engine).get_table_names()
        print(f"\nTables created: {len(tables)}")
        for table in sorted(tables):
            print(f"  - {table}")

        if args.seed_rules:
            created = AlertRuleStore(db).seed_defaults()
            print(f"\nDefault alert rules created: {created}")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
