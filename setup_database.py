"""
Database Setup Script for the Reading Strategy Bandit

Creates the tables used by the sql storage backend:
- bandit_models: LinUCB state per (identity, strategy)
- recommendation_impressions: books shown and the rewards they earned
- recommendation_actions: user actions on books
"""

import argparse
import logging

from sqlalchemy import inspect

from config.config import DatabaseConfig
from config.logging_config import configure_logging
from config.settings import get_settings
from services.database import create_database_engine, create_tables, drop_tables

logger = logging.getLogger(__name__)


def setup_database(database_url: str, reset: bool = False):
    """Create (and optionally first drop) every bandit table."""
    engine = create_database_engine(DatabaseConfig(url=database_url))
    try:
        if reset:
            logger.warning("Dropping existing bandit tables")
            drop_tables(engine)
        create_tables(engine)
        return sorted(inspect(engine).get_table_names())
    finally:
        engine.dispose()


def main():
    """Main setup function."""
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Create the reading strategy bandit tables")
    parser.add_argument("--database-url", default=settings.database_url, help="SQLAlchemy database URL")
    parser.add_argument("--reset", action="store_true", help="Drop existing tables first")
    args = parser.parse_args()

    configure_logging(settings.log_level)

    print("Reading Strategy Bandit - Database Setup")
    print("=" * 50)

    try:
        tables = setup_database(args.database_url, reset=args.reset)
        print(f"Tables: {', '.join(tables)}")
        print("\nDatabase setup completed successfully!")
        print(f"Database URL: {args.database_url}")
    except Exception as e:
        print(f"Database setup failed: {e}")
        raise


if __name__ == "__main__":
    main()
