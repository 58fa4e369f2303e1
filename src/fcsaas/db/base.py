"""
Database base configuration and utilities.

The tenant registry persists through Peewee ORM on a SQLite file so that
tenant state survives a control-plane restart.

Components:
    - db: Global SQLite database instance
    - BaseModel: Base class for all database models
    - initialize_database: Database setup function
    - run_in_executor: Async wrapper for blocking DB operations
"""

import asyncio
import os

import peewee

from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Database Instance
# =============================================================================

# Global database instance - path set via initialize_database()
db = peewee.SqliteDatabase(None)


# =============================================================================
# Base Model
# =============================================================================


class BaseModel(peewee.Model):
    """Base model sharing the global database connection."""

    class Meta:
        database = db


# =============================================================================
# Database Lifecycle
# =============================================================================


def initialize_database(db_path: str) -> None:
    """
    Connect to the database and create tables.

    Args:
        db_path: Path to the SQLite database file.

    Raises:
        peewee.OperationalError: If database connection fails.
    """
    # Import models here to avoid circular imports
    from fcsaas.db.tenant import Tenant

    logger.debug(f"Initializing database at: {db_path}")
    os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    try:
        if not db.is_closed():
            db.close()
        # Registry writes come from worker threads via run_in_executor
        db.init(db_path, check_same_thread=False, pragmas={"journal_mode": "wal"})
        db.connect()
        db.create_tables([Tenant], safe=True)

        logger.info(f"Database initialized: {db_path}")
        logger.debug(f"Database contains {Tenant.select().count()} tenants")

    except peewee.OperationalError as e:
        logger.error(f"Failed to initialize database '{db_path}': {e}")
        raise


def close_database() -> None:
    """Close the database connection if open."""
    if not db.is_closed():
        db.close()
        logger.debug("Database connection closed")


# =============================================================================
# Async Utilities
# =============================================================================


async def run_in_executor(func, *args, **kwargs):
    """
    Run a blocking database function in a thread pool executor.

    Example:
        row = await run_in_executor(Tenant.get_or_none, Tenant.tenant_id == tid)
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))
