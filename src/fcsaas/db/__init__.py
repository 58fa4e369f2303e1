"""Durable tenant storage (peewee on SQLite)."""

from fcsaas.db.base import (
    BaseModel,
    close_database,
    db,
    initialize_database,
    run_in_executor,
)
from fcsaas.db.tenant import Tenant

__all__ = [
    "db",
    "BaseModel",
    "initialize_database",
    "close_database",
    "run_in_executor",
    "Tenant",
]
