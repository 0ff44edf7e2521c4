"""
Database Module

Async SQLAlchemy engines, ORM models and the failed-enqueue ledger.
"""

from .engine import Database, close_databases, get_database, init_databases
from .failed_enqueue import FailedEnqueueLedger, LedgerEntry, PendingEnqueue

__all__ = [
    "Database",
    "get_database",
    "init_databases",
    "close_databases",
    "FailedEnqueueLedger",
    "LedgerEntry",
    "PendingEnqueue",
]
