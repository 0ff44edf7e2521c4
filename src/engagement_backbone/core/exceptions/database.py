"""
Database Exceptions

All exceptions related to the relational store.

Author: Platform Engineering
Date: 2026-03-02
"""

from engagement_backbone.core.exceptions.base import BackboneError


class DatabaseError(BackboneError):
    """Base exception for relational store errors."""
    pass


class DbTransientError(DatabaseError):
    """
    Raised for recoverable store failures.

    Common causes:
    - Connection reset
    - Pool exhausted (acquire timeout)
    - Server restarting

    Retried within the operation; the job is retried if retries run out.
    """
    pass


class DbFatalError(DatabaseError):
    """
    Raised for store failures that will not heal on retry.

    Common causes:
    - Constraint violation
    - Schema mismatch

    The job is marked failed without further attempts.
    """
    pass


def classify_db_error(exc: Exception) -> DatabaseError:
    """
    Map a SQLAlchemy exception onto the transient/fatal taxonomy.

    Args:
        exc: Exception raised by the driver or the ORM

    Returns:
        DbTransientError or DbFatalError wrapping the original
    """
    # Local import keeps the exception package importable without the ORM loaded
    from sqlalchemy import exc as sa_exc

    if isinstance(exc, DatabaseError):
        return exc
    if isinstance(exc, (sa_exc.IntegrityError, sa_exc.ProgrammingError, sa_exc.DataError)):
        return DbFatalError.from_exception(exc, message=f"Database rejected statement: {exc}")
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.DisconnectionError, sa_exc.TimeoutError, sa_exc.InterfaceError)):
        return DbTransientError.from_exception(exc, message=f"Database temporarily unavailable: {exc}")
    if isinstance(exc, (ConnectionError, OSError)):
        return DbTransientError.from_exception(exc, message=f"Database connection failed: {exc}")
    return DbFatalError.from_exception(exc, message=f"Database error: {exc}")
