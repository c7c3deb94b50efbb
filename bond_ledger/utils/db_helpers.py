"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking helpers
- Unit-of-work commit/rollback
"""

import logging
from contextlib import contextmanager
from typing import Optional, TypeVar, Type
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        dialect = db.bind.dialect.name
        return dialect == 'postgresql'
    except AttributeError:
        return False


def is_sqlite(db: Session) -> bool:
    """Check if the database is SQLite"""
    try:
        dialect = db.bind.dialect.name
        return dialect == 'sqlite'
    except AttributeError:
        return True  # Default to SQLite for safety


def acquire_row_lock(
    db: Session,
    model: Type[T],
    filter_condition,
    nowait: bool = False,
    skip_locked: bool = False
) -> Optional[T]:
    """
    Acquire a row-level lock on a database record.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter to find the row
        nowait: If True, raise error immediately if lock unavailable (PostgreSQL only)
        skip_locked: If True, skip locked rows (PostgreSQL only)

    Returns:
        The locked model instance, or None if not found

    Raises:
        OperationalError: If nowait=True and row is locked by another transaction

    Example:
        version = acquire_row_lock(db, LedgerVersion, LedgerVersion.apartment_id == apartment_id)
    """
    query = db.query(model).filter(filter_condition)

    # Only apply locking on PostgreSQL, SQLite serializes writers itself
    if is_postgres(db):
        if skip_locked:
            query = query.with_for_update(skip_locked=True)
        elif nowait:
            query = query.with_for_update(nowait=True)
        else:
            query = query.with_for_update()

    return query.first()


@contextmanager
def atomic(db: Session):
    """
    Commit everything done inside the block, or nothing.

    Example:
        with atomic(db):
            ledger.set_range(...)
            ledger.set_range(...)
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
