# Overview: Transaction and locking helpers shared by every ledger operation.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import ConcurrencyConflict


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    populate_existing() refreshes rows already in the identity map so the
    caller never computes from a stale balance.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it by
    taking the database write lock at transaction start.
    """
    return query.with_for_update().populate_existing()


def begin_write() -> None:
    """
    On SQLite, open the transaction with BEGIN IMMEDIATE so concurrent writers
    queue on the busy timeout instead of both reading the same balance.

    No-op on other dialects and when the connection is already inside a
    transaction (the operation is enlisted in a caller's unit of work).
    """
    if db.engine.dialect.name != "sqlite":
        return
    connection = db.session.connection()
    if not connection.connection.dbapi_connection.in_transaction:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def run_atomic(func, *, commit: bool = True):
    """
    Execute a ledger operation as one transaction.

    commit=True: the operation owns the transaction. Commit on success;
    roll back on any failure so no partial write survives. Lock and
    optimistic-version failures are raised as ConcurrencyConflict.

    commit=False: the operation is enlisted in the caller's transaction;
    nothing is committed or rolled back here.
    """
    if not commit:
        return func()

    try:
        begin_write()
        result = func()
        db.session.commit()
        return result
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        raise ConcurrencyConflict(
            "Concurrent update conflict; retry the operation",
            details={"cause": exc.__class__.__name__},
        ) from exc
    except Exception:
        db.session.rollback()
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Caller-side retry for operations that raised ConcurrencyConflict.

    The ledger never retries on its own; flows that can safely repeat an
    operation (e.g. allocating a sale number under contention) wrap the call
    in this helper.
    """
    for attempt in range(attempts):
        try:
            return func()
        except ConcurrencyConflict:
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
