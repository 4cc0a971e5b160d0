# Overview: Row locks, retry and guarded conditional updates shared by the services.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, rollback_on_error: bool = True):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Domain errors are never retried.

    rollback_on_error=False is for operations running inside a caller's
    transaction (commit=False): the caller decides what to undo.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            if rollback_on_error:
                db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def run_in_transaction(func, *, commit: bool):
    """run_with_retry for services that accept commit=True/False."""
    if commit:
        return run_with_retry(func)
    # Inner participant: the outer run_with_retry owns retries and rollback
    return run_with_retry(func, attempts=1, rollback_on_error=False)


def guarded_update(model, *, guards, values) -> bool:
    """
    Compare-and-swap: one UPDATE ... WHERE <guards>.

    Returns True when exactly the guarded row changed. A False result means
    the guard did not hold and nothing was written.
    """
    stmt = (
        update(model)
        .where(*guards)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1
