# Overview: Unit-of-work helpers; row locking and retry on concurrency conflicts.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Rows also carry a version_id_col, so a lost race surfaces as StaleDataError
    at flush time on every backend.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute one unit of work; func is expected to commit on success.

    Any exception rolls the session back before it propagates, so no partial
    stock, ledger or status write survives a failed operation.

    OperationalError (deadlocks, lock timeouts) and StaleDataError (optimistic
    locking conflicts) are retried with exponential backoff. The retry re-reads
    every row, so the loser of a state-transition race sees the winner's status
    and fails with InvalidState instead of applying twice.
    """
    if attempts is None:
        attempts = current_app.config.get("DB_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("DB_RETRY_BACKOFF_SECONDS", 0.1)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Concurrency conflict, retrying unit of work (attempt %s/%s): %s",
                attempt + 1, attempts, exc,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
