# Overview: Row locking and retry helpers for settlement under contention.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_rows_in_order(query, id_column):
    """
    SELECT ... FOR UPDATE over `query`, taking locks in ascending id order.

    Two transactions locking overlapping row sets in the same order cannot
    deadlock each other. SQLite ignores FOR UPDATE; Postgres/MySQL honor it.
    """
    return query.order_by(id_column).with_for_update().all()


def run_with_retry(func, *, label: str = "db operation", attempts: int | None = None, backoff_base: float = 0.1):
    """
    Run `func` and retry it on lock timeouts/deadlocks (OperationalError)
    and optimistic version clashes (StaleDataError).

    The session is rolled back before each retry so func always starts from
    a clean transaction. attempts defaults to DB_RETRY_ATTEMPTS. The last
    error is re-raised unchanged.
    """
    if attempts is None:
        attempts = int(current_app.config.get("DB_RETRY_ATTEMPTS", 3))
    attempts = max(attempts, 1)

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt == attempts:
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            current_app.logger.warning(
                "%s hit %s (attempt %s/%s), retrying in %.2fs",
                label, type(exc).__name__, attempt, attempts, delay,
            )
            time.sleep(delay)
