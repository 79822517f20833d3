# Overview: Service-layer operations for concurrency; transaction scopes and retry policy.

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import TransactionTimeoutError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the enclosing BEGIN IMMEDIATE already serializes writers.
    """
    return query.with_for_update()


class TransactionScope:
    """
    Explicit handle on the transaction a unit of work runs in.

    Ledger, deal, coupon and order mutators take a scope as their first
    argument instead of reaching for an implicit "current transaction".
    They add and flush through it but never commit; the owner of the scope
    (serializable_transaction) commits or rolls back once.
    """

    def __init__(self, session, timeout_seconds: float | None = None):
        self.session = session
        self.timeout_seconds = timeout_seconds
        self.started_at = time.monotonic()
        self.deadline = self.started_at + timeout_seconds if timeout_seconds else None

    def query(self, *entities):
        return self.session.query(*entities)

    def get(self, model, ident):
        return self.session.get(model, ident)

    def add(self, obj) -> None:
        self.session.add(obj)

    def delete(self, obj) -> None:
        self.session.delete(obj)

    def flush(self) -> None:
        self.session.flush()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def check_deadline(self) -> None:
        """Raise TransactionTimeoutError once the scope has outlived its deadline."""
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise TransactionTimeoutError(
                "Transaction exceeded its time limit",
                details={"timeout_seconds": self.timeout_seconds, "elapsed_seconds": round(self.elapsed, 3)},
            )


def _begin_serializable(session, timeout_seconds: float | None) -> None:
    if session.new or session.dirty or session.deleted:
        raise RuntimeError("serializable_transaction() cannot start with unflushed changes pending")
    if session.in_transaction():
        # Close the read-only transaction left by earlier lookups
        session.commit()

    dialect = db.engine.dialect.name
    if dialect == "sqlite":
        # SQLite has no SERIALIZABLE level; taking the write lock up front
        # makes concurrent writers run one after another.
        session.execute(text("BEGIN IMMEDIATE"))
        return

    session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
    if dialect == "postgresql" and timeout_seconds:
        session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}"))


@contextmanager
def serializable_transaction(timeout_seconds: float | None = None):
    """
    Run a block inside one serializable transaction and yield its TransactionScope.

    Commits when the block returns, rolls back when it raises. The deadline is
    checked again just before commit so an overrun never persists anything.
    Retrying is left to the caller (see run_with_retry).
    """
    if timeout_seconds is None:
        timeout_seconds = current_app.config.get("ORDER_TRANSACTION_TIMEOUT_SECONDS")

    session = db.session()
    _begin_serializable(session, timeout_seconds)
    scope = TransactionScope(session, timeout_seconds)
    try:
        yield scope
        scope.check_deadline()
        session.commit()
    except Exception:
        session.rollback()
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks, serialization failures),
    StaleDataError (optimistic locking conflicts) and TransactionTimeoutError.
    Business errors propagate on the first attempt.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError, TransactionTimeoutError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def retry_attempts() -> int:
    return int(current_app.config.get("RETRY_ATTEMPTS", 3))
