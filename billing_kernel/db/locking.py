"""
Module: billing_kernel.db.locking
Responsibility: Typed row-lock acquisition with an enforced global order.
    Every ``SELECT ... FOR UPDATE`` in the kernel goes through ``lock_one`` or
    ``lock_all`` with a ``LockRank`` naming the resource being locked.
Architecture position: Kernel > DB.  Imported by services/.  MUST NOT import
    from models/, services/, selectors/, or outer layers.

Invariants enforced:
    - Lock order: within one lock scope, ranks are acquired in non-decreasing
      order.  Two transactions that both follow the order cannot deadlock on
      these rows.  The canonical generator path is
      INVOICE -> EXCHANGE_RATE -> INVOICE_SEQUENCE -> BILLING_EVENT.
    - Scope: a lock scope spans one public kernel operation.  Nested scopes
      (an operation that composes other operations) share the outer scope.

Failure modes:
    - LockOrderViolationError when a lower rank is requested after a higher
      one.  This is a programming error and always propagates.

Audit relevance:
    Lock acquisition is logged at DEBUG with rank and row count, which is
    enough to reconstruct the order taken by a failing transaction.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from enum import IntEnum
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from billing_kernel.exceptions import LockOrderViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.locking")

_TRACKER_KEY = "billing_lock_tracker"


class LockRank(IntEnum):
    """Global acquisition order for exclusive row locks."""

    REOPEN_REQUEST = 10
    SETTLEMENT_BATCH = 20
    INVOICE = 30
    EXCHANGE_RATE = 40
    INVOICE_SEQUENCE = 50
    STOCK_BALANCE = 60
    STOCK_TRANSACTION = 70
    BILLING_EVENT = 80


class LockTracker:
    """
    Per-session record of the ranks acquired in the current lock scope.

    Contract:
        ``check(rank)`` raises if ``rank`` is below the highest rank already
        acquired.  Re-acquiring the same rank is permitted (a workflow may
        lock several invoices, or several balance rows).
    """

    def __init__(self) -> None:
        self.depth = 0
        self.acquired: list[LockRank] = []

    @property
    def highest(self) -> LockRank | None:
        return max(self.acquired) if self.acquired else None

    def check(self, rank: LockRank) -> None:
        highest = self.highest
        if highest is not None and rank < highest:
            raise LockOrderViolationError(requested=rank.name, held=highest.name)

    def record(self, rank: LockRank) -> None:
        self.acquired.append(rank)

    def reset(self) -> None:
        self.acquired.clear()


def get_tracker(session: Session) -> LockTracker:
    """Return the session's tracker, creating it on first use."""
    tracker = session.info.get(_TRACKER_KEY)
    if tracker is None:
        tracker = LockTracker()
        session.info[_TRACKER_KEY] = tracker
    return tracker


@contextmanager
def lock_scope(session: Session) -> Iterator[LockTracker]:
    """
    Delimit one kernel operation for lock-order checking.

    The outermost scope starts with an empty acquisition list.  Inner scopes
    inherit the outer list, so a composite workflow is checked as a whole.
    """
    tracker = get_tracker(session)
    if tracker.depth == 0:
        tracker.reset()
    tracker.depth += 1
    try:
        yield tracker
    finally:
        tracker.depth -= 1


def _acquire(session: Session, rank: LockRank, stmt: Select[Any]) -> Any:
    tracker = get_tracker(session)
    tracker.check(rank)
    result = session.execute(
        stmt.with_for_update().execution_options(populate_existing=True)
    )
    tracker.record(rank)
    return result


def lock_one(session: Session, rank: LockRank, stmt: Select[Any]) -> Any | None:
    """
    Lock and return at most one row selected by ``stmt`` (or None).

    Raises:
        LockOrderViolationError: rank is out of order for this scope.
    """
    row = _acquire(session, rank, stmt).scalars().first()
    logger.debug(
        "row_locked",
        extra={"lock_rank": rank.name, "found": row is not None},
    )
    return row


def lock_all(session: Session, rank: LockRank, stmt: Select[Any]) -> list[Any]:
    """
    Lock and return every row selected by ``stmt``.

    Raises:
        LockOrderViolationError: rank is out of order for this scope.
    """
    rows = list(_acquire(session, rank, stmt).scalars().all())
    logger.debug(
        "rows_locked",
        extra={"lock_rank": rank.name, "row_count": len(rows)},
    )
    return rows
