"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session-handling contract.  Services receive a
    SQLAlchemy ``Session`` and use ``session.flush()``, never
    ``session.commit()``.

Invariants enforced:
    - Transaction boundaries belong to the caller (``session_scope`` or the
      BillingOperations facade).  A failing step leaves the whole unit to be
      rolled back by the caller.
    - Each public operation runs inside ``self.operation()``, which opens a
      lock scope (db/locking.py) so lock-order checking covers the whole
      operation including any nested service calls.
"""

from abc import ABC
from contextlib import AbstractContextManager

from sqlalchemy.orm import Session

from billing_kernel.db.locking import LockTracker, lock_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import MissingActorError


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a ``Session`` and an optional ``Clock`` from the caller.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read-only listings; those live in selectors/.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    def operation(self) -> AbstractContextManager[LockTracker]:
        return lock_scope(self.session)


def require_actor(actor_id: int | None, operation: str) -> int:
    """Reject a missing acting user before any row is touched.

    Falsy and non-positive ids count as missing.
    """
    if not actor_id or (isinstance(actor_id, str) and not actor_id.strip()):
        raise MissingActorError(operation)
    try:
        actor = int(actor_id)
    except (TypeError, ValueError):
        raise MissingActorError(operation) from None
    if actor <= 0:
        raise MissingActorError(operation)
    return actor
