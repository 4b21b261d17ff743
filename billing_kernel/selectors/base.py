"""
Module: billing_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.
    Selectors are the read side: listings, exports and reconciliations for
    stock, billing events, invoices and settlement.
Architecture position: Kernel > Selectors.  May import from db/, domain/ and
    models/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors MUST NOT call session.add(),
      session.delete(), session.commit() or session.flush(), and take no
      row locks.
    - DTO return convention: selectors return frozen dataclasses, never ORM
      instances.
    - Tombstoned rows are excluded unless a method says otherwise.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Contract:
        Accepts a Session from the caller and performs read-only queries.

    Non-goals:
        Does NOT manage the session or its transaction.
    """

    def __init__(self, session: Session):
        self.session = session
