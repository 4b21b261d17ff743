"""
InvoiceSequenceService -- per-(client, month) invoice numbering via locked
counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for invoice numbers.
    Uses the ``invoice_sequences`` counter table with row-level locking
    (``SELECT ... FOR UPDATE``) to guarantee uniqueness and ordering under
    concurrent access.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by InvoiceGenerator (generate, duplicate) and SettlementService
    (issue invoice from batch).  Both paths share one counter per key.

Invariants enforced:
    - Sequence monotonicity: the locked counter row is the sole source of
      truth for the next value.  The SQL aggregate-max-plus-one
      anti-pattern is FORBIDDEN.
    - Transactional: the increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and retry).
    - LockOrderViolationError: the caller already holds a lock ranked
      after INVOICE_SEQUENCE.

Audit relevance:
    Allocation is logged at DEBUG with client, month and value.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from billing_kernel.db.locking import LockRank, lock_one
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import InvoiceSequence
from billing_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class InvoiceSequenceService(BaseService):
    """
    Service for allocating invoice sequence numbers.

    Contract:
        ``next_seq(client_id, yyyymm)`` returns the next integer for that
        key, starting at 1.  The increment commits with the caller.

    Guarantees:
        - Strictly increasing per key via the locked counter row.
        - Gap-free under normal operation; a rolled-back transaction
          returns its value.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT format invoice numbers (BillingPolicy does).
    """

    def _counter_stmt(self, client_id: int, yyyymm: str):
        return (
            select(InvoiceSequence)
            .where(InvoiceSequence.client_id == client_id, InvoiceSequence.yyyymm == yyyymm)
            .limit(1)
        )

    def next_seq(self, client_id: int, yyyymm: str) -> int:
        """
        Lock (or create) the counter for ``(client_id, yyyymm)`` and
        increment it.

        Postconditions:
            - Returns an integer > 0 strictly greater than any value
              previously committed for this key.
            - The counter row is locked until the transaction completes.
        """
        with self.operation():
            stmt = self._counter_stmt(client_id, yyyymm)
            counter = lock_one(self.session, LockRank.INVOICE_SEQUENCE, stmt)

            if counter is None:
                # First invoice for this key; another transaction may race us
                savepoint = self.session.begin_nested()
                try:
                    counter = InvoiceSequence(client_id=client_id, yyyymm=yyyymm, last_seq=1)
                    self.session.add(counter)
                    self.session.flush()
                    savepoint.commit()
                    logger.debug(
                        "invoice_sequence_allocated",
                        extra={"client_id": client_id, "yyyymm": yyyymm, "value": 1},
                    )
                    return 1
                except IntegrityError:
                    logger.debug(
                        "invoice_sequence_race_retry",
                        extra={"client_id": client_id, "yyyymm": yyyymm},
                    )
                    savepoint.rollback()
                    counter = lock_one(self.session, LockRank.INVOICE_SEQUENCE, stmt)

            counter.last_seq += 1
            self.session.flush()

        logger.debug(
            "invoice_sequence_allocated",
            extra={"client_id": client_id, "yyyymm": yyyymm, "value": counter.last_seq},
        )
        return counter.last_seq

    def current_seq(self, client_id: int, yyyymm: str) -> int | None:
        """Last allocated value without incrementing, or None."""
        counter = self.session.execute(self._counter_stmt(client_id, yyyymm)).scalar_one_or_none()
        return counter.last_seq if counter else None
