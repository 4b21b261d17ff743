"""
BillingOperations -- transactional facade over the billing kernel.

Responsibility:
    One method per mutating operation.  Each call is one unit of work:
    commit on success, rollback on any failure, and an OperationResult
    instead of an exception for every expected (typed) failure.

Architecture position:
    Services -- the outermost layer the application talks to.  Builds the
    kernel services from one Session, Clock and BillingPolicy.

Invariants enforced:
    - A missing actor fails with VALIDATION before the session is touched.
    - Expected failures (BillingKernelError with a caller-facing category)
      roll back and return ``OperationResult.fail``.
    - Deadlocks and serialization failures roll back and return a
      retryable TRANSACTION_CONFLICT failure.  Nothing retries here.
    - Anything else, including internal kernel errors such as
      LockOrderViolationError, rolls back, is logged and re-raised.

Audit relevance:
    Every call logs ``<operation>_started`` and ``<operation>_completed``
    or ``<operation>_failed`` with ``duration_ms`` under a bound
    correlation id, actor and operation name.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from billing_config import BillingConfig, build_billing_policy
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.policy import DEFAULT_POLICY, BillingPolicy
from billing_kernel.exceptions import (
    BillingKernelError,
    ErrorCategory,
    MissingActorError,
    TransactionConflictError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.base import require_actor
from billing_kernel.services.billing_event_service import BillingEventService
from billing_kernel.services.exchange_rate_service import ExchangeRateService
from billing_kernel.services.invoice_generator import InvoiceGenerator
from billing_kernel.services.service_catalog import ServiceCatalogService
from billing_kernel.services.settlement_service import SettlementService
from billing_services.inbound_flow import InboundItemFlow, InboundLine
from billing_services.outbound_flow import OutboundItemFlow, OutboundLine
from billing_services.return_flow import ReturnItemFlow, ReturnLine

logger = get_logger("services.operations")

# SQLSTATEs for serialization failure and deadlock
_CONFLICT_SQLSTATES = frozenset({"40001", "40P01"})


def is_transaction_conflict(exc: DBAPIError) -> bool:
    """True for deadlocks, serialization failures and SQLite lock timeouts."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in _CONFLICT_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return "deadlock" in message or "database is locked" in message


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one facade operation."""

    operation: str
    success: bool
    data: Any = None
    code: str | None = None
    category: ErrorCategory | None = None
    message: str | None = None
    retryable: bool = False

    @classmethod
    def ok(cls, operation: str, data: Any) -> OperationResult:
        return cls(operation=operation, success=True, data=data)

    @classmethod
    def fail(cls, operation: str, error: BillingKernelError) -> OperationResult:
        return cls(
            operation=operation,
            success=False,
            code=error.code,
            category=error.category,
            message=str(error),
            retryable=error.retryable,
        )


class BillingOperations:
    """
    Contract:
        Every public method returns an OperationResult whose ``data`` is a
        frozen snapshot (or a list of them).

    Guarantees:
        - All-or-nothing per call when ``auto_commit`` is True.
        - With ``auto_commit`` False the caller owns commit and rollback;
          the facade only maps errors.

    Non-goals:
        - Does NOT retry conflicts.
        - Does NOT expose read models (use the selectors directly).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: BillingPolicy | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._policy = policy or DEFAULT_POLICY
        self._auto_commit = auto_commit

        self.catalog = ServiceCatalogService(session, self._clock)
        self.events = BillingEventService(session, self._clock, self._policy)
        self.rates = ExchangeRateService(session, self._clock, self._policy)
        self.invoices = InvoiceGenerator(session, self._clock, self._policy)
        self.settlements = SettlementService(session, self._clock, self._policy)
        self.inbound = InboundItemFlow(session, self._clock)
        self.outbound = OutboundItemFlow(session, self._clock, self._policy)
        self.returns = ReturnItemFlow(session, self._clock)

    @classmethod
    def from_config(
        cls,
        session: Session,
        config: BillingConfig,
        clock: Clock | None = None,
        auto_commit: bool = True,
    ) -> BillingOperations:
        return cls(session, clock=clock, policy=build_billing_policy(config), auto_commit=auto_commit)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _rollback(self) -> None:
        if self._auto_commit:
            self._session.rollback()

    def _run(
        self,
        operation: str,
        actor_id: int | None,
        fn: Callable[[], Any],
        **context: Any,
    ) -> OperationResult:
        try:
            require_actor(actor_id, operation)
        except MissingActorError as exc:
            logger.warning(f"{operation}_rejected", extra={"error_code": exc.code})
            return OperationResult.fail(operation, exc)

        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=actor_id,
            operation=operation,
            client_id=context.pop("client_id", None),
            billing_month=context.pop("billing_month", None),
        ):
            logger.info(f"{operation}_started", extra=context)
            t0 = time.monotonic()
            try:
                data = fn()
                if self._auto_commit:
                    self._session.commit()
            except BillingKernelError as exc:
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                self._rollback()
                if exc.category == ErrorCategory.INTERNAL:
                    logger.error(
                        f"{operation}_failed",
                        extra={"error_code": exc.code, "duration_ms": duration_ms},
                        exc_info=True,
                    )
                    raise
                logger.warning(
                    f"{operation}_failed",
                    extra={
                        "error_code": exc.code,
                        "error_category": exc.category.value,
                        "duration_ms": duration_ms,
                    },
                )
                return OperationResult.fail(operation, exc)
            except DBAPIError as exc:
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                self._rollback()
                if not is_transaction_conflict(exc):
                    logger.error(f"{operation}_failed", extra={"duration_ms": duration_ms}, exc_info=True)
                    raise
                conflict = TransactionConflictError(operation, str(exc.orig))
                logger.warning(
                    f"{operation}_failed",
                    extra={"error_code": conflict.code, "retryable": True, "duration_ms": duration_ms},
                )
                return OperationResult.fail(operation, conflict)
            except Exception:
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                self._rollback()
                logger.error(f"{operation}_failed", extra={"duration_ms": duration_ms}, exc_info=True)
                raise

            duration_ms = round((time.monotonic() - t0) * 1000, 2)
            logger.info(f"{operation}_completed", extra={"duration_ms": duration_ms})
            return OperationResult.ok(operation, data)

    # ------------------------------------------------------------------
    # Catalog and pricing
    # ------------------------------------------------------------------

    def register_service(self, service_code: str, name: str, billing_unit: str, actor_id: int,
                         default_currency: str = "THB") -> OperationResult:
        return self._run(
            "register_service", actor_id,
            lambda: self.catalog.register_service(service_code, name, billing_unit, actor_id, default_currency),
            service_code=service_code,
        )

    def add_price_policy(self, client_id: int, service_code: str, unit_price: Decimal | str,
                         currency: str, effective_from: date, actor_id: int,
                         effective_to: date | None = None, billing_basis: str | None = None) -> OperationResult:
        return self._run(
            "add_price_policy", actor_id,
            lambda: self.catalog.add_price_policy(
                client_id, service_code, unit_price, currency, effective_from, actor_id,
                effective_to=effective_to, billing_basis=billing_basis,
            ),
            client_id=client_id, service_code=service_code,
        )

    # ------------------------------------------------------------------
    # Stock item flows
    # ------------------------------------------------------------------

    def receive_inbound(self, line: InboundLine) -> OperationResult:
        return self._run("receive_inbound", line.actor_id, lambda: self.inbound.receive(line),
                         client_id=line.client_id, item_id=line.item_id)

    def remove_inbound(self, item_id: int, actor_id: int) -> OperationResult:
        return self._run("remove_inbound", actor_id, lambda: self.inbound.remove(item_id, actor_id),
                         item_id=item_id)

    def ship_outbound(self, line: OutboundLine) -> OperationResult:
        return self._run("ship_outbound", line.actor_id, lambda: self.outbound.ship(line),
                         client_id=line.client_id, item_id=line.item_id)

    def edit_outbound(self, line: OutboundLine) -> OperationResult:
        return self._run("edit_outbound", line.actor_id, lambda: self.outbound.edit(line),
                         client_id=line.client_id, item_id=line.item_id)

    def remove_outbound(self, item_id: int, actor_id: int) -> OperationResult:
        return self._run("remove_outbound", actor_id, lambda: self.outbound.remove(item_id, actor_id),
                         item_id=item_id)

    def receive_return(self, line: ReturnLine) -> OperationResult:
        return self._run("receive_return", line.actor_id, lambda: self.returns.receive(line),
                         client_id=line.client_id, item_id=line.item_id)

    def edit_return(self, line: ReturnLine) -> OperationResult:
        return self._run("edit_return", line.actor_id, lambda: self.returns.edit(line),
                         client_id=line.client_id, item_id=line.item_id)

    def remove_return(self, item_id: int, actor_id: int) -> OperationResult:
        return self._run("remove_return", actor_id, lambda: self.returns.remove(item_id, actor_id),
                         item_id=item_id)

    # ------------------------------------------------------------------
    # Billing events
    # ------------------------------------------------------------------

    def record_event(self, actor_id: int, **fields: Any) -> OperationResult:
        """Direct entry; ``fields`` are BillingEventService.record_event keywords."""
        return self._run(
            "record_event", actor_id,
            lambda: self.events.record_event(actor_id=actor_id, **fields),
            client_id=fields.get("client_id"), service_code=fields.get("service_code"),
        )

    def mark_events_pending(self, event_ids: list[int], actor_id: int) -> OperationResult:
        return self._run("mark_events_pending", actor_id,
                         lambda: self.events.mark_pending(event_ids, actor_id),
                         event_count=len(event_ids))

    # ------------------------------------------------------------------
    # Exchange rates
    # ------------------------------------------------------------------

    def create_rate(self, rate_date: date, rate: Decimal | str, actor_id: int, **options: Any) -> OperationResult:
        return self._run("create_rate", actor_id,
                         lambda: self.rates.create_rate(rate_date, rate, actor_id, **options),
                         rate_date=rate_date)

    def update_rate(self, rate_id: int, actor_id: int, **changes: Any) -> OperationResult:
        return self._run("update_rate", actor_id,
                         lambda: self.rates.update_rate(rate_id, actor_id, **changes),
                         rate_id=rate_id)

    def delete_rate(self, rate_id: int, actor_id: int) -> OperationResult:
        return self._run("delete_rate", actor_id, lambda: self.rates.delete_rate(rate_id, actor_id),
                         rate_id=rate_id)

    def lock_rate(self, rate_id: int, actor_id: int) -> OperationResult:
        return self._run("lock_rate", actor_id, lambda: self.rates.lock_rate(rate_id, actor_id),
                         rate_id=rate_id)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def generate_invoice(self, client_id: int, billing_month: str, actor_id: int,
                         invoice_date: date | None = None, regenerate: bool = False) -> OperationResult:
        return self._run(
            "generate_invoice", actor_id,
            lambda: self.invoices.generate(
                client_id, billing_month, actor_id, invoice_date=invoice_date, regenerate=regenerate,
            ),
            client_id=client_id, billing_month=billing_month, regenerate=regenerate,
        )

    def issue_invoice(self, invoice_id: int, actor_id: int) -> OperationResult:
        return self._run("issue_invoice", actor_id, lambda: self.invoices.issue(invoice_id, actor_id),
                         invoice_id=invoice_id)

    def mark_invoice_paid(self, invoice_id: int, actor_id: int) -> OperationResult:
        return self._run("mark_invoice_paid", actor_id, lambda: self.invoices.mark_paid(invoice_id, actor_id),
                         invoice_id=invoice_id)

    def duplicate_invoice(self, invoice_id: int, actor_id: int) -> OperationResult:
        return self._run("duplicate_invoice", actor_id, lambda: self.invoices.duplicate(invoice_id, actor_id),
                         invoice_id=invoice_id)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def generate_settlement(self, client_id: int, billing_month: str, actor_id: int,
                            exchange_rate_id: int | None = None, is_provisional: bool = True) -> OperationResult:
        return self._run(
            "generate_settlement", actor_id,
            lambda: self.settlements.generate(
                client_id, billing_month, actor_id,
                exchange_rate_id=exchange_rate_id, is_provisional=is_provisional,
            ),
            client_id=client_id, billing_month=billing_month,
        )

    def issue_settlement_invoice(self, batch_id: int, actor_id: int, invoice_date: date | None = None,
                                 due_date: date | None = None) -> OperationResult:
        return self._run(
            "issue_settlement_invoice", actor_id,
            lambda: self.settlements.issue_invoice(batch_id, actor_id, invoice_date=invoice_date, due_date=due_date),
            batch_id=batch_id,
        )

    def close_settlement(self, batch_id: int, actor_id: int, reason: str | None = None) -> OperationResult:
        return self._run("close_settlement", actor_id,
                         lambda: self.settlements.close(batch_id, actor_id, reason),
                         batch_id=batch_id)

    def request_reopen(self, batch_id: int, actor_id: int, reason: str) -> OperationResult:
        return self._run("request_reopen", actor_id,
                         lambda: self.settlements.request_reopen(batch_id, actor_id, reason),
                         batch_id=batch_id)

    def approve_reopen(self, request_id: int, actor_id: int, reason: str | None = None) -> OperationResult:
        return self._run("approve_reopen", actor_id,
                         lambda: self.settlements.approve_reopen(request_id, actor_id, reason),
                         request_id=request_id)

    def reject_reopen(self, request_id: int, actor_id: int, reason: str | None = None) -> OperationResult:
        return self._run("reject_reopen", actor_id,
                         lambda: self.settlements.reject_reopen(request_id, actor_id, reason),
                         request_id=request_id)
