"""
SettlementService -- monthly settlement batches, their invoices and the
close / reopen workflow.

Responsibility:
    Snapshots a client's billing events for a month into a settlement batch
    with currency-segregated subtotals, issues one invoice per batch, and
    governs closing and reopening through reopen requests.

Architecture position:
    Kernel > Services -- imperative shell.  Reads billing events; never
    changes them.  Shares the invoice sequence counter with
    InvoiceGenerator.

Invariants enforced:
    - One batch per (client, month).  A closed batch cannot be regenerated.
    - Batch states follow SETTLEMENT_BATCH_TRANSITIONS:
      calculating -> reviewed -> closed -> reviewed (approved reopen only).
    - At most one outstanding reopen request per batch.
    - Every close, reopen request, approval and rejection appends an
      immutable SettlementReopenLog row.
    - Locks: REOPEN_REQUEST -> SETTLEMENT_BATCH -> INVOICE ->
      EXCHANGE_RATE -> INVOICE_SEQUENCE.

Failure modes:
    - FxNotFoundError, BatchNotFoundError, BatchClosedError,
      AlreadyClosedError, InvalidStatusError, RequestExistsError,
      RequestNotFoundError.

Audit relevance:
    Batch totals are provisional (4 dp).  The issued invoice carries
    truncated KRW figures plus each line's source currency and amount.
"""

from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from billing_kernel.db.locking import LockRank, lock_one
from billing_kernel.domain.billing_month import BillingMonth
from billing_kernel.domain.dtos import (
    InvoiceGenerationResult,
    InvoiceInfo,
    ReopenRequestInfo,
    SettlementBatchInfo,
)
from billing_kernel.domain.money import ZERO
from billing_kernel.domain.policy import DEFAULT_POLICY, BillingPolicy
from billing_kernel.domain.statuses import (
    REOPEN_REQUEST_TRANSITIONS,
    SETTLEMENT_BATCH_TRANSITIONS,
    ExchangeRateStatus,
    InvoiceSource,
    InvoiceStatus,
    PricingPolicy,
    ReopenAction,
    ReopenRequestStatus,
    SettlementBatchStatus,
    can_transition,
)
from billing_kernel.exceptions import (
    AlreadyClosedError,
    BatchClosedError,
    BatchNotFoundError,
    FxNotFoundError,
    InvalidStatusError,
    RequestExistsError,
    RequestNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.billing_event import BillingEvent
from billing_kernel.models.exchange_rate import ExchangeRate
from billing_kernel.models.invoice import Invoice, InvoiceItem
from billing_kernel.models.pricing import ServiceCatalog
from billing_kernel.models.settlement import (
    SettlementBatch,
    SettlementLine,
    SettlementReopenLog,
    SettlementReopenRequest,
)
from billing_kernel.services.base import BaseService, require_actor
from billing_kernel.services.exchange_rate_service import latest_rate_stmt
from billing_kernel.services.invoice_generator import advance_invoice
from billing_kernel.services.sequence_service import InvoiceSequenceService

logger = get_logger("services.settlement")

LINE_TYPE_SERVICE = "service"
DEFAULT_LINE_DESCRIPTION = "Service"


class SettlementService(BaseService):
    """
    Contract:
        Each public method is one unit of work in the caller's transaction
        and returns a frozen snapshot.

    Non-goals:
        - Does NOT change billing event status or invoice linkage.
        - Does NOT add VAT to batch invoices.
    """

    def __init__(self, session, clock=None, policy: BillingPolicy | None = None):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self._sequences = InvoiceSequenceService(session, self.clock)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _active_lines(self, batch_id: int) -> list[SettlementLine]:
        return list(
            self.session.execute(
                SettlementLine.active()
                .where(SettlementLine.batch_id == batch_id)
                .order_by(SettlementLine.id)
            ).scalars().all()
        )

    def _snapshot(self, batch: SettlementBatch) -> SettlementBatchInfo:
        return SettlementBatchInfo.from_model(batch, self._active_lines(batch.id))

    def _batch_stmt(self, batch_id: int):
        return select(SettlementBatch).where(SettlementBatch.id == batch_id).limit(1)

    def _lock_batch(self, batch_id: int) -> SettlementBatch:
        batch = lock_one(self.session, LockRank.SETTLEMENT_BATCH, self._batch_stmt(batch_id))
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    def _log(self, batch_id: int, action: ReopenAction, actor_id: int,
             reason: str | None = None, request_id: int | None = None) -> None:
        self.session.add(SettlementReopenLog(
            batch_id=batch_id,
            request_id=request_id,
            action=action.value,
            actor_id=actor_id,
            reason=reason,
            logged_at=self.clock.now(),
            created_by_id=actor_id,
        ))

    def _move_batch(self, batch: SettlementBatch, target: SettlementBatchStatus) -> None:
        if not can_transition(SETTLEMENT_BATCH_TRANSITIONS, batch.status, target):
            raise InvalidStatusError(
                "SettlementBatch", batch.id, SettlementBatchStatus(batch.status).value,
                ", ".join(s.value for s, t in SETTLEMENT_BATCH_TRANSITIONS.items() if target in t),
            )
        batch.status = target.value

    def _resolve_fx(self, month: BillingMonth, exchange_rate_id: int | None) -> ExchangeRate:
        if exchange_rate_id is not None:
            rate = self.session.execute(
                ExchangeRate.active().where(
                    ExchangeRate.id == exchange_rate_id,
                    ExchangeRate.status == ExchangeRateStatus.ACTIVE.value,
                )
            ).scalar_one_or_none()
        else:
            rate = self.session.execute(
                latest_rate_stmt(
                    self.policy.fx_base_currency,
                    self.policy.invoice_currency,
                    month.next_start,
                    strictly_before=True,
                )
            ).scalar_one_or_none()
        if rate is None:
            raise FxNotFoundError(
                self.policy.fx_base_currency,
                self.policy.invoice_currency,
                f"before {month.next_start.isoformat()}",
            )
        return rate

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------

    def _lock_or_create_batch(self, client_id: int, month: BillingMonth, actor_id: int) -> tuple[SettlementBatch, bool]:
        stmt = select(SettlementBatch).where(
            SettlementBatch.client_id == client_id,
            SettlementBatch.billing_month == str(month),
        ).limit(1)
        batch = lock_one(self.session, LockRank.SETTLEMENT_BATCH, stmt)
        if batch is not None:
            return batch, False

        savepoint = self.session.begin_nested()
        try:
            batch = SettlementBatch(
                client_id=client_id,
                billing_month=str(month),
                status=SettlementBatchStatus.CALCULATING.value,
                subtotal_krw=ZERO,
                subtotal_thb=ZERO,
                total_krw=ZERO,
                created_by_id=actor_id,
            )
            self.session.add(batch)
            self.session.flush()
            savepoint.commit()
            return batch, True
        except IntegrityError:
            savepoint.rollback()
            logger.debug(
                "settlement_batch_create_race_retry",
                extra={"client_id": client_id, "billing_month": str(month)},
            )
            return lock_one(self.session, LockRank.SETTLEMENT_BATCH, stmt), False

    def generate(
        self,
        client_id: int,
        billing_month: BillingMonth | str,
        actor_id: int,
        exchange_rate_id: int | None = None,
        is_provisional: bool = True,
    ) -> SettlementBatchInfo:
        """
        Build (or rebuild) the batch from every active event in the month.

        Lines copy each event's own currency and amount.  ``total_krw`` is
        ``round4(krw_subtotal + thb_subtotal x fx)``.  Ends in ``reviewed``.
        """
        actor_id = require_actor(actor_id, "generate_settlement")
        month = BillingMonth.parse(billing_month)

        with self.operation():
            fx = self._resolve_fx(month, exchange_rate_id)
            batch, created = self._lock_or_create_batch(client_id, month, actor_id)

            if not created:
                if batch.status == SettlementBatchStatus.CLOSED.value:
                    raise BatchClosedError(batch.id)
                self._move_batch(batch, SettlementBatchStatus.CALCULATING)
                now = self.clock.now()
                for line in self._active_lines(batch.id):
                    line.tombstone(now, actor_id)
                batch.updated_by_id = actor_id

            batch.exchange_rate_id = fx.id
            batch.fx_rate = fx.rate
            batch.is_provisional = bool(is_provisional)

            events = self.session.execute(
                BillingEvent.active()
                .where(
                    BillingEvent.client_id == client_id,
                    BillingEvent.event_date >= month.start,
                    BillingEvent.event_date < month.next_start,
                )
                .order_by(BillingEvent.id)
            ).scalars().all()
            names = dict(self.session.execute(
                select(ServiceCatalog.service_code, ServiceCatalog.name)
            ).all())

            subtotal_krw = ZERO
            subtotal_thb = ZERO
            for event in events:
                amount = event.source_amount
                currency = event.source_currency
                if currency == self.policy.invoice_currency:
                    subtotal_krw += amount
                else:
                    subtotal_thb += amount
                unit_price = (
                    event.unit_price_thb
                    if event.pricing_policy == PricingPolicy.THB_BASED.value
                    else event.unit_price_krw
                )
                self.session.add(SettlementLine(
                    batch_id=batch.id,
                    line_type=LINE_TYPE_SERVICE,
                    service_code=event.service_code,
                    description=names.get(event.service_code) or DEFAULT_LINE_DESCRIPTION,
                    basis=event.basis_applied,
                    qty=event.qty,
                    unit_price=unit_price or ZERO,
                    currency=currency,
                    amount=amount,
                    extra_amount=ZERO,
                    total_amount=amount,
                    source_event_id=event.id,
                    created_by_id=actor_id,
                ))

            batch.subtotal_krw = subtotal_krw
            batch.subtotal_thb = subtotal_thb
            batch.total_krw = self.policy.round_amount(subtotal_krw + subtotal_thb * fx.rate)
            self._move_batch(batch, SettlementBatchStatus.REVIEWED)
            self.session.flush()

        logger.info(
            "settlement_batch_generated",
            extra={
                "batch_id": batch.id,
                "client_id": client_id,
                "billing_month": str(month),
                "line_count": len(events),
                "fx_rate": fx.rate,
                "total_krw": batch.total_krw,
                "was_created": created,
            },
        )
        return self._snapshot(batch)

    # ------------------------------------------------------------------
    # Invoice
    # ------------------------------------------------------------------

    def issue_invoice(
        self,
        batch_id: int,
        actor_id: int,
        invoice_date: date | None = None,
        due_date: date | None = None,
    ) -> InvoiceGenerationResult:
        """
        Issue the batch's invoice, or return the one already issued.

        Lines are copied 1:1.  Each is converted to KRW at the batch rate
        and truncated to the KRW unit; subtotal and total are the
        truncated sum.  No VAT line.
        """
        actor_id = require_actor(actor_id, "issue_settlement_invoice")
        invoice_date = invoice_date or self.clock.today()

        with self.operation():
            batch = self._lock_batch(batch_id)
            existing = lock_one(
                self.session,
                LockRank.INVOICE,
                Invoice.active()
                .where(Invoice.settlement_batch_id == batch.id)
                .order_by(Invoice.id)
                .limit(1),
            )
            if existing is not None:
                logger.info(
                    "settlement_invoice_reused",
                    extra={"batch_id": batch.id, "invoice_id": existing.id},
                )
                return InvoiceGenerationResult(
                    invoice=self._invoice_snapshot(existing), reused=True, event_count=0,
                )

            fx_rate = batch.fx_rate or ZERO
            if batch.exchange_rate_id is not None:
                rate = lock_one(
                    self.session,
                    LockRank.EXCHANGE_RATE,
                    select(ExchangeRate).where(ExchangeRate.id == batch.exchange_rate_id).limit(1),
                )
                if rate is not None and not rate.locked:
                    rate.locked = True
                    rate.updated_by_id = actor_id

            month = BillingMonth.parse(batch.billing_month)
            seq = self._sequences.next_seq(batch.client_id, month.yyyymm)
            invoice = Invoice(
                client_id=batch.client_id,
                invoice_no=self.policy.invoice_number(batch.client_id, month.yyyymm, seq),
                invoice_month=batch.billing_month,
                source=InvoiceSource.SETTLEMENT_BATCH.value,
                settlement_batch_id=batch.id,
                invoice_date=invoice_date,
                due_date=due_date or self.policy.due_date_for(invoice_date),
                currency=self.policy.invoice_currency,
                exchange_rate_id=batch.exchange_rate_id,
                fx_rate=batch.fx_rate,
                subtotal_krw=ZERO,
                vat_krw=ZERO,
                total_krw=ZERO,
                status=InvoiceStatus.DRAFT.value,
                created_by_id=actor_id,
            )
            self.session.add(invoice)
            self.session.flush()

            lines = self._active_lines(batch.id)
            subtotal = ZERO
            for line in lines:
                if line.currency == self.policy.invoice_currency:
                    amount_krw = self.policy.truncate(line.total_amount)
                else:
                    amount_krw = self.policy.truncate(line.total_amount * fx_rate)
                subtotal += amount_krw
                self.session.add(InvoiceItem(
                    invoice_id=invoice.id,
                    service_code=line.service_code,
                    description=line.description,
                    qty=line.qty,
                    unit_price_krw=self.policy.unit_price(amount_krw, line.qty),
                    amount_krw=amount_krw,
                    is_vat=False,
                    settlement_line_id=line.id,
                    source_currency=line.currency,
                    source_amount=line.total_amount,
                    created_by_id=actor_id,
                ))

            subtotal = self.policy.truncate(subtotal)
            invoice.subtotal_krw = subtotal
            invoice.total_krw = subtotal
            self.session.flush()
            advance_invoice(invoice, InvoiceStatus.ISSUED, actor_id, self.clock.now())
            self.session.flush()

        logger.info(
            "settlement_invoice_issued",
            extra={
                "batch_id": batch.id,
                "invoice_id": invoice.id,
                "invoice_no": invoice.invoice_no,
                "line_count": len(lines),
                "total_krw": invoice.total_krw,
            },
        )
        return InvoiceGenerationResult(
            invoice=self._invoice_snapshot(invoice), reused=False, event_count=len(lines),
        )

    def _invoice_snapshot(self, invoice: Invoice) -> InvoiceInfo:
        items = self.session.execute(
            InvoiceItem.active().where(InvoiceItem.invoice_id == invoice.id).order_by(InvoiceItem.id)
        ).scalars().all()
        return InvoiceInfo.from_model(invoice, list(items))

    # ------------------------------------------------------------------
    # Close / reopen
    # ------------------------------------------------------------------

    def close(self, batch_id: int, actor_id: int, reason: str | None = None) -> SettlementBatchInfo:
        """reviewed -> closed, with a 'close' log entry."""
        actor_id = require_actor(actor_id, "close_settlement")
        with self.operation():
            batch = self._lock_batch(batch_id)
            if batch.status == SettlementBatchStatus.CLOSED.value:
                raise AlreadyClosedError(batch.id)
            if batch.status != SettlementBatchStatus.REVIEWED.value:
                raise InvalidStatusError(
                    "SettlementBatch", batch.id, batch.status, SettlementBatchStatus.REVIEWED.value,
                )
            self._move_batch(batch, SettlementBatchStatus.CLOSED)
            batch.closed_at = self.clock.now()
            batch.closed_by_id = actor_id
            batch.updated_by_id = actor_id
            self._log(batch.id, ReopenAction.CLOSE, actor_id, reason)
            self.session.flush()

        logger.info("settlement_batch_closed", extra={"batch_id": batch.id})
        return self._snapshot(batch)

    def request_reopen(self, batch_id: int, actor_id: int, reason: str) -> ReopenRequestInfo:
        """Open a reopen request for a closed batch."""
        actor_id = require_actor(actor_id, "request_settlement_reopen")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to request a reopen", field="reason")

        with self.operation():
            batch = self._lock_batch(batch_id)
            if batch.status != SettlementBatchStatus.CLOSED.value:
                raise InvalidStatusError(
                    "SettlementBatch", batch.id, batch.status, SettlementBatchStatus.CLOSED.value,
                )
            outstanding_stmt = select(SettlementReopenRequest).where(
                SettlementReopenRequest.batch_id == batch.id,
                SettlementReopenRequest.status == ReopenRequestStatus.REQUESTED.value,
            ).limit(1)
            outstanding = self.session.execute(outstanding_stmt).scalar_one_or_none()
            if outstanding is not None:
                raise RequestExistsError(batch.id, outstanding.id)

            savepoint = self.session.begin_nested()
            try:
                request = SettlementReopenRequest(
                    batch_id=batch.id,
                    status=ReopenRequestStatus.REQUESTED.value,
                    reason=reason,
                    requested_by_id=actor_id,
                    requested_at=self.clock.now(),
                    created_by_id=actor_id,
                )
                self.session.add(request)
                self.session.flush()
                savepoint.commit()
            except IntegrityError as exc:
                savepoint.rollback()
                winner = self.session.execute(outstanding_stmt).scalar_one_or_none()
                raise RequestExistsError(batch.id, winner.id if winner else 0) from exc

            self._log(batch.id, ReopenAction.REOPEN_REQUESTED, actor_id, reason, request.id)
            self.session.flush()

        logger.info(
            "settlement_reopen_requested",
            extra={"batch_id": batch.id, "request_id": request.id},
        )
        return ReopenRequestInfo.from_model(request)

    def _decide(
        self, request_id: int, target: ReopenRequestStatus, actor_id: int, note: str | None,
    ) -> SettlementReopenRequest:
        request = lock_one(
            self.session,
            LockRank.REOPEN_REQUEST,
            select(SettlementReopenRequest).where(SettlementReopenRequest.id == request_id).limit(1),
        )
        if request is None:
            raise RequestNotFoundError(request_id)
        if not can_transition(REOPEN_REQUEST_TRANSITIONS, request.status, target):
            raise InvalidStatusError(
                "SettlementReopenRequest", request.id, request.status,
                ReopenRequestStatus.REQUESTED.value,
            )
        request.status = target.value
        request.approved_by_id = actor_id
        request.approved_at = self.clock.now()
        request.decision_note = note
        request.updated_by_id = actor_id
        return request

    def approve_reopen(self, request_id: int, actor_id: int, reason: str | None = None) -> ReopenRequestInfo:
        """requested -> approved; the batch returns to reviewed."""
        actor_id = require_actor(actor_id, "approve_settlement_reopen")
        with self.operation():
            request = self._decide(request_id, ReopenRequestStatus.APPROVED, actor_id, reason)
            batch = self._lock_batch(request.batch_id)
            self._move_batch(batch, SettlementBatchStatus.REVIEWED)
            batch.closed_at = None
            batch.closed_by_id = None
            batch.updated_by_id = actor_id
            self._log(batch.id, ReopenAction.REOPEN, actor_id, reason or request.reason, request.id)
            self.session.flush()

        logger.info(
            "settlement_reopen_approved",
            extra={"batch_id": batch.id, "request_id": request.id},
        )
        return ReopenRequestInfo.from_model(request)

    def reject_reopen(self, request_id: int, actor_id: int, reason: str | None = None) -> ReopenRequestInfo:
        """requested -> rejected; the batch stays closed."""
        actor_id = require_actor(actor_id, "reject_settlement_reopen")
        with self.operation():
            request = self._decide(request_id, ReopenRequestStatus.REJECTED, actor_id, reason)
            self._log(request.batch_id, ReopenAction.REOPEN_REJECTED, actor_id, reason, request.id)
            self.session.flush()

        logger.info(
            "settlement_reopen_rejected",
            extra={"batch_id": request.batch_id, "request_id": request.id},
        )
        return ReopenRequestInfo.from_model(request)
