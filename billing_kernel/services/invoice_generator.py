"""
InvoiceGenerator -- monthly KRW invoices from PENDING billing events.

Responsibility:
    Generates (or regenerates) the draft invoice for a client and billing
    month, and drives the invoice lifecycle: issue, mark paid, duplicate.

Architecture position:
    Kernel > Services -- imperative shell.  Owns Invoice, InvoiceItem and
    the INVOICED side of BillingEvent.  Allocates numbers through
    InvoiceSequenceService.

Invariants enforced:
    - One all-or-nothing transaction per call.  Locks are taken in rank
      order INVOICE -> EXCHANGE_RATE -> INVOICE_SEQUENCE -> BILLING_EVENT.
    - At most one live billing-event invoice per (client, month) is
      considered: the latest one.  A non-draft blocks generation.
    - Every persisted KRW figure is a multiple of the policy's truncation
      unit (100 by default), written trunc below:
      item = trunc(sum of normalized events), subtotal = trunc(sum of
      items), vat = trunc(subtotal x vat_rate), total = trunc(subtotal + vat).
    - The rate used is locked, and the invoice stores both the rate id and
      its value.
    - Regenerating a draft tombstones the draft and its items and returns
      every linked event to PENDING before re-selecting events.

Failure modes:
    - InvoiceAlreadyIssuedError, FxNotFoundError, NoPendingEventsError.
      The caller rolls back, so a failed run leaves no invoice, no locked
      rate and no consumed sequence number.
    - TransactionConflictError (retryable) when the month's events were
      invoiced by a concurrent first generate that committed while this
      one waited on the rate or event locks.  A retry reuses that draft.
    - InvoiceNotFoundError / InvalidStatusError for lifecycle moves.

Audit relevance:
    Events keep their source amounts; the normalized KRW amount and the
    rate applied are recorded beside them.  Regenerated drafts are
    tombstoned, so every number ever allocated remains traceable.
"""

from collections import OrderedDict
from datetime import date
from decimal import Decimal

from sqlalchemy import and_, func, or_, select

from billing_kernel.db.locking import LockRank, lock_all, lock_one
from billing_kernel.domain.billing_month import BillingMonth
from billing_kernel.domain.dtos import InvoiceGenerationResult, InvoiceInfo
from billing_kernel.domain.money import KRW_UNIT, ZERO, truncate_to_unit
from billing_kernel.domain.policy import DEFAULT_POLICY, BillingPolicy
from billing_kernel.domain.statuses import (
    BILLING_EVENT_TRANSITIONS,
    INVOICE_TRANSITIONS,
    BillingEventStatus,
    InvoiceSource,
    InvoiceStatus,
    PricingPolicy,
    can_transition,
)
from billing_kernel.exceptions import (
    FxNotFoundError,
    InvalidStatusError,
    InvoiceAlreadyIssuedError,
    InvoiceNotFoundError,
    NoPendingEventsError,
    TransactionConflictError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.billing_event import BillingEvent
from billing_kernel.models.invoice import Invoice, InvoiceItem
from billing_kernel.models.pricing import ServiceCatalog
from billing_kernel.services.base import BaseService, require_actor
from billing_kernel.services.exchange_rate_service import latest_rate_stmt
from billing_kernel.services.sequence_service import InvoiceSequenceService

logger = get_logger("services.invoice_generator")

_TIMESTAMP_FIELDS = {
    InvoiceStatus.ISSUED: ("issued_at", "issued_by_id"),
    InvoiceStatus.PAID: ("paid_at", "paid_by_id"),
}


def advance_invoice(invoice: Invoice, target: InvoiceStatus, actor_id: int, when) -> None:
    """
    Move a locked invoice to ``target`` along INVOICE_TRANSITIONS.

    Raises:
        InvalidStatusError: the transition is not permitted.
    """
    if not can_transition(INVOICE_TRANSITIONS, invoice.status, target):
        expected = ", ".join(
            s.value for s, targets in INVOICE_TRANSITIONS.items() if target in targets
        )
        raise InvalidStatusError("Invoice", invoice.id, InvoiceStatus(invoice.status).value, expected)
    invoice.status = target.value
    at_field, by_field = _TIMESTAMP_FIELDS[target]
    setattr(invoice, at_field, when)
    setattr(invoice, by_field, actor_id)
    invoice.updated_by_id = actor_id


def normalize_event_amount(event: BillingEvent, fx_rate: Decimal, unit: Decimal = KRW_UNIT) -> Decimal:
    """KRW amount of ``event`` at ``fx_rate``, truncated to ``unit``."""
    qty = event.qty or ZERO
    if event.pricing_policy == PricingPolicy.THB_BASED.value:
        amount = event.amount_thb
        if amount is None:
            amount = (event.unit_price_thb or ZERO) * qty
        return truncate_to_unit(amount * fx_rate, unit)
    amount = event.amount_krw
    if amount is None:
        amount = (event.unit_price_krw or ZERO) * qty
    return truncate_to_unit(amount, unit)


class InvoiceGenerator(BaseService):
    """
    Contract:
        ``generate`` returns an InvoiceGenerationResult; ``issue``,
        ``mark_paid`` and ``duplicate`` return InvoiceInfo.  Nothing is
        committed here.

    Non-goals:
        - Does NOT invoice settlement batches (SettlementService does).
        - Does NOT render documents or send mail.
    """

    def __init__(self, session, clock=None, policy: BillingPolicy | None = None):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self._sequences = InvoiceSequenceService(session, self.clock)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _active_items(self, invoice_id: int) -> list[InvoiceItem]:
        return list(
            self.session.execute(
                InvoiceItem.active()
                .where(InvoiceItem.invoice_id == invoice_id)
                .order_by(InvoiceItem.id)
            ).scalars().all()
        )

    def _snapshot(self, invoice: Invoice) -> InvoiceInfo:
        return InvoiceInfo.from_model(invoice, self._active_items(invoice.id))

    def _lock_invoice(self, invoice_id: int) -> Invoice:
        invoice = lock_one(
            self.session,
            LockRank.INVOICE,
            Invoice.active().where(Invoice.id == invoice_id).limit(1),
        )
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def _linked_event_count(self, invoice_id: int) -> int:
        return self.session.execute(
            select(func.count(BillingEvent.id)).where(
                BillingEvent.active_filter(),
                BillingEvent.invoice_id == invoice_id,
            )
        ).scalar() or 0

    def _service_names(self, codes) -> dict[str, str]:
        rows = self.session.execute(
            select(ServiceCatalog.service_code, ServiceCatalog.name).where(
                ServiceCatalog.service_code.in_(list(codes))
            )
        ).all()
        return {code: name for code, name in rows}

    def _month_invoice_stmt(self, client_id: int, month: BillingMonth):
        return (
            Invoice.active()
            .where(
                Invoice.client_id == client_id,
                Invoice.invoice_month == str(month),
                Invoice.source == InvoiceSource.BILLING_EVENTS.value,
            )
            .order_by(Invoice.id.desc())
            .limit(1)
        )

    def _lock_month_invoice(self, client_id: int, month: BillingMonth) -> Invoice | None:
        return lock_one(self.session, LockRank.INVOICE, self._month_invoice_stmt(client_id, month))

    def _committed_month_invoice_id(self, client_id: int, month: BillingMonth) -> int | None:
        """Unlocked re-read; sees invoices committed since the operation began."""
        stmt = self._month_invoice_stmt(client_id, month).with_only_columns(Invoice.id)
        return self.session.execute(stmt).scalar_one_or_none()

    def _next_invoice_no(self, client_id: int, yyyymm: str) -> str:
        seq = self._sequences.next_seq(client_id, yyyymm)
        return self.policy.invoice_number(client_id, yyyymm, seq)

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------

    def generate(
        self,
        client_id: int,
        billing_month: BillingMonth | str,
        actor_id: int,
        invoice_date: date | None = None,
        regenerate: bool = False,
    ) -> InvoiceGenerationResult:
        """
        Build the month's draft invoice from PENDING events.

        Returns the existing draft unchanged (``reused=True``) when one
        exists and ``regenerate`` is False.
        """
        actor_id = require_actor(actor_id, "generate_invoice")
        month = BillingMonth.parse(billing_month)
        invoice_date = invoice_date or self.clock.today()
        now = self.clock.now()

        with self.operation():
            # 1. Latest live invoice for the month on this path
            existing = self._lock_month_invoice(client_id, month)
            released_draft_id = None
            if existing is not None:
                if not existing.is_draft:
                    logger.warning(
                        "invoice_generation_blocked",
                        extra={"invoice_id": existing.id, "status": existing.status},
                    )
                    raise InvoiceAlreadyIssuedError(existing.id, InvoiceStatus(existing.status).value)
                if not regenerate:
                    logger.info("invoice_draft_reused", extra={"invoice_id": existing.id})
                    return InvoiceGenerationResult(
                        invoice=self._snapshot(existing),
                        reused=True,
                        event_count=self._linked_event_count(existing.id),
                    )

                # 2. Retire the draft; its events are released under lock below
                for item in self._active_items(existing.id):
                    item.tombstone(now, actor_id)
                existing.tombstone(now, actor_id)
                released_draft_id = existing.id
                self.session.flush()

            # 3-4. Rate in effect on the invoice date, locked for good
            rate = lock_one(
                self.session,
                LockRank.EXCHANGE_RATE,
                latest_rate_stmt(self.policy.fx_base_currency, self.policy.invoice_currency, invoice_date),
            )
            if rate is None:
                raise FxNotFoundError(
                    self.policy.fx_base_currency, self.policy.invoice_currency, invoice_date.isoformat(),
                )
            if not rate.locked:
                rate.locked = True
                rate.updated_by_id = actor_id
            fx_rate = rate.rate

            # 6. Number before events keeps the rank order
            invoice_no = self._next_invoice_no(client_id, month.yyyymm)

            # 5. Events: the month's PENDING ones plus those of the retired draft
            in_month = and_(
                BillingEvent.status == BillingEventStatus.PENDING.value,
                BillingEvent.event_date >= month.start,
                BillingEvent.event_date < month.next_start,
            )
            selector = in_month if released_draft_id is None else or_(
                in_month, BillingEvent.invoice_id == released_draft_id,
            )
            locked_events = lock_all(
                self.session,
                LockRank.BILLING_EVENT,
                BillingEvent.active()
                .where(BillingEvent.client_id == client_id, selector)
                .order_by(BillingEvent.id),
            )
            released = 0
            for event in locked_events:
                if event.invoice_id is not None and event.invoice_id == released_draft_id:
                    event.release()
                    event.updated_by_id = actor_id
                    released += 1
            events = [e for e in locked_events if month.contains(e.event_date)]
            if not events:
                # A first generate that committed while we waited took the
                # events; the step 1 lock had no row to serialize on.
                raced_id = self._committed_month_invoice_id(client_id, month)
                if raced_id is not None and raced_id != (existing.id if existing else None):
                    logger.warning(
                        "invoice_generation_raced",
                        extra={"invoice_id": raced_id},
                    )
                    raise TransactionConflictError(
                        "generate_invoice", f"invoice {raced_id} for {month} was generated concurrently",
                    )
                raise NoPendingEventsError(client_id, str(month))

            # 7. Header with zero totals
            invoice = Invoice(
                client_id=client_id,
                invoice_no=invoice_no,
                invoice_month=str(month),
                source=InvoiceSource.BILLING_EVENTS.value,
                invoice_date=invoice_date,
                due_date=self.policy.due_date_for(invoice_date),
                currency=self.policy.invoice_currency,
                exchange_rate_id=rate.id,
                fx_rate=fx_rate,
                subtotal_krw=ZERO,
                vat_krw=ZERO,
                total_krw=ZERO,
                status=InvoiceStatus.DRAFT.value,
                created_by_id=actor_id,
            )
            self.session.add(invoice)
            self.session.flush()

            # 8. Normalize and aggregate per service code
            grouped: OrderedDict[str, list[Decimal]] = OrderedDict()
            for event in events:
                if not can_transition(BILLING_EVENT_TRANSITIONS, event.status, BillingEventStatus.INVOICED):
                    raise InvalidStatusError("BillingEvent", event.id, event.status, "PENDING")
                normalized = normalize_event_amount(event, fx_rate, self.policy.truncation_unit)
                event.status = BillingEventStatus.INVOICED.value
                event.invoice_id = invoice.id
                event.fx_rate_used = fx_rate
                event.normalized_amount_krw = normalized
                event.updated_by_id = actor_id

                totals = grouped.setdefault(event.service_code, [ZERO, ZERO])
                totals[0] += event.qty or ZERO
                totals[1] += normalized

            # 9. One item per service code
            names = self._service_names(grouped.keys())
            subtotal = ZERO
            for service_code, (qty, amount) in grouped.items():
                line_amount = self.policy.truncate(amount)
                subtotal += line_amount
                self.session.add(InvoiceItem(
                    invoice_id=invoice.id,
                    service_code=service_code,
                    description=names.get(service_code) or service_code,
                    qty=qty,
                    unit_price_krw=self.policy.unit_price(line_amount, qty),
                    amount_krw=line_amount,
                    is_vat=False,
                    created_by_id=actor_id,
                ))

            # 10. Totals and the VAT line
            subtotal = self.policy.truncate(subtotal)
            vat = self.policy.truncate(subtotal * self.policy.vat_rate)
            total = self.policy.truncate(subtotal + vat)
            self.session.add(InvoiceItem(
                invoice_id=invoice.id,
                service_code=self.policy.vat_service_code,
                description=self.policy.vat_description,
                qty=Decimal("1"),
                unit_price_krw=vat,
                amount_krw=vat,
                is_vat=True,
                created_by_id=actor_id,
            ))
            invoice.subtotal_krw = subtotal
            invoice.vat_krw = vat
            invoice.total_krw = total
            self.session.flush()

        logger.info(
            "invoice_generated",
            extra={
                "invoice_id": invoice.id,
                "invoice_no": invoice_no,
                "client_id": client_id,
                "billing_month": str(month),
                "event_count": len(events),
                "released_event_count": released,
                "fx_rate": fx_rate,
                "subtotal_krw": subtotal,
                "vat_krw": vat,
                "total_krw": total,
            },
        )
        return InvoiceGenerationResult(
            invoice=self._snapshot(invoice),
            reused=False,
            event_count=len(events),
            released_event_count=released,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def issue(self, invoice_id: int, actor_id: int) -> InvoiceInfo:
        """draft -> issued."""
        actor_id = require_actor(actor_id, "issue_invoice")
        with self.operation():
            invoice = self._lock_invoice(invoice_id)
            advance_invoice(invoice, InvoiceStatus.ISSUED, actor_id, self.clock.now())
            self.session.flush()

        logger.info("invoice_issued", extra={"invoice_id": invoice.id, "invoice_no": invoice.invoice_no})
        return self._snapshot(invoice)

    def mark_paid(self, invoice_id: int, actor_id: int) -> InvoiceInfo:
        """issued -> paid."""
        actor_id = require_actor(actor_id, "mark_invoice_paid")
        with self.operation():
            invoice = self._lock_invoice(invoice_id)
            advance_invoice(invoice, InvoiceStatus.PAID, actor_id, self.clock.now())
            self.session.flush()

        logger.info("invoice_paid", extra={"invoice_id": invoice.id, "invoice_no": invoice.invoice_no})
        return self._snapshot(invoice)

    def duplicate(self, invoice_id: int, actor_id: int) -> InvoiceInfo:
        """
        Copy an issued or paid invoice into a new draft with a fresh number.

        The source invoice and its events are untouched.  Drafts are
        rejected: they are regenerated, not duplicated.
        """
        actor_id = require_actor(actor_id, "duplicate_invoice")
        with self.operation():
            source = self._lock_invoice(invoice_id)
            if source.is_draft:
                raise InvalidStatusError(
                    "Invoice", source.id, InvoiceStatus.DRAFT.value,
                    "issued or paid (use generate for drafts)",
                )

            yyyymm = source.invoice_month.replace("-", "")
            invoice_no = self._next_invoice_no(source.client_id, yyyymm)
            copy = Invoice(
                client_id=source.client_id,
                invoice_no=invoice_no,
                invoice_month=source.invoice_month,
                source=source.source,
                duplicated_from_id=source.id,
                invoice_date=source.invoice_date,
                due_date=source.due_date,
                currency=source.currency,
                exchange_rate_id=source.exchange_rate_id,
                fx_rate=source.fx_rate,
                subtotal_krw=source.subtotal_krw,
                vat_krw=source.vat_krw,
                total_krw=source.total_krw,
                status=InvoiceStatus.DRAFT.value,
                created_by_id=actor_id,
            )
            self.session.add(copy)
            self.session.flush()

            for item in self._active_items(source.id):
                self.session.add(InvoiceItem(
                    invoice_id=copy.id,
                    service_code=item.service_code,
                    description=item.description,
                    qty=item.qty,
                    unit_price_krw=item.unit_price_krw,
                    amount_krw=item.amount_krw,
                    is_vat=item.is_vat,
                    settlement_line_id=item.settlement_line_id,
                    source_currency=item.source_currency,
                    source_amount=item.source_amount,
                    created_by_id=actor_id,
                ))
            self.session.flush()

        logger.info(
            "invoice_duplicated",
            extra={"source_invoice_id": source.id, "invoice_id": copy.id, "invoice_no": invoice_no},
        )
        return self._snapshot(copy)
