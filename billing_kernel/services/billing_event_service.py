"""
BillingEventService -- billable usage events from movements and direct entry.

Responsibility:
    Turns a stock movement into a priced billing event (one event per
    movement, keyed by stock_transaction_id), records manually entered
    events, and returns invoiced events to PENDING on request.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the outbound item flow
    right after the movement is recorded, in the same transaction.

Invariants enforced:
    - One event per movement.  Re-invocation for the same movement updates
      qty and amounts and reactivates a tombstoned event.
    - THB prices produce THB_BASED events (amount_thb); KRW prices produce
      KRW_FIXED events (amount_krw).  The opposite-currency fields stay NULL.
    - Events linked to an issued or paid invoice are never changed here
      (EventsLockedError).

Failure modes:
    - No applicable price: no event, returns None.  Not an error.
    - EventsNotFoundError / EventsLockedError from ``mark_pending``.
    - PricingPolicyMismatchError for a price in an unsupported currency or
      direct entry with opposite-currency fields.

Audit relevance:
    Events are tombstoned, never deleted.  Every upsert and release is
    logged with the event id and the originating reference.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import select

from billing_kernel.db.locking import LockRank, lock_all, lock_one
from billing_kernel.domain.dtos import BillingEventInfo
from billing_kernel.domain.money import ZERO, to_decimal
from billing_kernel.domain.policy import DEFAULT_POLICY, BillingPolicy
from billing_kernel.domain.pricing import compute_amount, compute_basis_units
from billing_kernel.domain.statuses import BillingEventStatus, InvoiceStatus, PricingPolicy, parse_enum
from billing_kernel.exceptions import (
    EventsLockedError,
    EventsNotFoundError,
    PricingPolicyMismatchError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.billing_event import (
    SOURCE_MANUAL,
    SOURCE_OUTBOUND_SHIPPED,
    BillingEvent,
)
from billing_kernel.models.invoice import Invoice
from billing_kernel.services.base import BaseService, require_actor
from billing_kernel.services.price_resolver import PriceResolver

logger = get_logger("services.billing_event")

MOVEMENT_REFERENCE_TYPE = "stock_transaction"

_FINAL_INVOICE_STATUSES = (InvoiceStatus.ISSUED.value, InvoiceStatus.PAID.value)


class BillingEventService(BaseService):
    """
    Contract:
        Writes flush inside the caller's transaction and return frozen
        BillingEventInfo snapshots.

    Non-goals:
        Does NOT invoice events (InvoiceGenerator does).
    """

    def __init__(self, session, clock=None, policy: BillingPolicy | None = None):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY
        self._prices = PriceResolver(session, self.clock)

    def _finalized_invoice_ids(self, invoice_ids: set[int]) -> set[int]:
        if not invoice_ids:
            return set()
        rows = self.session.execute(
            select(Invoice.id).where(
                Invoice.id.in_(invoice_ids),
                Invoice.status.in_(_FINAL_INVOICE_STATUSES),
            )
        ).scalars().all()
        return set(rows)

    def _assert_unlocked(self, events: list[BillingEvent]) -> None:
        linked = {e.invoice_id for e in events if e.invoice_id is not None}
        finalized = self._finalized_invoice_ids(linked)
        if finalized:
            blocked = sorted(e.id for e in events if e.invoice_id in finalized)
            logger.warning(
                "billing_events_locked_by_invoice",
                extra={"event_ids": blocked, "invoice_ids": sorted(finalized)},
            )
            raise EventsLockedError(blocked)

    # ------------------------------------------------------------------
    # Movement-derived events
    # ------------------------------------------------------------------

    def _movement_event(self, movement_id: int) -> BillingEvent | None:
        # Tombstoned rows included: the unique key spans them
        return lock_one(
            self.session,
            LockRank.BILLING_EVENT,
            select(BillingEvent).where(BillingEvent.stock_transaction_id == movement_id).limit(1),
        )

    def upsert_event_from_movement(
        self,
        movement_id: int,
        client_id: int,
        service_code: str,
        event_date: date,
        qty: Decimal | int,
        actor_id: int,
        box_count: int | None = None,
        warehouse_id: int | None = None,
    ) -> BillingEventInfo | None:
        """
        Price the movement and upsert its event.

        Returns None (and leaves any existing event untouched) when no
        price policy applies on ``event_date``.
        """
        actor_id = require_actor(actor_id, "upsert_event_from_movement")
        qty = to_decimal(qty, "qty")

        quote = self._prices.resolve_active_price(client_id, service_code, event_date)
        if quote is None:
            return None

        amount = compute_amount(
            quote.unit_price,
            compute_basis_units(quote.billing_basis, qty, box_count),
            self.policy.amount_places,
        )
        currency = quote.currency.upper()
        if currency == self.policy.fx_base_currency:
            pricing_policy = PricingPolicy.THB_BASED
        elif currency == self.policy.invoice_currency:
            pricing_policy = PricingPolicy.KRW_FIXED
        else:
            raise PricingPolicyMismatchError(currency, "price currency is not billable")

        with self.operation():
            event = self._movement_event(movement_id)
            created = event is None
            if event is None:
                event = BillingEvent(
                    stock_transaction_id=movement_id,
                    source_type=SOURCE_OUTBOUND_SHIPPED,
                    reference_type=MOVEMENT_REFERENCE_TYPE,
                    reference_id=str(movement_id),
                    status=BillingEventStatus.PENDING.value,
                    created_by_id=actor_id,
                )
                self.session.add(event)
            else:
                self._assert_unlocked([event])
                if not event.is_active:
                    event.reactivate(actor_id)
                event.updated_by_id = actor_id

            event.client_id = client_id
            event.warehouse_id = warehouse_id
            event.service_code = service_code
            event.event_date = event_date
            event.qty = qty
            event.box_count = box_count
            event.basis_applied = quote.billing_basis.value
            event.price_policy_id = quote.policy_id
            event.pricing_policy = pricing_policy.value
            if pricing_policy is PricingPolicy.THB_BASED:
                event.unit_price_thb, event.amount_thb = quote.unit_price, amount
                event.unit_price_krw, event.amount_krw = None, None
            else:
                event.unit_price_krw, event.amount_krw = quote.unit_price, amount
                event.unit_price_thb, event.amount_thb = None, None
            self.session.flush()

        logger.info(
            "billing_event_upserted",
            extra={
                "event_id": event.id,
                "movement_id": movement_id,
                "service_code": service_code,
                "pricing_policy": pricing_policy.value,
                "amount": amount,
                "was_created": created,
            },
        )
        return BillingEventInfo.from_model(event)

    def soft_delete_event_from_movement(self, movement_id: int, actor_id: int) -> BillingEventInfo | None:
        """Tombstone the movement's event.  No event, or already tombstoned, is a no-op."""
        actor_id = require_actor(actor_id, "soft_delete_event_from_movement")
        with self.operation():
            event = self._movement_event(movement_id)
            if event is None or not event.is_active:
                return None
            self._assert_unlocked([event])
            event.tombstone(self.clock.now(), actor_id)
            self.session.flush()

        logger.info(
            "billing_event_tombstoned",
            extra={"event_id": event.id, "movement_id": movement_id},
        )
        return BillingEventInfo.from_model(event)

    # ------------------------------------------------------------------
    # Direct entry
    # ------------------------------------------------------------------

    def record_event(
        self,
        client_id: int,
        service_code: str,
        reference_type: str,
        event_date: date,
        pricing_policy: PricingPolicy | str,
        actor_id: int,
        qty: Decimal | int | str = 0,
        reference_id: str | None = None,
        unit_price_thb: Decimal | int | str | None = None,
        amount_thb: Decimal | int | str | None = None,
        unit_price_krw: Decimal | int | str | None = None,
        amount_krw: Decimal | int | str | None = None,
        warehouse_id: int | None = None,
        remark: str | None = None,
    ) -> BillingEventInfo:
        """
        Insert a manually entered PENDING event.

        THB_BASED: amount_thb defaults to unit_price_thb x qty.
        KRW_FIXED: amount_krw is the truncated given amount, else unit_price_krw x qty.
        """
        actor_id = require_actor(actor_id, "record_event")
        pricing_policy = parse_enum(PricingPolicy, pricing_policy, "pricing_policy")
        if not service_code:
            raise ValidationError("service_code is required", field="service_code")
        if not reference_type:
            raise ValidationError("reference_type is required", field="reference_type")

        qty = to_decimal(qty, "qty")
        values = {
            "unit_price_thb": to_decimal(unit_price_thb, "unit_price_thb"),
            "amount_thb": to_decimal(amount_thb, "amount_thb"),
            "unit_price_krw": to_decimal(unit_price_krw, "unit_price_krw"),
            "amount_krw": to_decimal(amount_krw, "amount_krw"),
        }
        if qty < 0:
            raise ValidationError(f"qty must be >= 0, got {qty}", field="qty")
        for name, value in values.items():
            if value is not None and value < 0:
                raise ValidationError(f"{name} must be >= 0, got {value}", field=name)

        if pricing_policy is PricingPolicy.THB_BASED:
            if values["unit_price_krw"] is not None or values["amount_krw"] is not None:
                raise PricingPolicyMismatchError(pricing_policy.value, "KRW fields must be empty")
            unit_thb = values["unit_price_thb"]
            final_thb = values["amount_thb"]
            if final_thb is None:
                final_thb = (unit_thb or ZERO) * qty
            unit_krw = final_krw = None
        else:
            if values["unit_price_thb"] is not None or values["amount_thb"] is not None:
                raise PricingPolicyMismatchError(pricing_policy.value, "THB fields must be empty")
            unit_krw = values["unit_price_krw"]
            given = values["amount_krw"]
            final_krw = self.policy.truncate(given if given is not None else (unit_krw or ZERO) * qty)
            unit_thb = final_thb = None

        with self.operation():
            event = BillingEvent(
                client_id=client_id,
                warehouse_id=warehouse_id,
                service_code=service_code,
                reference_type=reference_type,
                reference_id=reference_id or "",
                source_type=SOURCE_MANUAL,
                event_date=event_date,
                qty=qty,
                pricing_policy=pricing_policy.value,
                unit_price_thb=unit_thb,
                amount_thb=final_thb,
                unit_price_krw=unit_krw,
                amount_krw=final_krw,
                status=BillingEventStatus.PENDING.value,
                remark=remark,
                created_by_id=actor_id,
            )
            self.session.add(event)
            self.session.flush()

        logger.info(
            "billing_event_recorded",
            extra={
                "event_id": event.id,
                "client_id": client_id,
                "service_code": service_code,
                "pricing_policy": pricing_policy.value,
            },
        )
        return BillingEventInfo.from_model(event)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def mark_pending(self, event_ids: list[int], actor_id: int) -> list[BillingEventInfo]:
        """
        Return invoiced events to PENDING, clearing invoice and FX linkage.

        Raises:
            EventsNotFoundError: none of the ids is an active event.
            EventsLockedError: any event belongs to an issued/paid invoice.
                Nothing is changed in that case.
        """
        actor_id = require_actor(actor_id, "mark_pending")
        ids = sorted({int(i) for i in event_ids})
        if not ids:
            raise ValidationError("At least one event id is required", field="event_ids")

        with self.operation():
            events = lock_all(
                self.session,
                LockRank.BILLING_EVENT,
                BillingEvent.active().where(BillingEvent.id.in_(ids)).order_by(BillingEvent.id),
            )
            if not events:
                raise EventsNotFoundError(ids)
            self._assert_unlocked(events)

            for event in events:
                event.release()
                event.updated_by_id = actor_id
            self.session.flush()

        logger.info(
            "billing_events_marked_pending",
            extra={"event_ids": [e.id for e in events], "count": len(events)},
        )
        return [BillingEventInfo.from_model(e) for e in events]
