"""
BillingEventSelector -- listings and export rows for billing events.

Export rows follow EXPORT_COLUMNS exactly.  ``amount_krw`` is the invoiced
(normalized) KRW amount when the event has been invoiced, otherwise the
event's own KRW amount.
"""

from datetime import date

from billing_kernel.domain.billing_month import BillingMonth
from billing_kernel.domain.dtos import BillingEventExportRow, BillingEventInfo
from billing_kernel.domain.statuses import BillingEventStatus, parse_enum
from billing_kernel.models.billing_event import BillingEvent
from billing_kernel.selectors.base import BaseSelector


class BillingEventSelector(BaseSelector):

    def _query(
        self,
        client_id: int | None,
        status: BillingEventStatus | str | None,
        service_code: str | None,
        billing_month: BillingMonth | str | None,
        date_from: date | None,
        date_to: date | None,
    ):
        stmt = BillingEvent.active()
        if client_id is not None:
            stmt = stmt.where(BillingEvent.client_id == client_id)
        if status is not None:
            if not isinstance(status, BillingEventStatus):
                status = parse_enum(BillingEventStatus, status.upper(), "status")
            stmt = stmt.where(BillingEvent.status == status.value)
        if service_code:
            stmt = stmt.where(BillingEvent.service_code == service_code)
        if billing_month is not None:
            month = BillingMonth.parse(billing_month)
            stmt = stmt.where(
                BillingEvent.event_date >= month.start,
                BillingEvent.event_date < month.next_start,
            )
        if date_from is not None:
            stmt = stmt.where(BillingEvent.event_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(BillingEvent.event_date <= date_to)
        return stmt.order_by(BillingEvent.event_date.desc(), BillingEvent.id.desc())

    def list_events(
        self,
        client_id: int | None = None,
        status: BillingEventStatus | str | None = None,
        service_code: str | None = None,
        billing_month: BillingMonth | str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[BillingEventInfo]:
        stmt = self._query(client_id, status, service_code, billing_month, date_from, date_to)
        return [BillingEventInfo.from_model(e) for e in self.session.execute(stmt).scalars()]

    def get_event(self, event_id: int) -> BillingEventInfo | None:
        event = self.session.get(BillingEvent, event_id)
        return BillingEventInfo.from_model(event) if event else None

    def export_rows(
        self,
        client_id: int | None = None,
        status: BillingEventStatus | str | None = None,
        service_code: str | None = None,
        billing_month: BillingMonth | str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[BillingEventExportRow]:
        stmt = self._query(client_id, status, service_code, billing_month, date_from, date_to)
        rows = []
        for event in self.session.execute(stmt).scalars():
            rows.append(BillingEventExportRow(
                event_date=event.event_date,
                client=str(event.client_id),
                service_code=event.service_code,
                qty=event.qty,
                amount_thb=event.amount_thb,
                fx_rate_thbkrw=event.fx_rate_used,
                amount_krw=(
                    event.normalized_amount_krw
                    if event.normalized_amount_krw is not None
                    else event.amount_krw
                ),
                reference_type=event.reference_type,
                reference_id=event.reference_id,
                status=BillingEventStatus(event.status),
            ))
        return rows
