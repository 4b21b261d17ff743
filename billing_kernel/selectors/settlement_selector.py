"""SettlementSelector -- batches with lines, reopen requests and the audit log."""

from sqlalchemy import select

from billing_kernel.domain.billing_month import BillingMonth
from billing_kernel.domain.dtos import ReopenLogInfo, ReopenRequestInfo, SettlementBatchInfo
from billing_kernel.models.settlement import (
    SettlementBatch,
    SettlementLine,
    SettlementReopenLog,
    SettlementReopenRequest,
)
from billing_kernel.selectors.base import BaseSelector


class SettlementSelector(BaseSelector):

    def _with_lines(self, batch: SettlementBatch) -> SettlementBatchInfo:
        lines = self.session.execute(
            SettlementLine.active().where(SettlementLine.batch_id == batch.id).order_by(SettlementLine.id)
        ).scalars().all()
        return SettlementBatchInfo.from_model(batch, list(lines))

    def get_batch(self, batch_id: int) -> SettlementBatchInfo | None:
        batch = self.session.get(SettlementBatch, batch_id)
        return self._with_lines(batch) if batch else None

    def find_batch(self, client_id: int, billing_month: BillingMonth | str) -> SettlementBatchInfo | None:
        batch = self.session.execute(
            select(SettlementBatch).where(
                SettlementBatch.client_id == client_id,
                SettlementBatch.billing_month == str(BillingMonth.parse(billing_month)),
            )
        ).scalar_one_or_none()
        return self._with_lines(batch) if batch else None

    def list_reopen_requests(self, batch_id: int) -> list[ReopenRequestInfo]:
        """Newest first."""
        rows = self.session.execute(
            select(SettlementReopenRequest)
            .where(SettlementReopenRequest.batch_id == batch_id)
            .order_by(SettlementReopenRequest.id.desc())
        ).scalars()
        return [ReopenRequestInfo.from_model(r) for r in rows]

    def list_reopen_logs(self, batch_id: int) -> list[ReopenLogInfo]:
        """Oldest first, in the order the actions happened."""
        rows = self.session.execute(
            select(SettlementReopenLog)
            .where(SettlementReopenLog.batch_id == batch_id)
            .order_by(SettlementReopenLog.id)
        ).scalars()
        return [ReopenLogInfo.from_model(r) for r in rows]
