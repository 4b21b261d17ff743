"""
Module: billing_kernel.models.stock
Responsibility: ORM persistence for per-location stock balances and the
    movement ledger that explains them.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/.  MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    - One StockBalance row per (client, product, lot, warehouse, location).
      ``location_key`` stores the location id, or 0 when there is none, so the
      unique constraint also holds for rows without a location.
    - available_qty == sum(qty_in - qty_out) over ACTIVE ledger entries for
      the same key (maintained by StockLedgerService, verified by
      StockSelector.reconcile).
    - At most one ACTIVE StockTransaction per (txn_type, reference_type,
      reference_id).  Tombstoned entries are immutable (db/immutability.py).

Failure modes:
    - IntegrityError on a concurrent first insert of the same balance key or
      the same active movement triple (handled by the ledger service).

Audit relevance:
    Ledger entries are never hard-deleted.  An edit of the originating line
    item updates the active entry; a removal tombstones it.
"""

from datetime import date

from sqlalchemy import BigInteger, Date, ForeignKey, Index, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TombstoneMixin, TrackedBase
from billing_kernel.domain.statuses import MovementType


class StockBalance(TrackedBase):
    """
    Current quantity on hand for one balance key.

    Contract:
        Mutated only through StockLedgerService.adjust_balance.  Never
        deleted; an emptied location keeps a zero row.
    """

    __tablename__ = "stock_balances"

    __table_args__ = (
        UniqueConstraint(
            "client_id", "product_id", "lot_id", "warehouse_id", "location_key",
            name="uq_stock_balance_key",
        ),
        Index("idx_stock_balance_client", "client_id", "warehouse_id"),
    )

    client_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    lot_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    warehouse_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    location_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    location_key: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    available_qty: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reserved_qty: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<StockBalance c={self.client_id} p={self.product_id} lot={self.lot_id} "
            f"wh={self.warehouse_id} loc={self.location_id}: {self.available_qty}>"
        )


class StockTransaction(TrackedBase, TombstoneMixin):
    """
    One ledger entry: a signed quantity movement tied to its originating row.

    Contract:
        Identified for idempotent replace by (txn_type, reference_type,
        reference_id) among ACTIVE rows.
    """

    __tablename__ = "stock_transactions"

    __table_args__ = (
        Index(
            "uq_stock_txn_active_ref",
            "txn_type", "reference_type", "reference_id",
            unique=True,
            postgresql_where=text("record_state = 'active'"),
            sqlite_where=text("record_state = 'active'"),
        ),
        Index("idx_stock_txn_key", "client_id", "product_id", "lot_id", "warehouse_id"),
        Index("idx_stock_txn_date", "txn_date"),
    )

    txn_type: Mapped[MovementType] = mapped_column(String(30), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)

    client_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    lot_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    warehouse_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    location_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    qty_in: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    qty_out: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Balance row this entry moved, for reconciliation
    balance_id: Mapped[int | None] = mapped_column(
        ForeignKey("stock_balances.id"), nullable=True,
    )

    @property
    def signed_qty(self) -> int:
        return self.qty_in - self.qty_out

    def __repr__(self) -> str:
        return (
            f"<StockTransaction {self.txn_type} {self.reference_type}:{self.reference_id} "
            f"+{self.qty_in}/-{self.qty_out} [{self.record_state}]>"
        )
