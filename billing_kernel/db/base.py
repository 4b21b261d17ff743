"""
Module: billing_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the integer surrogate key convention, the type annotation map, the
    TrackedBase audit mixin, and the tombstone lifecycle shared by every
    soft-deletable table.
Architecture position: Kernel > DB.  Lowest-level import target within the
    kernel.  ALL model files import from here.  MUST NOT import from models/,
    services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - Integer surrogate keys: ids are monotonically assigned by the database,
      so "highest id wins" tie-breaks reflect insertion order.
    - Decimal precision: Decimal maps to Numeric(38, 9).  NEVER use float for
      monetary amounts or quantities of money.
    - Tombstones: soft deletion is a tagged RecordState, never a bare nullable
      timestamp.  Reads go through ``active()`` so a forgotten filter is a
      visible omission rather than a silent one.

Failure modes:
    - IntegrityError on natural-key unique constraints (handled by services).

Audit relevance:
    TrackedBase.created_by_id is NOT NULL: every row records the actor that
    created it.  Tombstoned rows are retained with their tombstoned_at time.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from sqlalchemy import BigInteger, Date, DateTime, Integer, Numeric, String, func, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import Select

# BIGINT on PostgreSQL, INTEGER on SQLite (required for rowid autoincrement).
IdType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Contract:
        Every ORM model inherits from Base (or TrackedBase) and gets an
        autoincrement integer primary key.

    Guarantees:
        - Decimal maps to Numeric(38, 9).
        - datetime maps to DateTime(timezone=True).
        - date maps to Date.
        - int maps to BigInteger.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        date: Date,
        int: BigInteger,
    }

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)


class TrackedBase(Base):
    """
    Abstract base with audit timestamp and actor tracking.

    Guarantees:
        - created_at is set to server NOW() on INSERT and never changes.
        - updated_at auto-updates on every UPDATE.
        - created_by_id is required (NOT NULL).
        - updated_by_id is nullable.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    updated_by_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class RecordState(str, Enum):
    """Lifecycle tag for soft-deletable rows."""

    ACTIVE = "active"
    TOMBSTONED = "tombstoned"


class TombstoneMixin:
    """
    Soft-delete lifecycle for ledger entries, events, invoices and rates.

    Contract:
        ``record_state`` is the single source of truth for liveness.
        ``tombstoned_at`` is informational and set together with the state.

    Non-goals:
        Does not hard-delete.  History is retained for reversal and audit.
    """

    record_state: Mapped[RecordState] = mapped_column(
        String(20),
        nullable=False,
        default=RecordState.ACTIVE,
        index=True,
    )

    tombstoned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_active(self) -> bool:
        return self.record_state == RecordState.ACTIVE

    def tombstone(self, when: datetime, actor_id: int | None = None) -> None:
        self.record_state = RecordState.TOMBSTONED
        self.tombstoned_at = when
        if actor_id is not None and hasattr(self, "updated_by_id"):
            self.updated_by_id = actor_id

    def reactivate(self, actor_id: int | None = None) -> None:
        self.record_state = RecordState.ACTIVE
        self.tombstoned_at = None
        if actor_id is not None and hasattr(self, "updated_by_id"):
            self.updated_by_id = actor_id

    @classmethod
    def active(cls) -> Select[Any]:
        """SELECT of this model restricted to non-tombstoned rows."""
        return select(cls).where(cls.record_state == RecordState.ACTIVE)

    @classmethod
    def active_filter(cls) -> Any:
        """WHERE clause restricting to non-tombstoned rows, for joins and aggregates."""
        return cls.record_state == RecordState.ACTIVE
