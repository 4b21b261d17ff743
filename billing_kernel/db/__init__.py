"""Database layer - engine, base classes, types, locking and immutability."""

from billing_kernel.db.base import Base, RecordState, TombstoneMixin, TrackedBase
from billing_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)
from billing_kernel.db.locking import LockRank, lock_all, lock_one, lock_scope
from billing_kernel.db.types import Currency, Money, Quantity, Rate, ShortCode

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "TombstoneMixin",
    "RecordState",
    "LockRank",
    "lock_one",
    "lock_all",
    "lock_scope",
    "Money",
    "Rate",
    "Quantity",
    "Currency",
    "ShortCode",
]
