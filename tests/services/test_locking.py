"""
Row locking and unit-of-work tests.

Tests cover:
- Ranks must be acquired in non-decreasing order within one scope
- Nested scopes share the outer acquisition list; a new scope starts clean
- session_scope commits on success and rolls back on failure
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from billing_kernel.db.engine import session_scope
from billing_kernel.db.locking import LockRank, LockTracker, get_tracker, lock_all, lock_one, lock_scope
from billing_kernel.domain.policy import DEFAULT_POLICY
from billing_kernel.exceptions import LockOrderViolationError, NoPendingEventsError
from billing_kernel.models.exchange_rate import ExchangeRate
from billing_kernel.models.invoice import Invoice, InvoiceSequence
from billing_kernel.services import ExchangeRateService, InvoiceGenerator
from tests.conftest import CLIENT_ID, FEB, TEST_ACTOR_ID


class TestLockTracker:

    def test_same_or_higher_rank_allowed(self):
        tracker = LockTracker()
        for rank in (LockRank.INVOICE, LockRank.INVOICE, LockRank.EXCHANGE_RATE, LockRank.BILLING_EVENT):
            tracker.check(rank)
            tracker.record(rank)
        assert tracker.highest is LockRank.BILLING_EVENT

    def test_lower_rank_rejected(self):
        tracker = LockTracker()
        tracker.record(LockRank.INVOICE_SEQUENCE)
        with pytest.raises(LockOrderViolationError) as exc_info:
            tracker.check(LockRank.INVOICE)
        assert (exc_info.value.requested, exc_info.value.held) == ("INVOICE", "INVOICE_SEQUENCE")


class TestLockScope:

    def test_out_of_order_in_one_scope(self, session):
        with lock_scope(session):
            lock_one(session, LockRank.INVOICE_SEQUENCE, select(InvoiceSequence).limit(1))
            with pytest.raises(LockOrderViolationError):
                lock_all(session, LockRank.INVOICE, select(Invoice))

    def test_nested_scope_shares_order(self, session):
        with lock_scope(session):
            lock_one(session, LockRank.EXCHANGE_RATE, select(ExchangeRate).limit(1))
            with lock_scope(session):
                with pytest.raises(LockOrderViolationError):
                    lock_one(session, LockRank.INVOICE, select(Invoice).limit(1))

    def test_new_scope_starts_clean(self, session):
        with lock_scope(session):
            lock_one(session, LockRank.BILLING_EVENT, select(Invoice).limit(1))
        with lock_scope(session):
            lock_one(session, LockRank.INVOICE, select(Invoice).limit(1))
        assert get_tracker(session).acquired == [LockRank.INVOICE]


class TestSessionScope:

    def test_commits_on_success(self, pg_session_factory, deterministic_clock):
        with session_scope(pg_session_factory) as s:
            ExchangeRateService(s, deterministic_clock, DEFAULT_POLICY).create_rate(
                date(2026, 2, 1), Decimal("40"), TEST_ACTOR_ID,
            )

        check = pg_session_factory()
        assert check.execute(select(ExchangeRate)).scalars().one().rate == Decimal("40")

    def test_rolls_back_on_failure(self, pg_session_factory, deterministic_clock):
        with pytest.raises(NoPendingEventsError):
            with session_scope(pg_session_factory) as s:
                ExchangeRateService(s, deterministic_clock, DEFAULT_POLICY).create_rate(
                    date(2026, 2, 1), Decimal("40"), TEST_ACTOR_ID,
                )
                InvoiceGenerator(s, deterministic_clock, DEFAULT_POLICY).generate(CLIENT_ID, FEB, TEST_ACTOR_ID)

        check = pg_session_factory()
        assert check.execute(select(ExchangeRate)).scalars().all() == []
        assert check.execute(select(InvoiceSequence)).scalars().all() == []
