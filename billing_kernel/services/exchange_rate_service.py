"""
ExchangeRateService -- the dated THB->KRW rate registry.

Responsibility:
    Create, correct, tombstone and lock exchange rates, and look up the rate
    in effect on a date.

Architecture position:
    Kernel > Services -- imperative shell.  InvoiceGenerator and
    SettlementService read rates through ``latest_rate_stmt`` and lock them
    at EXCHANGE_RATE rank.

Invariants enforced:
    - rate > 0.
    - One active rate per (base, quote, rate_date).
    - ``locked`` is one-way.  A locked rate, or one whose value any live
      invoice stores, rejects update and delete with EXCHANGE_RATE_LOCKED.
      The same rule is enforced again at flush time (db/immutability.py).

Failure modes:
    - InvalidExchangeRateError, DuplicateRateDateError,
      ExchangeRateNotFoundError, ExchangeRateLockedError.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from billing_kernel.db.immutability import exchange_rate_usage_count
from billing_kernel.db.locking import LockRank, lock_one
from billing_kernel.domain.dtos import ExchangeRateInfo
from billing_kernel.domain.money import to_decimal
from billing_kernel.domain.policy import DEFAULT_POLICY, BillingPolicy
from billing_kernel.domain.statuses import ExchangeRateSource, ExchangeRateStatus, parse_enum
from billing_kernel.exceptions import (
    DuplicateRateDateError,
    ExchangeRateLockedError,
    ExchangeRateNotFoundError,
    InvalidExchangeRateError,
    InvalidValueError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.exchange_rate import ExchangeRate
from billing_kernel.services.base import BaseService, require_actor

logger = get_logger("services.exchange_rate")


def latest_rate_stmt(base_currency: str, quote_currency: str, as_of: date, strictly_before: bool = False):
    """
    SELECT of the latest active rate for the pair dated on or before
    ``as_of`` (before it when ``strictly_before``).  Ties: highest id.
    """
    date_clause = ExchangeRate.rate_date < as_of if strictly_before else ExchangeRate.rate_date <= as_of
    return (
        ExchangeRate.active()
        .where(
            ExchangeRate.base_currency == base_currency,
            ExchangeRate.quote_currency == quote_currency,
            ExchangeRate.status == ExchangeRateStatus.ACTIVE.value,
            date_clause,
        )
        .order_by(ExchangeRate.rate_date.desc(), ExchangeRate.id.desc())
        .limit(1)
    )


def _validated_rate(value) -> Decimal:
    try:
        rate = to_decimal(value, "rate")
    except InvalidValueError:
        raise InvalidExchangeRateError(str(value), "not a number") from None
    if rate is None or rate <= 0:
        raise InvalidExchangeRateError(str(value), "rate must be positive")
    return rate


class ExchangeRateService(BaseService):
    """
    Contract:
        Mutations lock the rate row at EXCHANGE_RATE rank before checking
        usage, so a concurrent invoice generation cannot consume a rate
        between the check and the write.
    """

    def __init__(self, session, clock=None, policy: BillingPolicy | None = None):
        super().__init__(session, clock)
        self.policy = policy or DEFAULT_POLICY

    def _lock_existing(self, rate_id: int) -> ExchangeRate:
        rate = lock_one(
            self.session,
            LockRank.EXCHANGE_RATE,
            ExchangeRate.active().where(ExchangeRate.id == rate_id).limit(1),
        )
        if rate is None:
            raise ExchangeRateNotFoundError(rate_id)
        return rate

    def _assert_mutable(self, rate: ExchangeRate) -> None:
        usage = self.usage_count(rate.id)
        if rate.locked or usage > 0:
            logger.warning(
                "exchange_rate_mutation_rejected",
                extra={"rate_id": rate.id, "locked": bool(rate.locked), "usage_count": usage},
            )
            raise ExchangeRateLockedError(rate.id, locked=bool(rate.locked), usage_count=usage)

    def _assert_date_free(self, base: str, quote: str, rate_date: date, exclude_id: int | None = None) -> None:
        stmt = ExchangeRate.active().where(
            ExchangeRate.base_currency == base,
            ExchangeRate.quote_currency == quote,
            ExchangeRate.rate_date == rate_date,
        )
        if exclude_id is not None:
            stmt = stmt.where(ExchangeRate.id != exclude_id)
        if self.session.execute(stmt.limit(1)).scalar_one_or_none() is not None:
            raise DuplicateRateDateError(base, quote, rate_date.isoformat())

    def create_rate(
        self,
        rate_date: date,
        rate: Decimal | int | str,
        actor_id: int,
        base_currency: str | None = None,
        quote_currency: str | None = None,
        source: ExchangeRateSource | str = ExchangeRateSource.MANUAL,
        status: ExchangeRateStatus | str = ExchangeRateStatus.ACTIVE,
        locked: bool = False,
    ) -> ExchangeRateInfo:
        actor_id = require_actor(actor_id, "create_rate")
        value = _validated_rate(rate)
        base = (base_currency or self.policy.fx_base_currency).upper()
        quote = (quote_currency or self.policy.invoice_currency).upper()

        with self.operation():
            self._assert_date_free(base, quote, rate_date)
            savepoint = self.session.begin_nested()
            try:
                row = ExchangeRate(
                    base_currency=base,
                    quote_currency=quote,
                    rate=value,
                    rate_date=rate_date,
                    source=parse_enum(ExchangeRateSource, source, "source").value,
                    status=parse_enum(ExchangeRateStatus, status, "status").value,
                    locked=bool(locked),
                    created_by_id=actor_id,
                )
                self.session.add(row)
                self.session.flush()
                savepoint.commit()
            except IntegrityError as exc:
                savepoint.rollback()
                raise DuplicateRateDateError(base, quote, rate_date.isoformat()) from exc

        logger.info(
            "exchange_rate_created",
            extra={"rate_id": row.id, "pair": f"{base}/{quote}", "rate": value, "rate_date": rate_date},
        )
        return ExchangeRateInfo.from_model(row)

    def update_rate(
        self,
        rate_id: int,
        actor_id: int,
        rate: Decimal | int | str | None = None,
        rate_date: date | None = None,
        source: ExchangeRateSource | str | None = None,
        status: ExchangeRateStatus | str | None = None,
    ) -> ExchangeRateInfo:
        """Correct an unlocked, unused rate.  Omitted fields keep their value."""
        actor_id = require_actor(actor_id, "update_rate")
        new_value = _validated_rate(rate) if rate is not None else None

        with self.operation():
            row = self._lock_existing(rate_id)
            self._assert_mutable(row)
            if rate_date is not None and rate_date != row.rate_date:
                self._assert_date_free(row.base_currency, row.quote_currency, rate_date, exclude_id=row.id)
                row.rate_date = rate_date
            if new_value is not None:
                row.rate = new_value
            if source is not None:
                row.source = parse_enum(ExchangeRateSource, source, "source").value
            if status is not None:
                row.status = parse_enum(ExchangeRateStatus, status, "status").value
            row.updated_by_id = actor_id
            self.session.flush()

        logger.info("exchange_rate_updated", extra={"rate_id": row.id, "rate": row.rate})
        return ExchangeRateInfo.from_model(row)

    def delete_rate(self, rate_id: int, actor_id: int) -> ExchangeRateInfo:
        """Tombstone an unlocked, unused rate."""
        actor_id = require_actor(actor_id, "delete_rate")
        with self.operation():
            row = self._lock_existing(rate_id)
            self._assert_mutable(row)
            row.tombstone(self.clock.now(), actor_id)
            self.session.flush()

        logger.info("exchange_rate_tombstoned", extra={"rate_id": row.id})
        return ExchangeRateInfo.from_model(row)

    def lock_rate(self, rate_id: int, actor_id: int) -> ExchangeRateInfo:
        """Set ``locked``.  Irreversible; locking a locked rate is a no-op."""
        actor_id = require_actor(actor_id, "lock_rate")
        with self.operation():
            row = self._lock_existing(rate_id)
            if not row.locked:
                row.locked = True
                row.updated_by_id = actor_id
                self.session.flush()
                logger.info("exchange_rate_locked", extra={"rate_id": row.id})
        return ExchangeRateInfo.from_model(row)

    def find_rate_on_or_before(
        self, as_of: date, base_currency: str | None = None, quote_currency: str | None = None,
    ) -> ExchangeRateInfo | None:
        base = (base_currency or self.policy.fx_base_currency).upper()
        quote = (quote_currency or self.policy.invoice_currency).upper()
        row = self.session.execute(latest_rate_stmt(base, quote, as_of)).scalar_one_or_none()
        return ExchangeRateInfo.from_model(row) if row else None

    def get_rate(self, rate_id: int) -> ExchangeRateInfo:
        row = self.session.execute(
            ExchangeRate.active().where(ExchangeRate.id == rate_id)
        ).scalar_one_or_none()
        if row is None:
            raise ExchangeRateNotFoundError(rate_id)
        return ExchangeRateInfo.from_model(row)

    def usage_count(self, rate_id: int) -> int:
        """Live invoices referencing the rate id or storing its value."""
        value = self.session.execute(
            select(ExchangeRate.rate).where(ExchangeRate.id == rate_id)
        ).scalar_one_or_none()
        if value is None:
            return 0
        return exchange_rate_usage_count(self.session.connection(), rate_id, value)
