"""
BillingMonth -- value object for a YYYY-MM billing period.

The month range is half-open: [first day, first day of next month).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta

from billing_kernel.exceptions import InvalidBillingMonthError

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True, slots=True)
class BillingMonth:
    """A calendar month used as the invoicing and settlement period."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12 or self.year < 1:
            raise InvalidBillingMonthError(f"{self.year:04d}-{self.month:02d}")

    @classmethod
    def parse(cls, value: str | BillingMonth) -> BillingMonth:
        if isinstance(value, BillingMonth):
            return value
        match = _MONTH_RE.match(value) if isinstance(value, str) else None
        if match is None:
            raise InvalidBillingMonthError(value)
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def of(cls, day: date) -> BillingMonth:
        return cls(day.year, day.month)

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def next_start(self) -> date:
        if self.month == 12:
            return date(self.year + 1, 1, 1)
        return date(self.year, self.month + 1, 1)

    @property
    def end(self) -> date:
        """Last calendar day of the month."""
        return self.next_start - timedelta(days=1)

    @property
    def yyyymm(self) -> str:
        return f"{self.year:04d}{self.month:02d}"

    def contains(self, day: date) -> bool:
        return self.start <= day < self.next_start

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"
