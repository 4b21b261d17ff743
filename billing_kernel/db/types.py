"""
Module: billing_kernel.db.types
Responsibility: Annotated type aliases for billing columns so that every model
    declares amounts, rates and codes with identical precision.
Architecture position: Kernel > DB.  May be imported by models/.  MUST NOT
    import from services/, selectors/, or outer layers.

Invariants enforced:
    CRITICAL: No floats anywhere in the billing kernel.  Amounts and rates use
    Decimal with explicit precision; rounding lives in domain/money.py.
"""

from decimal import Decimal
from typing import Annotated

from sqlalchemy import Numeric, String

# Monetary amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# Exchange rate: 38 digits total, 18 decimal places
Rate = Annotated[Decimal, Numeric(38, 18)]

# Billable quantity (fractional for CBM-style units)
Quantity = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code
Currency = Annotated[str, String(3)]

# Short identifier strings (service codes, reference types)
ShortCode = Annotated[str, String(50)]

# Free text
LongText = Annotated[str, String(4000)]
