"""
Billing-event CSV export.

Writes BillingEventExportRow values with csv.writer, one header row in
EXPORT_COLUMNS order.  Decimals are written as plain strings, empty
amounts as empty cells, statuses by value.
"""

from __future__ import annotations

import csv
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from enum import Enum
from io import StringIO
from pathlib import Path
from typing import Any, TextIO

from billing_kernel.domain.dtos import EXPORT_COLUMNS, BillingEventExportRow
from billing_kernel.logging_config import get_logger

logger = get_logger("services.export")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def write_export(rows: Iterable[BillingEventExportRow], stream: TextIO) -> int:
    """Write header plus rows to ``stream``; returns the number of data rows."""
    writer = csv.writer(stream, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    count = 0
    for row in rows:
        writer.writerow([_cell(v) for v in row.as_tuple()])
        count += 1
    return count


def export_to_string(rows: Iterable[BillingEventExportRow]) -> str:
    buffer = StringIO()
    write_export(rows, buffer)
    return buffer.getvalue()


def export_to_file(rows: Iterable[BillingEventExportRow], path: Path | str) -> int:
    path = Path(path)
    with path.open("w", encoding="utf-8", newline="") as f:
        count = write_export(rows, f)
    logger.info("billing_events_exported", extra={"path": str(path), "row_count": count})
    return count
