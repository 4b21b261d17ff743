"""
Billing Kernel

Stock ledger and billing engine for warehouse operations:
- Authoritative stock balances backed by an append-only movement ledger
- Billing events derived from movements via time-scoped price policies
- Sequentially numbered invoices with THB/KRW conversion and truncation
- Settlement batches with an approval-gated close/reopen workflow
"""

__version__ = "0.1.0"
