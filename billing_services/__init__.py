"""
Billing services -- orchestration above the kernel.

Stock item flows (inbound, outbound, return) combine the stock ledger with
billing events in one transaction.  ``BillingOperations`` is the
transactional facade: it owns commit/rollback and maps typed kernel errors
to OperationResult.  The kernel never imports from this package.
"""

from billing_services.export import export_to_file, export_to_string, write_export
from billing_services.inbound_flow import InboundItemFlow, InboundLine
from billing_services.operations import BillingOperations, OperationResult
from billing_services.outbound_flow import OutboundItemFlow, OutboundLine, OutboundResult
from billing_services.return_flow import ReturnItemFlow, ReturnLine, ReturnResult

__all__ = [
    "BillingOperations",
    "InboundItemFlow",
    "InboundLine",
    "OperationResult",
    "OutboundItemFlow",
    "OutboundLine",
    "OutboundResult",
    "ReturnItemFlow",
    "ReturnLine",
    "ReturnResult",
    "export_to_file",
    "export_to_string",
    "write_export",
]
