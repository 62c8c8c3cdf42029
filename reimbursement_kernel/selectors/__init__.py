"""Read-only selectors."""

from reimbursement_kernel.selectors.base import BaseSelector
from reimbursement_kernel.selectors.ledger_selector import LedgerSelector
from reimbursement_kernel.selectors.summary_selector import AggregationEngine

__all__ = [
    "AggregationEngine",
    "BaseSelector",
    "LedgerSelector",
]
