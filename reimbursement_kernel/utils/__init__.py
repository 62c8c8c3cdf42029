"""Utility functions for the reimbursement kernel."""

from reimbursement_kernel.utils.serialization import to_json_safe

__all__ = [
    "to_json_safe",
]
