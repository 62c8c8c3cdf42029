"""
Reimbursement Kernel

Personal expense reimbursement with quorum approval:
- Draft/pending/approved/rejected/cancelled request lifecycle
- Multi-approver consensus with amount reconciliation
- Idempotent materialization of approved requests into the ledger
- Append-only, best-effort audit trail
- Income vs. expense period summaries without double counting
"""

__version__ = "0.1.0"
