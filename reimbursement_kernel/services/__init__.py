"""Write services. Each flushes within the caller's transaction and never commits."""

from reimbursement_kernel.services.audit_recorder import AuditRecorder
from reimbursement_kernel.services.base import BaseService
from reimbursement_kernel.services.consensus_engine import ConsensusEngine
from reimbursement_kernel.services.ledger_materializer import LedgerMaterializer
from reimbursement_kernel.services.ledger_store import LedgerStore

__all__ = [
    "AuditRecorder",
    "BaseService",
    "ConsensusEngine",
    "LedgerMaterializer",
    "LedgerStore",
]
