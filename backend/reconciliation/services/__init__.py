"""
Reconciliation Services
"""

from .transaction_store import BankTransactionRepository
from .obligations import OpenObligationsView
from .reconciliation_service import (
    ReconciliationService,
    ReconciliationRunResult,
    BatchApproveResult,
    ReconciliationAuditEvent,
)

__all__ = [
    "BankTransactionRepository",
    "OpenObligationsView",
    "ReconciliationService",
    "ReconciliationRunResult",
    "BatchApproveResult",
    "ReconciliationAuditEvent",
]
