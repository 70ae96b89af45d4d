"""
Reconciliation error taxonomy.

Every workflow failure carries a machine-readable ``code`` that batch
results and HTTP responses report verbatim.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation failures"""
    code = "error"

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id


class ReconciliationValidationError(ReconciliationError):
    """Malformed input, rejected before any write"""
    code = "validation"

    def __init__(self, message: str, parameter: Optional[str] = None, transaction_id: Optional[str] = None):
        super().__init__(message, transaction_id)
        self.parameter = parameter


class MatchConflictError(ReconciliationError):
    """Target no longer open, or transaction no longer in the expected state"""
    code = "conflict"


class ReconciliationNotFoundError(ReconciliationError):
    """Referenced transaction, import or obligation does not exist"""
    code = "not_found"


class ReconciliationInfraError(ReconciliationError):
    """Storage failure; nothing was written and the call may be retried"""
    code = "infra"
