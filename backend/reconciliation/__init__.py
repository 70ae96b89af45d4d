"""
Bank Reconciliation Module

Matches bank statement transactions against open invoices and expenses:
- Deterministic confidence tiers (high / medium / low / manual)
- Auto-apply for high confidence suggestions
- Approve / reject / ignore / batch-approve workflow
- Compare-and-set obligation updates, never double-booked
- Audit trail for all operations
"""

from reconciliation.match_policy import (
    TransactionType,
    MatchStatus,
    MatchConfidence,
    MatchedType,
    ParsedType,
    MatchPolicy,
)
from reconciliation.errors import (
    ReconciliationError,
    ReconciliationValidationError,
    MatchConflictError,
    ReconciliationNotFoundError,
    ReconciliationInfraError,
)
from reconciliation.matching_rules.bank_rules import (
    BankMatchingRules,
    TransactionSnapshot,
    ObligationSnapshot,
    MatchCandidate,
    MatchSuggestion,
)
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Vocabulary
    'TransactionType',
    'MatchStatus',
    'MatchConfidence',
    'MatchedType',
    'ParsedType',
    'MatchPolicy',
    # Errors
    'ReconciliationError',
    'ReconciliationValidationError',
    'MatchConflictError',
    'ReconciliationNotFoundError',
    'ReconciliationInfraError',
    # Matching Rules
    'BankMatchingRules',
    'TransactionSnapshot',
    'ObligationSnapshot',
    'MatchCandidate',
    'MatchSuggestion',
    # Service
    'ReconciliationService',
    # Router
    'reconciliation_router'
]
