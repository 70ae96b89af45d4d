"""
Matching Rules Module
"""

from .bank_rules import (
    BankMatchingRules,
    TransactionSnapshot,
    ObligationSnapshot,
    MatchCandidate,
    MatchSuggestion,
    MatchingOutcome,
    normalize_name,
    format_cents,
)

__all__ = [
    "BankMatchingRules",
    "TransactionSnapshot",
    "ObligationSnapshot",
    "MatchCandidate",
    "MatchSuggestion",
    "MatchingOutcome",
    "normalize_name",
    "format_cents",
]
