"""
Reconciliation Vocabulary and Matching Policy

Closed enumerations shared by the matching engine, the transaction store
and the reconciliation workflow, plus the immutable MatchPolicy that carries
the engine's tunables.

Match status lifecycle:
    unmatched -> auto_matched | manual_matched -> unmatched (reject)
    unmatched -> ignored (terminal)

"suggested" only exists inside a matching run result; it is never persisted.
"""

from enum import Enum
from typing import Dict, Any, FrozenSet, Optional
from dataclasses import dataclass, asdict


class TransactionType(str, Enum):
    """Direction of a bank transaction. Credits settle invoices, debits settle expenses."""
    CREDIT = "credit"
    DEBIT = "debit"


class MatchStatus(str, Enum):
    """
    Match status of a bank transaction.
    """
    UNMATCHED = "unmatched"
    SUGGESTED = "suggested"             # Transient, never written
    AUTO_MATCHED = "auto_matched"       # Applied by the engine's auto-apply path
    MANUAL_MATCHED = "manual_matched"   # Approved by a reviewer
    IGNORED = "ignored"                 # Terminal, excluded from matching


MATCHED_STATUSES: FrozenSet[MatchStatus] = frozenset({
    MatchStatus.AUTO_MATCHED,
    MatchStatus.MANUAL_MATCHED,
})


class MatchConfidence(str, Enum):
    """
    Confidence tier of a match, ordered HIGH > MEDIUM > LOW > MANUAL.

    MANUAL marks a reviewer-picked target that the engine never scored.
    """
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    MANUAL = "manual"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK: Dict[MatchConfidence, int] = {
    MatchConfidence.HIGH: 3,
    MatchConfidence.MEDIUM: 2,
    MatchConfidence.LOW: 1,
    MatchConfidence.MANUAL: 0,
}


class MatchedType(str, Enum):
    """Kind of obligation a transaction is matched to."""
    INVOICE = "invoice"
    EXPENSE = "expense"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"


class ExpenseStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


OPEN_INVOICE_STATUSES: FrozenSet[str] = frozenset({
    InvoiceStatus.PENDING.value,
    InvoiceStatus.OVERDUE.value,
})

OPEN_EXPENSE_STATUSES: FrozenSet[str] = frozenset({
    ExpenseStatus.PENDING.value,
})

# Which obligation pool a transaction direction may settle
POLARITY: Dict[TransactionType, MatchedType] = {
    TransactionType.CREDIT: MatchedType.INVOICE,
    TransactionType.DEBIT: MatchedType.EXPENSE,
}


def open_statuses_for(matched_type: MatchedType) -> FrozenSet[str]:
    """Statuses in which an obligation is still a valid match target."""
    if matched_type == MatchedType.INVOICE:
        return OPEN_INVOICE_STATUSES
    return OPEN_EXPENSE_STATUSES


class ParsedType(str, Enum):
    """
    Transaction subtype extracted from the bank memo by the statement importer.
    """
    BALANCE = "balance"
    INVESTMENT_RETURN = "investment_return"
    PIX_RECEIVED = "pix_received"
    PIX_SENT = "pix_sent"
    CARD_RECEIVED = "card_received"
    CARD_VISA_DEBIT = "card_visa_debit"
    CARD_VISA_CREDIT = "card_visa_credit"
    CARD_MASTER_DEBIT = "card_master_debit"
    CARD_MASTER_CREDIT = "card_master_credit"
    BOLETO_PAID = "boleto_paid"
    UTILITY_PAID = "utility_paid"
    OTHER_CREDIT = "other_credit"
    OTHER_DEBIT = "other_debit"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ParsedType"]:
        """Map a stored value onto the enum; unknown or empty values map to None."""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class ImportStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AmountBand(str, Enum):
    """How close the obligation amount is to the transaction amount."""
    EXACT = "exact"
    NEAR = "near"


class DateBucket(str, Enum):
    """Distance between posted_date and due_date."""
    SAME_DAY = "same_day"
    WITHIN_WINDOW = "within_window"
    BEYOND_WINDOW = "beyond_window"


@dataclass(frozen=True)
class MatchPolicy:
    """
    Tunables of the matching engine.
    """
    near_amount_tolerance_cents: int = 100
    date_window_days: int = 5
    name_similarity_threshold: float = 0.85
    max_transactions_per_run: int = 500
    max_candidates_per_transaction: int = 50

    @classmethod
    def from_settings(cls, settings) -> "MatchPolicy":
        return cls(
            near_amount_tolerance_cents=settings.RECON_NEAR_AMOUNT_TOLERANCE_CENTS,
            date_window_days=settings.RECON_DATE_WINDOW_DAYS,
            name_similarity_threshold=settings.RECON_NAME_SIMILARITY_THRESHOLD,
            max_transactions_per_run=settings.RECON_MAX_TRANSACTIONS_PER_RUN,
            max_candidates_per_transaction=settings.RECON_MAX_CANDIDATES_PER_TRANSACTION,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
