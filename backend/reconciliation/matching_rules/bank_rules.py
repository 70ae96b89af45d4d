"""
Bank Statement Matching Rules

Matches unmatched bank transactions against open obligations:
credits against invoices (receivables), debits against expenses (payables).

Primary Match Keys:
- amount_cents (exact, or near within a small cent tolerance)
- posted_date vs due_date (same day / within window / beyond window)

Identity Signals:
- payer/payee document (CPF/CNPJ digits)
- payer/payee name found in the parsed name or the bank memo (fuzzy)

Confidence Tiers:
- High: exact amount + identity match + date within window (auto-apply eligible)
- Medium: identity match or date within window (exact amount + identity
  beyond the window is medium, not low)
- Low: any other amount-plausible candidate

Every obligation is suggested to at most one transaction per run, and every
transaction receives at most one suggestion. The engine is pure: it works on
immutable snapshots and never reads or writes the database.
"""

import bisect
import heapq
import logging
import re
import unicodedata
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from difflib import SequenceMatcher
from typing import Dict, Any, List, Optional, Tuple, Iterable

from reconciliation.match_policy import (
    TransactionType,
    MatchConfidence,
    MatchedType,
    ParsedType,
    AmountBand,
    DateBucket,
    MatchPolicy,
    POLARITY,
    open_statuses_for,
)

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^A-Z0-9]+")
_NON_DIGIT = re.compile(r"\D+")

# CPF has 11 digits, CNPJ 14
MIN_DOCUMENT_DIGITS = 11
MIN_NAME_LENGTH = 3
MIN_TRUNCATED_NAME_TOKENS = 2
DESCRIPTION_PREFIX_LENGTH = 10


# ==================== SNAPSHOTS ====================

@dataclass(frozen=True)
class TransactionSnapshot:
    """
    Immutable view of a bank transaction, as read at the start of a run.
    """
    id: str
    transaction_type: TransactionType
    posted_date: date
    amount_cents: int
    memo: str = ""
    parsed_name: Optional[str] = None
    parsed_document: Optional[str] = None
    parsed_type: Optional[ParsedType] = None
    is_balance_entry: bool = False


@dataclass(frozen=True)
class ObligationSnapshot:
    """
    Immutable view of an open invoice or expense.

    party_name / party_document are the student's (invoice) or the
    supplier's (expense) identity.
    """
    id: str
    obligation_type: MatchedType
    amount_cents: int
    due_date: date
    status: str
    party_name: Optional[str] = None
    party_document: Optional[str] = None
    description: Optional[str] = None


# ==================== RESULTS ====================

@dataclass
class MatchCandidate:
    """
    A scored (transaction, obligation) pair.
    """
    transaction_id: str
    matched_type: MatchedType
    matched_id: str
    confidence: MatchConfidence
    amount_band: AmountBand
    amount_delta_cents: int
    date_distance_days: int
    date_bucket: DateBucket
    due_date: date
    identity_source: Optional[str] = None
    competing: bool = False
    reason: str = ""

    @property
    def identity_match(self) -> bool:
        return self.identity_source is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "matched_type": self.matched_type.value,
            "matched_id": self.matched_id,
            "confidence": self.confidence.value,
            "reason": self.reason,
            "amount_band": self.amount_band.value,
            "amount_delta_cents": self.amount_delta_cents,
            "date_distance_days": self.date_distance_days,
            "date_bucket": self.date_bucket.value,
            "due_date": self.due_date.isoformat(),
            "identity_match": self.identity_match,
            "identity_source": self.identity_source,
            "competing": self.competing,
        }


@dataclass(frozen=True)
class MatchSuggestion:
    """
    The single best candidate proposed for a transaction. Never persisted.
    """
    transaction_id: str
    matched_type: MatchedType
    matched_id: str
    confidence: MatchConfidence
    reason: str

    @classmethod
    def from_candidate(cls, candidate: MatchCandidate) -> "MatchSuggestion":
        return cls(
            transaction_id=candidate.transaction_id,
            matched_type=candidate.matched_type,
            matched_id=candidate.matched_id,
            confidence=candidate.confidence,
            reason=candidate.reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "matched_type": self.matched_type.value,
            "matched_id": self.matched_id,
            "confidence": self.confidence.value,
            "reason": self.reason,
        }


@dataclass
class MatchingOutcome:
    """
    Result of one matching pass.
    """
    suggestions: List[MatchSuggestion] = field(default_factory=list)
    total_transactions: int = 0
    skipped: List[Tuple[str, str]] = field(default_factory=list)

    def count_by_confidence(self, confidence: MatchConfidence) -> int:
        return sum(1 for s in self.suggestions if s.confidence == confidence)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "total_transactions": self.total_transactions,
            "total_matches": len(self.suggestions),
            "high_confidence": self.count_by_confidence(MatchConfidence.HIGH),
            "medium_confidence": self.count_by_confidence(MatchConfidence.MEDIUM),
            "low_confidence": self.count_by_confidence(MatchConfidence.LOW),
            "skipped": len(self.skipped),
        }


# ==================== HELPERS ====================

def normalize_name(value: Optional[str]) -> str:
    """Uppercase, strip accents and collapse punctuation to single spaces."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", ascii_only.upper()).strip()


def document_digits(value: Optional[str]) -> str:
    if not value:
        return ""
    return _NON_DIGIT.sub("", value)


def format_cents(cents: int) -> str:
    """Format an amount in cents as Brazilian Real, e.g. R$ 1.234,56."""
    reais, centavos = divmod(abs(cents), 100)
    grouped = f"{reais:,}".replace(",", ".")
    sign = "-" if cents < 0 else ""
    return f"{sign}R$ {grouped},{centavos:02d}"


def _candidate_rank_key(candidate: MatchCandidate) -> Tuple:
    # Best first: tier, oldest due date, smallest delta, closest date
    return (
        -candidate.confidence.rank,
        candidate.due_date.toordinal(),
        candidate.amount_delta_cents,
        candidate.date_distance_days,
        candidate.matched_id,
    )


def _claim_key(candidate: MatchCandidate, transaction: TransactionSnapshot) -> Tuple:
    # Strongest claim on an obligation first
    return (
        -candidate.confidence.rank,
        0 if candidate.identity_match else 1,
        candidate.date_distance_days,
        candidate.amount_delta_cents,
        transaction.posted_date.toordinal(),
        transaction.id,
    )


class _ObligationPool:
    """Open obligations of one polarity, sorted by amount for range lookups."""

    def __init__(self, obligations: Iterable[ObligationSnapshot]):
        self.items = sorted(obligations, key=lambda o: (o.amount_cents, o.id))
        self.amounts = [o.amount_cents for o in self.items]

    def within(self, amount_cents: int, tolerance_cents: int) -> List[ObligationSnapshot]:
        lo = bisect.bisect_left(self.amounts, amount_cents - tolerance_cents)
        hi = bisect.bisect_right(self.amounts, amount_cents + tolerance_cents)
        return self.items[lo:hi]


# ==================== ENGINE ====================

class BankMatchingRules:
    """
    Matching rules engine for bank statement reconciliation.

    Deterministic: identical inputs always yield identical suggestions in
    identical order.
    """

    def __init__(self, policy: Optional[MatchPolicy] = None):
        self.policy = policy or MatchPolicy()

    # ---------- Signals ----------

    def amount_band(self, delta_cents: int) -> Optional[AmountBand]:
        if delta_cents == 0:
            return AmountBand.EXACT
        if delta_cents <= self.policy.near_amount_tolerance_cents:
            return AmountBand.NEAR
        return None

    def date_bucket(self, distance_days: int) -> DateBucket:
        if distance_days == 0:
            return DateBucket.SAME_DAY
        if distance_days <= self.policy.date_window_days:
            return DateBucket.WITHIN_WINDOW
        return DateBucket.BEYOND_WINDOW

    def identity_match(
        self,
        transaction: TransactionSnapshot,
        obligation: ObligationSnapshot
    ) -> Optional[str]:
        """
        Return which signal linked the transaction to the obligation's
        payer/payee ("document", "name" or "description"), or None.
        """
        tx_document = document_digits(transaction.parsed_document)
        ob_document = document_digits(obligation.party_document)
        if (
            len(tx_document) >= MIN_DOCUMENT_DIGITS
            and tx_document == ob_document
        ):
            return "document"

        parsed = normalize_name(transaction.parsed_name)
        memo = normalize_name(transaction.memo)
        party = normalize_name(obligation.party_name)

        if len(party) >= MIN_NAME_LENGTH:
            if self._name_matches(party, parsed) or self._contains(memo, party):
                return "name"

        if obligation.obligation_type == MatchedType.EXPENSE and obligation.description:
            prefix = normalize_name(obligation.description[:DESCRIPTION_PREFIX_LENGTH])
            if len(prefix) >= MIN_NAME_LENGTH and (
                prefix in memo or prefix in parsed
            ):
                return "description"

        return None

    def _name_matches(self, party: str, parsed: str) -> bool:
        if not parsed:
            return False
        if party == parsed or self._contains(parsed, party):
            return True
        # Banks truncate payer names; accept a leading run of whole words only
        if len(parsed.split()) >= MIN_TRUNCATED_NAME_TOKENS and f"{party} ".startswith(f"{parsed} "):
            return True
        ratio = SequenceMatcher(None, parsed, party).ratio()
        return ratio >= self.policy.name_similarity_threshold

    @staticmethod
    def _contains(haystack: str, needle: str) -> bool:
        if not haystack or not needle:
            return False
        return f" {needle} " in f" {haystack} "

    def classify(self, band: AmountBand, identity: bool, bucket: DateBucket) -> MatchConfidence:
        in_window = bucket != DateBucket.BEYOND_WINDOW
        if band == AmountBand.EXACT and identity and in_window:
            return MatchConfidence.HIGH
        if identity or in_window:
            return MatchConfidence.MEDIUM
        return MatchConfidence.LOW

    # ---------- Candidates ----------

    def is_eligible(self, transaction: TransactionSnapshot) -> bool:
        """Balance lines and zero-amount entries never settle an obligation."""
        if transaction.is_balance_entry or transaction.parsed_type == ParsedType.BALANCE:
            return False
        return transaction.amount_cents > 0

    def score(
        self,
        transaction: TransactionSnapshot,
        obligation: ObligationSnapshot
    ) -> Optional[MatchCandidate]:
        """Score a single pair; None when the pair is not plausible at all."""
        if POLARITY[transaction.transaction_type] != obligation.obligation_type:
            return None
        if obligation.status not in open_statuses_for(obligation.obligation_type):
            return None

        delta = abs(transaction.amount_cents - obligation.amount_cents)
        band = self.amount_band(delta)
        if band is None:
            return None

        distance = abs((transaction.posted_date - obligation.due_date).days)
        bucket = self.date_bucket(distance)
        identity_source = self.identity_match(transaction, obligation)
        confidence = self.classify(band, identity_source is not None, bucket)

        candidate = MatchCandidate(
            transaction_id=transaction.id,
            matched_type=obligation.obligation_type,
            matched_id=obligation.id,
            confidence=confidence,
            amount_band=band,
            amount_delta_cents=delta,
            date_distance_days=distance,
            date_bucket=bucket,
            due_date=obligation.due_date,
            identity_source=identity_source,
        )
        candidate.reason = self._build_reason(candidate, obligation)
        return candidate

    def _build_reason(self, candidate: MatchCandidate, obligation: ObligationSnapshot) -> str:
        if candidate.amount_band == AmountBand.EXACT:
            parts = [f"Exact amount ({format_cents(obligation.amount_cents)})"]
        else:
            parts = [
                f"Near amount ({format_cents(obligation.amount_cents)}, "
                f"difference {format_cents(candidate.amount_delta_cents)})"
            ]

        if candidate.identity_source == "document":
            parts.append("document match")
        elif candidate.identity_source == "name":
            parts.append(f"name match ({obligation.party_name})")
        elif candidate.identity_source == "description":
            parts.append("description found in memo")

        if candidate.date_bucket == DateBucket.SAME_DAY:
            parts.append("due the same day")
        elif candidate.date_bucket == DateBucket.WITHIN_WINDOW:
            parts.append(f"due {candidate.date_distance_days} day(s) apart")
        else:
            parts.append(f"outside date window ({candidate.date_distance_days} days)")

        if candidate.competing:
            parts.append("claimed by other transactions")

        return "; ".join(parts)

    def _candidates_for(
        self,
        transaction: TransactionSnapshot,
        pools: Dict[MatchedType, _ObligationPool]
    ) -> List[MatchCandidate]:
        pool = pools.get(POLARITY[transaction.transaction_type])
        if pool is None:
            return []

        plausible = pool.within(transaction.amount_cents, self.policy.near_amount_tolerance_cents)
        if len(plausible) > self.policy.max_candidates_per_transaction:
            plausible = sorted(
                plausible,
                key=lambda o: (abs(o.amount_cents - transaction.amount_cents), o.due_date, o.id)
            )[:self.policy.max_candidates_per_transaction]

        candidates = []
        for obligation in plausible:
            candidate = self.score(transaction, obligation)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    @staticmethod
    def _build_pools(obligations: Iterable[ObligationSnapshot]) -> Dict[MatchedType, _ObligationPool]:
        grouped: Dict[MatchedType, List[ObligationSnapshot]] = defaultdict(list)
        for obligation in obligations:
            if obligation.status in open_statuses_for(obligation.obligation_type):
                grouped[obligation.obligation_type].append(obligation)
        return {matched_type: _ObligationPool(items) for matched_type, items in grouped.items()}

    def find_candidates(
        self,
        transaction: TransactionSnapshot,
        obligations: Iterable[ObligationSnapshot]
    ) -> List[MatchCandidate]:
        """
        Ranked list of every plausible candidate for one transaction,
        best first. Used by the manual match preview.
        """
        if not self.is_eligible(transaction):
            return []
        candidates = self._candidates_for(transaction, self._build_pools(obligations))
        candidates.sort(key=_candidate_rank_key)
        return candidates

    # ---------- Matching pass ----------

    def match(
        self,
        transactions: Iterable[TransactionSnapshot],
        obligations: Iterable[ObligationSnapshot]
    ) -> MatchingOutcome:
        """
        Produce at most one suggestion per transaction and at most one
        transaction per obligation.

        A transaction whose candidate pool cannot be built is logged and
        counted as skipped; the rest of the run continues.
        """
        outcome = MatchingOutcome()
        pools = self._build_pools(obligations)

        ordered = sorted(transactions, key=lambda t: (t.posted_date or date.min, t.id))
        by_id: Dict[str, TransactionSnapshot] = {}
        candidates_by_tx: Dict[str, List[MatchCandidate]] = {}

        for transaction in ordered:
            try:
                if not self.is_eligible(transaction):
                    continue
                candidates = self._candidates_for(transaction, pools)
            except Exception as e:
                outcome.total_transactions += 1
                logger.warning(
                    f"Skipping transaction {transaction.id} during matching: {e}",
                    extra={"transaction_id": transaction.id}
                )
                outcome.skipped.append((transaction.id, str(e)))
                continue
            outcome.total_transactions += 1
            if candidates:
                by_id[transaction.id] = transaction
                candidates_by_tx[transaction.id] = candidates

        self._apply_competition(candidates_by_tx)

        for candidates in candidates_by_tx.values():
            candidates.sort(key=_candidate_rank_key)

        assigned = self._assign_exclusive(candidates_by_tx, by_id)

        outcome.suggestions = [
            MatchSuggestion.from_candidate(assigned[t.id])
            for t in ordered
            if t.id in assigned
        ]
        return outcome

    def _apply_competition(self, candidates_by_tx: Dict[str, List[MatchCandidate]]) -> None:
        """Downgrade identity-less medium candidates on contested obligations to low."""
        claimants: Dict[Tuple[MatchedType, str], set] = defaultdict(set)
        for tx_id, candidates in candidates_by_tx.items():
            for candidate in candidates:
                claimants[(candidate.matched_type, candidate.matched_id)].add(tx_id)

        for candidates in candidates_by_tx.values():
            for candidate in candidates:
                key = (candidate.matched_type, candidate.matched_id)
                if len(claimants[key]) < 2:
                    continue
                candidate.competing = True
                if candidate.confidence == MatchConfidence.MEDIUM and not candidate.identity_match:
                    candidate.confidence = MatchConfidence.LOW
                if not candidate.reason.endswith("claimed by other transactions"):
                    candidate.reason = f"{candidate.reason}; claimed by other transactions"

    def _assign_exclusive(
        self,
        candidates_by_tx: Dict[str, List[MatchCandidate]],
        transactions: Dict[str, TransactionSnapshot]
    ) -> Dict[str, MatchCandidate]:
        """
        Greedy assignment by claim strength. Each transaction claims its
        best remaining candidate; the strongest claim wins the obligation and
        the loser falls back to its next candidate.
        """
        heap = []
        cursor: Dict[str, int] = {}
        for tx_id, candidates in candidates_by_tx.items():
            cursor[tx_id] = 0
            heap.append((_claim_key(candidates[0], transactions[tx_id]), tx_id))
        heapq.heapify(heap)

        taken = set()
        assigned: Dict[str, MatchCandidate] = {}
        while heap:
            _, tx_id = heapq.heappop(heap)
            candidates = candidates_by_tx[tx_id]
            candidate = candidates[cursor[tx_id]]
            key = (candidate.matched_type, candidate.matched_id)
            if key not in taken:
                taken.add(key)
                assigned[tx_id] = candidate
                continue

            cursor[tx_id] += 1
            if cursor[tx_id] < len(candidates):
                nxt = candidates[cursor[tx_id]]
                heapq.heappush(heap, (_claim_key(nxt, transactions[tx_id]), tx_id))

        return assigned
