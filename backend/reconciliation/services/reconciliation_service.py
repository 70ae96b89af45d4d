"""
Reconciliation Service

Core business logic for bank statement reconciliation:
- Running the matching engine over unmatched transactions
- Auto-applying high confidence suggestions
- Approving, rejecting and ignoring matches
- Best-effort batch approval
- Audit logging (structured log + reconciliation_audit_log table)

Every workflow mutation runs as one database transaction: the bank
transaction, its obligation and the audit row change together or not at
all. The obligation write is a compare-and-set on its status, so two
approvals racing for the same invoice cannot both succeed.
"""

import uuid
import logging
from collections import Counter
from datetime import date, datetime, timezone
from typing import Dict, Any, List, Optional, Mapping, Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import ReconciliationAuditLogDB
from reconciliation.display_labels import confidence_label
from reconciliation.errors import (
    ReconciliationError,
    ReconciliationValidationError,
    MatchConflictError,
    ReconciliationNotFoundError,
    ReconciliationInfraError,
)
from reconciliation.match_policy import (
    TransactionType,
    MatchStatus,
    MatchConfidence,
    MatchedType,
    MatchPolicy,
    MATCHED_STATUSES,
    POLARITY,
    open_statuses_for,
)
from reconciliation.matching_rules.bank_rules import BankMatchingRules, TransactionSnapshot
from reconciliation.services.transaction_store import (
    BankTransactionRepository,
    db_to_transaction_dict,
    db_to_import_dict,
    db_to_snapshot,
)
from reconciliation.services.obligations import OpenObligationsView, PAID_STATUS

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationRunResult:
    """Result of a matching run."""
    run_id: str
    import_id: Optional[str]
    auto_apply: bool
    matches: List[Dict[str, Any]]
    stats: Dict[str, int]
    next_cursor: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "run_id": self.run_id,
            "import_id": self.import_id,
            "auto_apply": self.auto_apply,
            "matches": self.matches,
            "stats": self.stats,
            "next_cursor": self.next_cursor,
        }


@dataclass
class BatchApproveResult:
    """Per-item outcome of a batch approval. Earlier successes are never undone."""
    applied_count: int = 0
    applied_by_confidence: Dict[str, int] = field(default_factory=dict)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied_count": self.applied_count,
            "applied_by_confidence": self.applied_by_confidence,
            "failures": self.failures,
        }


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    MATCH_APPROVED = "reconciliation.match_approved"
    MATCH_REJECTED = "reconciliation.match_rejected"
    TRANSACTION_IGNORED = "reconciliation.transaction_ignored"
    BATCH_APPROVED = "reconciliation.batch_approved"
    TRANSACTION_SKIPPED = "reconciliation.transaction_skipped"


def log_reconciliation_event(
    event_type: str,
    details: Dict[str, Any],
    transaction_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "transaction_id": transaction_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def parse_matched_type(value: Any) -> MatchedType:
    try:
        return MatchedType(value)
    except ValueError:
        raise ReconciliationValidationError(
            f"Invalid matched_type: {value}. Must be one of: invoice, expense",
            parameter="matched_type"
        )


def parse_confidence(value: Any, default: MatchConfidence = MatchConfidence.MANUAL) -> MatchConfidence:
    if value is None or value == "":
        return default
    try:
        return MatchConfidence(value)
    except ValueError:
        raise ReconciliationValidationError(
            f"Invalid confidence: {value}. Must be one of: high, medium, low, manual",
            parameter="confidence"
        )


def _require_id(value: Any, parameter: str) -> str:
    if not value or not isinstance(value, str) or not value.strip():
        raise ReconciliationValidationError(f"{parameter} is required", parameter=parameter)
    return value.strip()


class ReconciliationService:
    """
    Service for reconciling bank transactions against invoices and expenses.
    """

    def __init__(
        self,
        db: AsyncSession,
        policy: Optional[MatchPolicy] = None,
        reject_reverts_obligation: Optional[bool] = None
    ):
        settings = get_settings()
        self.db = db
        self.policy = policy or MatchPolicy.from_settings(settings)
        self.rules = BankMatchingRules(self.policy)
        self.transactions = BankTransactionRepository(db)
        self.obligations = OpenObligationsView(db)
        if reject_reverts_obligation is None:
            reject_reverts_obligation = settings.RECON_REJECT_REVERTS_OBLIGATION
        self.reject_reverts_obligation = reject_reverts_obligation

    # ==================== Matching ====================

    async def run_matching(
        self,
        import_id: Optional[str] = None,
        auto_apply: bool = False,
        actor: str = "system",
        after_posted_date: Optional[date] = None,
        after_id: Optional[str] = None
    ) -> ReconciliationRunResult:
        """
        Match unmatched transactions (optionally of one import) against open
        obligations.

        A run reads at most max_transactions_per_run transactions. When the
        cap is hit the result carries next_cursor; pass it back as
        after_posted_date/after_id to continue past the transactions this run
        already looked at, including the ones that got no suggestion.

        Args:
            import_id: Restrict the run to one import batch
            auto_apply: Immediately approve high confidence suggestions
            actor: Recorded as matched_by for auto-applied matches
            after_posted_date: Resume cursor, posted date of the last transaction read
            after_id: Resume cursor, id of the last transaction read

        Returns:
            ReconciliationRunResult with one suggestion per matched transaction
        """
        if (after_posted_date is None) != (after_id is None):
            raise ReconciliationValidationError(
                "after_posted_date and after_id must be given together",
                parameter="after_id" if after_id is None else "after_posted_date"
            )
        after = None
        if after_id is not None:
            after = (after_posted_date, _require_id(after_id, "after_id"))

        run_id = str(uuid.uuid4())

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            {"run_id": run_id, "import_id": import_id, "auto_apply": auto_apply},
            actor=actor
        )

        try:
            if import_id and await self.transactions.get_import(import_id) is None:
                raise ReconciliationNotFoundError(f"Import {import_id} not found")

            limit = self.policy.max_transactions_per_run
            rows = await self.transactions.list_unmatched(import_id, limit=limit, after=after)
            next_cursor = None
            if limit and len(rows) >= limit:
                last = rows[-1]
                next_cursor = {
                    "after_posted_date": last.posted_date.isoformat(),
                    "after_id": last.id,
                }
            obligations = await self.obligations.list_open_snapshots()

            snapshots: List[TransactionSnapshot] = []
            unreadable = []
            for row in rows:
                try:
                    snapshots.append(db_to_snapshot(row))
                except (ValueError, TypeError) as e:
                    unreadable.append(row.id)
                    log_reconciliation_event(
                        ReconciliationAuditEvent.TRANSACTION_SKIPPED,
                        {"run_id": run_id, "error": str(e)},
                        transaction_id=row.id,
                        actor=actor
                    )

            # Release the read transaction before any auto-apply writes
            await self.db.rollback()
        except ReconciliationError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to load matching inputs: {e}")
            raise ReconciliationInfraError("Failed to load transactions and obligations") from e

        outcome = self.rules.match(snapshots, obligations)
        for tx_id, error in outcome.skipped:
            log_reconciliation_event(
                ReconciliationAuditEvent.TRANSACTION_SKIPPED,
                {"run_id": run_id, "error": error},
                transaction_id=tx_id,
                actor=actor
            )

        matches = []
        auto_applied = 0
        auto_apply_failed = 0
        for suggestion in outcome.suggestions:
            entry = suggestion.to_dict()
            entry["confidence_label"] = confidence_label(suggestion.confidence.value)
            entry["applied"] = False

            if auto_apply and suggestion.confidence == MatchConfidence.HIGH:
                try:
                    await self._apply_match(
                        suggestion.transaction_id,
                        suggestion.matched_type,
                        suggestion.matched_id,
                        MatchStatus.AUTO_MATCHED,
                        MatchConfidence.HIGH,
                        actor,
                        details={"run_id": run_id, "reason": suggestion.reason}
                    )
                    entry["applied"] = True
                    auto_applied += 1
                except ReconciliationError as e:
                    auto_apply_failed += 1
                    entry["error"] = {"reason": e.code, "message": e.message}
                    logger.warning(
                        f"Auto-apply failed for transaction {suggestion.transaction_id}: {e.message}"
                    )

            matches.append(entry)

        stats = outcome.stats
        stats["total_transactions"] += len(unreadable)
        stats["skipped"] += len(unreadable)
        stats["auto_applied"] = auto_applied
        stats["auto_apply_failed"] = auto_apply_failed

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_COMPLETED,
            {"run_id": run_id, "import_id": import_id, **stats},
            actor=actor
        )

        return ReconciliationRunResult(
            run_id=run_id,
            import_id=import_id,
            auto_apply=auto_apply,
            matches=matches,
            stats=stats,
            next_cursor=next_cursor,
        )

    async def find_candidates(self, transaction_id: str) -> Dict[str, Any]:
        """
        Ranked preview of every plausible obligation for one transaction.
        Nothing is written.
        """
        transaction_id = _require_id(transaction_id, "transaction_id")
        try:
            row = await self.transactions.get(transaction_id)
            if row is None:
                raise ReconciliationNotFoundError(
                    f"Transaction {transaction_id} not found", transaction_id
                )
            snapshot = db_to_snapshot(row)
            obligations = await self.obligations.list_open_snapshots(
                [POLARITY[snapshot.transaction_type]]
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to load candidates for {transaction_id}: {e}")
            raise ReconciliationInfraError("Failed to load candidates", transaction_id) from e

        candidates = self.rules.find_candidates(snapshot, obligations)
        return {
            "transaction_id": transaction_id,
            "match_status": row.match_status,
            "candidates": [c.to_dict() for c in candidates],
        }

    # ==================== Workflow ====================

    async def approve_match(
        self,
        transaction_id: str,
        matched_type: Any,
        matched_id: str,
        actor: str = "system",
        confidence: Any = None
    ) -> Dict[str, Any]:
        """
        Link an unmatched transaction to an open obligation and mark the
        obligation paid on the transaction's posted date.

        Raises:
            ReconciliationValidationError: bad input or wrong polarity
            ReconciliationNotFoundError: unknown transaction or obligation
            MatchConflictError: transaction not unmatched, or obligation no longer open
            ReconciliationInfraError: storage failure, nothing written
        """
        transaction_id = _require_id(transaction_id, "transaction_id")
        matched_id = _require_id(matched_id, "matched_id")
        matched_type = parse_matched_type(matched_type)
        confidence = parse_confidence(confidence)

        return await self._apply_match(
            transaction_id,
            matched_type,
            matched_id,
            MatchStatus.MANUAL_MATCHED,
            confidence,
            actor
        )

    async def _apply_match(
        self,
        transaction_id: str,
        matched_type: MatchedType,
        matched_id: str,
        status: MatchStatus,
        confidence: MatchConfidence,
        actor: str,
        details: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        try:
            row = await self.transactions.get(transaction_id)
            if row is None:
                raise ReconciliationNotFoundError(
                    f"Transaction {transaction_id} not found", transaction_id
                )
            if row.match_status != MatchStatus.UNMATCHED.value:
                raise MatchConflictError(
                    f"Transaction {transaction_id} is {row.match_status}, expected unmatched",
                    transaction_id
                )

            tx_type = TransactionType(row.transaction_type)
            if POLARITY[tx_type] != matched_type:
                raise ReconciliationValidationError(
                    f"A {tx_type.value} transaction cannot settle an {matched_type.value}",
                    parameter="matched_type",
                    transaction_id=transaction_id
                )

            obligation = await self.obligations.get(matched_type, matched_id)
            if obligation is None:
                raise ReconciliationNotFoundError(
                    f"{matched_type.value.capitalize()} {matched_id} not found", transaction_id
                )
            previous_status = obligation.status
            if previous_status not in open_statuses_for(matched_type):
                raise MatchConflictError(
                    f"{matched_type.value.capitalize()} {matched_id} is {previous_status}, no longer open",
                    transaction_id
                )

            if not await self.obligations.mark_paid(
                matched_type, matched_id, previous_status, row.posted_date
            ):
                raise MatchConflictError(
                    f"{matched_type.value.capitalize()} {matched_id} was changed by another operation",
                    transaction_id
                )
            if not await self.transactions.mark_matched(
                transaction_id, matched_type, matched_id, status, confidence, actor
            ):
                raise MatchConflictError(
                    f"Transaction {transaction_id} was changed by another operation",
                    transaction_id
                )

            self._add_audit(
                action=ReconciliationAuditEvent.MATCH_APPROVED,
                actor=actor,
                transaction_id=transaction_id,
                obligation_type=matched_type,
                obligation_id=matched_id,
                previous_status=previous_status,
                new_status=PAID_STATUS[matched_type],
                confidence=confidence,
                details={"match_status": status.value, **(details or {})}
            )
            await self.db.commit()
        except ReconciliationError:
            await self.db.rollback()
            raise
        except IntegrityError as e:
            await self.db.rollback()
            raise MatchConflictError(
                f"{matched_type.value.capitalize()} {matched_id} is already matched to another transaction",
                transaction_id
            ) from e
        except ValueError as e:
            await self.db.rollback()
            raise ReconciliationValidationError(str(e), transaction_id=transaction_id) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to approve match for {transaction_id}: {e}")
            raise ReconciliationInfraError("Failed to apply match", transaction_id) from e

        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_APPROVED,
            {
                "matched_type": matched_type.value,
                "matched_id": matched_id,
                "confidence": confidence.value,
                "match_status": status.value,
                "previous_status": previous_status,
            },
            transaction_id=transaction_id,
            actor=actor
        )

        return {
            "success": True,
            "transaction": await self.get_transaction(transaction_id),
            "obligation": {
                "matched_type": matched_type.value,
                "matched_id": matched_id,
                "previous_status": previous_status,
                "status": PAID_STATUS[matched_type],
            },
        }

    async def reject_match(self, transaction_id: str, actor: str = "system") -> Dict[str, Any]:
        """
        Return a matched transaction to unmatched with every match field cleared.

        The obligation is reopened only when the rejected approval was the
        last change made to it: still paid, paid on this transaction's posted
        date, and the latest audit entry for it is this transaction's approval.
        On an unmatched transaction this dismisses a transient suggestion and
        writes nothing.
        """
        transaction_id = _require_id(transaction_id, "transaction_id")
        reverted = False
        restored_status = None

        try:
            row = await self.transactions.get(transaction_id)
            if row is None:
                raise ReconciliationNotFoundError(
                    f"Transaction {transaction_id} not found", transaction_id
                )
            if row.match_status == MatchStatus.UNMATCHED.value:
                current = db_to_transaction_dict(row)
                await self.db.rollback()
                return {"success": True, "transaction": current, "obligation_reverted": False}
            if row.match_status not in {s.value for s in MATCHED_STATUSES}:
                raise MatchConflictError(
                    f"Transaction {transaction_id} is {row.match_status} and cannot be rejected",
                    transaction_id
                )

            previous_match_status = row.match_status
            previous_confidence = row.match_confidence
            if row.matched_invoice_id:
                matched_type, matched_id = MatchedType.INVOICE, row.matched_invoice_id
            elif row.matched_expense_id:
                matched_type, matched_id = MatchedType.EXPENSE, row.matched_expense_id
            else:
                matched_type, matched_id = None, None

            if self.reject_reverts_obligation and matched_id:
                restored_status = await self._revertible_status(
                    transaction_id, matched_type, matched_id, row.posted_date
                )
                if restored_status:
                    reverted = await self.obligations.reopen(
                        matched_type, matched_id, restored_status, row.posted_date
                    )

            if not await self.transactions.clear_match(transaction_id, previous_match_status):
                raise MatchConflictError(
                    f"Transaction {transaction_id} was changed by another operation",
                    transaction_id
                )

            self._add_audit(
                action=ReconciliationAuditEvent.MATCH_REJECTED,
                actor=actor,
                transaction_id=transaction_id,
                obligation_type=matched_type,
                obligation_id=matched_id,
                previous_status=PAID_STATUS[matched_type] if reverted else None,
                new_status=restored_status if reverted else None,
                confidence=MatchConfidence(previous_confidence) if previous_confidence else None,
                details={
                    "previous_match_status": previous_match_status,
                    "obligation_reverted": reverted,
                }
            )
            await self.db.commit()
        except ReconciliationError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to reject match for {transaction_id}: {e}")
            raise ReconciliationInfraError("Failed to reject match", transaction_id) from e

        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_REJECTED,
            {
                "matched_type": matched_type.value if matched_type else None,
                "matched_id": matched_id,
                "obligation_reverted": reverted,
                "restored_status": restored_status if reverted else None,
            },
            transaction_id=transaction_id,
            actor=actor
        )

        return {
            "success": True,
            "transaction": await self.get_transaction(transaction_id),
            "obligation_reverted": reverted,
        }

    async def _revertible_status(
        self,
        transaction_id: str,
        matched_type: MatchedType,
        matched_id: str,
        posted_date
    ) -> Optional[str]:
        """
        Status to restore the obligation to, or None when it must stay paid.
        """
        obligation = await self.obligations.get(matched_type, matched_id)
        if obligation is None:
            return None
        if obligation.status != PAID_STATUS[matched_type] or obligation.payment_date != posted_date:
            return None

        result = await self.db.execute(
            select(ReconciliationAuditLogDB)
            .where(
                ReconciliationAuditLogDB.obligation_type == matched_type.value,
                ReconciliationAuditLogDB.obligation_id == matched_id,
            )
            .order_by(ReconciliationAuditLogDB.timestamp.desc())
            .limit(1)
        )
        latest = result.scalar_one_or_none()
        if latest is None:
            return None
        if latest.action != ReconciliationAuditEvent.MATCH_APPROVED or latest.transaction_id != transaction_id:
            return None
        if latest.previous_status not in open_statuses_for(matched_type):
            return None
        return latest.previous_status

    async def ignore_transaction(self, transaction_id: str, actor: str = "system") -> Dict[str, Any]:
        """
        Mark an unmatched transaction as ignored; matching never considers it again.
        Ignoring an already ignored transaction is a no-op.
        """
        transaction_id = _require_id(transaction_id, "transaction_id")
        try:
            row = await self.transactions.get(transaction_id)
            if row is None:
                raise ReconciliationNotFoundError(
                    f"Transaction {transaction_id} not found", transaction_id
                )
            if row.match_status == MatchStatus.IGNORED.value:
                current = db_to_transaction_dict(row)
                await self.db.rollback()
                return {"success": True, "transaction": current}
            if row.match_status != MatchStatus.UNMATCHED.value:
                raise MatchConflictError(
                    f"Transaction {transaction_id} is {row.match_status}; reject the match first",
                    transaction_id
                )
            if not await self.transactions.mark_ignored(transaction_id):
                raise MatchConflictError(
                    f"Transaction {transaction_id} was changed by another operation",
                    transaction_id
                )

            self._add_audit(
                action=ReconciliationAuditEvent.TRANSACTION_IGNORED,
                actor=actor,
                transaction_id=transaction_id,
            )
            await self.db.commit()
        except ReconciliationError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to ignore transaction {transaction_id}: {e}")
            raise ReconciliationInfraError("Failed to ignore transaction", transaction_id) from e

        log_reconciliation_event(
            ReconciliationAuditEvent.TRANSACTION_IGNORED,
            {},
            transaction_id=transaction_id,
            actor=actor
        )
        return {"success": True, "transaction": await self.get_transaction(transaction_id)}

    async def batch_approve_matches(
        self,
        suggestions: Iterable[Mapping[str, Any]],
        actor: str = "system"
    ) -> BatchApproveResult:
        """
        Approve suggestions one by one. Each item succeeds or fails on its
        own; a failure never rolls back earlier successes.
        """
        result = BatchApproveResult()
        by_confidence: Counter = Counter()

        for item in suggestions:
            transaction_id = item.get("transaction_id")
            try:
                transaction_id = _require_id(transaction_id, "transaction_id")
                matched_id = _require_id(item.get("matched_id"), "matched_id")
                matched_type = parse_matched_type(item.get("matched_type"))
                confidence = parse_confidence(item.get("confidence"))

                await self._apply_match(
                    transaction_id,
                    matched_type,
                    matched_id,
                    MatchStatus.MANUAL_MATCHED,
                    confidence,
                    actor,
                    details={"batch": True}
                )
                result.applied_count += 1
                by_confidence[confidence.value] += 1
            except ReconciliationError as e:
                result.failures.append({
                    "transaction_id": transaction_id,
                    "reason": e.code,
                    "message": e.message,
                })

        result.applied_by_confidence = dict(sorted(by_confidence.items()))

        log_reconciliation_event(
            ReconciliationAuditEvent.BATCH_APPROVED,
            {
                "applied_count": result.applied_count,
                "applied_by_confidence": result.applied_by_confidence,
                "failed_count": len(result.failures),
            },
            actor=actor
        )
        return result

    # ==================== Queries ====================

    async def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        try:
            row = await self.transactions.get(transaction_id)
        except SQLAlchemyError as e:
            raise ReconciliationInfraError("Failed to load transaction", transaction_id) from e
        if row is None:
            raise ReconciliationNotFoundError(f"Transaction {transaction_id} not found", transaction_id)
        return db_to_transaction_dict(row)

    async def list_transactions(self, limit: int = 100, offset: int = 0, **filters) -> Dict[str, Any]:
        try:
            rows, total = await self.transactions.list_transactions(limit=limit, offset=offset, **filters)
        except SQLAlchemyError as e:
            raise ReconciliationInfraError("Failed to list transactions") from e
        return {
            "transactions": [db_to_transaction_dict(row) for row in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def list_imports(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        try:
            rows = await self.transactions.list_imports(limit=limit, offset=offset)
        except SQLAlchemyError as e:
            raise ReconciliationInfraError("Failed to list imports") from e
        return [db_to_import_dict(row) for row in rows]

    async def get_import_summary(self, import_id: str) -> Dict[str, Any]:
        try:
            return await self.transactions.get_import_summary(import_id)
        except SQLAlchemyError as e:
            raise ReconciliationInfraError("Failed to summarize import") from e

    async def list_open_obligations(
        self,
        transaction_type: Any,
        search: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Open invoices for a credit, open expenses for a debit."""
        try:
            tx_type = TransactionType(transaction_type)
        except ValueError:
            raise ReconciliationValidationError(
                f"Invalid transaction_type: {transaction_type}. Must be one of: credit, debit",
                parameter="transaction_type"
            )
        try:
            return await self.obligations.list_open(POLARITY[tx_type], search=search, limit=limit)
        except SQLAlchemyError as e:
            raise ReconciliationInfraError("Failed to list open obligations") from e

    # ==================== Private Methods ====================

    def _add_audit(
        self,
        action: str,
        actor: str,
        transaction_id: str,
        obligation_type: Optional[MatchedType] = None,
        obligation_id: Optional[str] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        confidence: Optional[MatchConfidence] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Stage an audit row in the current database transaction."""
        self.db.add(ReconciliationAuditLogDB(
            action=action,
            actor=actor,
            transaction_id=transaction_id,
            obligation_type=obligation_type.value if obligation_type else None,
            obligation_id=obligation_id,
            previous_status=previous_status,
            new_status=new_status,
            confidence=confidence.value if confidence else None,
            details=details or {},
        ))
