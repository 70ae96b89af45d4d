"""
Bank Transaction Store

Repository over bank_imports / bank_transactions. Owns the match-status
lifecycle columns; every lifecycle write is a conditional UPDATE that only
succeeds from the expected current state.

Write methods flush but never commit: the reconciliation service owns the
unit of work so a transaction and its obligation change together.
"""

from datetime import date, datetime, timezone
from typing import List, Optional, Dict, Any, Tuple, Iterable
import logging

from sqlalchemy import select, update, func, and_, or_, case, true
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import BankImportDB, BankTransactionDB
from reconciliation.display_labels import parsed_type_label, match_status_label, confidence_label
from reconciliation.errors import ReconciliationValidationError, ReconciliationNotFoundError
from reconciliation.match_policy import (
    TransactionType,
    MatchStatus,
    MatchConfidence,
    MatchedType,
    ParsedType,
    ImportStatus,
)
from reconciliation.matching_rules.bank_rules import TransactionSnapshot

logger = logging.getLogger(__name__)


# ==================== CONVERSION HELPERS ====================

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def db_to_transaction_dict(db_obj: BankTransactionDB) -> Dict[str, Any]:
    """Convert database model to API dict"""
    return {
        "id": db_obj.id,
        "import_id": db_obj.import_id,
        "fit_id": db_obj.fit_id,
        "transaction_type": db_obj.transaction_type,
        "posted_date": _iso(db_obj.posted_date),
        "amount_cents": db_obj.amount_cents,
        "memo": db_obj.memo,
        "parsed_type": db_obj.parsed_type,
        "parsed_type_label": parsed_type_label(db_obj.parsed_type, db_obj.transaction_type),
        "parsed_name": db_obj.parsed_name,
        "parsed_document": db_obj.parsed_document,
        "is_balance_entry": bool(db_obj.is_balance_entry),
        "match_status": db_obj.match_status,
        "match_status_label": match_status_label(db_obj.match_status),
        "match_confidence": db_obj.match_confidence,
        "match_confidence_label": confidence_label(db_obj.match_confidence),
        "matched_invoice_id": db_obj.matched_invoice_id,
        "matched_expense_id": db_obj.matched_expense_id,
        "matched_at": _iso(db_obj.matched_at),
        "matched_by": db_obj.matched_by,
        "created_at": _iso(db_obj.created_at),
    }


def db_to_import_dict(db_obj: BankImportDB) -> Dict[str, Any]:
    """Convert database model to API dict"""
    return {
        "id": db_obj.id,
        "file_name": db_obj.file_name,
        "file_type": db_obj.file_type,
        "bank_id": db_obj.bank_id,
        "account_id": db_obj.account_id,
        "period_start": _iso(db_obj.period_start),
        "period_end": _iso(db_obj.period_end),
        "status": db_obj.status,
        "total_transactions": db_obj.total_transactions,
        "total_credits_cents": db_obj.total_credits_cents,
        "total_debits_cents": db_obj.total_debits_cents,
        "error_message": db_obj.error_message,
        "imported_by": db_obj.imported_by,
        "created_at": _iso(db_obj.created_at),
    }


def db_to_snapshot(db_obj: BankTransactionDB) -> TransactionSnapshot:
    """Freeze a row into the matching engine's input type"""
    return TransactionSnapshot(
        id=db_obj.id,
        transaction_type=TransactionType(db_obj.transaction_type),
        posted_date=db_obj.posted_date,
        amount_cents=db_obj.amount_cents,
        memo=db_obj.memo or "",
        parsed_name=db_obj.parsed_name,
        parsed_document=db_obj.parsed_document,
        parsed_type=ParsedType.parse(db_obj.parsed_type),
        is_balance_entry=bool(db_obj.is_balance_entry),
    )


def _not_balance_entry():
    return or_(
        BankTransactionDB.is_balance_entry.is_(None),
        BankTransactionDB.is_balance_entry.is_(False),
    )


# ==================== REPOSITORY ====================

class BankTransactionRepository:
    """Repository for bank transaction database operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ---------- Reads ----------

    async def get(self, transaction_id: str) -> Optional[BankTransactionDB]:
        """Get transaction by ID, always re-read from the database"""
        result = await self.session.execute(
            select(BankTransactionDB)
            .where(BankTransactionDB.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_unmatched(
        self,
        import_id: Optional[str] = None,
        limit: Optional[int] = None,
        after: Optional[Tuple[date, str]] = None
    ) -> List[BankTransactionDB]:
        """
        Unmatched, non-balance transactions, oldest first.

        Ignored and matched transactions are never returned. `after` is a
        (posted_date, id) keyset cursor; only rows strictly past it are read.
        """
        query = (
            select(BankTransactionDB)
            .where(
                and_(
                    BankTransactionDB.match_status == MatchStatus.UNMATCHED.value,
                    _not_balance_entry(),
                )
            )
            .order_by(BankTransactionDB.posted_date.asc(), BankTransactionDB.id.asc())
        )
        if import_id:
            query = query.where(BankTransactionDB.import_id == import_id)
        if after:
            after_date, after_id = after
            query = query.where(
                or_(
                    BankTransactionDB.posted_date > after_date,
                    and_(
                        BankTransactionDB.posted_date == after_date,
                        BankTransactionDB.id > after_id,
                    ),
                )
            )
        if limit:
            query = query.limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_transactions(
        self,
        import_id: Optional[str] = None,
        match_status: Optional[str] = None,
        transaction_type: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> Tuple[List[BankTransactionDB], int]:
        """List transactions with filters; returns (page, total count)."""
        conditions = []
        if import_id:
            conditions.append(BankTransactionDB.import_id == import_id)
        if match_status:
            conditions.append(BankTransactionDB.match_status == match_status)
        if transaction_type:
            conditions.append(BankTransactionDB.transaction_type == transaction_type)
        if date_from:
            conditions.append(BankTransactionDB.posted_date >= date_from)
        if date_to:
            conditions.append(BankTransactionDB.posted_date <= date_to)
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(
                or_(
                    func.lower(BankTransactionDB.memo).like(pattern),
                    func.lower(BankTransactionDB.parsed_name).like(pattern),
                )
            )

        where = and_(*conditions) if conditions else true()

        count_result = await self.session.execute(
            select(func.count(BankTransactionDB.id)).where(where)
        )
        total = count_result.scalar_one()

        result = await self.session.execute(
            select(BankTransactionDB)
            .where(where)
            .order_by(BankTransactionDB.posted_date.desc(), BankTransactionDB.id.asc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def get_import(self, import_id: str) -> Optional[BankImportDB]:
        result = await self.session.execute(
            select(BankImportDB).where(BankImportDB.id == import_id)
        )
        return result.scalar_one_or_none()

    async def list_imports(self, limit: int = 50, offset: int = 0) -> List[BankImportDB]:
        """Import batches, newest first"""
        result = await self.session.execute(
            select(BankImportDB)
            .order_by(BankImportDB.created_at.desc(), BankImportDB.id.asc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_import_summary(self, import_id: str) -> Dict[str, Any]:
        """KPIs for one import: counts, credit/debit totals and match progress."""
        bank_import = await self.get_import(import_id)
        if bank_import is None:
            raise ReconciliationNotFoundError(f"Import {import_id} not found")

        credit = BankTransactionDB.transaction_type == TransactionType.CREDIT.value
        debit = BankTransactionDB.transaction_type == TransactionType.DEBIT.value
        matched = BankTransactionDB.match_status.in_([
            MatchStatus.AUTO_MATCHED.value, MatchStatus.MANUAL_MATCHED.value
        ])

        result = await self.session.execute(
            select(
                func.count(BankTransactionDB.id),
                func.coalesce(func.sum(case((credit, BankTransactionDB.amount_cents), else_=0)), 0),
                func.coalesce(func.sum(case((debit, BankTransactionDB.amount_cents), else_=0)), 0),
                func.coalesce(func.sum(case((matched, 1), else_=0)), 0),
                func.coalesce(func.sum(case(
                    (BankTransactionDB.match_status == MatchStatus.UNMATCHED.value, 1), else_=0
                )), 0),
                func.coalesce(func.sum(case(
                    (BankTransactionDB.match_status == MatchStatus.IGNORED.value, 1), else_=0
                )), 0),
            ).where(BankTransactionDB.import_id == import_id)
        )
        total, credits, debits, matched_count, unmatched_count, ignored_count = result.one()

        return {
            "import_id": import_id,
            "file_name": bank_import.file_name,
            "total_transactions": total,
            "total_credits_cents": credits,
            "total_debits_cents": debits,
            "matched": matched_count,
            "unmatched": unmatched_count,
            "ignored": ignored_count,
        }

    # ---------- Ingest ----------

    async def insert_transactions(
        self,
        import_id: str,
        rows: Iterable[Dict[str, Any]]
    ) -> Dict[str, int]:
        """
        Insert normalized statement lines for an import.

        Rows whose fit_id already exists for the same account (or, without an
        account, within the same import) are skipped, as are balance lines.
        Import totals are updated from the inserted rows.
        """
        bank_import = await self.get_import(import_id)
        if bank_import is None:
            raise ReconciliationNotFoundError(f"Import {import_id} not found")

        rows = list(rows)
        for row in rows:
            self._validate_row(row)

        fit_ids = {row["fit_id"] for row in rows}
        existing_query = select(BankTransactionDB.fit_id).where(BankTransactionDB.fit_id.in_(fit_ids))
        if bank_import.account_id:
            existing_query = existing_query.join(
                BankImportDB, BankImportDB.id == BankTransactionDB.import_id
            ).where(BankImportDB.account_id == bank_import.account_id)
        else:
            existing_query = existing_query.where(BankTransactionDB.import_id == import_id)

        existing = set((await self.session.execute(existing_query)).scalars().all()) if fit_ids else set()

        inserted = duplicates = balance_entries = 0
        credits_cents = debits_cents = 0
        for row in rows:
            if row.get("is_balance_entry") or row.get("parsed_type") == ParsedType.BALANCE.value:
                balance_entries += 1
                continue
            if row["fit_id"] in existing:
                duplicates += 1
                continue
            existing.add(row["fit_id"])

            self.session.add(BankTransactionDB(
                import_id=import_id,
                fit_id=row["fit_id"],
                transaction_type=row["transaction_type"],
                posted_date=row["posted_date"],
                amount_cents=row["amount_cents"],
                memo=row.get("memo") or "",
                parsed_type=row.get("parsed_type"),
                parsed_name=row.get("parsed_name"),
                parsed_document=row.get("parsed_document"),
                is_balance_entry=False,
                match_status=MatchStatus.UNMATCHED.value,
            ))
            inserted += 1
            if row["transaction_type"] == TransactionType.CREDIT.value:
                credits_cents += row["amount_cents"]
            else:
                debits_cents += row["amount_cents"]

        bank_import.total_transactions = (bank_import.total_transactions or 0) + inserted
        bank_import.total_credits_cents = (bank_import.total_credits_cents or 0) + credits_cents
        bank_import.total_debits_cents = (bank_import.total_debits_cents or 0) + debits_cents
        bank_import.status = ImportStatus.COMPLETED.value
        await self.session.flush()

        logger.info(
            f"Import {import_id}: inserted {inserted}, duplicates {duplicates}, "
            f"balance entries {balance_entries}"
        )
        return {
            "inserted": inserted,
            "duplicates": duplicates,
            "balance_entries": balance_entries,
        }

    @staticmethod
    def _validate_row(row: Dict[str, Any]) -> None:
        if not row.get("fit_id"):
            raise ReconciliationValidationError("fit_id is required", parameter="fit_id")
        if row.get("transaction_type") not in {t.value for t in TransactionType}:
            raise ReconciliationValidationError(
                f"Invalid transaction_type: {row.get('transaction_type')}",
                parameter="transaction_type"
            )
        amount = row.get("amount_cents")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise ReconciliationValidationError(
                "amount_cents must be a non-negative integer", parameter="amount_cents"
            )
        if not isinstance(row.get("posted_date"), date):
            raise ReconciliationValidationError("posted_date is required", parameter="posted_date")

    # ---------- Lifecycle writes ----------

    async def mark_matched(
        self,
        transaction_id: str,
        matched_type: MatchedType,
        matched_id: str,
        status: MatchStatus,
        confidence: MatchConfidence,
        actor: str
    ) -> bool:
        """Set match fields; only succeeds while the transaction is unmatched."""
        values = {
            "match_status": status.value,
            "match_confidence": confidence.value,
            "matched_invoice_id": matched_id if matched_type == MatchedType.INVOICE else None,
            "matched_expense_id": matched_id if matched_type == MatchedType.EXPENSE else None,
            "matched_at": datetime.now(timezone.utc),
            "matched_by": actor,
        }
        result = await self.session.execute(
            update(BankTransactionDB)
            .where(
                and_(
                    BankTransactionDB.id == transaction_id,
                    BankTransactionDB.match_status == MatchStatus.UNMATCHED.value,
                )
            )
            .values(**values)
        )
        return result.rowcount > 0

    async def clear_match(self, transaction_id: str, current_status: str) -> bool:
        """Return a matched transaction to unmatched with all match fields null."""
        result = await self.session.execute(
            update(BankTransactionDB)
            .where(
                and_(
                    BankTransactionDB.id == transaction_id,
                    BankTransactionDB.match_status == current_status,
                )
            )
            .values(
                match_status=MatchStatus.UNMATCHED.value,
                match_confidence=None,
                matched_invoice_id=None,
                matched_expense_id=None,
                matched_at=None,
                matched_by=None,
            )
        )
        return result.rowcount > 0

    async def mark_ignored(self, transaction_id: str) -> bool:
        result = await self.session.execute(
            update(BankTransactionDB)
            .where(
                and_(
                    BankTransactionDB.id == transaction_id,
                    BankTransactionDB.match_status == MatchStatus.UNMATCHED.value,
                )
            )
            .values(match_status=MatchStatus.IGNORED.value)
        )
        return result.rowcount > 0
