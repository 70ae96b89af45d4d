"""
Open Obligations View

Read projection of invoices (pending/overdue) and expenses (pending), the
only valid match targets, plus the two writes reconciliation is allowed to
make on them: mark paid and reopen. Both writes are compare-and-set on the
current status.
"""

from datetime import date
from typing import List, Optional, Dict, Any, Iterable, Union
import logging

from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import InvoiceDB, ExpenseDB, StudentDB, SupplierDB
from reconciliation.match_policy import (
    MatchedType,
    InvoiceStatus,
    ExpenseStatus,
    OPEN_INVOICE_STATUSES,
    OPEN_EXPENSE_STATUSES,
)
from reconciliation.matching_rules.bank_rules import ObligationSnapshot

logger = logging.getLogger(__name__)

ObligationRow = Union[InvoiceDB, ExpenseDB]

PAID_STATUS = {
    MatchedType.INVOICE: InvoiceStatus.PAID.value,
    MatchedType.EXPENSE: ExpenseStatus.PAID.value,
}


def _model_for(matched_type: MatchedType):
    return InvoiceDB if matched_type == MatchedType.INVOICE else ExpenseDB


class OpenObligationsView:
    """Repository for the open invoice/expense projection"""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ---------- Engine input ----------

    async def _open_invoices(self, search: Optional[str] = None, limit: Optional[int] = None):
        query = (
            select(
                InvoiceDB.id, InvoiceDB.amount_cents, InvoiceDB.due_date, InvoiceDB.status,
                InvoiceDB.reference_month, InvoiceDB.notes,
                StudentDB.full_name, StudentDB.cpf,
            )
            .outerjoin(StudentDB, StudentDB.id == InvoiceDB.student_id)
            .where(InvoiceDB.status.in_(sorted(OPEN_INVOICE_STATUSES)))
            .order_by(InvoiceDB.due_date.desc(), InvoiceDB.id.asc())
        )
        if search:
            query = query.where(func.lower(StudentDB.full_name).like(f"%{search.lower()}%"))
        if limit:
            query = query.limit(limit)
        return (await self.session.execute(query)).all()

    async def _open_expenses(self, search: Optional[str] = None, limit: Optional[int] = None):
        query = (
            select(
                ExpenseDB.id, ExpenseDB.amount_cents, ExpenseDB.due_date, ExpenseDB.status,
                ExpenseDB.description, ExpenseDB.category_id,
                SupplierDB.name, SupplierDB.cnpj,
            )
            .outerjoin(SupplierDB, SupplierDB.id == ExpenseDB.supplier_id)
            .where(ExpenseDB.status.in_(sorted(OPEN_EXPENSE_STATUSES)))
            .order_by(ExpenseDB.due_date.desc(), ExpenseDB.id.asc())
        )
        if search:
            pattern = f"%{search.lower()}%"
            query = query.where(
                or_(
                    func.lower(ExpenseDB.description).like(pattern),
                    func.lower(SupplierDB.name).like(pattern),
                )
            )
        if limit:
            query = query.limit(limit)
        return (await self.session.execute(query)).all()

    async def list_open_snapshots(
        self,
        matched_types: Iterable[MatchedType] = (MatchedType.INVOICE, MatchedType.EXPENSE)
    ) -> List[ObligationSnapshot]:
        """Every open obligation of the requested kinds, frozen for the engine."""
        snapshots: List[ObligationSnapshot] = []
        matched_types = set(matched_types)

        if MatchedType.INVOICE in matched_types:
            for row in await self._open_invoices():
                snapshots.append(ObligationSnapshot(
                    id=row.id,
                    obligation_type=MatchedType.INVOICE,
                    amount_cents=row.amount_cents,
                    due_date=row.due_date,
                    status=row.status,
                    party_name=row.full_name,
                    party_document=row.cpf,
                    description=row.notes,
                ))

        if MatchedType.EXPENSE in matched_types:
            for row in await self._open_expenses():
                snapshots.append(ObligationSnapshot(
                    id=row.id,
                    obligation_type=MatchedType.EXPENSE,
                    amount_cents=row.amount_cents,
                    due_date=row.due_date,
                    status=row.status,
                    party_name=row.name,
                    party_document=row.cnpj,
                    description=row.description,
                ))

        return snapshots

    # ---------- Manual match listing ----------

    async def list_open(
        self,
        matched_type: MatchedType,
        search: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Open obligations for the manual match dialog, latest due date first."""
        if matched_type == MatchedType.INVOICE:
            return [
                {
                    "id": row.id,
                    "matched_type": MatchedType.INVOICE.value,
                    "amount_cents": row.amount_cents,
                    "due_date": row.due_date.isoformat(),
                    "status": row.status,
                    "reference_month": row.reference_month,
                    "party_name": row.full_name,
                }
                for row in await self._open_invoices(search, limit)
            ]

        return [
            {
                "id": row.id,
                "matched_type": MatchedType.EXPENSE.value,
                "amount_cents": row.amount_cents,
                "due_date": row.due_date.isoformat(),
                "status": row.status,
                "description": row.description,
                "party_name": row.name,
            }
            for row in await self._open_expenses(search, limit)
        ]

    # ---------- Single obligation ----------

    async def get(self, matched_type: MatchedType, obligation_id: str) -> Optional[ObligationRow]:
        model = _model_for(matched_type)
        result = await self.session.execute(
            select(model)
            .where(model.id == obligation_id)
            .execution_options(populate_existing=True)
        )
        return result.unique().scalar_one_or_none()

    async def mark_paid(
        self,
        matched_type: MatchedType,
        obligation_id: str,
        expected_status: str,
        payment_date: date
    ) -> bool:
        """
        Compare-and-set: status expected_status -> paid.

        Returns False when the row changed since it was read.
        """
        model = _model_for(matched_type)
        result = await self.session.execute(
            update(model)
            .where(and_(model.id == obligation_id, model.status == expected_status))
            .values(status=PAID_STATUS[matched_type], payment_date=payment_date)
        )
        return result.rowcount > 0

    async def reopen(
        self,
        matched_type: MatchedType,
        obligation_id: str,
        restore_status: str,
        payment_date: date
    ) -> bool:
        """Compare-and-set: paid on payment_date -> restore_status, payment_date cleared."""
        model = _model_for(matched_type)
        result = await self.session.execute(
            update(model)
            .where(
                and_(
                    model.id == obligation_id,
                    model.status == PAID_STATUS[matched_type],
                    model.payment_date == payment_date,
                )
            )
            .values(status=restore_status, payment_date=None)
        )
        return result.rowcount > 0
