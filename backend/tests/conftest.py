"""
Shared fixtures for the reconciliation tests.

Every test gets its own SQLite database file, so tests that need two
independent sessions (concurrent approvals) see real committed state.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("ENVIRONMENT", "test")

import uuid
from datetime import date
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import select

from database.connection import Base, build_engine, build_session_factory
from database.reconciliation_models import (
    BankImportDB,
    BankTransactionDB,
    StudentDB,
    SupplierDB,
    InvoiceDB,
    ExpenseDB,
    ReconciliationAuditLogDB,
)
from reconciliation.match_policy import MatchPolicy
from reconciliation.services.reconciliation_service import ReconciliationService


class Seeder:
    """Inserts committed rows through a throwaway session and returns their ids."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, obj) -> str:
        async with self.session_factory() as session:
            session.add(obj)
            await session.commit()
            return obj.id

    async def bank_import(self, account_id: Optional[str] = None, file_name: str = "extrato.ofx") -> str:
        return await self._add(BankImportDB(
            file_name=file_name,
            account_id=account_id,
            status="completed",
        ))

    async def transaction(
        self,
        import_id: str,
        amount_cents: int,
        posted_date: date,
        transaction_type: str = "credit",
        parsed_name: Optional[str] = None,
        parsed_document: Optional[str] = None,
        memo: str = "",
        parsed_type: Optional[str] = None,
        match_status: str = "unmatched",
        is_balance_entry: bool = False,
    ) -> str:
        return await self._add(BankTransactionDB(
            import_id=import_id,
            fit_id=f"FIT{uuid.uuid4().hex[:12]}",
            transaction_type=transaction_type,
            posted_date=posted_date,
            amount_cents=amount_cents,
            memo=memo,
            parsed_type=parsed_type,
            parsed_name=parsed_name,
            parsed_document=parsed_document,
            is_balance_entry=is_balance_entry,
            match_status=match_status,
        ))

    async def student(self, full_name: str, cpf: Optional[str] = None) -> str:
        return await self._add(StudentDB(full_name=full_name, cpf=cpf))

    async def supplier(self, name: str, cnpj: Optional[str] = None) -> str:
        return await self._add(SupplierDB(name=name, cnpj=cnpj))

    async def invoice(
        self,
        amount_cents: int,
        due_date: date,
        student_id: Optional[str] = None,
        status: str = "pending",
        payment_date: Optional[date] = None,
    ) -> str:
        return await self._add(InvoiceDB(
            student_id=student_id,
            amount_cents=amount_cents,
            due_date=due_date,
            status=status,
            payment_date=payment_date,
            reference_month=due_date.strftime("%Y-%m"),
        ))

    async def expense(
        self,
        amount_cents: int,
        due_date: date,
        description: str = "Despesa diversa",
        supplier_id: Optional[str] = None,
        status: str = "pending",
    ) -> str:
        return await self._add(ExpenseDB(
            description=description,
            supplier_id=supplier_id,
            amount_cents=amount_cents,
            due_date=due_date,
            status=status,
        ))

    async def fetch(self, model, obj_id: str):
        async with self.session_factory() as session:
            result = await session.execute(select(model).where(model.id == obj_id))
            return result.unique().scalar_one_or_none()

    async def audit_rows(self, transaction_id: Optional[str] = None):
        async with self.session_factory() as session:
            query = select(ReconciliationAuditLogDB).order_by(ReconciliationAuditLogDB.timestamp.asc())
            if transaction_id:
                query = query.where(ReconciliationAuditLogDB.transaction_id == transaction_id)
            return list((await session.execute(query)).scalars().all())


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database with every table created."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciliation.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def policy():
    return MatchPolicy()


@pytest.fixture
def service(db, policy):
    return ReconciliationService(db, policy=policy, reject_reverts_obligation=True)
