"""
Studio Core - Bank Reconciliation Database Models

Tables:
- bank_imports: One row per imported bank statement
- bank_transactions: Normalized statement lines with their match lifecycle
- students / suppliers: Identity data used for payer/payee matching (read-only here)
- invoices / expenses: Open obligations, the only valid match targets
- reconciliation_audit_log: Append-only trail of every workflow mutation

Invoices, expenses, students and suppliers are owned by the finance and
student workflows; reconciliation only reads them and writes
invoice/expense ``status`` + ``payment_date``.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Integer, BigInteger,
    ForeignKey, Index, JSON, CheckConstraint
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== IMPORT BATCHES ====================

class BankImportDB(Base):
    """
    A bank statement import batch (one OFX file).
    """
    __tablename__ = "bank_imports"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    file_name = Column(Text, nullable=False)
    file_type = Column(String(10), nullable=False, default="ofx")
    bank_id = Column(String(20), nullable=True)
    account_id = Column(String(50), nullable=True, index=True)
    period_start = Column(Date, nullable=True)
    period_end = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="processing")
    total_transactions = Column(Integer, nullable=True)
    total_credits_cents = Column(BigInteger, nullable=True)
    total_debits_cents = Column(BigInteger, nullable=True)
    error_message = Column(Text, nullable=True)
    imported_by = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    transactions = relationship("BankTransactionDB", back_populates="bank_import")

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'completed', 'failed')",
            name="ck_bank_imports_status"
        ),
    )


# ==================== BANK TRANSACTIONS ====================

class BankTransactionDB(Base):
    """
    A single bank statement line.

    amount_cents is always a positive magnitude; the sign is implied by
    transaction_type. At most one of matched_invoice_id / matched_expense_id
    is set, and each obligation can be referenced by one transaction only.
    """
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    import_id = Column(String(36), ForeignKey("bank_imports.id", ondelete="CASCADE"), nullable=False, index=True)
    fit_id = Column(String(255), nullable=False)

    # Statement data
    transaction_type = Column(String(10), nullable=False)
    posted_date = Column(Date, nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    memo = Column(Text, nullable=False, default="")

    # Importer extraction (read-only for reconciliation)
    parsed_type = Column(String(30), nullable=True)
    parsed_name = Column(Text, nullable=True)
    parsed_document = Column(String(20), nullable=True)
    is_balance_entry = Column(Boolean, nullable=True, default=False)

    # Match lifecycle
    match_status = Column(String(20), nullable=False, default="unmatched", index=True)
    match_confidence = Column(String(10), nullable=True)
    matched_invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True, unique=True)
    matched_expense_id = Column(String(36), ForeignKey("expenses.id"), nullable=True, unique=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)
    matched_by = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)

    bank_import = relationship("BankImportDB", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("transaction_type IN ('credit', 'debit')", name="ck_bank_tx_type"),
        CheckConstraint("amount_cents >= 0", name="ck_bank_tx_amount_positive"),
        CheckConstraint(
            "match_status IN ('unmatched', 'auto_matched', 'manual_matched', 'ignored')",
            name="ck_bank_tx_match_status"
        ),
        CheckConstraint(
            "match_confidence IS NULL OR match_confidence IN ('high', 'medium', 'low', 'manual')",
            name="ck_bank_tx_match_confidence"
        ),
        CheckConstraint(
            "matched_invoice_id IS NULL OR matched_expense_id IS NULL",
            name="ck_bank_tx_single_target"
        ),
        Index('ix_bank_tx_import_fit', 'import_id', 'fit_id', unique=True),
        Index('ix_bank_tx_status_date', 'match_status', 'posted_date'),
    )


# ==================== IDENTITY ====================

class StudentDB(Base):
    """Studio student; pays invoices."""
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    full_name = Column(Text, nullable=False)
    cpf = Column(String(20), nullable=True)


class SupplierDB(Base):
    """Expense payee."""
    __tablename__ = "suppliers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(Text, nullable=False)
    cnpj = Column(String(20), nullable=True)


# ==================== OBLIGATIONS ====================

class InvoiceDB(Base):
    """
    Accounts receivable: a student's monthly fee or one-off charge.
    """
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=True, index=True)
    contract_id = Column(String(36), nullable=True)
    reference_month = Column(String(7), nullable=True)
    amount_cents = Column(BigInteger, nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    student = relationship("StudentDB", lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'overdue', 'cancelled')",
            name="ck_invoices_status"
        ),
    )


class ExpenseDB(Base):
    """
    Accounts payable: rent, utilities, supplier bills.
    """
    __tablename__ = "expenses"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    description = Column(Text, nullable=False)
    category_id = Column(String(36), nullable=True)
    supplier_id = Column(String(36), ForeignKey("suppliers.id"), nullable=True, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    supplier = relationship("SupplierDB", lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'cancelled')",
            name="ck_expenses_status"
        ),
    )


# ==================== AUDIT ====================

class ReconciliationAuditLogDB(Base):
    """
    Append-only trail of reconciliation decisions.

    Written in the same database transaction as the change it records.
    """
    __tablename__ = "reconciliation_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    action = Column(String(50), nullable=False)
    actor = Column(String(100), nullable=False)

    transaction_id = Column(String(36), nullable=False, index=True)
    obligation_type = Column(String(10), nullable=True)
    obligation_id = Column(String(36), nullable=True)

    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    confidence = Column(String(10), nullable=True)
    details = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), default=utc_now, index=True)

    __table_args__ = (
        Index('ix_recon_audit_obligation', 'obligation_type', 'obligation_id', 'timestamp'),
    )


__all__ = [
    'BankImportDB',
    'BankTransactionDB',
    'StudentDB',
    'SupplierDB',
    'InvoiceDB',
    'ExpenseDB',
    'ReconciliationAuditLogDB',
]
