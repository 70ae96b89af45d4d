from .connection import get_db, engine, AsyncSessionLocal, init_db, Base

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    BankImportDB, BankTransactionDB,
    StudentDB, SupplierDB, InvoiceDB, ExpenseDB,
    ReconciliationAuditLogDB
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    # Reconciliation models
    'BankImportDB', 'BankTransactionDB',
    'StudentDB', 'SupplierDB', 'InvoiceDB', 'ExpenseDB',
    'ReconciliationAuditLogDB',
]
