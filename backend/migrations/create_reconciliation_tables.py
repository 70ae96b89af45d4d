"""
Database Migration: Create Reconciliation Tables

Creates the bank import, bank transaction and reconciliation audit tables
(plus the invoice/expense/student/supplier tables when they do not exist
yet), then the PostgreSQL-only indexes the ORM models cannot express.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from database import engine, Base


POSTGRES_STATEMENTS = [
    # Matching only ever reads unmatched rows, oldest first
    """
    CREATE INDEX IF NOT EXISTS idx_bank_tx_unmatched
        ON public.bank_transactions(posted_date, id)
        WHERE match_status = 'unmatched'
    """,

    # fit_id lookups during import deduplication
    "CREATE INDEX IF NOT EXISTS idx_bank_tx_fit_id ON public.bank_transactions(fit_id)",

    # Open obligation pools by amount
    """
    CREATE INDEX IF NOT EXISTS idx_invoices_open_amount
        ON public.invoices(amount_cents)
        WHERE status IN ('pending', 'overdue')
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_expenses_open_amount
        ON public.expenses(amount_cents)
        WHERE status = 'pending'
    """,
]


async def create_tables():
    """Create the reconciliation tables."""
    print("Creating reconciliation tables...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        print(f"  ✓ {len(Base.metadata.tables)} tables ensured")

        if engine.dialect.name != "postgresql":
            print("  - Skipping PostgreSQL-only indexes")
        else:
            for i, sql in enumerate(POSTGRES_STATEMENTS):
                await conn.execute(text(sql))
                print(f"  ✓ Statement {i+1}/{len(POSTGRES_STATEMENTS)} executed")

    print("\n✅ Reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
