"""
Tests for the Reconciliation Service

Runs the full workflow (matching, approve, reject, ignore, batch approve)
against a SQLite database.

Run with: pytest tests/test_reconciliation_service.py -v
"""

import pytest
from datetime import date
from unittest.mock import AsyncMock, patch

from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from database.reconciliation_models import (
    BankImportDB,
    BankTransactionDB,
    InvoiceDB,
    ExpenseDB,
)
from reconciliation.errors import (
    ReconciliationValidationError,
    MatchConflictError,
    ReconciliationNotFoundError,
    ReconciliationInfraError,
)
from reconciliation.match_policy import MatchPolicy
from reconciliation.services.reconciliation_service import (
    ReconciliationService,
    ReconciliationAuditEvent,
)
from reconciliation.services.transaction_store import BankTransactionRepository

MARCH_10 = date(2024, 3, 10)
MISSING_ID = "00000000-0000-4000-8000-000000000000"


async def seed_maria(seed):
    """Credit of R$ 150,00 from Maria Silva and her invoice due the same day."""
    student_id = await seed.student("Maria Silva", cpf="123.456.789-09")
    invoice_id = await seed.invoice(15000, MARCH_10, student_id=student_id)
    import_id = await seed.bank_import()
    tx_id = await seed.transaction(import_id, 15000, MARCH_10, parsed_name="MARIA SILVA")
    return import_id, tx_id, invoice_id


# ==================== MATCHING RUN ====================

class TestRunMatching:
    """Test matching runs and auto-apply."""

    @pytest.mark.asyncio
    async def test_auto_apply_high_confidence(self, service, seed):
        """Test a high confidence suggestion is applied when auto_apply is set."""
        _, tx_id, invoice_id = await seed_maria(seed)

        result = await service.run_matching(auto_apply=True)

        assert len(result.matches) == 1
        match = result.matches[0]
        assert match["transaction_id"] == tx_id
        assert match["matched_id"] == invoice_id
        assert match["confidence"] == "high"
        assert match["applied"] is True
        assert result.stats["auto_applied"] == 1

        invoice = await seed.fetch(InvoiceDB, invoice_id)
        assert invoice.status == "paid"
        assert invoice.payment_date == MARCH_10

        tx = await seed.fetch(BankTransactionDB, tx_id)
        assert tx.match_status == "auto_matched"
        assert tx.match_confidence == "high"
        assert tx.matched_invoice_id == invoice_id
        assert tx.matched_by == "system"
        assert tx.matched_at is not None

        audit = await seed.audit_rows(tx_id)
        assert len(audit) == 1
        assert audit[0].action == ReconciliationAuditEvent.MATCH_APPROVED
        assert audit[0].previous_status == "pending"
        assert audit[0].new_status == "paid"
        assert audit[0].details["match_status"] == "auto_matched"

    @pytest.mark.asyncio
    async def test_medium_suggestion_is_not_applied(self, service, seed):
        """Test a near-amount expense match is only suggested."""
        expense_id = await seed.expense(10000, MARCH_10, description="Material de limpeza")
        import_id = await seed.bank_import()
        tx_id = await seed.transaction(
            import_id, 9950, date(2024, 3, 12), transaction_type="debit", memo="PAGAMENTO BOLETO"
        )

        result = await service.run_matching(auto_apply=True)

        assert len(result.matches) == 1
        assert result.matches[0]["matched_id"] == expense_id
        assert result.matches[0]["confidence"] == "medium"
        assert result.matches[0]["applied"] is False
        assert result.stats["medium_confidence"] == 1
        assert result.stats["auto_applied"] == 0

        expense = await seed.fetch(ExpenseDB, expense_id)
        assert expense.status == "pending"
        tx = await seed.fetch(BankTransactionDB, tx_id)
        assert tx.match_status == "unmatched"

    @pytest.mark.asyncio
    async def test_suggestions_without_auto_apply_write_nothing(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)

        result = await service.run_matching(auto_apply=False)

        assert result.matches[0]["confidence"] == "high"
        assert result.matches[0]["applied"] is False
        assert (await seed.fetch(InvoiceDB, invoice_id)).status == "pending"
        assert (await seed.fetch(BankTransactionDB, tx_id)).match_status == "unmatched"
        assert await seed.audit_rows() == []

    @pytest.mark.asyncio
    async def test_run_is_idempotent_without_writes(self, service, seed):
        await seed_maria(seed)
        import_id = await seed.bank_import()
        await seed.invoice(5000, date(2024, 3, 14))
        await seed.transaction(import_id, 5000, date(2024, 3, 12))

        first = await service.run_matching()
        second = await service.run_matching()

        def key(result):
            return [(m["transaction_id"], m["matched_id"], m["confidence"]) for m in result.matches]

        assert key(first) == key(second)
        assert first.run_id != second.run_id

    @pytest.mark.asyncio
    async def test_run_restricted_to_import(self, service, seed):
        import_a = await seed.bank_import(file_name="a.ofx")
        import_b = await seed.bank_import(file_name="b.ofx")
        await seed.invoice(5000, MARCH_10)
        await seed.invoice(7000, MARCH_10)
        tx_a = await seed.transaction(import_a, 5000, MARCH_10)
        await seed.transaction(import_b, 7000, MARCH_10)

        result = await service.run_matching(import_id=import_a)

        assert [m["transaction_id"] for m in result.matches] == [tx_a]
        assert result.stats["total_transactions"] == 1

    @pytest.mark.asyncio
    async def test_run_unknown_import(self, service):
        with pytest.raises(ReconciliationNotFoundError):
            await service.run_matching(import_id=MISSING_ID)

        assert not service.db.in_transaction()

    @pytest.mark.asyncio
    async def test_capped_run_resumes_from_cursor(self, db, seed):
        """Test a capped run hands back a cursor that moves past unmatchable transactions."""
        service = ReconciliationService(db, policy=MatchPolicy(max_transactions_per_run=2))
        import_id = await seed.bank_import()
        await seed.transaction(import_id, 111, date(2024, 1, 1))
        last_read = await seed.transaction(import_id, 222, date(2024, 1, 2))
        student_id = await seed.student("Maria Silva")
        invoice_id = await seed.invoice(15000, MARCH_10, student_id=student_id)
        tx_id = await seed.transaction(import_id, 15000, MARCH_10, parsed_name="MARIA SILVA")

        first = await service.run_matching()
        repeated = await service.run_matching()

        assert first.matches == []
        assert first.stats["total_transactions"] == 2
        assert first.next_cursor == {"after_posted_date": "2024-01-02", "after_id": last_read}
        assert repeated.next_cursor == first.next_cursor

        resumed = await service.run_matching(
            after_posted_date=date.fromisoformat(first.next_cursor["after_posted_date"]),
            after_id=first.next_cursor["after_id"],
        )

        assert len(resumed.matches) == 1
        assert resumed.matches[0]["transaction_id"] == tx_id
        assert resumed.matches[0]["matched_id"] == invoice_id
        assert resumed.next_cursor is None
        assert resumed.to_dict()["next_cursor"] is None

    @pytest.mark.asyncio
    async def test_uncapped_run_has_no_cursor(self, service, seed):
        await seed_maria(seed)

        result = await service.run_matching()

        assert result.next_cursor is None

    @pytest.mark.asyncio
    async def test_half_cursor_is_rejected(self, service):
        with pytest.raises(ReconciliationValidationError) as exc:
            await service.run_matching(after_posted_date=MARCH_10)

        assert exc.value.parameter == "after_id"

    @pytest.mark.asyncio
    async def test_ignored_and_balance_transactions_are_excluded(self, service, seed):
        import_id = await seed.bank_import()
        await seed.invoice(5000, MARCH_10)
        await seed.transaction(import_id, 5000, MARCH_10, match_status="ignored")
        await seed.transaction(import_id, 5000, MARCH_10, is_balance_entry=True)

        result = await service.run_matching()

        assert result.matches == []
        assert result.stats["total_transactions"] == 0

    @pytest.mark.asyncio
    async def test_auto_apply_never_double_matches(self, service, seed):
        """Test only one of two transactions settles a contested invoice."""
        student_id = await seed.student("Joao Souza")
        invoice_id = await seed.invoice(5000, MARCH_10, student_id=student_id)
        import_id = await seed.bank_import()
        await seed.transaction(import_id, 5000, MARCH_10, parsed_name="JOAO SOUZA")
        await seed.transaction(import_id, 5000, MARCH_10, parsed_name="JOAO SOUZA")

        result = await service.run_matching(auto_apply=True)

        assert len(result.matches) == 1
        assert result.stats["auto_applied"] == 1
        summary = await service.list_transactions(match_status="auto_matched")
        assert summary["total"] == 1
        assert summary["transactions"][0]["matched_invoice_id"] == invoice_id


# ==================== APPROVE ====================

class TestApproveMatch:
    """Test manual approval."""

    @pytest.mark.asyncio
    async def test_approve_marks_both_sides(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)

        result = await service.approve_match(tx_id, "invoice", invoice_id, actor="user-1")

        assert result["success"] is True
        assert result["transaction"]["match_status"] == "manual_matched"
        assert result["transaction"]["match_confidence"] == "manual"
        assert result["transaction"]["matched_by"] == "user-1"
        assert result["obligation"]["previous_status"] == "pending"
        assert result["obligation"]["status"] == "paid"

        invoice = await seed.fetch(InvoiceDB, invoice_id)
        assert invoice.status == "paid"
        assert invoice.payment_date == MARCH_10

    @pytest.mark.asyncio
    async def test_approve_keeps_given_confidence(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)

        result = await service.approve_match(tx_id, "invoice", invoice_id, confidence="high")

        assert result["transaction"]["match_status"] == "manual_matched"
        assert result["transaction"]["match_confidence"] == "high"

    @pytest.mark.asyncio
    async def test_approve_paid_invoice_conflicts(self, service, seed):
        """Test approving against an already paid invoice leaves the transaction unmatched."""
        import_id = await seed.bank_import()
        invoice_id = await seed.invoice(15000, MARCH_10, status="paid", payment_date=MARCH_10)
        tx_id = await seed.transaction(import_id, 15000, MARCH_10)

        with pytest.raises(MatchConflictError):
            await service.approve_match(tx_id, "invoice", invoice_id)

        tx = await seed.fetch(BankTransactionDB, tx_id)
        assert tx.match_status == "unmatched"
        assert tx.matched_invoice_id is None
        assert await seed.audit_rows() == []

    @pytest.mark.asyncio
    async def test_second_transaction_cannot_take_same_invoice(self, session_factory, seed, policy):
        """Test two sessions racing for one invoice: exactly one wins."""
        import_id = await seed.bank_import()
        invoice_id = await seed.invoice(5000, MARCH_10)
        tx_1 = await seed.transaction(import_id, 5000, MARCH_10)
        tx_2 = await seed.transaction(import_id, 5000, MARCH_10)

        async with session_factory() as session_a, session_factory() as session_b:
            service_a = ReconciliationService(session_a, policy=policy)
            service_b = ReconciliationService(session_b, policy=policy)

            # Both sides have seen the invoice as pending
            assert len(await service_a.list_open_obligations("credit")) == 1
            assert len(await service_b.list_open_obligations("credit")) == 1
            await session_a.rollback()
            await session_b.rollback()

            await service_a.approve_match(tx_1, "invoice", invoice_id)
            with pytest.raises(MatchConflictError):
                await service_b.approve_match(tx_2, "invoice", invoice_id)

        assert (await seed.fetch(BankTransactionDB, tx_1)).match_status == "manual_matched"
        assert (await seed.fetch(BankTransactionDB, tx_2)).match_status == "unmatched"

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_conflicts(self, session_factory, seed, policy):
        """Test an approval that read the invoice as pending loses once another session pays it."""
        import_id = await seed.bank_import()
        invoice_id = await seed.invoice(5000, MARCH_10)
        tx_1 = await seed.transaction(import_id, 5000, MARCH_10)
        tx_2 = await seed.transaction(import_id, 5000, date(2024, 3, 11))

        async with session_factory() as session_a, session_factory() as session_b:
            service_a = ReconciliationService(session_a, policy=policy)
            service_b = ReconciliationService(session_b, policy=policy)
            read_invoice = service_b.obligations.get

            async def read_then_lose_race(matched_type, obligation_id):
                stale = await read_invoice(matched_type, obligation_id)
                await service_a.approve_match(tx_1, "invoice", invoice_id)
                return stale

            with patch.object(service_b.obligations, "get", side_effect=read_then_lose_race):
                with pytest.raises(MatchConflictError) as exc:
                    await service_b.approve_match(tx_2, "invoice", invoice_id)

        assert "changed by another operation" in exc.value.message
        assert (await seed.fetch(BankTransactionDB, tx_1)).match_status == "manual_matched"
        tx = await seed.fetch(BankTransactionDB, tx_2)
        assert tx.match_status == "unmatched"
        assert tx.matched_invoice_id is None

        invoice = await seed.fetch(InvoiceDB, invoice_id)
        assert invoice.status == "paid"
        assert invoice.payment_date == MARCH_10

        audit = await seed.audit_rows()
        assert len(audit) == 1
        assert audit[0].transaction_id == tx_1

    @pytest.mark.asyncio
    async def test_approve_matched_transaction_conflicts(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)
        other_invoice = await seed.invoice(15000, MARCH_10)
        await service.approve_match(tx_id, "invoice", invoice_id)

        with pytest.raises(MatchConflictError):
            await service.approve_match(tx_id, "invoice", other_invoice)

        assert (await seed.fetch(InvoiceDB, other_invoice)).status == "pending"

    @pytest.mark.asyncio
    async def test_approve_wrong_polarity(self, service, seed):
        """Test a debit cannot settle an invoice."""
        import_id = await seed.bank_import()
        invoice_id = await seed.invoice(15000, MARCH_10)
        tx_id = await seed.transaction(import_id, 15000, MARCH_10, transaction_type="debit")

        with pytest.raises(ReconciliationValidationError):
            await service.approve_match(tx_id, "invoice", invoice_id)

        assert (await seed.fetch(InvoiceDB, invoice_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_approve_expense(self, service, seed):
        supplier_id = await seed.supplier("Energisa", cnpj="12.345.678/0001-90")
        expense_id = await seed.expense(32000, MARCH_10, description="Conta de luz", supplier_id=supplier_id)
        import_id = await seed.bank_import()
        tx_id = await seed.transaction(import_id, 32000, date(2024, 3, 11), transaction_type="debit")

        result = await service.approve_match(tx_id, "expense", expense_id)

        assert result["transaction"]["matched_expense_id"] == expense_id
        assert result["transaction"]["matched_invoice_id"] is None
        expense = await seed.fetch(ExpenseDB, expense_id)
        assert expense.status == "paid"
        assert expense.payment_date == date(2024, 3, 11)

    @pytest.mark.asyncio
    async def test_approve_unknown_transaction(self, service, seed):
        invoice_id = await seed.invoice(15000, MARCH_10)

        with pytest.raises(ReconciliationNotFoundError):
            await service.approve_match(MISSING_ID, "invoice", invoice_id)

    @pytest.mark.asyncio
    async def test_approve_unknown_invoice(self, service, seed):
        import_id = await seed.bank_import()
        tx_id = await seed.transaction(import_id, 15000, MARCH_10)

        with pytest.raises(ReconciliationNotFoundError):
            await service.approve_match(tx_id, "invoice", MISSING_ID)

    @pytest.mark.asyncio
    async def test_approve_invalid_matched_type(self, service, seed):
        import_id = await seed.bank_import()
        tx_id = await seed.transaction(import_id, 15000, MARCH_10)

        with pytest.raises(ReconciliationValidationError) as exc_info:
            await service.approve_match(tx_id, "payment", MISSING_ID)

        assert exc_info.value.parameter == "matched_type"

    @pytest.mark.asyncio
    async def test_approve_invalid_confidence(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)

        with pytest.raises(ReconciliationValidationError) as exc_info:
            await service.approve_match(tx_id, "invoice", invoice_id, confidence="certain")

        assert exc_info.value.parameter == "confidence"

    @pytest.mark.asyncio
    async def test_storage_failure_writes_nothing(self, service, seed):
        """Test a failed transaction write rolls back the obligation write."""
        _, tx_id, invoice_id = await seed_maria(seed)
        failure = OperationalError("UPDATE bank_transactions", {}, Exception("database is locked"))

        with patch.object(service.transactions, "mark_matched", AsyncMock(side_effect=failure)):
            with pytest.raises(ReconciliationInfraError):
                await service.approve_match(tx_id, "invoice", invoice_id)

        invoice = await seed.fetch(InvoiceDB, invoice_id)
        assert invoice.status == "pending"
        assert invoice.payment_date is None
        assert (await seed.fetch(BankTransactionDB, tx_id)).match_status == "unmatched"
        assert await seed.audit_rows() == []


# ==================== REJECT ====================

class TestRejectMatch:
    """Test rejecting matches and reopening obligations."""

    @pytest.mark.asyncio
    async def test_reject_clears_match_and_reopens(self, service, seed):
        import_id = await seed.bank_import()
        invoice_id = await seed.invoice(15000, date(2024, 3, 1), status="overdue")
        tx_id = await seed.transaction(import_id, 15000, MARCH_10)
        await service.approve_match(tx_id, "invoice", invoice_id)

        result = await service.reject_match(tx_id, actor="user-2")

        assert result["obligation_reverted"] is True
        tx = result["transaction"]
        assert tx["match_status"] == "unmatched"
        assert tx["match_confidence"] is None
        assert tx["matched_invoice_id"] is None
        assert tx["matched_expense_id"] is None
        assert tx["matched_at"] is None
        assert tx["matched_by"] is None

        invoice = await seed.fetch(InvoiceDB, invoice_id)
        assert invoice.status == "overdue"
        assert invoice.payment_date is None

        audit = await seed.audit_rows(tx_id)
        assert [row.action for row in audit] == [
            ReconciliationAuditEvent.MATCH_APPROVED,
            ReconciliationAuditEvent.MATCH_REJECTED,
        ]
        assert audit[1].actor == "user-2"
        assert audit[1].new_status == "overdue"

    @pytest.mark.asyncio
    async def test_rejected_transaction_can_be_matched_again(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)
        await service.approve_match(tx_id, "invoice", invoice_id)
        await service.reject_match(tx_id)

        result = await service.run_matching()

        assert [m["matched_id"] for m in result.matches] == [invoice_id]

    @pytest.mark.asyncio
    async def test_reject_keeps_obligation_paid_when_disabled(self, db, seed, policy):
        service = ReconciliationService(db, policy=policy, reject_reverts_obligation=False)
        _, tx_id, invoice_id = await seed_maria(seed)
        await service.approve_match(tx_id, "invoice", invoice_id)

        result = await service.reject_match(tx_id)

        assert result["obligation_reverted"] is False
        assert result["transaction"]["match_status"] == "unmatched"
        assert (await seed.fetch(InvoiceDB, invoice_id)).status == "paid"

    @pytest.mark.asyncio
    async def test_reject_keeps_obligation_changed_since_approval(self, service, seed, session_factory):
        _, tx_id, invoice_id = await seed_maria(seed)
        await service.approve_match(tx_id, "invoice", invoice_id)

        async with session_factory() as session:
            await session.execute(
                update(InvoiceDB)
                .where(InvoiceDB.id == invoice_id)
                .values(payment_date=date(2024, 3, 15))
            )
            await session.commit()

        result = await service.reject_match(tx_id)

        assert result["obligation_reverted"] is False
        invoice = await seed.fetch(InvoiceDB, invoice_id)
        assert invoice.status == "paid"
        assert invoice.payment_date == date(2024, 3, 15)

    @pytest.mark.asyncio
    async def test_reject_unmatched_is_noop(self, service, seed):
        import_id = await seed.bank_import()
        tx_id = await seed.transaction(import_id, 15000, MARCH_10)

        result = await service.reject_match(tx_id)

        assert result["success"] is True
        assert result["obligation_reverted"] is False
        assert result["transaction"]["match_status"] == "unmatched"
        assert await seed.audit_rows() == []

    @pytest.mark.asyncio
    async def test_reject_ignored_conflicts(self, service, seed):
        import_id = await seed.bank_import()
        tx_id = await seed.transaction(import_id, 15000, MARCH_10, match_status="ignored")

        with pytest.raises(MatchConflictError):
            await service.reject_match(tx_id)

    @pytest.mark.asyncio
    async def test_reject_unknown_transaction(self, service):
        with pytest.raises(ReconciliationNotFoundError):
            await service.reject_match(MISSING_ID)


# ==================== IGNORE ====================

class TestIgnoreTransaction:
    """Test ignoring transactions."""

    @pytest.mark.asyncio
    async def test_ignore_excludes_from_matching(self, service, seed):
        _, tx_id, _ = await seed_maria(seed)

        result = await service.ignore_transaction(tx_id, actor="user-3")

        assert result["transaction"]["match_status"] == "ignored"
        audit = await seed.audit_rows(tx_id)
        assert audit[0].action == ReconciliationAuditEvent.TRANSACTION_IGNORED
        assert audit[0].actor == "user-3"

        run = await service.run_matching(auto_apply=True)
        assert run.matches == []

    @pytest.mark.asyncio
    async def test_ignore_twice_is_noop(self, service, seed):
        _, tx_id, _ = await seed_maria(seed)
        await service.ignore_transaction(tx_id)

        result = await service.ignore_transaction(tx_id)

        assert result["transaction"]["match_status"] == "ignored"
        assert len(await seed.audit_rows(tx_id)) == 1

    @pytest.mark.asyncio
    async def test_ignore_matched_conflicts(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)
        await service.approve_match(tx_id, "invoice", invoice_id)

        with pytest.raises(MatchConflictError):
            await service.ignore_transaction(tx_id)

        assert (await seed.fetch(BankTransactionDB, tx_id)).match_status == "manual_matched"


# ==================== BATCH APPROVE ====================

class TestBatchApprove:
    """Test best-effort batch approval."""

    @pytest.mark.asyncio
    async def test_batch_reports_failures_per_item(self, service, seed):
        import_id = await seed.bank_import()
        invoice_1 = await seed.invoice(1000, MARCH_10)
        invoice_2 = await seed.invoice(2000, MARCH_10, status="paid", payment_date=MARCH_10)
        invoice_3 = await seed.invoice(3000, MARCH_10)
        tx_1 = await seed.transaction(import_id, 1000, MARCH_10)
        tx_2 = await seed.transaction(import_id, 2000, MARCH_10)
        tx_3 = await seed.transaction(import_id, 3000, MARCH_10)

        result = await service.batch_approve_matches([
            {"transaction_id": tx_1, "matched_type": "invoice", "matched_id": invoice_1, "confidence": "high"},
            {"transaction_id": tx_2, "matched_type": "invoice", "matched_id": invoice_2, "confidence": "medium"},
            {"transaction_id": tx_3, "matched_type": "invoice", "matched_id": invoice_3},
        ], actor="user-4")

        assert result.applied_count == 2
        assert result.applied_by_confidence == {"high": 1, "manual": 1}
        assert len(result.failures) == 1
        assert result.failures[0]["transaction_id"] == tx_2
        assert result.failures[0]["reason"] == "conflict"

        tx = await seed.fetch(BankTransactionDB, tx_1)
        assert tx.match_status == "manual_matched"
        assert tx.match_confidence == "high"
        assert (await seed.fetch(BankTransactionDB, tx_2)).match_status == "unmatched"
        assert (await seed.fetch(BankTransactionDB, tx_3)).match_confidence == "manual"

    @pytest.mark.asyncio
    async def test_batch_invalid_item_does_not_stop_batch(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)

        result = await service.batch_approve_matches([
            {"transaction_id": None, "matched_type": "invoice", "matched_id": invoice_id},
            {"transaction_id": tx_id, "matched_type": "invoice", "matched_id": invoice_id},
        ])

        assert result.applied_count == 1
        assert result.failures[0]["reason"] == "validation"

    @pytest.mark.asyncio
    async def test_empty_batch(self, service):
        result = await service.batch_approve_matches([])

        assert result.to_dict() == {"applied_count": 0, "applied_by_confidence": {}, "failures": []}


# ==================== QUERIES ====================

class TestQueries:
    """Test read operations."""

    @pytest.mark.asyncio
    async def test_find_candidates_is_ranked(self, service, seed):
        import_id = await seed.bank_import()
        student_id = await seed.student("Maria Silva")
        best = await seed.invoice(15000, MARCH_10, student_id=student_id)
        other = await seed.invoice(15000, date(2024, 3, 12))
        tx_id = await seed.transaction(import_id, 15000, MARCH_10, parsed_name="MARIA SILVA")

        result = await service.find_candidates(tx_id)

        assert [c["matched_id"] for c in result["candidates"]] == [best, other]
        assert result["candidates"][0]["confidence"] == "high"
        assert (await seed.fetch(InvoiceDB, best)).status == "pending"

    @pytest.mark.asyncio
    async def test_list_open_obligations_by_direction(self, service, seed):
        student_id = await seed.student("Ana Lima")
        invoice_id = await seed.invoice(5000, MARCH_10, student_id=student_id)
        await seed.invoice(5000, MARCH_10, status="paid", payment_date=MARCH_10)
        expense_id = await seed.expense(8000, MARCH_10, description="Aluguel")

        invoices = await service.list_open_obligations("credit")
        expenses = await service.list_open_obligations("debit")

        assert [o["id"] for o in invoices] == [invoice_id]
        assert invoices[0]["party_name"] == "Ana Lima"
        assert [o["id"] for o in expenses] == [expense_id]

        with pytest.raises(ReconciliationValidationError):
            await service.list_open_obligations("transfer")

    @pytest.mark.asyncio
    async def test_import_summary(self, service, seed):
        _, tx_id, invoice_id = await seed_maria(seed)
        import_id = (await seed.fetch(BankTransactionDB, tx_id)).import_id
        await seed.transaction(import_id, 4000, MARCH_10, transaction_type="debit")
        await seed.transaction(import_id, 1000, MARCH_10, match_status="ignored")
        await service.approve_match(tx_id, "invoice", invoice_id)

        summary = await service.get_import_summary(import_id)

        assert summary["total_transactions"] == 3
        assert summary["total_credits_cents"] == 16000
        assert summary["total_debits_cents"] == 4000
        assert summary["matched"] == 1
        assert summary["unmatched"] == 1
        assert summary["ignored"] == 1

        with pytest.raises(ReconciliationNotFoundError):
            await service.get_import_summary(MISSING_ID)

    @pytest.mark.asyncio
    async def test_transaction_labels(self, service, seed):
        import_id = await seed.bank_import()
        tx_id = await seed.transaction(import_id, 15000, MARCH_10, parsed_type="pix_received")

        tx = await service.get_transaction(tx_id)

        assert tx["parsed_type_label"] == "PIX Recebido"
        assert tx["match_status"] == "unmatched"


# ==================== IMPORT INGEST ====================

class TestInsertTransactions:
    """Test statement line ingestion."""

    @pytest.mark.asyncio
    async def test_insert_skips_duplicates_and_balance_lines(self, db, seed):
        import_1 = await seed.bank_import(account_id="0001-12345")
        import_2 = await seed.bank_import(account_id="0001-12345")
        repo = BankTransactionRepository(db)
        rows = [
            {"fit_id": "A1", "transaction_type": "credit", "posted_date": MARCH_10, "amount_cents": 15000},
            {"fit_id": "A2", "transaction_type": "debit", "posted_date": MARCH_10, "amount_cents": 4000},
            {"fit_id": "A3", "transaction_type": "credit", "posted_date": MARCH_10,
             "amount_cents": 999999, "parsed_type": "balance"},
        ]

        first = await repo.insert_transactions(import_1, rows)
        await db.commit()
        second = await repo.insert_transactions(import_2, rows[:1] + [
            {"fit_id": "A4", "transaction_type": "credit", "posted_date": MARCH_10, "amount_cents": 500},
        ])
        await db.commit()

        assert first == {"inserted": 2, "duplicates": 0, "balance_entries": 1}
        assert second == {"inserted": 1, "duplicates": 1, "balance_entries": 0}

        bank_import = await seed.fetch(BankImportDB, import_1)
        assert bank_import.total_transactions == 2
        assert bank_import.total_credits_cents == 15000
        assert bank_import.total_debits_cents == 4000
        assert bank_import.status == "completed"

    @pytest.mark.asyncio
    async def test_insert_rejects_bad_rows(self, db, seed):
        import_id = await seed.bank_import()
        repo = BankTransactionRepository(db)

        with pytest.raises(ReconciliationValidationError) as exc_info:
            await repo.insert_transactions(import_id, [
                {"fit_id": "B1", "transaction_type": "credit", "posted_date": MARCH_10, "amount_cents": -5},
            ])

        assert exc_info.value.parameter == "amount_cents"
