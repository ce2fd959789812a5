"""
Tests for coordinated expense posting across budgets, accounts and the journal
"""

import pytest
import threading
from decimal import Decimal
from datetime import date

from core_accounting.audit import AuditEventType
from core_accounting.config import AccountingConfig
from core_accounting.context import acting_user
from core_accounting.errors import (
    BudgetExceededError, BudgetPeriodMismatchError, InvalidAmountError,
    InvalidStatusTransitionError, LedgerIntegrityError, ValidationError
)
from core_accounting.expenses import ExpenseStatus
from core_accounting.ledger import JournalEntryStatus
from core_accounting.posting import normalize_payment_method
from core_accounting.schemas import ExpenseActionIntent, JournalLineInput, ManualEntryIntent
from core_accounting.storage import InMemoryStorage
from core_accounting.system import build_system


TENANT = "tenant-1"
COMPANY = "company-1"


class PostingTestCase:
    """Shared fixture: Acme with a Q1 Travel budget of 1000, 800 already spent"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = build_system(AccountingConfig(database_url="memory://"), storage=InMemoryStorage())
        self.coordinator = self.system.coordinator
        self.system.accounts.register_company(TENANT, "Acme Ltd", company_id=COMPANY)
        self.travel = self.system.expenses.create_category(TENANT, COMPANY, "Travel")
        self.budget = self.system.budgets.create_budget(
            TENANT, COMPANY, self.travel.id, "Q1 Travel", "QUARTERLY",
            date(2025, 1, 1), date(2025, 3, 31), "1000", spent_amount="800"
        )

    def _expense(self, amount, **kwargs):
        kwargs.setdefault("selected_budget_id", self.budget.id)
        kwargs.setdefault("expense_date", date(2025, 2, 15))
        return self.coordinator.create_expense(
            TENANT, COMPANY, kwargs.pop("category_id", self.travel.id),
            kwargs.pop("description", "Flight to client"), amount, **kwargs
        )

    def _spent(self, budget_id=None):
        return self.system.budgets.require_budget(budget_id or self.budget.id).spent_amount

    def _entries(self, status=None):
        return self.system.ledger.list_entries(TENANT, COMPANY, status=status)


class TestExpenseApproval(PostingTestCase):
    """Test expense approval against the selected budget"""

    def test_over_budget_approval_changes_nothing(self):
        expense = self._expense("250")

        with pytest.raises(BudgetExceededError) as exc_info:
            self.coordinator.approve_expense(expense.id)

        error = exc_info.value
        assert error.code == "BUDGET_EXCEEDED"
        assert error.available == Decimal("200.00")
        assert error.step == "budget_check"
        assert error.to_dict()["step"] == "budget_check"

        assert self._spent() == Decimal("800.00")
        assert self.system.expenses.require_expense(expense.id).status == ExpenseStatus.DRAFT
        assert self._entries() == []

    def test_approval_within_budget(self):
        expense = self._expense("150")
        approved = self.coordinator.approve_expense(expense.id)

        assert approved.status == ExpenseStatus.APPROVED
        assert approved.budget_allocations == {self.budget.id: Decimal("150.00")}
        assert self._spent() == Decimal("950.00")

        view = self.system.ledger.entry_view(approved.journal_entry_id)
        assert view.status == "POSTED"
        assert view.reference == f"EXPENSE-{expense.id}"
        assert view.memo == "Expense: Flight to client"
        assert view.entry_date == date(2025, 2, 15)
        debit_line, credit_line = view.lines
        assert (debit_line.account_name, debit_line.debit, debit_line.credit) == \
            ("Travel Expense", Decimal("150.00"), Decimal("0.00"))
        assert (credit_line.account_name, credit_line.debit, credit_line.credit) == \
            ("Cash/Bank", Decimal("0.00"), Decimal("150.00"))

        stored = self.system.expenses.require_expense(expense.id)
        assert stored.account_id == debit_line.account_id

    def test_approval_is_idempotent(self):
        expense = self._expense("150")
        first = self.coordinator.approve_expense(expense.id)
        second = self.coordinator.approve_expense(expense.id)

        assert second.journal_entry_id == first.journal_entry_id
        assert self._spent() == Decimal("950.00")
        assert len(self._entries()) == 1
        assert len(self.system.audit_trail.get_events_by_type(AuditEventType.EXPENSE_APPROVED)) == 1

    def test_concurrent_approvals_post_once(self):
        expense = self._expense("150")
        errors = []

        def worker():
            try:
                self.coordinator.approve_expense(expense.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert self._spent() == Decimal("950.00")
        assert len(self._entries()) == 1

    def test_journal_failure_rolls_back_everything(self, monkeypatch):
        expense = self._expense("150")
        events_before = self.system.audit_trail.count_events()

        def failing_post(entry_id):
            raise LedgerIntegrityError("injected posting failure")

        monkeypatch.setattr(self.system.ledger, "post_entry", failing_post)

        with pytest.raises(LedgerIntegrityError) as exc_info:
            self.coordinator.approve_expense(expense.id)
        assert exc_info.value.step == "journal_post"

        stored = self.system.expenses.require_expense(expense.id)
        assert stored.status == ExpenseStatus.DRAFT
        assert stored.account_id is None
        assert stored.budget_allocations == {}
        assert self._spent() == Decimal("800.00")
        assert self._entries() == []

        # Account resolution is committed on its own
        assert self.system.accounts.find_account_by_name(TENANT, COMPANY, "Travel Expense")
        assert self.system.audit_trail.verify_integrity()['valid']
        assert not self.system.audit_trail.get_events_by_type(AuditEventType.BUDGET_CONSUMED)
        assert self.system.audit_trail.count_events() > events_before

    def test_period_mismatch_fails_before_any_side_effect(self):
        expense = self._expense("10", expense_date=date(2025, 4, 2))

        with pytest.raises(BudgetPeriodMismatchError) as exc_info:
            self.coordinator.approve_expense(expense.id)

        assert exc_info.value.code == "BUDGET_VALIDATION_ERROR"
        assert exc_info.value.step == "budget_check"
        assert self.system.accounts.list_accounts(TENANT, COMPANY) == []

    def test_rejected_expense_cannot_be_approved(self):
        expense = self._expense("150")
        self.coordinator.reject_expense(expense.id, "Not business related")

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            self.coordinator.approve_expense(expense.id)
        assert exc_info.value.step == "read"

    def test_auto_budget_consumes_category_budgets_unenforced(self):
        reserve = self.system.budgets.create_budget(
            TENANT, COMPANY, self.travel.id, "Travel Reserve", "YEARLY",
            date(2025, 1, 1), date(2025, 12, 31), "100"
        )
        expense = self._expense("250", selected_budget_id="auto")
        approved = self.coordinator.approve_expense(expense.id)

        assert approved.budget_allocations == {
            self.budget.id: Decimal("250.00"),
            reserve.id: Decimal("250.00"),
        }
        assert self._spent() == Decimal("1050.00")
        assert self._spent(reserve.id) == Decimal("250.00")

    def test_no_budget_and_no_category(self):
        expense = self._expense("75", category_id=None, selected_budget_id=None,
                                description="Team lunch")
        approved = self.coordinator.approve_expense(expense.id)

        assert approved.budget_allocations == {}
        assert self._spent() == Decimal("800.00")
        account = self.system.accounts.require_account(approved.account_id)
        assert account.name == "General Expense"

    @pytest.mark.parametrize("payment_method,offset_name", [
        ("cash", "Cash/Bank"),
        ("Bank Transfer", "Cash/Bank"),
        ("credit-card", "Credit Card Payable"),
        ("on_account", "Accounts Payable"),
    ])
    def test_offset_account_follows_payment_method(self, payment_method, offset_name):
        expense = self._expense("20", payment_method=payment_method)
        approved = self.coordinator.approve_expense(expense.id)

        view = self.system.ledger.entry_view(approved.journal_entry_id)
        assert view.lines[1].account_name == offset_name

    def test_total_amount_is_posted_when_given(self):
        expense = self._expense("100", total_amount="110")
        approved = self.coordinator.approve_expense(expense.id)

        assert self._spent() == Decimal("910.00")
        entry = self.system.ledger.require_entry(approved.journal_entry_id)
        assert entry.total_debit == Decimal("110.00")

    def test_acting_user_recorded_on_audit_events(self):
        with acting_user("employee-7"):
            expense = self._expense("20")
        with acting_user("approver-1"):
            self.coordinator.approve_expense(expense.id)

        assert self.system.expenses.require_expense(expense.id).submitted_by == "employee-7"
        approved_event = self.system.audit_trail.get_events_by_type(AuditEventType.EXPENSE_APPROVED)[0]
        assert approved_event.user_id == "approver-1"


class TestExpenseLifecycle(PostingTestCase):
    """Test submission, rejection, update and deletion"""

    def test_create_rejects_invalid_input(self):
        with pytest.raises(ValidationError):
            self._expense("10", status="approved")
        with pytest.raises(InvalidAmountError):
            self._expense("0")

    def test_create_submitted_posts_immediately(self):
        expense = self._expense("150", status="submitted")

        assert expense.status == ExpenseStatus.SUBMITTED
        assert self._spent() == Decimal("950.00")
        assert len(self._entries(JournalEntryStatus.POSTED)) == 1

        approved = self.coordinator.approve_expense(expense.id)
        assert approved.journal_entry_id == expense.journal_entry_id
        assert self._spent() == Decimal("950.00")
        assert len(self._entries()) == 1

    def test_create_submitted_over_budget_creates_nothing(self):
        with pytest.raises(BudgetExceededError):
            self._expense("500", status="submitted")
        assert self.system.expenses.list_expenses(TENANT, COMPANY) == []

    def test_submit_then_reject_releases_budget(self):
        expense = self._expense("150")
        self.coordinator.submit_expense(expense.id)
        assert self._spent() == Decimal("950.00")

        rejected = self.coordinator.reject_expense(expense.id, "Duplicate claim")

        assert rejected.status == ExpenseStatus.REJECTED
        assert rejected.rejection_reason == "Duplicate claim"
        assert rejected.budget_allocations == {}
        assert self._spent() == Decimal("800.00")
        # The journal is left untouched
        entry = self.system.ledger.require_entry(rejected.journal_entry_id)
        assert entry.status == JournalEntryStatus.POSTED

    def test_approved_expense_cannot_be_rejected(self):
        expense = self._expense("150")
        self.coordinator.approve_expense(expense.id)

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            self.coordinator.reject_expense(expense.id)
        assert exc_info.value.step == "status_transition"
        assert self._spent() == Decimal("950.00")

    def test_update_draft_has_no_side_effects(self):
        expense = self._expense("150")
        updated = self.coordinator.update_expense(expense.id, amount="175", description="Train")

        assert updated.amount == Decimal("175.00")
        assert updated.description == "Train"
        assert self._spent() == Decimal("800.00")
        assert self._entries() == []

    def test_update_approved_amount_reposts(self):
        expense = self._expense("150")
        approved = self.coordinator.approve_expense(expense.id)
        old_entry_id = approved.journal_entry_id

        updated = self.coordinator.update_expense(expense.id, amount="180")

        assert self._spent() == Decimal("980.00")
        assert updated.budget_allocations == {self.budget.id: Decimal("180.00")}
        assert updated.journal_entry_id != old_entry_id
        assert self.system.ledger.require_entry(old_entry_id).status == JournalEntryStatus.REVERSED
        new_entry = self.system.ledger.require_entry(updated.journal_entry_id)
        assert new_entry.status == JournalEntryStatus.POSTED
        assert new_entry.total_debit == Decimal("180.00")

    def test_update_beyond_budget_rolls_back(self):
        expense = self._expense("150")
        approved = self.coordinator.approve_expense(expense.id)

        with pytest.raises(BudgetExceededError) as exc_info:
            self.coordinator.update_expense(expense.id, amount="300")
        assert exc_info.value.step == "budget_consume"

        stored = self.system.expenses.require_expense(expense.id)
        assert stored.amount == Decimal("150.00")
        assert stored.journal_entry_id == approved.journal_entry_id
        assert self._spent() == Decimal("950.00")
        assert len(self._entries()) == 1

    def test_update_date_outside_budget_period_rolls_back(self):
        expense = self._expense("150")
        approved = self.coordinator.approve_expense(expense.id)

        with pytest.raises(BudgetPeriodMismatchError) as exc_info:
            self.coordinator.update_expense(expense.id, expense_date=date(2025, 6, 1))
        assert exc_info.value.step == "budget_check"

        stored = self.system.expenses.require_expense(expense.id)
        assert stored.expense_date == date(2025, 2, 15)
        assert stored.journal_entry_id == approved.journal_entry_id
        assert self._spent() == Decimal("950.00")
        entries = self._entries()
        assert len(entries) == 1
        assert entries[0].entry_date == date(2025, 2, 15)
        assert entries[0].status == JournalEntryStatus.POSTED

    def test_update_moves_allocation_to_new_budget(self):
        reserve = self.system.budgets.create_budget(
            TENANT, COMPANY, self.travel.id, "Travel Reserve", "YEARLY",
            date(2025, 1, 1), date(2025, 12, 31), "500"
        )
        expense = self._expense("150")
        approved = self.coordinator.approve_expense(expense.id)

        updated = self.coordinator.update_expense(expense.id, selected_budget_id=reserve.id)

        assert self._spent() == Decimal("800.00")
        assert self._spent(reserve.id) == Decimal("150.00")
        assert updated.budget_allocations == {reserve.id: Decimal("150.00")}
        # Same figures: the posted entry stays
        assert updated.journal_entry_id == approved.journal_entry_id
        assert len(self._entries()) == 1

    def test_update_rejects_unknown_fields(self):
        expense = self._expense("150")
        with pytest.raises(ValidationError):
            self.coordinator.update_expense(expense.id, status="approved")

    def test_update_rejected_expense_has_no_side_effects(self):
        expense = self._expense("150")
        self.coordinator.reject_expense(expense.id)

        updated = self.coordinator.update_expense(expense.id, amount="99")
        assert updated.status == ExpenseStatus.REJECTED
        assert self._spent() == Decimal("800.00")
        assert self._entries() == []

    def test_delete_approved_expense_reverses_posting(self):
        expense = self._expense("150")
        approved = self.coordinator.approve_expense(expense.id)

        self.coordinator.delete_expense(expense.id)

        assert self.system.expenses.get_expense(expense.id) is None
        assert self._spent() == Decimal("800.00")
        original = self.system.ledger.require_entry(approved.journal_entry_id)
        assert original.status == JournalEntryStatus.REVERSED
        assert len(self._entries()) == 2

    def test_delete_draft_expense(self):
        expense = self._expense("150")
        self.coordinator.delete_expense(expense.id)
        assert self.system.expenses.get_expense(expense.id) is None
        assert self._entries() == []

    def test_handle_expense_intent(self):
        expense = self._expense("150")

        submitted = self.coordinator.handle_expense_intent(
            ExpenseActionIntent(expense_id=expense.id, action="submit")
        )
        assert submitted.status == ExpenseStatus.SUBMITTED

        rejected = self.coordinator.handle_expense_intent(
            ExpenseActionIntent(expense_id=expense.id, action="reject", reason="Personal")
        )
        assert rejected.status == ExpenseStatus.REJECTED
        assert rejected.rejection_reason == "Personal"

        other = self._expense("20")
        approved = self.coordinator.handle_expense_intent(
            ExpenseActionIntent(expense_id=other.id, action="approve")
        )
        assert approved.status == ExpenseStatus.APPROVED

    def test_recalculate_budgets_from_allocations(self):
        expense = self._expense("150")
        self.coordinator.approve_expense(expense.id)
        self._expense("40")  # Draft, does not count

        updated = self.coordinator.recalculate_budgets(TENANT, COMPANY)

        assert updated == 1
        assert self._spent() == Decimal("150.00")


class TestJournalEntryPoints(PostingTestCase):
    """Test manual entries, bill payments and invoices"""

    def test_manual_entry_by_account_name(self):
        intent = ManualEntryIntent(
            tenant_id=TENANT,
            company_id=COMPANY,
            date=date(2025, 2, 1),
            memo="Owner investment",
            lines=[
                JournalLineInput(account_name="Cash/Bank", debit=Decimal("5000")),
                JournalLineInput(account_name="Owner Equity", credit=Decimal("5000")),
            ],
            post=True
        )
        entry = self.coordinator.post_manual_entry(intent)

        assert entry.status == JournalEntryStatus.POSTED
        names = [self.system.accounts.require_account(line.account_id).name for line in entry.lines]
        assert names == ["Cash/Bank", "Owner Equity"]
        equity = self.system.accounts.find_account_by_name(TENANT, COMPANY, "Owner Equity")
        assert equity.code.startswith("3000")

    def test_manual_entry_stays_draft_unless_posted(self):
        cash_id = self.system.accounts.resolve_or_create_account(TENANT, COMPANY, "Cash/Bank")
        intent = ManualEntryIntent(
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=date(2025, 2, 1),
            memo="Loan drawdown",
            lines=[
                {"account_id": cash_id, "debit": "1000"},
                {"account_name": "Bank Loan", "credit": "1000"},
            ]
        )
        entry = self.coordinator.post_manual_entry(intent)
        assert entry.status == JournalEntryStatus.DRAFT

    def test_bill_payment_is_idempotent_on_reference(self):
        first = self.coordinator.record_bill_payment(TENANT, COMPANY, "320.00", date(2025, 2, 3), "BILL-88")
        second = self.coordinator.record_bill_payment(TENANT, COMPANY, "320.00", date(2025, 2, 3), "BILL-88")

        assert first.id == second.id
        assert len(self._entries()) == 1
        view = self.system.ledger.entry_view(first.id)
        assert [(line.account_name, line.debit, line.credit) for line in view.lines] == [
            ("Accounts Payable", Decimal("320.00"), Decimal("0.00")),
            ("Cash/Bank", Decimal("0.00"), Decimal("320.00")),
        ]

    def test_invoice_posting(self):
        entry = self.coordinator.post_invoice(TENANT, COMPANY, "1200", date(2025, 2, 5), "INV-1001")

        view = self.system.ledger.entry_view(entry.id)
        assert view.memo == "Invoice INV-1001"
        assert [(line.account_name, line.account_type) for line in view.lines] == [
            ("Accounts Receivable", "ASSET"),
            ("Sales Revenue", "REVENUE"),
        ]
        again = self.coordinator.post_invoice(TENANT, COMPANY, "1200", date(2025, 2, 5), "INV-1001")
        assert again.id == entry.id

    def test_two_line_entries_require_positive_amount(self):
        with pytest.raises(InvalidAmountError):
            self.coordinator.post_invoice(TENANT, COMPANY, "0", date(2025, 2, 5), "INV-0")


class TestPaymentMethods:
    """Test payment method normalization"""

    @pytest.mark.parametrize("raw,expected", [
        (None, "cash"),
        ("", "cash"),
        ("Credit Card", "credit_card"),
        ("bank-transfer", "bank_transfer"),
        (" CHECK ", "check"),
    ])
    def test_normalize_payment_method(self, raw, expected):
        assert normalize_payment_method(raw) == expected
