"""
Posting Coordinator Module

Orchestrates expense approval and the other coordinated flows across the
budget ledger, the account directory and the journal entry store. Every
flow runs its budget, expense and journal mutations inside one
``storage.atomic()`` block: a failure at any step rolls all of them back and
is re-raised with ``error.step`` naming the step that failed.

Account resolution is the one benign side effect kept outside the block:
resolving or creating a GL account is idempotent, so it is committed on its
own before the coordinated transaction starts.
"""

from datetime import date, datetime, timezone
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional
import uuid

from .amounts import ZERO, quantize_cents, optional_cents
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .accounts import AccountDirectory
from .budgets import BudgetLedger
from .config import AccountingConfig
from .context import get_acting_user
from .errors import (
    AccountingError, InvalidAmountError, InvalidStatusTransitionError, ValidationError
)
from .expenses import Expense, ExpenseRegister, ExpenseStatus
from .ledger import JournalEntry, JournalEntryStatus, JournalEntryStore
from .logging_config import get_logger, log_action
from .schemas import ExpenseActionIntent, ManualEntryIntent


# Payment methods settled straight from the bank account
CASH_PAYMENT_METHODS = {"cash", "check", "cheque", "bank_transfer", "debit_card"}
CREDIT_CARD_PAYMENT_METHODS = {"credit_card"}

EXPENSE_UPDATABLE_FIELDS = {
    "description", "amount", "total_amount", "category_id", "expense_date",
    "selected_budget_id", "payment_method", "account_id", "vendor",
    "department", "project"
}


def normalize_payment_method(payment_method: Optional[str]) -> str:
    if not payment_method:
        return "cash"
    return payment_method.strip().lower().replace("-", "_").replace(" ", "_")


@contextmanager
def posting_step(step: str) -> Iterator[None]:
    """Tag ledger errors raised inside the block with the step that failed"""
    try:
        yield
    except AccountingError as e:
        if e.step is None:
            e.step = step
        raise


@dataclass(frozen=True)
class ResolvedAccounts:
    expense_account_id: str
    offset_account_id: str


class PostingCoordinator:
    """
    Coordinates expense approval with budgets, accounts and the journal
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountDirectory,
        ledger: JournalEntryStore,
        budgets: BudgetLedger,
        expenses: ExpenseRegister,
        audit_trail: AuditTrail,
        config: AccountingConfig
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.budgets = budgets
        self.expenses = expenses
        self.audit_trail = audit_trail
        self.config = config
        self.logger = get_logger("core_accounting.posting")

    # Expense flows

    def create_expense(
        self,
        tenant_id: str,
        company_id: str,
        category_id: Optional[str],
        description: str,
        amount: Any,
        expense_date: date,
        status: str = "draft",
        total_amount: Optional[Any] = None,
        selected_budget_id: Optional[str] = None,
        payment_method: str = "cash",
        account_id: Optional[str] = None,
        vendor: Optional[str] = None,
        department: Optional[str] = None,
        project: Optional[str] = None
    ) -> Expense:
        """
        Create an expense as a draft, or as submitted

        A submitted expense consumes its budget and posts its journal entry in
        the same transaction that creates it.

        Args:
            tenant_id: Owning tenant
            company_id: Owning company
            category_id: Expense category
            description: What was bought
            amount: Net amount
            expense_date: Date the expense was incurred
            status: "draft" or "submitted"
            total_amount: Gross amount, used for posting when given
            selected_budget_id: Budget to consume, None or "auto" for category-wide
            payment_method: cash, check, bank_transfer, debit_card, credit_card, ...
            account_id: GL expense account, resolved from the category when omitted

        Returns:
            Created Expense
        """
        try:
            target = ExpenseStatus(status)
        except ValueError:
            target = None
        if target not in (ExpenseStatus.DRAFT, ExpenseStatus.SUBMITTED):
            raise ValidationError(f"Expenses are created as draft or submitted, not {status}",
                                  status=status)
        if category_id:
            self.expenses.require_category(category_id)
        if account_id:
            self.accounts.require_account(account_id)

        now = datetime.now(timezone.utc)
        expense = Expense(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            company_id=company_id,
            category_id=category_id,
            description=description,
            amount=quantize_cents(amount),
            expense_date=expense_date,
            total_amount=optional_cents(total_amount),
            account_id=account_id,
            selected_budget_id=selected_budget_id,
            payment_method=normalize_payment_method(payment_method),
            vendor=vendor,
            department=department,
            project=project,
            submitted_by=get_acting_user()
        )
        self._validate_amounts(expense)

        resolved = None
        if target == ExpenseStatus.SUBMITTED:
            resolved = self._prepare(expense)

        with self.storage.atomic():
            self.expenses.save(expense)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_CREATED,
                entity_type="expense",
                entity_id=expense.id,
                tenant_id=tenant_id,
                metadata={
                    "company_id": company_id,
                    "category_id": category_id,
                    "amount": expense.posting_amount,
                    "status": target.value
                }
            )
            if resolved:
                self._apply(expense, target, resolved, AuditEventType.EXPENSE_SUBMITTED)

        return expense

    def submit_expense(self, expense_id: str) -> Expense:
        """draft -> submitted: consume the budget and post the journal entry"""
        return self._advance(expense_id, ExpenseStatus.SUBMITTED, AuditEventType.EXPENSE_SUBMITTED)

    def approve_expense(self, expense_id: str) -> Expense:
        """
        Approve an expense

        1. Already approved: no-op.
        2. Check the selected budget for the amount it does not count yet.
        3. Resolve the GL expense account if the expense has none.
        4. Consume the selected budget (enforced).
        5. Post a balanced entry: debit the expense account, credit the
           account matching the payment method.
        6. Transition to approved.

        Steps 3 to 6 commit or roll back together.

        Raises:
            BudgetExceededError: The selected budget cannot cover the amount
            BudgetValidationError: The expense date is outside the budget period
        """
        return self._advance(expense_id, ExpenseStatus.APPROVED, AuditEventType.EXPENSE_APPROVED)

    def reject_expense(self, expense_id: str, reason: Optional[str] = None) -> Expense:
        """Reject an expense, releasing its budget allocations; the journal is left untouched"""
        with self.storage.atomic():
            expense = self.expenses.require_expense(expense_id, for_update=True)
            if expense.status == ExpenseStatus.REJECTED:
                return expense

            with posting_step("status_transition"):
                expense.transition_to(ExpenseStatus.REJECTED)
            with posting_step("budget_release"):
                self._release_allocations(expense)

            expense.rejection_reason = reason
            self.expenses.save(expense)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_REJECTED,
                entity_type="expense",
                entity_id=expense.id,
                tenant_id=expense.tenant_id,
                metadata={"reason": reason}
            )

        log_action(
            self.logger, "info", f"Expense rejected: {expense.id}",
            action="reject_expense", resource=f"expense:{expense.id}", tenant_id=expense.tenant_id
        )
        return expense

    def update_expense(self, expense_id: str, **changes: Any) -> Expense:
        """
        Update an expense

        For a counted (submitted or approved) expense, old allocations are
        released, the new amount is consumed from the new budget and the journal
        entry is reversed and re-posted when its figures changed.
        """
        unknown = set(changes) - EXPENSE_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown expense fields: {', '.join(sorted(unknown))}")

        current = self.expenses.require_expense(expense_id)
        updated = self._with_changes(current, changes)
        self._validate_amounts(updated)
        if updated.category_id and updated.category_id != current.category_id:
            self.expenses.require_category(updated.category_id)

        resolved = self._prepare(updated, check_budget=False) if updated.is_counted else None

        with self.storage.atomic():
            expense = self.expenses.require_expense(expense_id, for_update=True)
            expense = self._with_changes(expense, changes)

            if expense.is_counted:
                if resolved is None:
                    resolved = self._prepare(expense, check_budget=False)
                if not expense.account_id:
                    expense.account_id = resolved.expense_account_id
                if not self.budgets.is_bypassed(expense.selected_budget_id):
                    # Unchanged allocations skip consume, so the period is checked here
                    with posting_step("budget_check"):
                        self.budgets.check_availability(
                            expense.selected_budget_id, ZERO, expense.expense_date
                        )
                with posting_step("budget_consume"):
                    self._sync_allocations(expense)
                with posting_step("journal_post"):
                    self._ensure_posted_entry(expense, resolved.offset_account_id)

            expense.updated_at = datetime.now(timezone.utc)
            self.expenses.save(expense)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_UPDATED,
                entity_type="expense",
                entity_id=expense.id,
                tenant_id=expense.tenant_id,
                metadata={"changes": dict(changes)}
            )
        return expense

    def delete_expense(self, expense_id: str, reason: str = "Expense deleted") -> None:
        """Delete an expense, releasing its budgets and reversing (or deleting) its journal entry"""
        with self.storage.atomic():
            expense = self.expenses.require_expense(expense_id, for_update=True)
            with posting_step("budget_release"):
                self._release_allocations(expense)
            with posting_step("journal_reverse"):
                self._remove_posting(expense, reason)

            self.expenses.delete(expense.id)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_DELETED,
                entity_type="expense",
                entity_id=expense.id,
                tenant_id=expense.tenant_id,
                metadata={"status": expense.status.value, "amount": expense.posting_amount}
            )

    def handle_expense_intent(self, intent: ExpenseActionIntent) -> Expense:
        """Dispatch an expense action arriving from the routing layer"""
        if intent.action == "approve":
            return self.approve_expense(intent.expense_id)
        if intent.action == "submit":
            return self.submit_expense(intent.expense_id)
        return self.reject_expense(intent.expense_id, intent.reason)

    def recalculate_budgets(self, tenant_id: str, company_id: str) -> int:
        """Rebuild budget spent amounts from the allocations of counted expenses"""
        expenses = [e for e in self.expenses.list_expenses(tenant_id, company_id) if e.is_counted]
        return self.budgets.recalculate_spent(tenant_id, company_id, expenses)

    # Journal entry points

    def post_manual_entry(self, intent: ManualEntryIntent) -> JournalEntry:
        """
        Create (and optionally post) a manual journal entry

        Lines may name their account by ID or by name; names are resolved or
        created through the account directory first.
        """
        lines = []
        for line in intent.lines:
            account_id = line.account_id
            if not account_id:
                account_id = self.accounts.resolve_or_create_account(
                    intent.tenant_id, intent.company_id, line.account_name
                )
            lines.append({
                "account_id": account_id,
                "debit": line.debit,
                "credit": line.credit,
                "memo": line.memo,
                "department": line.department,
                "project": line.project,
                "location": line.location
            })

        return self.ledger.create_entry(
            tenant_id=intent.tenant_id,
            company_id=intent.company_id,
            entry_date=intent.entry_date,
            memo=intent.memo,
            lines=lines,
            reference=intent.reference,
            post=intent.post,
            created_by=get_acting_user()
        )

    def record_bill_payment(self, tenant_id: str, company_id: str, amount: Any,
                            payment_date: date, reference: str,
                            memo: Optional[str] = None) -> JournalEntry:
        """Debit Accounts Payable, credit Cash/Bank; idempotent on reference"""
        return self._post_two_line_entry(
            tenant_id, company_id, amount, payment_date, reference,
            memo or f"Bill payment {reference}",
            self.config.payable_account_name, self.config.cash_account_name
        )

    def post_invoice(self, tenant_id: str, company_id: str, amount: Any,
                     invoice_date: date, reference: str,
                     memo: Optional[str] = None) -> JournalEntry:
        """Debit Accounts Receivable, credit Sales Revenue; idempotent on reference"""
        return self._post_two_line_entry(
            tenant_id, company_id, amount, invoice_date, reference,
            memo or f"Invoice {reference}",
            self.config.receivable_account_name, self.config.sales_account_name
        )

    def offset_account_name(self, payment_method: Optional[str]) -> str:
        """Account credited when an expense paid by ``payment_method`` is posted"""
        method = normalize_payment_method(payment_method)
        if method in CASH_PAYMENT_METHODS:
            return self.config.cash_account_name
        if method in CREDIT_CARD_PAYMENT_METHODS:
            return self.config.credit_card_account_name
        return self.config.payable_account_name

    # Internals

    def _advance(self, expense_id: str, target: ExpenseStatus,
                 event_type: AuditEventType) -> Expense:
        expense = self.expenses.require_expense(expense_id)
        if expense.status == target:
            return expense
        with posting_step("read"):
            if not expense.can_transition_to(target):
                raise InvalidStatusTransitionError("expense", expense.status.value, target.value)

        resolved = self._prepare(expense)

        with self.storage.atomic():
            expense = self.expenses.require_expense(expense_id, for_update=True)
            if expense.status == target:
                return expense
            self._apply(expense, target, resolved, event_type)

        log_action(
            self.logger, "info", f"Expense {target.value}: {expense.id}",
            action=f"{target.value}_expense", resource=f"expense:{expense.id}",
            tenant_id=expense.tenant_id,
            extra={
                "amount": str(expense.posting_amount),
                "journal_entry_id": expense.journal_entry_id,
                "budget_allocations": {k: str(v) for k, v in expense.budget_allocations.items()}
            }
        )
        return expense

    def _prepare(self, expense: Expense, check_budget: bool = True) -> ResolvedAccounts:
        """Steps that run before the coordinated transaction: budget check and account resolution"""
        if check_budget:
            with posting_step("budget_check"):
                selected = expense.selected_budget_id
                if not self.budgets.is_bypassed(selected):
                    outstanding = expense.posting_amount - expense.budget_allocations.get(selected, ZERO)
                    if outstanding > 0:
                        self.budgets.ensure_available(selected, outstanding, expense.expense_date)

        with posting_step("account_resolution"):
            expense_account_id = expense.account_id
            if not expense_account_id:
                category = self.expenses.get_category(expense.category_id)
                expense_account_id = self.accounts.resolve_expense_account(
                    expense.tenant_id, expense.company_id, category.name if category else None
                )
            offset_account_id = self.accounts.resolve_or_create_account(
                expense.tenant_id, expense.company_id, self.offset_account_name(expense.payment_method)
            )
        return ResolvedAccounts(expense_account_id, offset_account_id)

    def _apply(self, expense: Expense, target: ExpenseStatus, resolved: ResolvedAccounts,
               event_type: AuditEventType) -> None:
        """Steps that run inside the coordinated transaction"""
        with posting_step("status_transition"):
            if not expense.can_transition_to(target):
                raise InvalidStatusTransitionError("expense", expense.status.value, target.value)

        with posting_step("account_assignment"):
            if not expense.account_id:
                expense.account_id = resolved.expense_account_id

        with posting_step("budget_consume"):
            self._sync_allocations(expense)

        with posting_step("journal_post"):
            self._ensure_posted_entry(expense, resolved.offset_account_id)

        with posting_step("status_transition"):
            expense.transition_to(target)
            self.expenses.save(expense)
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="expense",
                entity_id=expense.id,
                tenant_id=expense.tenant_id,
                metadata={
                    "amount": expense.posting_amount,
                    "account_id": expense.account_id,
                    "journal_entry_id": expense.journal_entry_id,
                    "budget_allocations": expense.budget_allocations
                }
            )

    def _sync_allocations(self, expense: Expense) -> None:
        """
        Make the budgets counting this expense match its current figures

        Over-allocations are released first, then missing amounts are
        consumed. Consumption of the selected budget is enforced.
        """
        amount = expense.posting_amount
        selected = expense.selected_budget_id
        if self.budgets.is_bypassed(selected):
            desired = {}
            if expense.category_id:
                for budget in self.budgets.covering_budgets(
                    expense.tenant_id, expense.company_id, expense.category_id, expense.expense_date
                ):
                    desired[budget.id] = amount
        else:
            desired = {selected: amount}

        current = dict(expense.budget_allocations)
        for budget_id, allocated in current.items():
            keep = desired.get(budget_id, ZERO)
            if allocated > keep:
                self.budgets.release(budget_id, allocated - keep)

        for budget_id, wanted in desired.items():
            have = current.get(budget_id, ZERO)
            if wanted > have:
                self.budgets.consume(
                    budget_id, wanted - have, as_of=expense.expense_date,
                    enforce=(budget_id == selected)
                )

        expense.budget_allocations = {k: v for k, v in desired.items() if v > 0}

    def _release_allocations(self, expense: Expense) -> None:
        for budget_id, allocated in expense.budget_allocations.items():
            if allocated > 0:
                self.budgets.release(budget_id, allocated)
        expense.budget_allocations = {}

    def _ensure_posted_entry(self, expense: Expense, offset_account_id: str) -> None:
        """Post the expense's journal entry unless one with the same figures is already posted"""
        amount = expense.posting_amount
        existing = self.ledger.get_entry(expense.journal_entry_id) if expense.journal_entry_id else None
        if existing and existing.status == JournalEntryStatus.POSTED and self._entry_matches(
            existing, expense, offset_account_id
        ):
            return

        if existing:
            self._remove_posting(expense, "Expense changed")

        entry = self.ledger.create_entry(
            tenant_id=expense.tenant_id,
            company_id=expense.company_id,
            entry_date=expense.expense_date,
            memo=f"Expense: {expense.description}",
            lines=[
                {
                    "account_id": expense.account_id,
                    "debit": amount,
                    "credit": ZERO,
                    "memo": expense.description,
                    "department": expense.department,
                    "project": expense.project
                },
                {
                    "account_id": offset_account_id,
                    "debit": ZERO,
                    "credit": amount,
                    "memo": f"Paid by {expense.payment_method}",
                    "department": expense.department,
                    "project": expense.project
                }
            ],
            reference=f"EXPENSE-{expense.id}",
            post=True,
            created_by=get_acting_user()
        )
        expense.journal_entry_id = entry.id

    @staticmethod
    def _entry_matches(entry: JournalEntry, expense: Expense, offset_account_id: str) -> bool:
        amount = expense.posting_amount
        figures = sorted((line.account_id, line.debit, line.credit) for line in entry.lines)
        expected = sorted([
            (expense.account_id, amount, ZERO),
            (offset_account_id, ZERO, amount)
        ])
        return entry.entry_date == expense.expense_date and figures == expected

    def _remove_posting(self, expense: Expense, reason: str) -> None:
        if not expense.journal_entry_id:
            return
        entry = self.ledger.get_entry(expense.journal_entry_id)
        if entry:
            if entry.status == JournalEntryStatus.POSTED:
                self.ledger.reverse_entry(entry.id, reason)
            elif entry.status == JournalEntryStatus.PENDING_APPROVAL:
                self.ledger.return_to_draft(entry.id)
                self.ledger.delete_entry(entry.id)
            elif entry.status == JournalEntryStatus.DRAFT:
                self.ledger.delete_entry(entry.id)
        expense.journal_entry_id = None

    def _with_changes(self, expense: Expense, changes: Dict[str, Any]) -> Expense:
        updated = Expense.from_dict(expense.to_dict())
        for name, value in changes.items():
            if name == "amount":
                value = quantize_cents(value)
            elif name == "total_amount":
                value = optional_cents(value)
            elif name == "payment_method":
                value = normalize_payment_method(value)
            setattr(updated, name, value)
        if "category_id" in changes and "account_id" not in changes \
                and changes["category_id"] != expense.category_id:
            # Re-derive the GL account from the new category
            updated.account_id = None
        return updated

    @staticmethod
    def _validate_amounts(expense: Expense) -> None:
        if expense.amount <= 0:
            raise InvalidAmountError("Expense amount must be positive", amount=expense.amount)
        if expense.total_amount is not None and expense.total_amount <= 0:
            raise InvalidAmountError("Expense total amount must be positive",
                                     total_amount=expense.total_amount)

    def _post_two_line_entry(self, tenant_id: str, company_id: str, amount: Any,
                             entry_date: date, reference: str, memo: str,
                             debit_account_name: str, credit_account_name: str) -> JournalEntry:
        amount = quantize_cents(amount)
        if amount <= 0:
            raise InvalidAmountError("Amount must be positive", amount=amount)

        debit_account_id = self.accounts.resolve_or_create_account(tenant_id, company_id, debit_account_name)
        credit_account_id = self.accounts.resolve_or_create_account(tenant_id, company_id, credit_account_name)

        with self.storage.atomic():
            for existing in self.ledger.find_by_reference(tenant_id, company_id, reference):
                if existing.status == JournalEntryStatus.POSTED:
                    return existing

            return self.ledger.create_entry(
                tenant_id=tenant_id,
                company_id=company_id,
                entry_date=entry_date,
                memo=memo,
                lines=[
                    {"account_id": debit_account_id, "debit": amount, "credit": ZERO},
                    {"account_id": credit_account_id, "debit": ZERO, "credit": amount}
                ],
                reference=reference,
                post=True,
                created_by=get_acting_user()
            )
