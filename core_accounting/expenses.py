"""
Expense Records Module

Expense and expense category records as far as the ledger core needs them.
Status changes go through an explicit transition table; the posting
coordinator drives the budget and journal side effects.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import ExpenseNotFoundError, InvalidStatusTransitionError, NotFoundError, ValidationError


class ExpenseStatus(Enum):
    """Expense lifecycle states"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


EXPENSE_STATUS_TRANSITIONS: Dict[ExpenseStatus, Set[ExpenseStatus]] = {
    ExpenseStatus.DRAFT: {ExpenseStatus.SUBMITTED, ExpenseStatus.APPROVED, ExpenseStatus.REJECTED},
    ExpenseStatus.SUBMITTED: {ExpenseStatus.APPROVED, ExpenseStatus.REJECTED},
    ExpenseStatus.APPROVED: set(),
    ExpenseStatus.REJECTED: set(),
}

# Statuses whose amount counts against budgets and is posted to the journal
COUNTED_STATUSES = {ExpenseStatus.SUBMITTED, ExpenseStatus.APPROVED}


@dataclass
class ExpenseCategory(StorageRecord):
    tenant_id: str
    company_id: str
    name: str
    description: Optional[str] = None


@dataclass
class Expense(StorageRecord):
    """
    Expense claim. ``budget_allocations`` records exactly which budgets
    currently count this expense and by how much.
    """
    tenant_id: str
    company_id: str
    category_id: Optional[str]
    description: str
    amount: Decimal
    expense_date: date
    status: ExpenseStatus = ExpenseStatus.DRAFT
    total_amount: Optional[Decimal] = None  # Amount including tax, when known
    account_id: Optional[str] = None
    selected_budget_id: Optional[str] = None
    payment_method: str = "cash"
    budget_allocations: Dict[str, Decimal] = field(default_factory=dict)
    journal_entry_id: Optional[str] = None
    vendor: Optional[str] = None
    department: Optional[str] = None
    project: Optional[str] = None
    submitted_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    @property
    def posting_amount(self) -> Decimal:
        """Amount that hits budgets and the journal"""
        return self.total_amount if self.total_amount is not None else self.amount

    @property
    def is_counted(self) -> bool:
        return self.status in COUNTED_STATUSES

    def can_transition_to(self, target: ExpenseStatus) -> bool:
        return target in EXPENSE_STATUS_TRANSITIONS[self.status]

    def transition_to(self, target: ExpenseStatus) -> None:
        if not self.can_transition_to(target):
            raise InvalidStatusTransitionError("expense", self.status.value, target.value)
        self.status = target
        self.updated_at = datetime.now(timezone.utc)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Expense':
        data = dict(data)
        data['expense_date'] = date.fromisoformat(data['expense_date'])
        data['status'] = ExpenseStatus(data['status'])
        data['amount'] = Decimal(data['amount'])
        if data.get('total_amount') is not None:
            data['total_amount'] = Decimal(data['total_amount'])
        data['budget_allocations'] = {
            budget_id: Decimal(value)
            for budget_id, value in (data.get('budget_allocations') or {}).items()
        }
        return super().from_dict(data)


class ExpenseRegister:
    """
    Persists expenses and expense categories
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.expenses_table = "expenses"
        self.categories_table = "expense_categories"

    def create_category(self, tenant_id: str, company_id: str, name: str,
                        description: Optional[str] = None) -> ExpenseCategory:
        """Create an expense category, returning the existing one on a name match"""
        if not name or not name.strip():
            raise ValidationError("Category name is required")

        with self.storage.atomic():
            existing = self.storage.find(self.categories_table, {
                "tenant_id": tenant_id, "company_id": company_id, "name": name
            })
            if existing:
                return ExpenseCategory.from_dict(existing[0])

            now = datetime.now(timezone.utc)
            category = ExpenseCategory(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                company_id=company_id,
                name=name,
                description=description
            )
            self.storage.save(self.categories_table, category.id, category.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_CATEGORY_CREATED,
                entity_type="expense_category",
                entity_id=category.id,
                tenant_id=tenant_id,
                metadata={"company_id": company_id, "name": name}
            )
            return category

    def get_category(self, category_id: Optional[str]) -> Optional[ExpenseCategory]:
        if not category_id:
            return None
        data = self.storage.load(self.categories_table, category_id)
        if data:
            return ExpenseCategory.from_dict(data)
        return None

    def require_category(self, category_id: str) -> ExpenseCategory:
        category = self.get_category(category_id)
        if not category:
            raise NotFoundError(f"Expense category {category_id} not found", category_id=category_id)
        return category

    def list_categories(self, tenant_id: str, company_id: str) -> List[ExpenseCategory]:
        categories = [
            ExpenseCategory.from_dict(data)
            for data in self.storage.find(self.categories_table, {
                "tenant_id": tenant_id, "company_id": company_id
            })
        ]
        return sorted(categories, key=lambda c: c.name)

    def save(self, expense: Expense) -> None:
        self.storage.save(self.expenses_table, expense.id, expense.to_dict())

    def delete(self, expense_id: str) -> bool:
        return self.storage.delete(self.expenses_table, expense_id)

    def get_expense(self, expense_id: str) -> Optional[Expense]:
        """Get expense by ID"""
        data = self.storage.load(self.expenses_table, expense_id)
        if data:
            return Expense.from_dict(data)
        return None

    def require_expense(self, expense_id: str, for_update: bool = False) -> Expense:
        if for_update:
            data = self.storage.load_for_update(self.expenses_table, expense_id)
        else:
            data = self.storage.load(self.expenses_table, expense_id)
        if not data:
            raise ExpenseNotFoundError(f"Expense {expense_id} not found", expense_id=expense_id)
        return Expense.from_dict(data)

    def list_expenses(self, tenant_id: str, company_id: str,
                      status: Optional[ExpenseStatus] = None) -> List[Expense]:
        """List a company's expenses ordered by expense date"""
        filters: Dict[str, Any] = {"tenant_id": tenant_id, "company_id": company_id}
        if status:
            filters["status"] = status.value
        expenses = [Expense.from_dict(data) for data in self.storage.find(self.expenses_table, filters)]
        expenses.sort(key=lambda e: (e.expense_date, e.created_at))
        return expenses
