"""
Budget Ledger Module

Owns budget aggregates (category, period, allocated amount, spent amount)
and the availability checks scoped to a single budget. ``spent_amount`` is
only ever changed through the storage's serialized increment, so concurrent
consumption and release of the same budget never lose an update.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import uuid

from .amounts import ZERO, quantize_cents, optional_cents
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import (
    BudgetExceededError, BudgetInactiveError, BudgetNotFoundError, BudgetPeriodMismatchError,
    BudgetReleaseError, InvalidAmountError, InvalidDateRangeError, ValidationError
)
from .logging_config import get_logger, log_action
from .schemas import BudgetOption, BudgetView


@dataclass
class Budget(StorageRecord):
    """Spending allowance for one expense category over one period"""
    tenant_id: str
    company_id: str
    category_id: str
    name: str
    period: str
    start_date: date
    end_date: date
    amount: Decimal
    spent_amount: Decimal = ZERO
    alert_threshold: Optional[Decimal] = None  # Percentage of amount, 0-100
    is_active: bool = True

    @property
    def available(self) -> Decimal:
        return self.amount - self.spent_amount

    @property
    def utilization_percent(self) -> Decimal:
        if self.amount <= 0:
            return ZERO
        return (self.spent_amount / self.amount * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @property
    def threshold_crossed(self) -> bool:
        return self.alert_threshold is not None and self.utilization_percent >= self.alert_threshold

    def covers(self, on_date: date) -> bool:
        return self.start_date <= on_date <= self.end_date

    def is_available_for(self, amount: Decimal, on_date: date) -> bool:
        """Available for A at D iff active, D within the period and A fits"""
        return self.is_active and self.covers(on_date) and self.available >= amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Budget':
        data = dict(data)
        data['start_date'] = date.fromisoformat(data['start_date'])
        data['end_date'] = date.fromisoformat(data['end_date'])
        data['amount'] = Decimal(data['amount'])
        data['spent_amount'] = Decimal(data['spent_amount'])
        if data.get('alert_threshold') is not None:
            data['alert_threshold'] = Decimal(data['alert_threshold'])
        return super().from_dict(data)


@dataclass(frozen=True)
class BudgetAvailability:
    """Result of a pure availability read"""
    budget_id: str
    available: Decimal
    requested: Decimal
    ok: bool


class BudgetLedger:
    """
    Checks, consumes and releases budget allowances
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 auto_sentinel: str = "auto"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.auto_sentinel = auto_sentinel
        self.table_name = "budgets"
        self.logger = get_logger("core_accounting.budgets")

    def is_bypassed(self, budget_id: Optional[str]) -> bool:
        """No specific budget selected: the ledger is skipped entirely"""
        return not budget_id or budget_id == self.auto_sentinel

    def create_budget(
        self,
        tenant_id: str,
        company_id: str,
        category_id: str,
        name: str,
        period: str,
        start_date: date,
        end_date: date,
        amount: Any,
        alert_threshold: Optional[Any] = None,
        spent_amount: Any = ZERO
    ) -> Budget:
        """
        Create a new budget

        Args:
            tenant_id: Owning tenant
            company_id: Owning company
            category_id: Expense category the budget covers
            name: Display name, e.g. "Q1 Travel"
            period: Period label (MONTHLY, QUARTERLY, YEARLY, ...)
            start_date: First covered date (inclusive)
            end_date: Last covered date (inclusive)
            amount: Allocated amount
            alert_threshold: Utilization percentage that triggers an alert
            spent_amount: Opening spent amount

        Returns:
            Created Budget object
        """
        amount = quantize_cents(amount)
        spent_amount = quantize_cents(spent_amount)
        alert_threshold = optional_cents(alert_threshold)

        if amount < 0 or spent_amount < 0:
            raise InvalidAmountError("Budget amounts must not be negative", amount=amount)
        if start_date > end_date:
            raise InvalidDateRangeError(
                f"Budget start {start_date.isoformat()} is after end {end_date.isoformat()}"
            )
        if alert_threshold is not None and not (ZERO <= alert_threshold <= Decimal("100")):
            raise ValidationError("Alert threshold must be between 0 and 100",
                                  alert_threshold=alert_threshold)

        now = datetime.now(timezone.utc)
        budget = Budget(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            company_id=company_id,
            category_id=category_id,
            name=name,
            period=period,
            start_date=start_date,
            end_date=end_date,
            amount=amount,
            spent_amount=spent_amount,
            alert_threshold=alert_threshold
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, budget.id, budget.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.BUDGET_CREATED,
                entity_type="budget",
                entity_id=budget.id,
                tenant_id=tenant_id,
                metadata={
                    "company_id": company_id,
                    "category_id": category_id,
                    "name": name,
                    "amount": amount,
                    "start_date": start_date.isoformat(),
                    "end_date": end_date.isoformat()
                }
            )
        return budget

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        """Get budget by ID"""
        data = self.storage.load(self.table_name, budget_id)
        if data:
            return Budget.from_dict(data)
        return None

    def require_budget(self, budget_id: str) -> Budget:
        budget = self.get_budget(budget_id)
        if not budget:
            raise BudgetNotFoundError(f"Budget {budget_id} not found", budget_id=budget_id)
        return budget

    def list_budgets(self, tenant_id: str, company_id: str, category_id: Optional[str] = None,
                     active_only: bool = False) -> List[Budget]:
        filters: Dict[str, Any] = {"tenant_id": tenant_id, "company_id": company_id}
        if category_id:
            filters["category_id"] = category_id
        budgets = [Budget.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if active_only:
            budgets = [b for b in budgets if b.is_active]
        budgets.sort(key=lambda b: (b.start_date, b.name))
        return budgets

    def deactivate_budget(self, budget_id: str) -> Budget:
        with self.storage.atomic():
            data = self.storage.load_for_update(self.table_name, budget_id)
            if not data:
                raise BudgetNotFoundError(f"Budget {budget_id} not found", budget_id=budget_id)
            budget = Budget.from_dict(data)
            if not budget.is_active:
                return budget

            budget.is_active = False
            budget.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, budget.id, budget.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.BUDGET_DEACTIVATED,
                entity_type="budget",
                entity_id=budget.id,
                tenant_id=budget.tenant_id,
                metadata={"name": budget.name}
            )
            return budget

    def check_availability(self, budget_id: str, amount: Any, as_of: date) -> BudgetAvailability:
        """
        Pure read: can ``amount`` be consumed from the budget on ``as_of``

        Raises:
            BudgetNotFoundError: Budget does not exist
            BudgetInactiveError: Budget is deactivated
            BudgetPeriodMismatchError: ``as_of`` is outside the budget period
        """
        amount = quantize_cents(amount)
        budget = self.require_budget(budget_id)
        self._validate_usable(budget, as_of)
        return BudgetAvailability(
            budget_id=budget.id,
            available=budget.available,
            requested=amount,
            ok=budget.available >= amount
        )

    def ensure_available(self, budget_id: str, amount: Any, as_of: date) -> BudgetAvailability:
        """check_availability that raises BudgetExceededError when the amount does not fit"""
        availability = self.check_availability(budget_id, amount, as_of)
        if not availability.ok:
            budget = self.require_budget(budget_id)
            raise BudgetExceededError(budget.id, budget.name, availability.available, availability.requested)
        return availability

    def consume(self, budget_id: Optional[str], amount: Any, as_of: Optional[date] = None,
                enforce: bool = False) -> Optional[Budget]:
        """
        Atomically add ``amount`` to the budget's spent amount

        Args:
            budget_id: Budget to consume; None or the auto sentinel bypasses the ledger
            amount: Non-negative amount to consume
            as_of: Date the consumption applies to (checked when enforcing)
            enforce: Run the availability check inside the locked update

        Returns:
            Updated Budget, or None when bypassed

        Raises:
            BudgetExceededError: Enforced and the amount does not fit
        """
        if self.is_bypassed(budget_id):
            return None

        amount = quantize_cents(amount)
        if amount < 0:
            raise InvalidAmountError("Consumed amount must not be negative", amount=amount)

        def guard(data: Dict[str, Any], current: Decimal, new_value: Decimal) -> None:
            if not enforce:
                return
            budget = Budget.from_dict(data)
            self._validate_usable(budget, as_of or date.today())
            if budget.available < amount:
                raise BudgetExceededError(budget.id, budget.name, budget.available, amount)

        with self.storage.atomic():
            data = self.storage.increment(self.table_name, budget_id, "spent_amount", amount, guard)
            if data is None:
                raise BudgetNotFoundError(f"Budget {budget_id} not found", budget_id=budget_id)
            budget = Budget.from_dict(data)

            self.audit_trail.log_event(
                event_type=AuditEventType.BUDGET_CONSUMED,
                entity_type="budget",
                entity_id=budget.id,
                tenant_id=budget.tenant_id,
                metadata={"amount": amount, "spent_amount": budget.spent_amount}
            )
            self._check_threshold(budget, budget.spent_amount - amount)

        return budget

    def release(self, budget_id: Optional[str], amount: Any) -> Optional[Budget]:
        """
        Atomically subtract ``amount`` from the budget's spent amount

        Raises:
            BudgetReleaseError: More would be released than is spent
        """
        if self.is_bypassed(budget_id):
            return None

        amount = quantize_cents(amount)
        if amount < 0:
            raise InvalidAmountError("Released amount must not be negative", amount=amount)

        def guard(data: Dict[str, Any], current: Decimal, new_value: Decimal) -> None:
            if new_value < 0:
                raise BudgetReleaseError(
                    f"Cannot release {amount} from budget \"{data.get('name')}\": "
                    f"only {current} is spent",
                    budget_id=budget_id, spent_amount=current, requested=amount
                )

        with self.storage.atomic():
            data = self.storage.increment(self.table_name, budget_id, "spent_amount", -amount, guard)
            if data is None:
                raise BudgetNotFoundError(f"Budget {budget_id} not found", budget_id=budget_id)
            budget = Budget.from_dict(data)

            self.audit_trail.log_event(
                event_type=AuditEventType.BUDGET_RELEASED,
                entity_type="budget",
                entity_id=budget.id,
                tenant_id=budget.tenant_id,
                metadata={"amount": amount, "spent_amount": budget.spent_amount}
            )
        return budget

    def covering_budgets(self, tenant_id: str, company_id: str, category_id: str,
                         on_date: date) -> List[Budget]:
        """Active budgets of a category whose period contains ``on_date``, newest first"""
        budgets = [
            b for b in self.list_budgets(tenant_id, company_id, category_id, active_only=True)
            if b.covers(on_date)
        ]
        budgets.sort(key=lambda b: b.name)
        budgets.sort(key=lambda b: b.start_date, reverse=True)
        return budgets

    def available_budgets(self, tenant_id: str, company_id: str, category_id: str,
                          on_date: date, amount: Any = ZERO) -> List[BudgetOption]:
        """
        Budget options for an expense of ``amount`` on ``on_date``

        The first affordable option (or the first option when none fits) is
        flagged as recommended.
        """
        amount = quantize_cents(amount)
        options = [
            BudgetOption(**self.budget_view(budget).model_dump(), can_afford=budget.available >= amount)
            for budget in self.covering_budgets(tenant_id, company_id, category_id, on_date)
        ]
        recommended = next((option for option in options if option.can_afford), None)
        if recommended is None and options:
            recommended = options[0]
        if recommended is not None:
            recommended.recommended = True
        return options

    def recalculate_spent(self, tenant_id: str, company_id: str, expenses: Iterable[Any]) -> int:
        """
        Rebuild every budget's spent amount from the expenses that count against it

        Args:
            expenses: Objects carrying a ``budget_allocations`` mapping
                (budget_id -> amount)

        Returns:
            Number of budgets updated
        """
        totals: Dict[str, Decimal] = {}
        for expense in expenses:
            for budget_id, allocated in (expense.budget_allocations or {}).items():
                totals[budget_id] = totals.get(budget_id, ZERO) + quantize_cents(allocated)

        updated = 0
        with self.storage.atomic():
            for budget in self.list_budgets(tenant_id, company_id):
                spent = totals.get(budget.id, ZERO)
                data = self.storage.load_for_update(self.table_name, budget.id)
                previous = Decimal(data['spent_amount'])
                if previous == spent:
                    continue
                data['spent_amount'] = str(spent)
                data['updated_at'] = datetime.now(timezone.utc).isoformat()
                self.storage.save(self.table_name, budget.id, data)
                self.audit_trail.log_event(
                    event_type=AuditEventType.BUDGET_RECALCULATED,
                    entity_type="budget",
                    entity_id=budget.id,
                    tenant_id=tenant_id,
                    metadata={"previous_spent": previous, "spent_amount": spent}
                )
                updated += 1

        log_action(
            self.logger, "info", f"Recalculated spent amounts for {updated} budgets",
            action="recalculate_budgets", resource=f"company:{company_id}", tenant_id=tenant_id
        )
        return updated

    def budget_view(self, budget: Any) -> BudgetView:
        """Read model of a budget (accepts a Budget or a budget ID)"""
        if not isinstance(budget, Budget):
            budget = self.require_budget(budget)
        return BudgetView(
            id=budget.id,
            tenant_id=budget.tenant_id,
            company_id=budget.company_id,
            category_id=budget.category_id,
            name=budget.name,
            period=budget.period,
            start_date=budget.start_date,
            end_date=budget.end_date,
            amount=budget.amount,
            spent_amount=budget.spent_amount,
            available=budget.available,
            utilization_percent=budget.utilization_percent,
            alert_threshold=budget.alert_threshold,
            threshold_crossed=budget.threshold_crossed,
            is_active=budget.is_active
        )

    def _validate_usable(self, budget: Budget, as_of: date) -> None:
        if not budget.is_active:
            raise BudgetInactiveError(f"Budget is not active: {budget.name}", budget_id=budget.id)
        if not budget.covers(as_of):
            raise BudgetPeriodMismatchError(
                budget.id, budget.name, as_of, budget.start_date, budget.end_date
            )

    def _check_threshold(self, budget: Budget, previous_spent: Decimal) -> None:
        """Alert when this consumption moved utilization across the alert threshold"""
        if budget.alert_threshold is None or budget.amount <= 0:
            return
        previous_percent = previous_spent / budget.amount * 100
        if previous_percent < budget.alert_threshold <= budget.utilization_percent:
            log_action(
                self.logger, "warning",
                f"Budget \"{budget.name}\" crossed its {budget.alert_threshold}% alert threshold",
                action="budget_threshold_crossed", resource=f"budget:{budget.id}",
                tenant_id=budget.tenant_id,
                extra={"utilization_percent": str(budget.utilization_percent)}
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.BUDGET_THRESHOLD_CROSSED,
                entity_type="budget",
                entity_id=budget.id,
                tenant_id=budget.tenant_id,
                metadata={
                    "alert_threshold": budget.alert_threshold,
                    "utilization_percent": budget.utilization_percent
                }
            )
