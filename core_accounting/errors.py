"""
Accounting Error Taxonomy

Typed errors raised by the ledger core. Every error carries a stable
machine-readable ``code`` (surfaced to the routing layer unchanged) and a
``category``:

    validation  - bad input detected before any mutation, safe to retry
    conflict    - state conflict detected mid-operation, full abort
    resolution  - an account or account type could not be resolved
    integrity   - an internal invariant was found violated after the fact

Errors subclass ValueError so callers that catch ValueError keep working.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class AccountingError(ValueError):
    """Base class for all ledger core errors"""
    code = "accounting_error"
    category = "validation"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details
        self.step: Optional[str] = None  # Set by the posting coordinator

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for the routing layer"""
        result = {
            "code": self.code,
            "category": self.category,
            "message": self.message,
        }
        if self.step:
            result["step"] = self.step
        if self.details:
            result["details"] = {
                k: str(v) if isinstance(v, Decimal) else v
                for k, v in self.details.items()
            }
        return result


# Validation errors

class ValidationError(AccountingError):
    category = "validation"


class UnbalancedEntryError(ValidationError):
    """Total debits and credits differ by more than the rounding tolerance"""
    code = "unbalanced"

    def __init__(self, total_debit: Decimal, total_credit: Decimal, message: Optional[str] = None):
        self.total_debit = total_debit
        self.total_credit = total_credit
        self.difference = total_debit - total_credit
        super().__init__(
            message or (f"Journal entry not balanced: debits={total_debit}, "
                        f"credits={total_credit}, difference={self.difference}"),
            total_debit=total_debit,
            total_credit=total_credit,
            difference=self.difference,
        )


class TooFewLinesError(ValidationError):
    code = "at_least_two_lines"


class InvalidJournalLineError(ValidationError):
    code = "invalid_line"


class InvalidDateRangeError(ValidationError):
    code = "invalid_date_range"


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class BudgetValidationError(ValidationError):
    """Budget cannot be used for the requested date"""
    code = "BUDGET_VALIDATION_ERROR"


class BudgetPeriodMismatchError(BudgetValidationError):
    def __init__(self, budget_id: str, budget_name: str, as_of, start_date, end_date):
        self.budget_id = budget_id
        self.as_of = as_of
        super().__init__(
            f"Date {as_of.isoformat()} is outside budget period. Budget \"{budget_name}\" "
            f"covers {start_date.isoformat()} to {end_date.isoformat()}",
            budget_id=budget_id,
            as_of=as_of.isoformat(),
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )


class BudgetInactiveError(BudgetValidationError):
    pass


# Conflict errors

class ConflictError(AccountingError):
    category = "conflict"


class NotFoundError(ConflictError):
    code = "not_found"


class JournalEntryNotFoundError(NotFoundError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class BudgetNotFoundError(NotFoundError):
    pass


class ExpenseNotFoundError(NotFoundError):
    pass


class EntryAlreadyPostedError(ConflictError):
    """Attempt to edit an entry that is no longer a draft"""
    code = "already_posted"


class AlreadyPostedError(ConflictError):
    """Attempt to post an entry that is already posted"""
    code = "already_posted"


class CannotDeletePostedEntryError(ConflictError):
    code = "cannot_delete_posted"


class InvalidStatusTransitionError(ConflictError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {entity} from {current} to {target}",
            entity=entity, current=current, target=target,
        )


class DuplicateAccountCodeError(ConflictError):
    code = "duplicate_account_code"


class BudgetExceededError(ConflictError):
    code = "BUDGET_EXCEEDED"

    def __init__(self, budget_id: str, budget_name: str, available: Decimal, requested: Decimal):
        self.budget_id = budget_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Budget \"{budget_name}\" has only {available} available, "
            f"but {requested} is required",
            budget_id=budget_id,
            available=available,
            requested=requested,
        )


class BudgetReleaseError(ConflictError):
    code = "budget_release_exceeds_spent"


# Resolution errors

class ResolutionError(AccountingError):
    category = "resolution"


class AccountTypeResolutionFailed(ResolutionError):
    code = "account_type_resolution_failed"


# Integrity errors

class LedgerIntegrityError(AccountingError):
    category = "integrity"
    code = "integrity_violation"
