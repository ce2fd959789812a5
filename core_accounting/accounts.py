"""
Account Directory Module

Manages companies, account types and the per-company chart of accounts.
Accounts are classified from their names with an ordered keyword rule table,
resolved idempotently by name, and never deleted (only deactivated).
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import random
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import (
    AccountNotFoundError, AccountTypeResolutionFailed, DuplicateAccountCodeError,
    ValidationError
)
from .logging_config import get_logger, log_action


class AccountType(Enum):
    """Five fundamental account types in double-entry bookkeeping"""
    ASSET = "ASSET"          # Debit normal balance
    LIABILITY = "LIABILITY"  # Credit normal balance
    EQUITY = "EQUITY"        # Credit normal balance
    REVENUE = "REVENUE"      # Credit normal balance
    EXPENSE = "EXPENSE"      # Debit normal balance

    @property
    def is_debit_normal(self) -> bool:
        return self in (AccountType.ASSET, AccountType.EXPENSE)


# Ordered: the first rule whose keyword appears in the lowercased name wins
ACCOUNT_CLASSIFICATION_RULES: Tuple[Tuple[AccountType, Tuple[str, ...]], ...] = (
    (AccountType.LIABILITY, ('unearned', 'deposit', 'payable', 'loan', 'credit')),
    (AccountType.ASSET, ('cash', 'bank', 'receivable')),
    (AccountType.EQUITY, ('equity', 'earnings')),
    (AccountType.REVENUE, ('revenue', 'income', 'sale')),
)

ACCOUNT_CODE_BASES: Dict[AccountType, str] = {
    AccountType.ASSET: "1000",
    AccountType.LIABILITY: "2000",
    AccountType.EQUITY: "3000",
    AccountType.REVENUE: "4000",
    AccountType.EXPENSE: "5000",
}

# Expense category keywords -> GL account name, first match wins
EXPENSE_ACCOUNT_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (('office', 'supplies', 'stationery', 'paper'), "Office Supplies Expense"),
    (('rent', 'lease', 'facility'), "Rent Expense"),
    (('utilities', 'electricity', 'water', 'internet'), "Utilities Expense"),
    (('insurance',), "Insurance Expense"),
    (('marketing', 'advertising', 'promotion'), "Marketing Expense"),
    (('travel', 'transportation', 'mileage', 'hotel'), "Travel Expense"),
    (('meals', 'entertainment', 'business lunch'), "Meals and Entertainment Expense"),
    (('legal', 'attorney', 'lawyer'), "Legal Fees Expense"),
    (('accounting', 'audit', 'bookkeeping'), "Professional Fees Expense"),
    (('software', 'technology', 'computer'), "Software and Technology Expense"),
    (('maintenance', 'repair', 'equipment'), "Repairs and Maintenance Expense"),
    (('training', 'education', 'course', 'seminar'), "Training Expense"),
    (('fees', 'interest', 'finance'), "Finance Charges Expense"),
    (('tax', 'vat', 'withholding'), "Tax Expense"),
    (('inventory', 'materials'), "Cost of Goods Sold"),
    (('shipping', 'freight', 'delivery', 'logistics'), "Shipping and Freight Expense"),
)


def classify_account_name(account_name: str) -> AccountType:
    """Classify an account by the keywords in its name"""
    lower_name = account_name.lower()
    for account_type, keywords in ACCOUNT_CLASSIFICATION_RULES:
        if any(keyword in lower_name for keyword in keywords):
            return account_type
    return AccountType.EXPENSE


def expense_account_name_for_category(category_name: Optional[str],
                                      default: str = "General Expense") -> str:
    """Map an expense category name to the GL expense account it posts to"""
    if not category_name:
        return default
    lower_name = category_name.lower()
    for keywords, account_name in EXPENSE_ACCOUNT_RULES:
        if any(keyword in lower_name for keyword in keywords):
            return account_name
    return default


@dataclass
class Company(StorageRecord):
    """Company registered by upstream provisioning"""
    tenant_id: str
    name: str


@dataclass
class AccountTypeDefinition(StorageRecord):
    """
    Account type row. ``company_id`` None marks a tenant-global row that any
    company of the tenant may use.
    """
    tenant_id: str
    company_id: Optional[str]
    code: AccountType
    name: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountTypeDefinition':
        data = dict(data)
        data['code'] = AccountType(data['code'])
        return super().from_dict(data)


@dataclass
class Account(StorageRecord):
    """General ledger account in a company's chart of accounts"""
    tenant_id: str
    company_id: str
    code: str
    name: str
    type_id: str
    account_type: AccountType
    parent_id: Optional[str] = None
    description: str = ""
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['account_type'] = AccountType(data['account_type'])
        return super().from_dict(data)


class AccountDirectory:
    """
    Resolves, creates and maintains accounts per (tenant, company)
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        code_attempts: int = 10,
        default_expense_account_name: str = "General Expense"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.code_attempts = code_attempts
        self.default_expense_account_name = default_expense_account_name
        self.companies_table = "companies"
        self.account_types_table = "account_types"
        self.accounts_table = "accounts"
        self.logger = get_logger("core_accounting.accounts")

    # Companies

    def register_company(self, tenant_id: str, name: str, company_id: Optional[str] = None) -> Company:
        """Register a company so account types can be created for it"""
        with self.storage.atomic():
            if company_id:
                existing = self.get_company(company_id)
                if existing:
                    return existing

            now = datetime.now(timezone.utc)
            company = Company(
                id=company_id or str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                name=name
            )
            self.storage.save(self.companies_table, company.id, company.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.COMPANY_REGISTERED,
                entity_type="company",
                entity_id=company.id,
                tenant_id=tenant_id,
                metadata={"name": name}
            )
            return company

    def get_company(self, company_id: str, tenant_id: Optional[str] = None) -> Optional[Company]:
        data = self.storage.load(self.companies_table, company_id)
        if not data:
            return None
        company = Company.from_dict(data)
        if tenant_id and company.tenant_id != tenant_id:
            return None
        return company

    # Account types

    def find_account_type(self, tenant_id: str, company_id: str,
                          code: AccountType) -> Optional[AccountTypeDefinition]:
        """Find an account type, preferring the company row over the tenant-global row"""
        rows = [
            AccountTypeDefinition.from_dict(data)
            for data in self.storage.find(self.account_types_table, {
                "tenant_id": tenant_id, "code": code.value
            })
        ]
        company_rows = [row for row in rows if row.company_id == company_id]
        if company_rows:
            return company_rows[0]
        global_rows = [row for row in rows if row.company_id is None]
        if global_rows:
            return global_rows[0]
        return None

    def ensure_account_type(self, tenant_id: str, company_id: str,
                            code: AccountType) -> AccountTypeDefinition:
        """
        Resolve an account type, creating a company-specific row if none exists

        Raises:
            AccountTypeResolutionFailed: No row exists and the company is not registered
        """
        with self.storage.atomic():
            existing = self.find_account_type(tenant_id, company_id, code)
            if existing:
                return existing

            if not self.get_company(company_id, tenant_id):
                raise AccountTypeResolutionFailed(
                    f"Unable to resolve account type {code.value} for company {company_id}",
                    tenant_id=tenant_id, company_id=company_id, account_type=code.value
                )

            now = datetime.now(timezone.utc)
            account_type = AccountTypeDefinition(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                company_id=company_id,
                code=code,
                name=code.value.capitalize()
            )
            self.storage.save(self.account_types_table, account_type.id, account_type.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_TYPE_CREATED,
                entity_type="account_type",
                entity_id=account_type.id,
                tenant_id=tenant_id,
                metadata={"company_id": company_id, "code": code.value}
            )
            return account_type

    def get_account_type(self, type_id: str) -> Optional[AccountTypeDefinition]:
        data = self.storage.load(self.account_types_table, type_id)
        if data:
            return AccountTypeDefinition.from_dict(data)
        return None

    # Accounts

    def create_account(
        self,
        tenant_id: str,
        company_id: str,
        name: str,
        code: Optional[str] = None,
        account_type: Optional[AccountType] = None,
        parent_id: Optional[str] = None,
        description: str = ""
    ) -> Account:
        """
        Create a new account

        Args:
            tenant_id: Owning tenant
            company_id: Owning company
            name: Account name, unique lookups are by exact name
            code: Account code (generated from the type's base code if not provided)
            account_type: Account type (classified from the name if not provided)
            parent_id: Optional parent account in the same company
            description: Free-form description

        Returns:
            Created Account object

        Raises:
            DuplicateAccountCodeError: Code already used in this company
            AccountTypeResolutionFailed: No account type could be resolved
        """
        if not name or not name.strip():
            raise ValidationError("Account name is required")

        account_type = account_type or classify_account_name(name)

        with self.storage.atomic():
            if parent_id:
                parent = self.get_account(parent_id)
                if not parent or parent.tenant_id != tenant_id or parent.company_id != company_id:
                    raise AccountNotFoundError(f"Parent account {parent_id} not found", account_id=parent_id)

            type_row = self.ensure_account_type(tenant_id, company_id, account_type)

            if code:
                if self.find_account_by_code(tenant_id, company_id, code):
                    raise DuplicateAccountCodeError(
                        f"Account code {code} already exists", code=code
                    )
            else:
                code = self._generate_account_code(tenant_id, company_id, account_type)

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                company_id=company_id,
                code=code,
                name=name,
                type_id=type_row.id,
                account_type=account_type,
                parent_id=parent_id,
                description=description
            )
            self.storage.save(self.accounts_table, account.id, account.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                tenant_id=tenant_id,
                metadata={
                    "company_id": company_id,
                    "code": code,
                    "name": name,
                    "account_type": account_type.value
                }
            )

        log_action(
            self.logger, "info", f"Account created: {code} {name}",
            action="create_account", resource=f"account:{account.id}", tenant_id=tenant_id,
            extra={"company_id": company_id, "account_type": account_type.value}
        )
        return account

    def resolve_or_create_account(self, tenant_id: str, company_id: str, account_name: str) -> str:
        """
        Resolve an account by exact name, creating it when missing

        Idempotent on name within (tenant, company): the lookup and the
        creation run in one transaction.

        Returns:
            Account ID
        """
        with self.storage.atomic():
            existing = self.find_account_by_name(tenant_id, company_id, account_name)
            if existing:
                return existing.id
            return self.create_account(tenant_id, company_id, account_name).id

    def resolve_expense_account(self, tenant_id: str, company_id: str,
                                category_name: Optional[str]) -> str:
        """Resolve (or create) the GL expense account for an expense category"""
        account_name = expense_account_name_for_category(
            category_name, self.default_expense_account_name
        )
        return self.resolve_or_create_account(tenant_id, company_id, account_name)

    def _generate_account_code(self, tenant_id: str, company_id: str,
                               account_type: AccountType) -> str:
        """Generate ``{base}{3-digit suffix}``, retrying on collision"""
        base = ACCOUNT_CODE_BASES[account_type]
        for _ in range(self.code_attempts):
            code = f"{base}{random.randint(0, 999):03d}"
            if not self.find_account_by_code(tenant_id, company_id, code):
                return code
        raise DuplicateAccountCodeError(
            f"Could not generate a free {account_type.value} account code "
            f"after {self.code_attempts} attempts",
            account_type=account_type.value
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)
        return account

    def find_account_by_name(self, tenant_id: str, company_id: str, name: str) -> Optional[Account]:
        """Get account by exact name within a company"""
        accounts = self.storage.find(self.accounts_table, {
            "tenant_id": tenant_id, "company_id": company_id, "name": name
        })
        if accounts:
            return Account.from_dict(accounts[0])
        return None

    def find_account_by_code(self, tenant_id: str, company_id: str, code: str) -> Optional[Account]:
        """Get account by code within a company"""
        accounts = self.storage.find(self.accounts_table, {
            "tenant_id": tenant_id, "company_id": company_id, "code": code
        })
        if accounts:
            return Account.from_dict(accounts[0])
        return None

    def list_accounts(
        self,
        tenant_id: str,
        company_id: str,
        account_type: Optional[AccountType] = None,
        include_inactive: bool = False
    ) -> List[Account]:
        """List a company's accounts ordered by code"""
        filters: Dict[str, Any] = {"tenant_id": tenant_id, "company_id": company_id}
        if account_type:
            filters["account_type"] = account_type.value
        accounts = [Account.from_dict(data) for data in self.storage.find(self.accounts_table, filters)]
        if not include_inactive:
            accounts = [account for account in accounts if account.is_active]
        return sorted(accounts, key=lambda a: a.code)

    def deactivate_account(self, account_id: str, reason: str = "") -> Account:
        """Deactivate an account; it can no longer receive journal lines"""
        return self._set_active(account_id, False, reason)

    def reactivate_account(self, account_id: str, reason: str = "") -> Account:
        """Reactivate a previously deactivated account"""
        return self._set_active(account_id, True, reason)

    def _set_active(self, account_id: str, is_active: bool, reason: str) -> Account:
        with self.storage.atomic():
            account = self.require_account(account_id)
            if account.is_active == is_active:
                return account

            account.is_active = is_active
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.accounts_table, account.id, account.to_dict())

            self.audit_trail.log_event(
                event_type=(AuditEventType.ACCOUNT_REACTIVATED if is_active
                            else AuditEventType.ACCOUNT_DEACTIVATED),
                entity_type="account",
                entity_id=account.id,
                tenant_id=account.tenant_id,
                metadata={"reason": reason}
            )
            return account
