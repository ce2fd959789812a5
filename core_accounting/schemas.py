"""
Pydantic schemas for intent payloads and read models

Intents arrive from the routing layer already authenticated; read models are
what the ledger core hands back for display.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


# Intent schemas
class JournalLineInput(BaseModel):
    account_id: Optional[str] = Field(None, description="Account ID")
    account_name: Optional[str] = Field(None, description="Account name, resolved or created when no ID is given")
    debit: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")
    memo: Optional[str] = None
    department: Optional[str] = None
    project: Optional[str] = None
    location: Optional[str] = None

    @model_validator(mode="after")
    def require_account_reference(self) -> 'JournalLineInput':
        if not self.account_id and not self.account_name:
            raise ValueError("Either account_id or account_name is required")
        return self


class ManualEntryIntent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str
    company_id: str
    entry_date: date = Field(..., alias="date")
    memo: str
    reference: Optional[str] = None
    lines: List[JournalLineInput] = Field(..., min_length=1)
    post: bool = False


class ExpenseActionIntent(BaseModel):
    expense_id: str
    action: Literal["approve", "reject", "submit"]
    reason: Optional[str] = None


# Read models
class JournalLineView(BaseModel):
    id: str
    account_id: str
    account_code: Optional[str] = None
    account_name: Optional[str] = None
    account_type: Optional[str] = None
    debit: Decimal
    credit: Decimal
    memo: Optional[str] = None
    department: Optional[str] = None
    project: Optional[str] = None
    location: Optional[str] = None


class JournalEntryView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    tenant_id: str
    company_id: str
    entry_date: date = Field(..., alias="date")
    memo: str
    reference: Optional[str] = None
    status: str
    posted_at: Optional[datetime] = None
    reversed_by: Optional[str] = None
    reverses: Optional[str] = None
    total_debit: Decimal
    total_credit: Decimal
    lines: List[JournalLineView]


class BudgetView(BaseModel):
    id: str
    tenant_id: str
    company_id: str
    category_id: str
    name: str
    period: str
    start_date: date
    end_date: date
    amount: Decimal
    spent_amount: Decimal
    available: Decimal
    utilization_percent: Decimal
    alert_threshold: Optional[Decimal] = None
    threshold_crossed: bool = False
    is_active: bool


class BudgetOption(BudgetView):
    can_afford: bool = False
    recommended: bool = False


class TrialBalanceRow(BaseModel):
    account_id: str
    account_code: str
    account_name: str
    account_type: str
    total_debit: Decimal
    total_credit: Decimal
    debit_balance: Decimal
    credit_balance: Decimal


class TrialBalanceView(BaseModel):
    tenant_id: str
    company_id: str
    as_of: Optional[date] = None
    rows: List[TrialBalanceRow]
    total_debit: Decimal
    total_credit: Decimal
    is_balanced: bool


class GeneralLedgerLine(BaseModel):
    entry_id: str
    entry_date: date
    memo: str
    reference: Optional[str] = None
    line_memo: Optional[str] = None
    debit: Decimal
    credit: Decimal
    running_balance: Decimal


class GeneralLedgerAccount(BaseModel):
    account_id: str
    account_code: str
    account_name: str
    account_type: str
    opening_balance: Decimal
    closing_balance: Decimal
    lines: List[GeneralLedgerLine]
