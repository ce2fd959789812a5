"""
Ledger Core Wiring

Builds every component on one storage backend so that they all share the
same transaction boundary.
"""

from typing import Optional

from .accounts import AccountDirectory
from .amounts import to_decimal
from .audit import AuditTrail
from .budgets import BudgetLedger
from .config import AccountingConfig, get_config
from .expenses import ExpenseRegister
from .ledger import JournalEntryStore
from .logging_config import setup_logging
from .posting import PostingCoordinator
from .reporting import LedgerProjector
from .storage import StorageInterface, create_storage


class AccountingSystem:
    """Ledger core with all components initialized"""

    def __init__(self, config: Optional[AccountingConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.accounts = AccountDirectory(
            self.storage, self.audit_trail,
            code_attempts=self.config.account_code_attempts,
            default_expense_account_name=self.config.default_expense_account_name
        )
        self.ledger = JournalEntryStore(
            self.storage, self.audit_trail, self.accounts,
            balance_tolerance=to_decimal(self.config.balance_tolerance)
        )
        self.budgets = BudgetLedger(
            self.storage, self.audit_trail, auto_sentinel=self.config.budget_auto_sentinel
        )
        self.expenses = ExpenseRegister(self.storage, self.audit_trail)
        self.coordinator = PostingCoordinator(
            self.storage, self.accounts, self.ledger, self.budgets,
            self.expenses, self.audit_trail, self.config
        )
        self.projector = LedgerProjector(self.ledger, self.accounts, self.audit_trail)

    def close(self) -> None:
        self.storage.close()


def build_system(config: Optional[AccountingConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 configure_logging: bool = False) -> AccountingSystem:
    """
    Create a fully wired ledger core

    Args:
        config: Configuration, the global one from the environment when omitted
        storage: Storage backend, built from ``config.database_url`` when omitted
        configure_logging: Install the structured log handler as well
    """
    config = config or get_config()
    if configure_logging:
        setup_logging(config.log_level, "core_accounting", config.log_format, config.log_file)
    return AccountingSystem(config, storage)
