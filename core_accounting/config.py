"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class AccountingConfig(BaseSettings):
    """Ledger core configuration"""
    
    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Ledger rules
    balance_tolerance: str = "0.01"  # Largest residual absorbed onto the last line
    account_code_attempts: int = 10
    
    # Budget rules
    budget_auto_sentinel: str = "auto"  # Budget id meaning "no specific budget"
    
    # Offset accounts used by the posting coordinator
    cash_account_name: str = "Cash/Bank"
    payable_account_name: str = "Accounts Payable"
    credit_card_account_name: str = "Credit Card Payable"
    receivable_account_name: str = "Accounts Receivable"
    sales_account_name: str = "Sales Revenue"
    default_expense_account_name: str = "General Expense"
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = AccountingConfig()


def get_config() -> AccountingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AccountingConfig:
    """Reload configuration from environment"""
    global config
    config = AccountingConfig()
    return config
