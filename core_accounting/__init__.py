"""
Core Accounting System

A multi-tenant double-entry ledger and budget-consumption engine with
Decimal financial math, atomic expense posting and hash-chained audit trails.
"""

__version__ = "1.0.0"
