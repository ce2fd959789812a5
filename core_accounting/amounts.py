"""
Monetary Amount Helpers

Decimal conversion and cent rounding shared by the ledger, budgets and
expenses. NEVER uses float arithmetic for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Any, Optional
import re

from .errors import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats
    
    Args:
        value: String representation of number, e.g. "$1,250.50"
        
    Returns:
        Decimal value
        
    Raises:
        InvalidAmountError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise InvalidAmountError("Value must be a non-empty string", value=value)
    
    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())
    
    # Handle comma as decimal separator (European format)
    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Likely decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Likely thousands separator
            clean_value = clean_value.replace(',', '')
    elif ',' in clean_value:
        clean_value = clean_value.replace(',', '')
    
    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise InvalidAmountError(f"Cannot convert '{value}' to Decimal", value=value)


def to_decimal(value: Any) -> Decimal:
    """Convert stored or user-supplied values to Decimal"""
    if isinstance(value, Decimal):
        result = value
    elif value is None:
        return ZERO
    elif isinstance(value, str):
        result = decimal_from_string(value)
    elif isinstance(value, (int, float)):
        # Floats go through str() so 0.1 stays 0.1
        result = Decimal(str(value))
    else:
        raise InvalidAmountError(f"Unsupported amount type: {type(value).__name__}", value=str(value))
    
    if not result.is_finite():
        raise InvalidAmountError(f"Amount must be finite: {value}", value=str(value))
    return result


def quantize_cents(value: Any) -> Decimal:
    """Round a monetary value to cents using ROUND_HALF_UP"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def optional_cents(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return quantize_cents(value)
