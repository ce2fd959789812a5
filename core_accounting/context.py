"""
Acting User Context

Carries the id of the user on whose behalf the current call runs. The id is
recorded on audit events only; it never changes ledger semantics.
"""

import contextvars
from contextlib import contextmanager
from typing import Optional


_acting_user = contextvars.ContextVar('acting_user', default=None)
_correlation_id = contextvars.ContextVar('correlation_id', default=None)


def get_acting_user() -> Optional[str]:
    """Get the acting user ID for this context"""
    return _acting_user.get()


def set_acting_user(user_id: Optional[str]) -> None:
    """Set the acting user ID for this context"""
    _acting_user.set(user_id)


def get_correlation_id() -> Optional[str]:
    """Get the correlation ID for this context"""
    return _correlation_id.get()


@contextmanager
def acting_user(user_id: Optional[str], correlation_id: Optional[str] = None):
    """Context manager for running a block on behalf of a user"""
    user_token = _acting_user.set(user_id)
    correlation_token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(correlation_token)
        _acting_user.reset(user_token)
