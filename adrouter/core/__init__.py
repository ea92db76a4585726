"""Core dispatch primitives - error taxonomy, lifecycle table and scope filters."""
from adrouter.core.errors import (
    DispatchError,
    NotFoundError,
    InvalidStateError,
    PrivilegeDeniedError,
    ValidationError,
)
from adrouter.core.scopes import ScopeFilters, ScopeFilterError
from adrouter.core.transitions import (
    DispatchAction,
    DispatchStatus,
    DigestStatus,
    SuggestionStatus,
    TargetStatus,
    next_status,
)

__all__ = [
    "DispatchError",
    "NotFoundError",
    "InvalidStateError",
    "PrivilegeDeniedError",
    "ValidationError",
    "ScopeFilters",
    "ScopeFilterError",
    "DispatchAction",
    "DispatchStatus",
    "DigestStatus",
    "SuggestionStatus",
    "TargetStatus",
    "next_status",
]
