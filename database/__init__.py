"""Database package - models and connection management."""
from database.db import Database, db
from database.models import (
    Base,
    Listing,
    DispatchTarget,
    TargetSuggestion,
    DispatchItem,
    DispatchDigest,
    DispatchAuditLog,
    Operator,
    MetricCounter,
)

__all__ = [
    "Database",
    "db",
    "Base",
    "Listing",
    "DispatchTarget",
    "TargetSuggestion",
    "DispatchItem",
    "DispatchDigest",
    "DispatchAuditLog",
    "Operator",
    "MetricCounter",
]
