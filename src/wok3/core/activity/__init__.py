"""
Activity event bus.

An append-only, queryable and streamable log of everything the lifecycle
manager and the rest of the core report.
"""

from .log import (
    DEFAULT_QUERY_LIMIT,
    MAX_QUERY_LIMIT,
    ActivityLog,
    ActivitySubscription,
)
from .models import ActivityCategory, ActivityEvent, ActivitySeverity, ActivityType

__all__ = [
    "ActivityCategory",
    "ActivityEvent",
    "ActivityLog",
    "ActivitySeverity",
    "ActivitySubscription",
    "ActivityType",
    "DEFAULT_QUERY_LIMIT",
    "MAX_QUERY_LIMIT",
]
