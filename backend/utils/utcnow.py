"""Naive-UTC datetime helpers.

``datetime.utcnow()`` is deprecated since Python 3.12. Everything persisted
by the backend uses naive UTC datetimes; this helper produces them without
triggering DeprecationWarning.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

