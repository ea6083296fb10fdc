"""
Time helpers.

Columns are naive UTC DateTime (PostgreSQL `timestamp` / SQLite text), so
everything written to the database goes through utcnow().
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
