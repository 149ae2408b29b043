"""UTC clock helpers and correlation id generation."""

import uuid
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_correlation_id(prefix: str = "sync") -> str:
    """Time-bucketed id with a random suffix, e.g. sync_20250101120000_<hex>."""
    return f"{prefix}_{utcnow():%Y%m%d%H%M%S}_{uuid.uuid4().hex}"
