"""Timestamp helpers: every payload carries ISO-8601 plus epoch millis."""

from datetime import datetime, timezone
from typing import Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_timestamp(seconds: float) -> datetime:
    """Convert a stat() style timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed). Returns None when invalid."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_fields(now: Optional[datetime] = None, prefix: str = "timestamp") -> Dict[str, object]:
    """Build ``{timestamp: iso, timestampMs: epoch_ms}`` for a payload."""
    now = now or utc_now()
    return {
        prefix: now.isoformat(),
        f"{prefix}Ms": to_epoch_ms(now),
    }
