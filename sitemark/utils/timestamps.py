"""Timestamp coercion for request bodies (ISO strings arrive as datetimes, numbers as epoch ms)."""

from datetime import datetime, timezone
from typing import Optional, Union


def coerce_datetime(value: Optional[Union[datetime, float]], default_now: bool = True) -> Optional[datetime]:
    """
    Raises:
        ValueError: Epoch value that is NaN, infinite or outside the datetime range
    """
    if value is None:
        return datetime.now(timezone.utc) if default_now else None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        raise ValueError(f"timestamp out of range: {value!r}") from e
