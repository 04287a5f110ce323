# campaign_engine/common/timeutil.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return ensure_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def epoch_ms(value: datetime) -> int:
    return int(ensure_aware(value).timestamp() * 1000)


def ms_between(later: datetime, earlier: datetime) -> int:
    return int((ensure_aware(later) - ensure_aware(earlier)).total_seconds() * 1000)
