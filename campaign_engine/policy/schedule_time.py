# campaign_engine/policy/schedule_time.py
from __future__ import annotations

import logging
import re
from datetime import datetime, time, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from campaign_engine.common.errors import InvalidDuration
from campaign_engine.common.timeutil import ensure_aware, utcnow

log = logging.getLogger("outreach.schedule")

# ----------------------------
# Durations
# ----------------------------

_MS_SECOND = 1000
_MS_MINUTE = 60 * _MS_SECOND
_MS_HOUR = 60 * _MS_MINUTE
_MS_DAY = 24 * _MS_HOUR

_UNIT_MS = {
    "years": 365.25 * _MS_DAY,
    "months": 30.44 * _MS_DAY,
    "weeks": 7 * _MS_DAY,
    "days": _MS_DAY,
    "hours": _MS_HOUR,
    "minutes": _MS_MINUTE,
    "seconds": _MS_SECOND,
}

_NUM = r"(\d+(?:\.\d+)?)"
_DURATION_RE = re.compile(
    rf"^P(?:{_NUM}Y)?(?:{_NUM}M)?(?:{_NUM}W)?(?:{_NUM}D)?"
    rf"(?:T(?:{_NUM}H)?(?:{_NUM}M)?(?:{_NUM}S)?)?$"
)
_ZERO_FORMS = frozenset({"PT0S", "PT0M", "PT0H"})

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_duration(text: str) -> int:
    """Convert an ISO-8601 style interval (e.g. ``P1DT12H``, ``PT0.5H``) to milliseconds.

    Years and months use the average calendar lengths (365.25 and 30.44 days).
    Raises InvalidDuration on anything outside the grammar.
    """
    if not isinstance(text, str):
        raise InvalidDuration(f"duration must be a string, got {type(text).__name__}")
    value = text.strip()
    if value in _ZERO_FORMS:
        return 0

    match = _DURATION_RE.match(value)
    # "P" and "PT" alone match the pattern but carry no component
    if not match or value.endswith("T") or not any(match.groups()):
        raise InvalidDuration(f"invalid ISO-8601 duration: {text!r}")

    total = 0.0
    for unit, raw in zip(_UNIT_MS, match.groups()):
        if raw is not None:
            total += float(raw) * _UNIT_MS[unit]
    return int(round(total))


def is_valid_duration(text: str) -> bool:
    try:
        parse_duration(text)
        return True
    except InvalidDuration:
        return False


# ----------------------------
# Quiet hours
# ----------------------------

class QuietHours(BaseModel):
    start: str = Field(..., description="HH:MM local time the window opens")
    end: str = Field(..., description="HH:MM local time the window closes")


QuietHoursLike = Union[QuietHours, dict]


def is_valid_time_format(value: str) -> bool:
    return isinstance(value, str) and bool(_HHMM_RE.match(value))


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
        return True
    except Exception:
        return False


def _parse_hhmm(value: str) -> time:
    match = _HHMM_RE.match(value or "")
    if not match:
        raise ValueError(f"invalid HH:MM time: {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


def _window(quiet_hours: QuietHoursLike) -> tuple[int, int]:
    qh = quiet_hours if isinstance(quiet_hours, QuietHours) else QuietHours(**quiet_hours)
    start, end = _parse_hhmm(qh.start), _parse_hhmm(qh.end)
    return start.hour * 60 + start.minute, end.hour * 60 + end.minute


def _inside(minutes: int, start: int, end: int) -> bool:
    # a window wraps midnight when end <= start
    if end <= start:
        return minutes >= start or minutes <= end
    return start <= minutes <= end


def is_in_quiet_hours(at: datetime, timezone: str, quiet_hours: QuietHoursLike) -> bool:
    """Time-of-day check in the contact's zone. Returns False if the check can't be made."""
    try:
        local = ensure_aware(at).astimezone(ZoneInfo(timezone))
        start, end = _window(quiet_hours)
        return _inside(local.hour * 60 + local.minute, start, end)
    except Exception as exc:
        log.warning("Quiet-hours check failed: %s", exc, extra={"timezone": timezone})
        return False


def apply_quiet_hours(at: datetime, timezone: str, quiet_hours: QuietHoursLike) -> datetime:
    """Push `at` to the end of the quiet window when it falls inside it."""
    try:
        zone = ZoneInfo(timezone)
        local = ensure_aware(at).astimezone(zone)
        start, end = _window(quiet_hours)
        minutes = local.hour * 60 + local.minute
        if not _inside(minutes, start, end):
            return at

        day = local.date()
        if end <= start and minutes >= start:
            day = day + timedelta(days=1)
        adjusted = datetime.combine(day, time(end // 60, end % 60), tzinfo=zone)
        log.debug("Moved %s out of quiet hours to %s", at.isoformat(), adjusted.isoformat())
        return adjusted
    except Exception as exc:
        log.warning(
            "Quiet-hours adjustment failed, keeping unadjusted time: %s", exc,
            extra={"timezone": timezone},
        )
        return at


def calculate_schedule_time(
    delay: str,
    timezone: str,
    quiet_hours: Optional[QuietHoursLike] = None,
    base_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """
    base_time (default: now) + delay, then moved out of quiet hours.
    Never raises: a bad delay yields the base time, a bad zone or window yields
    the unadjusted time. Both are logged as warnings.
    """
    base = ensure_aware(base_time or now or utcnow())
    try:
        scheduled = base + timedelta(milliseconds=parse_duration(delay))
    except InvalidDuration as exc:
        log.warning("Falling back to base time for schedule: %s", exc, extra={"delay": delay})
        return base

    if quiet_hours:
        scheduled = apply_quiet_hours(scheduled, timezone, quiet_hours)
    return scheduled
