from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from campaign_engine.common.errors import InvalidDuration
from campaign_engine.policy.schedule_time import (
    apply_quiet_hours,
    calculate_schedule_time,
    is_in_quiet_hours,
    is_valid_duration,
    parse_duration,
)

NIGHT = {"start": "22:00", "end": "06:00"}
HOUR = 3_600_000
DAY = 24 * HOUR


# ----------------------------
# parse_duration
# ----------------------------

@pytest.mark.parametrize("zero", ["PT0S", "PT0M", "PT0H"])
def test_zero_forms_are_zero(zero):
    assert parse_duration(zero) == 0


@pytest.mark.parametrize(
    "text, expected",
    [
        ("PT72H", 72 * HOUR),
        ("P1D", DAY),
        ("P1DT12H", DAY + 12 * HOUR),
        ("PT30M", 30 * 60_000),
        ("PT45S", 45_000),
        ("P2W", 14 * DAY),
        ("PT0.5H", HOUR // 2),
        ("P1Y", int(round(365.25 * DAY))),
        ("P1M", int(round(30.44 * DAY))),
    ],
)
def test_parse_duration_components(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("bad", ["", "P", "PT", "P1DT", "72H", "PT-1H", "1 day", "PTXH"])
def test_malformed_durations_raise(bad):
    with pytest.raises(InvalidDuration):
        parse_duration(bad)
    assert is_valid_duration(bad) is False


def test_non_string_duration_raises():
    with pytest.raises(InvalidDuration):
        parse_duration(3600)


# ----------------------------
# Quiet hours
# ----------------------------

def test_wrapping_window_moves_late_evening_to_next_morning():
    candidate = datetime(2025, 5, 12, 23, 30, tzinfo=timezone.utc)
    assert is_in_quiet_hours(candidate, "UTC", NIGHT) is True

    adjusted = calculate_schedule_time("PT0S", "UTC", NIGHT, base_time=candidate)
    assert adjusted == datetime(2025, 5, 13, 6, 0, tzinfo=timezone.utc)


def test_wrapping_window_early_morning_moves_to_same_day_end():
    candidate = datetime(2025, 5, 13, 2, 15, tzinfo=timezone.utc)
    adjusted = apply_quiet_hours(candidate, "UTC", NIGHT)
    assert adjusted == datetime(2025, 5, 13, 6, 0, tzinfo=timezone.utc)


def test_daytime_is_left_untouched():
    candidate = datetime(2025, 5, 12, 10, 0, tzinfo=timezone.utc)
    assert is_in_quiet_hours(candidate, "UTC", NIGHT) is False
    assert calculate_schedule_time("PT0S", "UTC", NIGHT, base_time=candidate) == candidate


def test_schedule_is_idempotent_outside_quiet_hours():
    base = datetime(2025, 5, 12, 9, 0, tzinfo=timezone.utc)
    once = calculate_schedule_time("PT2H", "UTC", NIGHT, base_time=base)
    twice = calculate_schedule_time("PT0S", "UTC", NIGHT, base_time=once)
    assert once == twice == datetime(2025, 5, 12, 11, 0, tzinfo=timezone.utc)


def test_non_wrapping_window_bounds_are_inclusive():
    office = {"start": "09:00", "end": "17:00"}
    day = datetime(2024, 1, 15, tzinfo=timezone.utc)
    assert is_in_quiet_hours(day.replace(hour=9), "UTC", office)
    assert is_in_quiet_hours(day.replace(hour=17), "UTC", office)
    assert not is_in_quiet_hours(day.replace(hour=8, minute=59), "UTC", office)
    assert not is_in_quiet_hours(day.replace(hour=17, minute=1), "UTC", office)


def test_window_is_evaluated_in_contact_timezone():
    # 04:30 UTC is 23:30 the previous evening in New York (EST)
    candidate = datetime(2025, 1, 15, 4, 30, tzinfo=timezone.utc)
    adjusted = calculate_schedule_time("PT0S", "America/New_York", NIGHT, base_time=candidate)

    local = adjusted.astimezone(ZoneInfo("America/New_York"))
    assert (local.day, local.hour, local.minute) == (15, 6, 0)


def test_delay_is_added_before_quiet_hours_check():
    base = datetime(2025, 5, 12, 20, 0, tzinfo=timezone.utc)
    adjusted = calculate_schedule_time("PT3H", "UTC", NIGHT, base_time=base)
    assert adjusted == datetime(2025, 5, 13, 6, 0, tzinfo=timezone.utc)


# ----------------------------
# Degraded computations never raise
# ----------------------------

def test_bad_delay_falls_back_to_base_time(caplog):
    base = datetime(2025, 5, 12, 12, 0, tzinfo=timezone.utc)
    with caplog.at_level("WARNING", logger="outreach.schedule"):
        assert calculate_schedule_time("soon", "UTC", NIGHT, base_time=base) == base
    assert any("Falling back" in r.getMessage() for r in caplog.records)


def test_bad_timezone_keeps_unadjusted_time(caplog):
    base = datetime(2025, 5, 12, 23, 30, tzinfo=timezone.utc)
    with caplog.at_level("WARNING", logger="outreach.schedule"):
        assert calculate_schedule_time("PT0S", "Mars/Olympus", NIGHT, base_time=base) == base
        assert is_in_quiet_hours(base, "Mars/Olympus", NIGHT) is False
    assert caplog.records


def test_bad_window_format_keeps_unadjusted_time():
    base = datetime(2025, 5, 12, 23, 30, tzinfo=timezone.utc)
    broken = {"start": "10pm", "end": "6am"}
    assert calculate_schedule_time("PT0S", "UTC", broken, base_time=base) == base


def test_naive_base_time_is_treated_as_utc():
    adjusted = calculate_schedule_time("PT1H", "UTC", None, base_time=datetime(2025, 5, 12, 12, 0))
    assert adjusted == datetime(2025, 5, 12, 13, 0, tzinfo=timezone.utc)
