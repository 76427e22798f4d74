from __future__ import annotations

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from pagerbuddy.core.errors import ConfigError
from pagerbuddy.core.silent import (
    SilentAlways,
    SilentDayOfMonth,
    SilentDayOfWeek,
    SilentNever,
    SilentTime,
    build_silent_configuration,
)

BERLIN = ZoneInfo("Europe/Berlin")


def _utc(hour: int, minute: int = 0, day: int = 4) -> datetime:
    # 2024-05-04 is a Saturday.
    return datetime(2024, 5, day, hour, minute, tzinfo=timezone.utc)


def test_never_and_always() -> None:
    assert SilentNever().is_in_silent_period(_utc(12)) is False
    assert SilentAlways().is_in_silent_period(_utc(12)) is True


def test_time_window_is_half_open() -> None:
    window = SilentTime(time(10, 0), time(11, 0))

    assert window.is_in_silent_period(_utc(10, 0)) is True
    assert window.is_in_silent_period(_utc(10, 59)) is True
    assert window.is_in_silent_period(_utc(11, 0)) is False
    assert window.is_in_silent_period(_utc(9, 59)) is False


def test_time_window_wraps_midnight() -> None:
    window = SilentTime(time(22, 0), time(6, 0))

    assert window.is_in_silent_period(_utc(23, 30)) is True
    assert window.is_in_silent_period(_utc(3, 0)) is True
    assert window.is_in_silent_period(_utc(6, 0)) is False
    assert window.is_in_silent_period(_utc(12, 0)) is False


def test_empty_window_never_matches() -> None:
    window = SilentTime(time(8, 0), time(8, 0))

    assert window.is_in_silent_period(_utc(8, 0)) is False
    assert window.is_in_silent_period(_utc(20, 0)) is False


def test_window_uses_configured_zone() -> None:
    # 08:30 UTC is 10:30 in Berlin during summer time.
    window = SilentTime(time(10, 0), time(11, 0), zone=BERLIN)

    assert window.is_in_silent_period(_utc(8, 30)) is True
    assert window.is_in_silent_period(_utc(10, 30)) is False


def test_day_of_week_uses_iso_weekday() -> None:
    saturday = SilentDayOfWeek(6, SilentTime(time(10, 0), time(11, 0)))

    assert saturday.is_in_silent_period(_utc(10, 15, day=4)) is True
    assert saturday.is_in_silent_period(_utc(10, 15, day=5)) is False


def test_day_of_month() -> None:
    first = SilentDayOfMonth(1, SilentTime(time(18, 0), time(19, 0)))

    assert first.is_in_silent_period(datetime(2024, 6, 1, 18, 30, tzinfo=timezone.utc)) is True
    assert first.is_in_silent_period(datetime(2024, 6, 2, 18, 30, tzinfo=timezone.utc)) is False


def test_day_of_week_window_through_midnight_belongs_to_opening_day() -> None:
    saturday_night = SilentDayOfWeek(6, SilentTime(time(23, 0), time(1, 0)))

    assert saturday_night.is_in_silent_period(_utc(23, 30, day=4)) is True
    assert saturday_night.is_in_silent_period(_utc(0, 30, day=5)) is True
    assert saturday_night.is_in_silent_period(_utc(0, 30, day=4)) is False
    assert saturday_night.is_in_silent_period(_utc(1, 0, day=5)) is False


def test_day_of_month_window_through_midnight_crosses_month_end() -> None:
    last = SilentDayOfMonth(31, SilentTime(time(22, 0), time(2, 0)))

    assert last.is_in_silent_period(datetime(2024, 6, 1, 1, 0, tzinfo=timezone.utc)) is True
    assert last.is_in_silent_period(datetime(2024, 5, 31, 1, 0, tzinfo=timezone.utc)) is False


def test_build_from_config() -> None:
    assert isinstance(build_silent_configuration(None), SilentNever)
    assert isinstance(build_silent_configuration({"type": "always"}), SilentAlways)

    weekly = build_silent_configuration({"type": "day_of_week", "day": 6, "start": "10:00", "end": "10:30"}, BERLIN)

    assert isinstance(weekly, SilentDayOfWeek)
    assert weekly.window.start == time(10, 0)
    assert weekly.window.zone is BERLIN


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "lunar"},
        {"type": "day_of_week", "day": 8},
        {"type": "day_of_month", "day": 0},
        {"type": "time", "start": "25:00", "end": "10:00"},
    ],
)
def test_build_rejects_invalid_config(raw) -> None:
    with pytest.raises(ConfigError):
        build_silent_configuration(raw)
