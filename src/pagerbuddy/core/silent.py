"""Silent period definitions (core domain).

A silent period marks the times at which an alert for a unit is a drill or
test and should be delivered unobtrusively. Each variant answers the same
question, ``is_in_silent_period(timestamp)``, and is selected by its ``type``
key in the config.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Union

from pagerbuddy.core.errors import ConfigError


def _localize(timestamp: datetime, zone: tzinfo) -> datetime:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(zone)


@dataclass(frozen=True)
class SilentNever:
    """Alerts are never silent."""

    description: str = ""

    def is_in_silent_period(self, timestamp: datetime) -> bool:
        return False


@dataclass(frozen=True)
class SilentAlways:
    """Every alert is silent (e.g. a unit used only for testing)."""

    description: str = ""

    def is_in_silent_period(self, timestamp: datetime) -> bool:
        return True


@dataclass(frozen=True)
class SilentTime:
    """A daily time-of-day window.

    The window is half-open ``[start, end)``. If ``end`` is before ``start``
    the window runs through midnight. ``start == end`` describes an empty
    window.
    """

    start: time
    end: time
    description: str = ""
    zone: tzinfo = timezone.utc

    def is_in_silent_period(self, timestamp: datetime) -> bool:
        local = _localize(timestamp, self.zone).time().replace(tzinfo=None)
        if self.start == self.end:
            return False
        if self.start < self.end:
            return self.start <= local < self.end
        return local >= self.start or local < self.end

    def window_day(self, timestamp: datetime) -> date:
        """Local date on which the window containing ``timestamp`` opened."""

        local = _localize(timestamp, self.zone)
        if self.end < self.start and local.time().replace(tzinfo=None) < self.end:
            return (local - timedelta(days=1)).date()
        return local.date()


@dataclass(frozen=True)
class SilentDayOfWeek:
    """A time window opening on one ISO weekday (1 = Monday ... 7 = Sunday).

    A window through midnight belongs to the day it opens on, so Saturday
    23:00-01:00 also covers early Sunday.
    """

    weekday: int
    window: SilentTime
    description: str = ""

    def is_in_silent_period(self, timestamp: datetime) -> bool:
        if not self.window.is_in_silent_period(timestamp):
            return False
        return self.window.window_day(timestamp).isoweekday() == self.weekday


@dataclass(frozen=True)
class SilentDayOfMonth:
    """A time window opening on one calendar day of every month.

    Like ``SilentDayOfWeek`` the window is anchored on its opening day.
    """

    day: int
    window: SilentTime
    description: str = ""

    def is_in_silent_period(self, timestamp: datetime) -> bool:
        if not self.window.is_in_silent_period(timestamp):
            return False
        return self.window.window_day(timestamp).day == self.day


SilentConfiguration = Union[SilentNever, SilentAlways, SilentTime, SilentDayOfWeek, SilentDayOfMonth]


def _parse_time(value: str, key: str) -> time:
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid time for silent.{key}: {value!r}") from exc


def _build_window(raw: dict, zone: tzinfo) -> SilentTime:
    return SilentTime(
        start=_parse_time(raw.get("start", "00:00"), "start"),
        end=_parse_time(raw.get("end", "00:00"), "end"),
        description=raw.get("description", ""),
        zone=zone,
    )


def build_silent_configuration(raw: dict | None, zone: tzinfo = timezone.utc) -> SilentConfiguration:
    """Build a silent period from its config form.

    ``None`` or an empty dict means ``SilentNever``.
    """

    if not raw:
        return SilentNever()

    kind = raw.get("type", "never")
    description = raw.get("description", "")
    if kind == "never":
        return SilentNever(description)
    if kind == "always":
        return SilentAlways(description)
    if kind == "time":
        return _build_window(raw, zone)

    if kind in ("day_of_week", "day_of_month"):
        day = raw.get("day")
        upper = 7 if kind == "day_of_week" else 31
        if not isinstance(day, int) or not 1 <= day <= upper:
            raise ConfigError(f"silent.day must be an integer in [1, {upper}] for {kind}, got {day!r}")
        window = _build_window(raw, zone)
        if kind == "day_of_week":
            return SilentDayOfWeek(weekday=day, window=window, description=description)
        return SilentDayOfMonth(day=day, window=window, description=description)

    raise ConfigError(f"Unsupported silent period type: {kind}")
