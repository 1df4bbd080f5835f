"""Temporal window evaluation and the injectable clock.

Rule code never reads the wall clock directly; it receives a :class:`Clock`
through the runtime context so that the 24-hour and 72-hour windows can be
exercised deterministically.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Optional

from .constants import DEFAULT_UTC_OFFSET


PORTAL_DATETIME_FORMAT = "%d/%m/%Y %H:%M"
PORTAL_DATE_FORMAT = "%d/%m/%Y"

_PORTAL_PATTERN = re.compile(
    r"^(?P<day>\d{2})/(?P<month>\d{2})/(?P<year>\d{4})(?:\s+(?P<hour>\d{2}):(?P<minute>\d{2}))?$"
)
_ISO_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d")
_OFFSET_PATTERN = re.compile(r"^(?P<sign>[+-])(?P<hours>\d{2}):(?P<minutes>\d{2})$")

SECONDS_PER_HOUR = 3600


class UnparseableDate(ValueError):
    """Raised when a date string matches none of the accepted representations."""


def parse_utc_offset(value: str) -> timezone:
    """Convert ``"+05:30"`` style offsets into a :class:`datetime.timezone`.

    Raises:
        ValueError: If ``value`` is not of the form ``±HH:MM``.
    """

    match = _OFFSET_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid UTC offset: {value!r}")
    delta = timedelta(hours=int(match["hours"]), minutes=int(match["minutes"]))
    return timezone(-delta if match["sign"] == "-" else delta)


DEFAULT_TIMEZONE = parse_utc_offset(DEFAULT_UTC_OFFSET)


class Clock(ABC):
    """Source of the current time for all rule evaluation."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current timezone-aware time."""


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def __init__(self, tz: tzinfo = DEFAULT_TIMEZONE) -> None:
        self._tz = tz

    def now(self) -> datetime:
        return datetime.now(self._tz)


class FixedClock(Clock):
    """Deterministic clock that only moves when told to."""

    def __init__(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._moment = moment

    def now(self) -> datetime:
        return self._moment

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._moment = moment

    def advance(self, *, hours: float = 0, minutes: float = 0, seconds: float = 0) -> datetime:
        self._moment += timedelta(hours=hours, minutes=minutes, seconds=seconds)
        return self._moment


def hours_elapsed(anchor: datetime, now: datetime) -> float:
    """Return the signed number of hours between ``anchor`` and ``now``.

    The result is negative when ``anchor`` lies in the future; callers treat
    that as an invalid anchor rather than as an open window.
    """

    return (now - anchor).total_seconds() / SECONDS_PER_HOUR


def hours_remaining(anchor: datetime, bound_hours: float, now: datetime) -> float:
    """Return the raw signed hours left in a window of ``bound_hours``.

    A value ``<= 0`` means the window has closed. Use
    :func:`display_hours_remaining` for user-facing output.
    """

    return bound_hours - hours_elapsed(anchor, now)


def display_hours_remaining(anchor: datetime, bound_hours: float, now: datetime) -> float:
    return max(0.0, hours_remaining(anchor, bound_hours, now))


def window_is_open(anchor: datetime, bound_hours: float, now: datetime) -> bool:
    """Return ``True`` while ``0 <= hours_elapsed <= bound_hours``."""

    elapsed = hours_elapsed(anchor, now)
    return 0 <= elapsed <= bound_hours


def format_remaining(hours: float) -> str:
    """Render a remaining duration the way the portal does: ``"5 hours 30 minutes"``."""

    clamped = max(0.0, hours)
    whole_hours = int(clamped)
    minutes = int((clamped - whole_hours) * 60)
    return f"{whole_hours} hours {minutes} minutes"


def parse_flexible_date(
    value: Any,
    *,
    default_time: Optional[time] = None,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> datetime:
    """Parse an ISO-8601 or ``dd/MM/yyyy[ HH:mm]`` string into an aware datetime.

    ISO input must be ``yyyy-MM-dd`` alone or followed by a ``T`` or space
    and a time. Basic ``yyyyMMdd`` and week-date spellings are rejected.

    Args:
        value (Any): Text supplied by a caller. Non-strings are rejected.
        default_time (time | None): Time of day used to complete date-only
            inputs. When ``None`` a date-only input is rejected instead of
            being silently completed.
        tz (tzinfo): Zone attached to inputs that carry no offset.

    Returns:
        datetime: Timezone-aware timestamp.

    Raises:
        UnparseableDate: If ``value`` is empty, malformed, names an impossible
            calendar date, or is date-only without ``default_time``.
    """

    if not isinstance(value, str) or not value.strip():
        raise UnparseableDate("Date value is empty")
    text = value.strip()

    match = _PORTAL_PATTERN.match(text)
    if match is not None:
        if match["hour"] is None:
            moment_time = _require_default_time(text, default_time)
        else:
            moment_time = _build_time(text, int(match["hour"]), int(match["minute"]))
        try:
            day = date(int(match["year"]), int(match["month"]), int(match["day"]))
        except ValueError as exc:
            raise UnparseableDate(f"Invalid calendar date: {text!r}") from exc
        return datetime.combine(day, moment_time, tzinfo=tz)

    if _ISO_DATE_ONLY.match(text):
        moment_time = _require_default_time(text, default_time)
        try:
            day = date.fromisoformat(text)
        except ValueError as exc:
            raise UnparseableDate(f"Invalid calendar date: {text!r}") from exc
        return datetime.combine(day, moment_time, tzinfo=tz)

    if not _ISO_DATETIME.match(text):
        raise UnparseableDate(f"Invalid date format {text!r}. Please use dd/MM/yyyy HH:mm format")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise UnparseableDate(
            f"Invalid date format {text!r}. Please use dd/MM/yyyy HH:mm format"
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def parse_portal_date(value: Any) -> date:
    """Parse a date-only ``dd/MM/yyyy`` (or ISO ``yyyy-MM-dd``) value."""

    if not isinstance(value, str) or not value.strip():
        raise UnparseableDate("Date value is empty")
    text = value.strip()
    try:
        if _ISO_DATE_ONLY.match(text):
            return date.fromisoformat(text)
        return datetime.strptime(text, PORTAL_DATE_FORMAT).date()
    except ValueError as exc:
        raise UnparseableDate(f"Invalid date {text!r}. Please use dd/MM/yyyy format") from exc


def format_portal_datetime(moment: datetime) -> str:
    return moment.strftime(PORTAL_DATETIME_FORMAT)


def _require_default_time(text: str, default_time: Optional[time]) -> time:
    if default_time is None:
        raise UnparseableDate(f"Time of day missing in {text!r}")
    return default_time


def _build_time(text: str, hour: int, minute: int) -> time:
    try:
        return time(hour, minute)
    except ValueError as exc:
        raise UnparseableDate(f"Invalid time of day in {text!r}") from exc
