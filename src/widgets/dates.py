"""
Date resolution for widget filters.

Turns relative-date tokens (``"__rel_date:last7Days"``) and absolute date
strings into concrete instants or calendar-accurate ranges.  All ranges are
cut on local calendar-day boundaries of the resolver's timezone; equality on
a date value means "anywhere within that day", so ``eq`` widens a single
date to ``00:00:00.000 .. 23:59:59.999`` of the same wall-clock day.

``now`` is always passed in by the caller.
"""
from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.config import get_settings
from src.core.errors import ConfigError, DateParseError

RELATIVE_DATE_PREFIX = "__rel_date:"

RELATIVE_DATE_OPTIONS = (
    "today",
    "yesterday",
    "tomorrow",
    "thisWeek",
    "lastWeek",
    "nextWeek",
    "thisMonth",
    "lastMonth",
    "nextMonth",
    "last7Days",
    "next7Days",
    "last30Days",
    "next30Days",
    "thisYear",
    "lastYear",
    "custom",
)

_END_OF_DAY = time(23, 59, 59, 999000)

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")
_SHORT_OFFSET_RE = re.compile(r"([+-]\d{2})$")
_COMPACT_OFFSET_RE = re.compile(r"([+-]\d{2})(\d{2})$")


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise DateParseError(
                f"{self.start.isoformat()}..{self.end.isoformat()}",
                "range start is after range end",
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


# ── Token helpers ────────────────────────────────────────


def is_relative_date(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(RELATIVE_DATE_PREFIX)


def extract_relative_option(value: Any) -> str | None:
    """Return the option name of a relative token, ``None`` for anything else."""
    if not is_relative_date(value):
        return None
    return value[len(RELATIVE_DATE_PREFIX):]


def create_relative_date_value(option: str) -> str:
    if option not in RELATIVE_DATE_OPTIONS:
        raise ConfigError(f"Unknown relative date option '{option}'")
    return f"{RELATIVE_DATE_PREFIX}{option}"


def format_instant(instant: datetime) -> str:
    """UTC ISO-8601 with millisecond precision, e.g. ``2024-03-15T00:00:00.000Z``."""
    utc = instant.astimezone(timezone.utc)
    return f"{utc:%Y-%m-%dT%H:%M:%S}.{utc.microsecond // 1000:03d}Z"


def _month_shift(d: date, months: int) -> date:
    """First day of the month ``months`` away from ``d``'s month."""
    index = d.year * 12 + (d.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def _month_end(d: date) -> date:
    return d.replace(day=calendar.monthrange(d.year, d.month)[1])


# ── Resolver ─────────────────────────────────────────────


class DateResolver:
    """Resolve date filter values relative to an injected ``now``.

    Parameters
    ----------
    timezone_name : str, optional
        IANA zone used for calendar-day boundaries and for naive inputs.
        Defaults to ``WIDGET_TIMEZONE`` (UTC).
    week_starts_on : int, optional
        0 = Monday … 6 = Sunday.  Defaults to ``WIDGET_WEEK_STARTS_ON``.
    """

    def __init__(self, timezone_name: str | None = None, week_starts_on: int | None = None):
        settings = get_settings()
        name = timezone_name or settings.timezone
        try:
            self.tz: tzinfo = timezone.utc if name.upper() == "UTC" else ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown timezone '{name}'") from exc
        self.week_starts_on = settings.week_starts_on if week_starts_on is None else week_starts_on

        self._ranges: dict[str, Callable[[date], tuple[date, date]]] = {
            "today": lambda d: (d, d),
            "custom": lambda d: (d, d),
            "yesterday": lambda d: (d - timedelta(days=1), d - timedelta(days=1)),
            "tomorrow": lambda d: (d + timedelta(days=1), d + timedelta(days=1)),
            "thisWeek": lambda d: self._week(d, 0),
            "lastWeek": lambda d: self._week(d, -1),
            "nextWeek": lambda d: self._week(d, 1),
            "thisMonth": lambda d: self._month(d, 0),
            "lastMonth": lambda d: self._month(d, -1),
            "nextMonth": lambda d: self._month(d, 1),
            "last7Days": lambda d: (d - timedelta(days=6), d),
            "next7Days": lambda d: (d, d + timedelta(days=6)),
            "last30Days": lambda d: (d - timedelta(days=29), d),
            "next30Days": lambda d: (d, d + timedelta(days=29)),
            "thisYear": lambda d: (date(d.year, 1, 1), date(d.year, 12, 31)),
            "lastYear": lambda d: (date(d.year - 1, 1, 1), date(d.year - 1, 12, 31)),
        }

    # ── Public API ──────────────────────────────────────

    def resolve(self, value: Any, now: datetime, operator: str | None = None) -> DateRange | datetime:
        """Resolve a filter value to a ``DateRange`` or a single instant.

        Relative tokens always give a range.  Absolute values give an instant,
        widened to their calendar day when ``operator == "eq"``.
        """
        if is_relative_date(value):
            return self.relative_range(extract_relative_option(value), now)
        instant, _ = self.parse_instant(value)
        if operator == "eq":
            return self.day_range(instant)
        return instant

    def relative_range(self, option: str | None, now: datetime) -> DateRange:
        span = self._ranges.get(option or "")
        if span is None:
            raise ConfigError(
                f"Unknown relative date option '{option}'. "
                f"Allowed: {', '.join(RELATIVE_DATE_OPTIONS)}"
            )
        start, end = span(self.local_today(now))
        return self._span(start, end, self.tz)

    def day_range(self, instant: datetime) -> DateRange:
        """Full calendar day of ``instant`` in its own timezone."""
        tz = instant.tzinfo or self.tz
        d = instant.date()
        return self._span(d, d, tz)

    def local_today(self, now: datetime) -> date:
        return self._aware(now).astimezone(self.tz).date()

    def parse_instant(self, value: Any) -> tuple[datetime, bool]:
        """Parse a date-like value into ``(aware_datetime, is_date_only)``."""
        if isinstance(value, datetime):
            return self._aware(value), False
        if isinstance(value, date):
            return datetime.combine(value, time.min, tzinfo=self.tz), True
        if not isinstance(value, str):
            raise DateParseError(value, "expected a date string")

        text = value.strip()
        if _DATE_ONLY_RE.match(text):
            try:
                return datetime.combine(date.fromisoformat(text), time.min, tzinfo=self.tz), True
            except ValueError as exc:
                raise DateParseError(value, str(exc)) from exc

        if not _TIMESTAMP_RE.match(text):
            raise DateParseError(value, "expected YYYY-MM-DD or an ISO timestamp")

        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _COMPACT_OFFSET_RE.sub(r"\1:\2", text)
        text = _SHORT_OFFSET_RE.sub(r"\1:00", text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise DateParseError(value, str(exc)) from exc
        return self._aware(parsed), False

    def parse_range(self, value: Any) -> DateRange:
        """Parse ``[start, end]`` or ``"start,end"`` into a range.

        Date-only bounds are inclusive of their whole day.
        """
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",")]
        elif isinstance(value, (list, tuple)):
            parts = list(value)
        else:
            raise DateParseError(value, "expected a two-element range")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise DateParseError(value, "both start and end are required")

        start, _ = self.parse_instant(parts[0])
        end, end_is_date = self.parse_instant(parts[1])
        if end_is_date:
            end = self.day_range(end).end
        return DateRange(start, end)

    # ── Internals ───────────────────────────────────────

    def _aware(self, dt: datetime) -> datetime:
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=self.tz)

    @staticmethod
    def _span(first: date, last: date, tz: tzinfo) -> DateRange:
        return DateRange(
            start=datetime.combine(first, time.min, tzinfo=tz),
            end=datetime.combine(last, _END_OF_DAY, tzinfo=tz),
        )

    def _week(self, d: date, offset: int) -> tuple[date, date]:
        start = d - timedelta(days=(d.weekday() - self.week_starts_on) % 7) + timedelta(weeks=offset)
        return start, start + timedelta(days=6)

    @staticmethod
    def _month(d: date, offset: int) -> tuple[date, date]:
        first = _month_shift(d, offset)
        return first, _month_end(first)
