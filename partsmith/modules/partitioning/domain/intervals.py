"""
Interval grammar and calendar arithmetic for time-based partition sets.

Named intervals (yearly .. quarter-hour) truncate on calendar boundaries;
arbitrary intervals ("45 minutes", "2 weeks", "1 year 6 months") are only
accepted by the time-custom mode. Month-based steps use relativedelta so
that adding one month to January 1st lands on February 1st, not on a fixed
30-day offset.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from dateutil.relativedelta import relativedelta  # type: ignore

from partsmith.shared.core.exceptions import DateTimeRangeOverflowError, InvalidIntervalError

DAY_SECONDS = 86400
# Approximations used only to rank interval magnitudes
MONTH_SECONDS = 30 * DAY_SECONDS
YEAR_SECONDS = 12 * MONTH_SECONDS


class Granularity(str, Enum):
    YEARLY = "yearly"
    QUARTERLY = "quarterly"
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    DAILY = "daily"
    HOURLY = "hourly"
    HALF_HOUR = "half-hour"
    QUARTER_HOUR = "quarter-hour"


# (months, seconds) per named interval
_NAMED: dict[Granularity, tuple[int, int]] = {
    Granularity.YEARLY: (12, 0),
    Granularity.QUARTERLY: (3, 0),
    Granularity.MONTHLY: (1, 0),
    Granularity.WEEKLY: (0, 7 * DAY_SECONDS),
    Granularity.DAILY: (0, DAY_SECONDS),
    Granularity.HOURLY: (0, 3600),
    Granularity.HALF_HOUR: (0, 1800),
    Granularity.QUARTER_HOUR: (0, 900),
}

_UNIT_SECONDS = {
    "second": 1,
    "sec": 1,
    "minute": 60,
    "min": 60,
    "hour": 3600,
    "day": DAY_SECONDS,
    "week": 7 * DAY_SECONDS,
}
_UNIT_MONTHS = {"month": 1, "mon": 1, "year": 12}

_TERM = re.compile(r"(\d+)\s*([a-z]+)")

# Suffix patterns, stored on the catalog row in to_char() syntax
YEAR_PATTERN = "YYYY"
QUARTER_PATTERN = 'YYYY"q"Q'
MONTH_PATTERN = "YYYY_MM"
WEEK_PATTERN = 'IYYY"w"IW'
DAY_PATTERN = "YYYY_MM_DD"
MINUTE_PATTERN = "YYYY_MM_DD_HH24MI"
SECOND_PATTERN = "YYYY_MM_DD_HH24MISS"

_STRFTIME = {
    YEAR_PATTERN: "%Y",
    MONTH_PATTERN: "%Y_%m",
    WEEK_PATTERN: "%Gw%V",
    DAY_PATTERN: "%Y_%m_%d",
    MINUTE_PATTERN: "%Y_%m_%d_%H%M",
    SECOND_PATTERN: "%Y_%m_%d_%H%M%S",
}

_QUARTER_SUFFIX = re.compile(r"^(\d{4})q([1-4])$")


def _normalize_unit(unit: str) -> str:
    if unit.endswith("s") and unit[:-1] in _UNIT_SECONDS.keys() | _UNIT_MONTHS.keys():
        return unit[:-1]
    return unit


@dataclass(frozen=True)
class TimeInterval:
    months: int = 0
    seconds: int = 0
    granularity: Optional[Granularity] = None

    @classmethod
    def named(cls, granularity: Granularity) -> "TimeInterval":
        months, seconds = _NAMED[granularity]
        return cls(months=months, seconds=seconds, granularity=granularity)

    @classmethod
    def parse(cls, value: str) -> "TimeInterval":
        raw = str(value or "").strip().lower()
        if not raw:
            raise InvalidIntervalError("Interval must not be empty")
        try:
            return cls.named(Granularity(raw))
        except ValueError:
            pass

        months = seconds = 0
        consumed = 0
        for match in _TERM.finditer(raw):
            if raw[consumed:match.start()].strip():
                break
            amount, unit = int(match.group(1)), _normalize_unit(match.group(2))
            if unit in _UNIT_MONTHS:
                months += amount * _UNIT_MONTHS[unit]
            elif unit in _UNIT_SECONDS:
                seconds += amount * _UNIT_SECONDS[unit]
            else:
                raise InvalidIntervalError(
                    f"Unknown interval unit '{match.group(2)}'", details={"interval": value}
                )
            consumed = match.end()
        if consumed == 0 or raw[consumed:].strip():
            raise InvalidIntervalError(
                f"Unparseable interval '{value}'", details={"interval": value}
            )
        interval = cls(months=months, seconds=seconds)
        # "1 day" and "daily" describe the same partition set
        for granularity, shape in _NAMED.items():
            if shape == (months, seconds):
                return cls.named(granularity)
        return interval

    @property
    def approx_seconds(self) -> int:
        return self.months * MONTH_SECONDS + self.seconds

    @property
    def is_named(self) -> bool:
        return self.granularity is not None

    def shift(self, ts: datetime, steps: int = 1) -> datetime:
        """ts + steps * interval, calendar-correct for the month part."""
        try:
            shifted = ts
            if self.months:
                shifted = shifted + relativedelta(months=self.months * steps)
            if self.seconds:
                shifted = shifted + timedelta(seconds=self.seconds * steps)
            return shifted
        except (OverflowError, ValueError) as e:
            raise DateTimeRangeOverflowError(
                f"{ts.isoformat()} shifted by {steps} x {self} leaves the supported range",
                details={"timestamp": ts.isoformat(), "steps": steps, "interval": str(self)},
            ) from e

    def steps_between(self, start: datetime, end: datetime) -> int:
        """Whole intervals from start to end, rounded like age(end - start) / interval."""
        if self.months and not self.seconds:
            month_delta = (end.year - start.year) * 12 + (end.month - start.month)
            return round(month_delta / self.months)
        span = (end - start).total_seconds()
        return round(span / self.approx_seconds)

    def to_sql(self) -> str:
        parts = []
        if self.months:
            parts.append(f"{self.months} months")
        if self.seconds or not parts:
            parts.append(f"{self.seconds} seconds")
        return " ".join(parts)

    def __str__(self) -> str:
        if self.granularity is not None:
            return self.granularity.value
        return self.to_sql()


def parse_id_interval(value: object) -> int:
    try:
        interval = int(str(value).strip())
    except (TypeError, ValueError) as e:
        raise InvalidIntervalError(
            f"Id interval must be an integer, got '{value}'", details={"interval": value}
        ) from e
    if interval <= 1:
        raise InvalidIntervalError(
            "Id interval must be greater than 1", details={"interval": interval}
        )
    return interval


def truncate(ts: datetime, granularity: Granularity) -> datetime:
    """Calendar truncation; sub-hour buckets floor minutes-since-hour."""
    midnight = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity is Granularity.YEARLY:
        return midnight.replace(month=1, day=1)
    if granularity is Granularity.QUARTERLY:
        return midnight.replace(month=3 * ((ts.month - 1) // 3) + 1, day=1)
    if granularity is Granularity.MONTHLY:
        return midnight.replace(day=1)
    if granularity is Granularity.WEEKLY:
        return midnight - timedelta(days=ts.weekday())
    if granularity is Granularity.DAILY:
        return midnight
    hour = ts.replace(minute=0, second=0, microsecond=0)
    if granularity is Granularity.HOURLY:
        return hour
    if granularity is Granularity.HALF_HOUR:
        return hour.replace(minute=30 * (ts.minute // 30))
    return hour.replace(minute=15 * (ts.minute // 15))


def truncate_for(interval: TimeInterval, ts: datetime) -> datetime:
    """Base truncation for an interval; arbitrary intervals truncate by magnitude."""
    if interval.granularity is not None:
        return truncate(ts, interval.granularity)
    approx = interval.approx_seconds
    if approx >= YEAR_SECONDS:
        return truncate(ts, Granularity.YEARLY)
    if approx >= MONTH_SECONDS:
        return truncate(ts, Granularity.MONTHLY)
    if approx >= DAY_SECONDS:
        return truncate(ts, Granularity.DAILY)
    if approx >= 60:
        return truncate(ts, Granularity.HOURLY)
    return ts.replace(second=0, microsecond=0)


def suffix_pattern(interval: TimeInterval) -> str:
    if interval.granularity is Granularity.QUARTERLY:
        return QUARTER_PATTERN
    if interval.granularity is Granularity.WEEKLY:
        return WEEK_PATTERN
    if not interval.is_named:
        # The suffix must resolve every boundary the interval can produce
        if interval.seconds % 60:
            return SECOND_PATTERN
        if interval.seconds % DAY_SECONDS:
            return MINUTE_PATTERN
        if interval.seconds:
            return DAY_PATTERN
        return YEAR_PATTERN if interval.months % 12 == 0 else MONTH_PATTERN
    approx = interval.approx_seconds
    if approx >= YEAR_SECONDS:
        return YEAR_PATTERN
    if approx >= MONTH_SECONDS:
        return MONTH_PATTERN
    if approx >= DAY_SECONDS:
        return DAY_PATTERN
    if approx >= 60:
        return MINUTE_PATTERN
    return SECOND_PATTERN


def format_suffix(ts: datetime, pattern: str) -> str:
    if pattern == QUARTER_PATTERN:
        return f"{ts.year:04d}q{(ts.month - 1) // 3 + 1}"
    try:
        return ts.strftime(_STRFTIME[pattern])
    except KeyError as e:
        raise InvalidIntervalError(f"Unknown datetime suffix pattern '{pattern}'") from e


def parse_suffix(suffix: str, pattern: str) -> datetime:
    """Inverse of format_suffix. Raises ValueError for a suffix that does not fit."""
    if pattern == QUARTER_PATTERN:
        match = _QUARTER_SUFFIX.match(suffix)
        if not match:
            raise ValueError(f"'{suffix}' is not a YYYYqQ quarter suffix")
        year, quarter = int(match.group(1)), int(match.group(2))
        return datetime(year, 3 * (quarter - 1) + 1, 1)
    if pattern == WEEK_PATTERN:
        # ISO week suffixes need a weekday to resolve to a date
        return datetime.strptime(f"{suffix}-1", "%Gw%V-%u")
    if pattern not in _STRFTIME:
        raise ValueError(f"Unknown datetime suffix pattern '{pattern}'")
    return datetime.strptime(suffix, _STRFTIME[pattern])
